"""
Physical and numerical constants for the PCISPH pipeline.

Units: positions live in simulation units and are converted to meters with
SIMULATION_SCALE whenever a physical quantity (distance, kernel value,
velocity) is computed. Velocities and accelerations are in SI units.
"""

# Particle type tags (stored in the 4th component of the position vector)
LIQUID_TYPE = 1.1
ELASTIC_TYPE = 2.1
BOUNDARY_TYPE = 3.1
TYPE_TAG_TOLERANCE = 1.0e-4

# Pairs closer than this (simulation units) have no defined contact normal
CONTACT_EPSILON = 1.0e-6

# Sentinels
NO_PARTICLE_ID = -1
NO_CELL_ID = -1

# Neighbor list capacity per particle
NEIGHBOR_COUNT = 32

# Predictor-corrector passes per step (fixed, no residual check)
PREDICTIVE_ITERATIONS = 3

# Dispatch granularity for particle and cell indexed kernels
WORK_GROUP_SIZE = 256

# Fluid parameters
RHO0 = 1000.0                  # rest density, kg/m^3
MASS = 0.00025                 # particle mass, kg
H = 3.34                       # smoothing radius, simulation units
R0 = 0.5 * H                   # rest spacing, simulation units
HASH_GRID_CELL_SIZE = H
HASH_GRID_CELL_SIZE_INV = 1.0 / HASH_GRID_CELL_SIZE

# 0.0037 for the reference mass of 0.00025 kg
SIMULATION_SCALE = 0.0037 * MASS ** (1.0 / 3.0) / 0.00025 ** (1.0 / 3.0)
SIMULATION_SCALE_INV = 1.0 / SIMULATION_SCALE

TIME_STEP = 5.0e-4             # s
MU = 0.1                       # viscosity coefficient
DAMPING = 0.75                 # velocity damping on wall contact
STIFFNESS = 0.75               # initial pressure estimate, Pa per kg/m^3
CFL_LIMIT = 100.0              # max pressure acceleration, m/s^2

GRAVITY_X = 0.0
GRAVITY_Y = -9.8
GRAVITY_Z = 0.0

# Elastic matter
ELASTICITY_COEFFICIENT = 1.0e4      # acceleration per meter of stretch, 1/s^2
MAX_MUSCLE_ACCELERATION = 10.0      # acceleration at activation 1.0, m/s^2
NEUTRAL_ACTIVATION = 0.0

