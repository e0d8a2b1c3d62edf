"""PCISPH (Predictive-Corrective Incompressible SPH) step pipeline."""

from . import core
from . import physics
from . import scenarios

# Import API to trigger backend registration
from . import api

from .config import SolverConfig, compute_delta
from .errors import PCISPHError, ConfigurationError, BackendError
from .core.backend import (
    set_backend,
    get_backend,
    list_backends,
    print_backend_info
)
from .core.model import SceneModel
from .solver import PCISPHSolver, StepResult, configure_logging
from .validation import (
    find_overlapping_particles,
    find_numerical_anomalies,
    count_non_boundary_particles
)

__version__ = "0.1.0"

__all__ = [
    # Modules
    'core',
    'physics',
    'scenarios',
    'api',

    # Solver
    'PCISPHSolver',
    'StepResult',
    'SolverConfig',
    'SceneModel',
    'compute_delta',
    'configure_logging',

    # Errors
    'PCISPHError',
    'ConfigurationError',
    'BackendError',

    # Backend management
    'set_backend',
    'get_backend',
    'list_backends',
    'print_backend_info',

    # Validation
    'find_overlapping_particles',
    'find_numerical_anomalies',
    'count_non_boundary_particles'
]
