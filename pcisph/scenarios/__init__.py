"""PCISPH simulation scenes."""

from .box import (
    create_pure_liquid_scene,
    create_elastic_scene,
    create_single_particle_scene,
    generate_cubic_lattice,
    generate_box_shell
)

__all__ = [
    'create_pure_liquid_scene',
    'create_elastic_scene',
    'create_single_particle_scene',
    'generate_cubic_lattice',
    'generate_box_shell'
]
