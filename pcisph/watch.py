"""
Watch variables: dotted-path lookups of single particle scalars.

A path such as ``particle[12].position.y`` is parsed once into a WatchPath;
resolving it is a pure read of the flat buffers. Positions and velocities are
stored in original particle order, density and pressure in sorted order and
are reached through particle_index_back.
"""

import re
from dataclasses import dataclass
from typing import Dict, Optional, Tuple

from .core.buffers import ParticleBuffers, DENSITY
from .errors import ConfigurationError

_SEGMENT = re.compile(r'^([A-Za-z_][A-Za-z0-9_]*)(?:\[(\d+)\])?$')

_VECTOR_FIELDS = {'position', 'velocity'}
_SCALAR_FIELDS = {'density', 'pressure'}
_AXES = {'x': 0, 'y': 1, 'z': 2}


@dataclass(frozen=True)
class WatchPath:
    """Parsed watch path."""
    text: str
    index: int
    field: str
    axis: Optional[int] = None


def parse_watch_path(text: str) -> WatchPath:
    """Parse ``segment[N].segment...`` into a WatchPath.

    Raises:
        ConfigurationError: If the path does not name a watchable particle scalar
    """
    segments = []
    for part in str(text).split('.'):
        match = _SEGMENT.match(part)
        if match is None:
            raise ConfigurationError(f"Malformed watch path segment '{part}' in '{text}'")
        index = int(match.group(2)) if match.group(2) is not None else None
        segments.append((match.group(1), index))

    if not segments or segments[0][0] != 'particle' or segments[0][1] is None:
        raise ConfigurationError(f"Watch path must start with particle[N]: '{text}'")
    if any(index is not None for _, index in segments[1:]):
        raise ConfigurationError(f"Only the particle segment takes an index: '{text}'")

    names: Tuple[str, ...] = tuple(name for name, _ in segments[1:])
    index = segments[0][1]
    if len(names) == 2 and names[0] in _VECTOR_FIELDS and names[1] in _AXES:
        return WatchPath(text, index, names[0], _AXES[names[1]])
    if len(names) == 1 and names[0] in _SCALAR_FIELDS:
        return WatchPath(text, index, names[0])
    raise ConfigurationError(f"Unknown watch variable '{text}'")


def needs_step(path: WatchPath) -> bool:
    """Density and pressure only exist once a step has computed them."""
    return path.field in _SCALAR_FIELDS


def watchable_schema(particle_count: int) -> Dict[str, dict]:
    """Tree of watchable variables: one particle array with vector and scalar leaves."""
    fields = {name: tuple(_AXES) for name in sorted(_VECTOR_FIELDS)}
    fields.update({name: None for name in sorted(_SCALAR_FIELDS)})
    return {'particle': {'size': particle_count, 'fields': fields}}


def check_index(path: WatchPath, particle_count: int):
    if path.index >= particle_count:
        raise ConfigurationError(f"Watch path '{path.text}' selects particle {path.index}, "
                                 f"only {particle_count} exist")


def resolve_watch(path: WatchPath, buffers: ParticleBuffers) -> float:
    """Current value of a watch path.

    Raises:
        ConfigurationError: If the particle index is out of range
    """
    check_index(path, buffers.particle_count)
    if path.field == 'position':
        return float(buffers.position.current[path.index, path.axis])
    if path.field == 'velocity':
        return float(buffers.velocity.current[path.index, path.axis])

    sorted_index = buffers.particle_index_back[path.index]
    if path.field == 'density':
        return float(buffers.rho[DENSITY, sorted_index])
    return float(buffers.pressure[sorted_index])
