"""
Debug checkpoints: immutable buffer snapshots taken after every stage.
"""

from collections import defaultdict
from dataclasses import dataclass
from types import MappingProxyType
from typing import Dict, List, Mapping, Optional

import numpy as np

from .core.buffers import ParticleBuffers


@dataclass(frozen=True)
class Checkpoint:
    """Every buffer as it was after one stage of one step."""
    step: int
    stage: str
    iteration: Optional[int]
    buffers: Mapping[str, np.ndarray]

    def __getitem__(self, name: str) -> np.ndarray:
        return self.buffers[name]


def capture_checkpoint(buffers: ParticleBuffers, device, step: int, stage: str,
                       iteration: Optional[int] = None) -> Checkpoint:
    """Copy every buffer through a read mapping into a frozen snapshot."""
    snapshot = {}
    for name, array in buffers.arrays().items():
        copy = np.array(device.map_for_read(array), copy=True)
        copy.flags.writeable = False
        snapshot[name] = copy
    return Checkpoint(step, stage, iteration, MappingProxyType(snapshot))


class CheckpointStore:
    """Checkpoints keyed by stage name, appended in step order."""

    def __init__(self):
        self._by_stage: Dict[str, List[Checkpoint]] = defaultdict(list)

    def record(self, checkpoint: Checkpoint):
        self._by_stage[checkpoint.stage].append(checkpoint)

    def __getitem__(self, stage: str) -> List[Checkpoint]:
        return list(self._by_stage.get(stage, []))

    def __contains__(self, stage: str) -> bool:
        return stage in self._by_stage

    def __len__(self) -> int:
        return sum(len(entries) for entries in self._by_stage.values())

    def stages(self) -> List[str]:
        return list(self._by_stage)

    def clear(self):
        self._by_stage.clear()
