"""
Backend selection and dispatch system for the PCISPH pipeline.

Supports two backends:
1. CPU (NumPy) - reference implementation, always available
2. Numba - JIT-compiled data-parallel kernels (one prange task per particle/cell)

Stage implementations register themselves per backend (see pcisph/api.py).
A ComputeDevice binds one backend and exposes the buffer/kernel/queue
capability the step orchestrator drives.
"""

import enum
import logging
import time
import warnings
from dataclasses import dataclass
from typing import Optional, Dict, Callable, Any

import numpy as np

from .. import constants as C
from ..errors import BackendError

logger = logging.getLogger(__name__)


class Backend(enum.Enum):
    """Available computation backends."""
    CPU = "cpu"      # NumPy
    NUMBA = "numba"  # Numba JIT, parallel


class HardwareProfile(enum.Enum):
    """Device class requested by the caller."""
    CPU = "cpu"
    GPU = "gpu"


@dataclass
class BackendInfo:
    """Information about a backend."""
    backend: Backend
    available: bool
    device_name: str = "CPU"
    threads: int = 1


class BackendManager:
    """Manages backend selection and dispatching."""

    def __init__(self):
        self._current_backend = Backend.CPU
        self._available_backends = {}
        self._implementations = {}
        self._detect_backends()

    def _detect_backends(self):
        """Describe the installed backends."""
        import numba

        self._available_backends[Backend.CPU] = BackendInfo(
            backend=Backend.CPU,
            available=True,
            device_name=f"CPU (NumPy {np.__version__})"
        )
        self._available_backends[Backend.NUMBA] = BackendInfo(
            backend=Backend.NUMBA,
            available=True,
            device_name=f"CPU (Numba {numba.__version__})",
            threads=numba.config.NUMBA_NUM_THREADS
        )

    @property
    def current_backend(self) -> Backend:
        """Get current backend."""
        return self._current_backend

    @property
    def available_backends(self) -> list:
        """Get list of available backends."""
        return [b for b, info in self._available_backends.items() if info.available]

    def info(self, backend: Backend) -> BackendInfo:
        return self._available_backends[backend]

    def set_backend(self, backend: Backend) -> bool:
        """Set the current backend.

        Args:
            backend: Backend to use

        Returns:
            True if backend was set successfully
        """
        if not self._available_backends[backend].available:
            warnings.warn(f"Backend {backend.value} not available, keeping {self._current_backend.value}")
            return False

        self._current_backend = backend
        logger.info("Backend set to: %s", self._available_backends[backend].device_name)
        return True

    def backend_for_profile(self, profile: HardwareProfile) -> Backend:
        """Map a device profile onto a backend.

        GPU-class profiles want massively data-parallel dispatch, which the
        numba backend provides; CPU-class profiles get the NumPy reference.
        """
        if profile == HardwareProfile.GPU and self._available_backends[Backend.NUMBA].available:
            return Backend.NUMBA
        return Backend.CPU

    def register_implementation(self, function_name: str, backend: Backend,
                                implementation: Callable):
        """Register a backend-specific implementation.

        Args:
            function_name: Name of the stage function
            backend: Backend for this implementation
            implementation: The implementation function
        """
        if function_name not in self._implementations:
            self._implementations[function_name] = {}
        self._implementations[function_name][backend] = implementation

    def get_implementation(self, function_name: str,
                           backend: Optional[Backend] = None) -> Callable:
        """Get implementation for a function.

        Args:
            function_name: Name of the function
            backend: Backend to use (None for current)

        Returns:
            Implementation function

        Raises:
            BackendError: If no implementation is registered for the backend
        """
        if backend is None:
            backend = self._current_backend

        implementations = self._implementations.get(function_name)
        if not implementations:
            raise BackendError(f"No implementations registered for {function_name}",
                               {'kernel': function_name})
        if backend not in implementations:
            raise BackendError(f"No {backend.value} implementation for {function_name}",
                               {'kernel': function_name, 'backend': backend.value})
        return implementations[backend]

    def registered_functions(self) -> list:
        return sorted(self._implementations)

    def dispatch(self, function_name: str, *args, backend: Optional[Backend] = None, **kwargs):
        """Dispatch a function call to appropriate backend."""
        impl = self.get_implementation(function_name, backend)
        return impl(*args, **kwargs)

    def print_info(self):
        """Print information about available backends."""
        print("\nPCISPH Backend Information")
        print("=" * 60)

        for backend, info in self._available_backends.items():
            status = "✓" if info.available else "✗"
            print(f"{status} {backend.value:6s}: {info.device_name}")
            if backend == Backend.NUMBA and info.available:
                print(f"           Threads: {info.threads}")

        print(f"\nCurrent backend: {self._current_backend.value}")
        print("=" * 60)


# Global backend manager instance
_backend_manager = BackendManager()


def round_up_work_size(count: int, group_size: int = C.WORK_GROUP_SIZE) -> int:
    """Round a global work size up to a multiple of the work-group size."""
    if count <= 0:
        return 0
    return ((count - 1) // group_size + 1) * group_size


@dataclass(frozen=True)
class KernelEvent:
    """Completion handle for a dispatched kernel."""
    kernel: str
    global_work_size: int
    elapsed_ms: float


class ComputeDevice:
    """One backend bound as an execution device.

    Kernels run to completion on dispatch (the NumPy and numba backends are
    synchronous), so an event is already complete when returned; wait() and
    drain() are the points where a host-visible result is guaranteed.
    """

    def __init__(self, backend: Optional[Backend] = None, manager: Optional[BackendManager] = None):
        self.manager = manager or _backend_manager
        self.backend = backend or self.manager.current_backend
        info = self.manager.info(self.backend)
        if not info.available:
            raise BackendError("Requested backend is not available", {'backend': self.backend.value})
        self.device_name = info.device_name
        self._kernels: Dict[str, Callable] = {}
        self._pending = []
        self.released = False
        logger.info("Compute device: %s", self.device_name)

    def allocate_buffer(self, shape, dtype=np.float32, fill: Any = 0) -> np.ndarray:
        """Allocate a zero (or fill) initialised contiguous buffer."""
        self._check_alive()
        return np.full(shape, fill, dtype=dtype)

    def create_kernel(self, name: str) -> Callable:
        """Resolve the registered implementation of a stage for this backend."""
        self._check_alive()
        if name not in self._kernels:
            self._kernels[name] = self.manager.get_implementation(name, self.backend)
        return self._kernels[name]

    def dispatch(self, name: str, work_items: int, *args, **kwargs) -> KernelEvent:
        """Run a kernel over a global work size rounded up to the work-group size.

        Raises:
            BackendError: If the kernel is missing or fails
        """
        kernel = self.create_kernel(name)
        global_size = round_up_work_size(work_items)
        start = time.perf_counter()
        try:
            kernel(global_size, *args, **kwargs)
        except BackendError:
            raise
        except Exception as exc:
            raise BackendError(f"Kernel {name} failed: {exc}",
                               {'kernel': name, 'backend': self.backend.value}) from exc
        event = KernelEvent(name, global_size, (time.perf_counter() - start) * 1000)
        self._pending.append(event)
        return event

    def map_for_read(self, buffer: np.ndarray) -> np.ndarray:
        """Host-visible read-only view of a buffer."""
        self._check_alive()
        view = buffer.view()
        view.flags.writeable = False
        return view

    def map_for_write(self, buffer: np.ndarray) -> np.ndarray:
        self._check_alive()
        return buffer

    def unmap(self, buffer: np.ndarray, mapped: np.ndarray):
        if mapped is not buffer and not np.shares_memory(mapped, buffer):
            raise BackendError("Mapped pointer does not belong to buffer")

    def wait(self, event: KernelEvent):
        """Block until an event completes."""
        self._check_alive()
        if event in self._pending:
            self._pending.remove(event)

    def drain(self):
        """Finish every outstanding dispatch."""
        self._check_alive()
        self._pending.clear()

    def release(self):
        self._kernels.clear()
        self._pending.clear()
        self.released = True

    def _check_alive(self):
        if self.released:
            raise BackendError("Compute device has been released", {'backend': self.backend.value})


# Public API
def set_backend(backend: str) -> bool:
    """Set the global backend.

    Args:
        backend: 'cpu' or 'numba'

    Returns:
        True if successful
    """
    try:
        backend_enum = Backend(backend.lower())
    except ValueError:
        warnings.warn(f"Invalid backend: {backend}. Choose from: cpu, numba")
        return False
    return _backend_manager.set_backend(backend_enum)


def get_backend() -> str:
    """Get current backend name."""
    return _backend_manager.current_backend.value


def list_backends() -> Dict[str, bool]:
    """Get dictionary of backend availability."""
    return {
        b.value: info.available
        for b, info in _backend_manager._available_backends.items()
    }


def resolve_backend(backend=None, profile=None) -> Backend:
    """Pick a backend from an explicit name/enum, a device profile, or the global default."""
    if backend is not None:
        if isinstance(backend, Backend):
            return backend
        try:
            return Backend(str(backend).lower())
        except ValueError:
            raise BackendError(f"Invalid backend: {backend}", {'choices': 'cpu, numba'}) from None
    if profile is not None:
        if not isinstance(profile, HardwareProfile):
            profile = HardwareProfile(str(profile).lower())
        return _backend_manager.backend_for_profile(profile)
    return _backend_manager.current_backend


def print_backend_info():
    """Print backend information."""
    _backend_manager.print_info()


# Decorator for backend-specific implementations
def backend_function(function_name: str):
    """Decorator to register backend-specific implementations.

    Usage:
        @backend_function("compute_density")
        @for_backend(Backend.NUMBA)
        def _compute_density_numba(...):
            ...
    """
    def decorator(func):
        if hasattr(func, '_backend'):
            _backend_manager.register_implementation(function_name, func._backend, func)
        return func
    return decorator


def for_backend(backend: Backend):
    """Helper decorator to specify backend."""
    def decorator(func):
        func._backend = backend
        return func
    return decorator


def dispatch(function_name: str, *args, backend: Optional[str] = None, **kwargs):
    """Dispatch function to appropriate backend."""
    backend_enum = Backend(backend) if backend else None
    return _backend_manager.dispatch(function_name, *args, backend=backend_enum, **kwargs)
