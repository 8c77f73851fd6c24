"""Host backends for observing and changing system state."""
from .base import BackendConfig, HostStatus, SystemBackend
from .command import CommandBackend
from .local import LocalBackend
from .memory import InMemoryBackend
from .ssh import SSHBackend

__all__ = [
    "BackendConfig",
    "HostStatus",
    "SystemBackend",
    "CommandBackend",
    "LocalBackend",
    "InMemoryBackend",
    "SSHBackend",
    "create_backend",
]

# Backend type registry
BACKEND_TYPES = {
    "local": LocalBackend,
    "ssh": SSHBackend,
    "memory": InMemoryBackend,
}


def create_backend(host_id: str, config: dict) -> SystemBackend:
    """Factory function to create backend instances."""
    backend_type = config.get("type", "").lower()
    if backend_type not in BACKEND_TYPES:
        raise ValueError(f"Unknown backend type: {backend_type}")

    backend_class = BACKEND_TYPES[backend_type]
    return backend_class(host_id, BackendConfig(**config))
