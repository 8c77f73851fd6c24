"""Host inventory management."""
from .inventory import HostInventory

__all__ = ["HostInventory"]
