"""
Sync module - propagation of field states between peers.

The SyncLayer is the only component that talks to a Transport; everything
above it reads and writes the local GraphStore.
"""

from .layer import RemoteWriteResult, SyncLayer

__all__ = ["RemoteWriteResult", "SyncLayer"]
