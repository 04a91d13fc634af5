# vchroot/storage/__init__.py
from .devices import DeviceInfo, DeviceResolver, DiskLayout
from .filesystems import FilesystemKind

__all__ = ["DeviceInfo", "DeviceResolver", "DiskLayout", "FilesystemKind"]
