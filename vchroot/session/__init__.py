# vchroot/session/__init__.py
from .resources import MountKind, ResourceStack
from .teardown import TeardownEngine

__all__ = ["MountKind", "ResourceStack", "TeardownEngine"]
