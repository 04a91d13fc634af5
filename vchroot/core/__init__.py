# vchroot/core/__init__.py
from .exceptions import VChrootError, Fatal
from .logger import Log
from .utils import U

__all__ = ["VChrootError", "Fatal", "Log", "U"]
