# SPDX-License-Identifier: LGPL-3.0-or-later
# vchroot/core/exceptions.py
from __future__ import annotations

import signal
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


def _safe_int(x: Any, default: int = 1) -> int:
    try:
        return int(x)
    except Exception:
        return default


def _clamp_exit_code(code: int) -> int:
    # Exit codes are typically 0..255; keep it safe and predictable.
    if code < 0:
        return 1
    if code > 255:
        return 255
    return code


def _one_line(s: str, limit: int = 600) -> str:
    s = (s or "").strip().replace("\r", " ").replace("\n", " ")
    s = " ".join(s.split())
    return s if len(s) <= limit else (s[: limit - 3] + "...")


_SECRET_KEY_PARTS = (
    "pass",
    "password",
    "passwd",
    "passphrase",
    "secret",
    "token",
    "auth",
    "cookie",
    "key",
)


def _is_secret_key(k: str) -> bool:
    ks = (k or "").lower()
    return any(p in ks for p in _SECRET_KEY_PARTS)


def _format_context_compact(ctx: Dict[str, Any]) -> str:
    # Stable order, redaction, single-line.
    parts = []
    for k in sorted(ctx.keys()):
        v = ctx.get(k)
        if _is_secret_key(str(k)):
            parts.append(f"{k}=<redacted>")
        else:
            parts.append(f"{k}={v!r}")
    return ", ".join(parts)


@dataclass(eq=False)
class VChrootError(Exception):
    """
    Base project error with:
      - stable fields for reporting/JSON
      - readable __str__ (what users see)
      - safe code handling (never crashes on int())
    """
    code: int = 1
    msg: str = "error"
    cause: Optional[BaseException] = None
    context: Optional[Dict[str, Any]] = None

    def __post_init__(self) -> None:
        self.code = _clamp_exit_code(_safe_int(self.code, default=1))
        self.msg = _one_line(self.msg) or self.__class__.__name__
        super().__init__(self.msg)
        self.args = (self.msg,)
        if self.context is None:
            self.context = {}

    def user_message(self, *, include_context: bool = False, include_cause: bool = False) -> str:
        """
        Human-friendly message for CLI output/logs.
        """
        base = self.msg or self.__class__.__name__
        parts = [base]

        if include_context and self.context:
            parts.append(f"[{_one_line(_format_context_compact(self.context), limit=600)}]")

        if include_cause and self.cause is not None:
            parts.append(f"(cause: {type(self.cause).__name__}: {_one_line(str(self.cause))})")

        return " ".join(parts)

    def __str__(self) -> str:
        return self.user_message(include_context=False, include_cause=False)

    def to_dict(self, *, include_cause: bool = False) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "type": self.__class__.__name__,
            "code": self.code,
            "message": self.msg,
            "context": {
                k: ("<redacted>" if _is_secret_key(str(k)) else v) for k, v in (self.context or {}).items()
            },
        }
        if include_cause and self.cause is not None:
            d["cause"] = {"type": type(self.cause).__name__, "message": _one_line(str(self.cause))}
        return d


class Fatal(VChrootError):
    """
    User-facing fatal error (exit code should be honored by top-level main()).
    """
    pass


class LockError(VChrootError):
    """Another live instance holds the session lock."""
    pass


class DeviceNotFoundError(VChrootError):
    pass


class FilesystemRejectedError(VChrootError):
    """The source carries a filesystem we refuse to chroot into (NTFS, unsupported kinds)."""
    pass


class BackingStoreError(VChrootError):
    """Attaching (or detaching) a disk image as a block device failed."""
    pass


class EncryptionError(VChrootError):
    pass


class VolumeGroupError(VChrootError):
    """vgchange refused to deactivate a volume group during teardown."""
    pass


class NoRootCandidateError(VChrootError):
    pass


class MountFailureReason(str, Enum):
    WRONG_FS_TYPE = "wrong-fs-type"
    BUSY = "busy"
    PERMISSION_DENIED = "permission-denied"
    UNKNOWN = "unknown"

    @property
    def hint(self) -> str:
        return _MOUNT_HINTS[self]

    @classmethod
    def from_output(cls, text: str) -> "MountFailureReason":
        """Classify mount(8)/umount(8) error text."""
        t = (text or "").lower()
        if "wrong fs type" in t or "unknown filesystem type" in t or "bad superblock" in t:
            return cls.WRONG_FS_TYPE
        if "busy" in t:
            return cls.BUSY
        if "permission denied" in t or "only root" in t or "must be superuser" in t or "operation not permitted" in t:
            return cls.PERMISSION_DENIED
        return cls.UNKNOWN


_MOUNT_HINTS = {
    MountFailureReason.WRONG_FS_TYPE: "check the filesystem type; the partition may be encrypted, LVM or damaged",
    MountFailureReason.BUSY: "the target or device is busy; check with 'fuser -m' or 'lsof'",
    MountFailureReason.PERMISSION_DENIED: "mounting requires root privileges",
    MountFailureReason.UNKNOWN: "see the session log for the mount(8) output",
}


@dataclass(eq=False)
class MountError(VChrootError):
    reason: MountFailureReason = MountFailureReason.UNKNOWN

    def user_message(self, *, include_context: bool = False, include_cause: bool = False) -> str:
        base = super().user_message(include_context=include_context, include_cause=include_cause)
        return f"{base} ({self.reason.value}: {self.reason.hint})"


class ShellNotFoundError(VChrootError):
    pass


class UserNotFoundInTargetError(VChrootError):
    pass


@dataclass
class TeardownFailure:
    resource: str
    error: str

    def __str__(self) -> str:
        return f"{self.resource}: {self.error}"


@dataclass(eq=False)
class TeardownPartialFailure(VChrootError):
    code: int = 2
    failures: List[TeardownFailure] = field(default_factory=list)

    def user_message(self, *, include_context: bool = False, include_cause: bool = False) -> str:
        lines = [super().user_message(include_context=include_context, include_cause=include_cause)]
        for f in self.failures:
            lines.append(f"  - {f}")
        lines.append("Manual intervention required for the resources listed above.")
        return "\n".join(lines)


class SessionInterrupted(KeyboardInterrupt):
    """Raised from the INT/TERM handlers so every exit path unwinds through teardown."""

    def __init__(self, signum: int):
        super().__init__(signum)
        self.signum = signum

    @property
    def signal_name(self) -> str:
        try:
            return signal.Signals(self.signum).name
        except ValueError:
            return str(self.signum)


def format_exception_for_cli(e: BaseException, *, verbose: int = 0) -> str:
    """
    One-liner output for CLI.

    verbose=0: just message
    verbose=1: message + compact context (if any)
    verbose>=2: message + context + cause
    """
    if isinstance(e, VChrootError):
        return e.user_message(
            include_context=(verbose >= 1),
            include_cause=(verbose >= 2),
        )

    if verbose >= 2:
        return f"{type(e).__name__}: {_one_line(str(e))}"
    return _one_line(str(e)) or type(e).__name__
