# SPDX-License-Identifier: LGPL-3.0-or-later
# vchroot/session/teardown.py
from __future__ import annotations

import logging
import signal
import threading
from contextlib import contextmanager
from typing import Any, Callable, Dict, Generator, List, Optional

from ..core.exceptions import TeardownFailure, VChrootError
from ..core.logger import Log
from .eviction import ProcessEvictor
from .resources import MountPoint, ResourceStack

Releaser = Callable[[Any], None]


def _error_text(e: BaseException) -> str:
    if isinstance(e, VChrootError):
        return e.user_message()
    return f"{type(e).__name__}: {e}"


class TeardownEngine:
    """
    Pops the ResourceStack LIFO and releases each handle with the releaser
    registered for its type.

    Every handle is attempted even when an earlier one failed; failures are
    collected and returned. Disk-backed mounts get their users evicted first,
    virtual and bind mounts never do. A second call is a no-op.
    """

    def __init__(
        self,
        logger: logging.Logger,
        releasers: Dict[type, Releaser],
        *,
        evictor: Optional[ProcessEvictor] = None,
    ):
        self.logger = logger
        self.releasers = dict(releasers)
        self.evictor = evictor
        self._cleanup_done = False

    @property
    def done(self) -> bool:
        return self._cleanup_done

    @contextmanager
    def _signals_deferred(self) -> Generator[None, None, None]:
        """Keep INT/TERM from cutting the walk short."""
        if threading.current_thread() is not threading.main_thread():
            yield
            return

        def _ignore(signum: int, _frame: Any) -> None:
            Log.warn(self.logger, f"Received {signal.Signals(signum).name} during cleanup; finishing cleanup first")

        previous = {}
        for sig in (signal.SIGINT, signal.SIGTERM):
            previous[sig] = signal.signal(sig, _ignore)
        try:
            yield
        finally:
            for sig, handler in previous.items():
                signal.signal(sig, handler)

    def _evict_chroot(self, stack: ResourceStack) -> None:
        root = stack.root_mount()
        if self.evictor is None or root is None:
            return
        try:
            self.evictor.evict_chroot_processes(root.path)
        except Exception as e:
            Log.warn(self.logger, f"Chroot process scan failed: {e}")

    def _release(self, handle: Any) -> None:
        if isinstance(handle, MountPoint) and handle.needs_eviction and self.evictor is not None:
            try:
                if handle.shared:
                    self.evictor.evict_users(handle.path, path_scoped=True)
                else:
                    self.evictor.evict_users(handle.path)
            except Exception as e:
                Log.warn(self.logger, f"Process eviction for {handle.path} failed: {e}")

        releaser = self.releasers.get(type(handle))
        if releaser is None:
            raise LookupError(f"no releaser registered for {type(handle).__name__}")
        releaser(handle)

    def teardown(self, stack: ResourceStack) -> List[TeardownFailure]:
        if self._cleanup_done:
            self.logger.debug("Cleanup already performed")
            return []
        self._cleanup_done = True

        failures: List[TeardownFailure] = []
        if not len(stack):
            self.logger.debug("Nothing to clean up")
            return failures

        Log.step(self.logger, f"Cleaning up {len(stack)} resource(s)")
        with self._signals_deferred():
            self._evict_chroot(stack)
            while True:
                handle = stack.pop()
                if handle is None:
                    break
                try:
                    self._release(handle)
                    self.logger.debug("Released %s", handle.describe())
                except Exception as e:
                    failure = TeardownFailure(resource=handle.describe(), error=_error_text(e))
                    failures.append(failure)
                    Log.fail(self.logger, f"Cleanup failed for {failure}")

        if failures:
            Log.warn(self.logger, f"Cleanup finished with {len(failures)} unreleased resource(s)")
        else:
            Log.ok(self.logger, "Cleanup completed")
        return failures
