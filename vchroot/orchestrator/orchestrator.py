# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# vchroot/orchestrator/orchestrator.py

from __future__ import annotations

import logging
import signal
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from ..config.session_config import SessionConfig
from ..core.exceptions import (
    Fatal,
    FilesystemRejectedError,
    SessionInterrupted,
    TeardownFailure,
    TeardownPartialFailure,
    VChrootError,
    format_exception_for_cli,
)
from ..core.file_ops import SessionLock
from ..core.logger import Log
from ..core.sanity_checker import ExitCode, SanityChecker
from ..core.utils import U
from ..session.eviction import ProcessEvictor
from ..session.gui import GuiPassthrough
from ..session.host_files import HostFileCopier
from ..session.launcher import SessionLauncher, prepare_user, resolve_shell
from ..session.mounts import MountManager
from ..session.resources import (
    ActivatedVolumeGroup,
    BackingStore,
    EncryptedVolume,
    GuiGrant,
    HostFileOverlay,
    MountKind,
    MountPoint,
    ResourceStack,
)
from ..session.teardown import TeardownEngine
from ..storage.devices import DeviceInfo, DeviceResolver
from ..storage.filesystems import FilesystemKind
from ..storage.luks import EncryptionLayer
from ..storage.lvm import VolumeActivator
from ..storage.nbd import NbdConnector
from .report_writer import build_summary, write_debug_snapshot, write_summary


class ChrootSession:
    """
    One chroot session: acquisition registers every resource on a single
    ResourceStack and leaving the `with` block always runs the teardown walk,
    whether the body returned, raised or was interrupted by INT/TERM.
    """

    def __init__(
        self,
        logger: logging.Logger,
        cfg: SessionConfig,
        *,
        prompts: Optional[Any] = None,
        log_file: Optional[str] = None,
        evictor: Optional[ProcessEvictor] = None,
        pid_file: Optional[Path] = None,
    ):
        self.logger = logger
        self.cfg = cfg
        self.prompts = None if cfg.quiet else prompts
        self.log_file = log_file

        self.stack = ResourceStack()
        self.resolver = DeviceResolver(logger)
        self.nbd = NbdConnector(logger, self.stack)
        self.luks = EncryptionLayer(
            logger,
            self.stack,
            self.resolver,
            keyfile=Path(cfg.luks_keyfile) if cfg.luks_keyfile else None,
            passphrase_env=cfg.luks_passphrase_env,
            prompt=self.prompts.ask_passphrase if self.prompts is not None else None,
            quiet=cfg.quiet,
        )
        self.lvm = VolumeActivator(logger, self.stack, self.resolver)
        self.mounts = MountManager(logger, self.stack)
        self.evictor = evictor if evictor is not None else ProcessEvictor(logger)
        self.gui = GuiPassthrough(logger, self.stack)
        self.host_files = HostFileCopier(logger, self.stack)
        self.launcher = SessionLauncher(logger, pid_file=pid_file)
        self.teardown_engine = TeardownEngine(
            logger,
            {
                BackingStore: self.nbd.detach,
                EncryptedVolume: self.luks.close,
                ActivatedVolumeGroup: self.lvm.deactivate,
                MountPoint: self.mounts.unmount,
                HostFileOverlay: self.host_files.restore,
                GuiGrant: self.gui.revoke,
            },
            evictor=self.evictor,
        )

        self.root_device: Optional[str] = None
        self.efi_part: Optional[str] = None
        self.failures: List[TeardownFailure] = []
        self._previous_handlers: Dict[int, Any] = {}

    # -------------------------------------------------------------------------
    # scope
    # -------------------------------------------------------------------------

    def _on_signal(self, signum: int, _frame: Any) -> None:
        self.stack.interrupt(signum)

    def __enter__(self) -> "ChrootSession":
        if threading.current_thread() is threading.main_thread():
            for sig in (signal.SIGINT, signal.SIGTERM):
                self._previous_handlers[sig] = signal.signal(sig, self._on_signal)
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        try:
            self.failures = self.teardown()
        finally:
            for sig, handler in self._previous_handlers.items():
                signal.signal(sig, handler)
            self._previous_handlers.clear()
        return False

    def teardown(self) -> List[TeardownFailure]:
        return self.teardown_engine.teardown(self.stack)

    def _confirm(self, question: str) -> bool:
        if self.prompts is None:
            return True
        return bool(self.prompts.confirm(question))

    # -------------------------------------------------------------------------
    # acquisition
    # -------------------------------------------------------------------------

    def _resolve_storage(self) -> Tuple[str, Optional[str]]:
        """Attach/decrypt/activate as needed; return (root device, EFI partition)."""
        cfg = self.cfg
        if cfg.image_mode:
            Log.step(self.logger, f"Setting up virtual disk {cfg.image}")
            device = self.nbd.attach(cfg.image or "").device_node
        else:
            if not cfg.root_device:
                raise Fatal(code=1, msg="No root device configured (set ROOT_DEVICE or --root-device)")
            device = self.resolver.require_device(cfg.root_device)

        self.logger.info("Analyzing partitions on %s", device)
        layout = self.resolver.classify_layout(device)
        self.logger.debug("Layout: %s", layout.summary())

        opened = self.luks.open_all([p.path for p in layout.luks]) if layout.luks else []
        mapped: List[DeviceInfo] = [self.resolver.describe(v.mapper_path) for v in opened]

        linux = list(layout.linux) + [m for m in mapped if m.fstype.is_linux_native]
        members = [p.path for p in layout.lvm_members]
        members += [m.path for m in mapped if m.fstype is FilesystemKind.LVM_MEMBER]

        activated: List[str] = []
        if members:
            activated = self.lvm.scan_and_activate(members)

        if not cfg.image_mode and not opened and not activated:
            # the operator named the root device
            root = device
        else:
            root = self.lvm.select_root_candidate(activated, linux)

        efi = cfg.efi_part
        if efi is None and cfg.image_mode and layout.efi is not None:
            efi = layout.efi.path
        return root, efi

    def _release_host_mounts(self, device: str) -> bool:
        """
        The root device is mounted somewhere on the host already.

        Returns True when those host mounts stay in place, so the root is
        shared with the host for the whole session.
        """
        targets = [t for t in self.resolver.mounted_at(device) if t != self.cfg.root_mount]
        if not targets:
            return False
        where = ", ".join(targets)
        if self.prompts is None:
            Log.warn(self.logger, f"{device} is already mounted at {where}; proceeding")
            return True
        if not self._confirm(f"{device} is mounted at {where}. Unmount it?"):
            raise Fatal(code=1, msg=f"{device} is already mounted at {where}")
        for target in targets:
            self.evictor.evict_users(target)
            # not ours: released here, never pushed on the stack
            self.mounts.unmount(MountPoint(path=target, source=device, kind=MountKind.EXTRA))
        return False

    def _validate_efi(self, efi: Optional[str]) -> Optional[str]:
        if not efi:
            return None
        try:
            if self.resolver.validate_filesystem(efi, is_efi=True, quiet=self.cfg.quiet, confirm=self._confirm):
                return efi
        except FilesystemRejectedError as e:
            Log.warn(self.logger, f"Skipping EFI partition: {e.user_message()}")
        return None

    def acquire(self) -> str:
        """Run the acquisition pipeline; returns the mounted root."""
        cfg = self.cfg
        root_device, efi = self._resolve_storage()
        self.root_device = root_device

        if not self.resolver.validate_filesystem(root_device, quiet=cfg.quiet, confirm=self._confirm):
            raise Fatal(code=1, msg="Operation cancelled by user")
        shared = self._release_host_mounts(root_device)

        root = cfg.root_mount
        self.mounts.mount_root(root_device, root, self.resolver.detect_filesystem(root_device), shared=shared)
        self.efi_part = self._validate_efi(efi)
        self.mounts.mount_companions(root, boot_part=cfg.boot_part, efi_part=self.efi_part)
        self.mounts.mount_virtual(root)
        self.mounts.mount_extras(root, cfg.additional_mounts)
        if cfg.copy_host_files:
            self.host_files.copy_into(root)
        self.stack.checkpoint()

        try:
            write_summary(
                self.logger,
                build_summary(
                    cfg,
                    self.stack.snapshot(),
                    root_device=root_device,
                    efi_part=self.efi_part,
                    log_file=self.log_file,
                ),
            )
        except OSError as e:
            Log.warn(self.logger, f"Could not write summary report: {e}")
        Log.ok(self.logger, f"Chroot environment ready at {root} ({len(self.stack)} resource(s))")
        return root

    # -------------------------------------------------------------------------
    # launch
    # -------------------------------------------------------------------------

    def launch(self) -> int:
        cfg = self.cfg
        root = cfg.root_mount
        user = prepare_user(self.logger, root, cfg.target_user) if cfg.switch_user else None
        shell = resolve_shell(root, cfg.shell_override, logger=self.logger)

        extra_env: Dict[str, str] = {}
        if cfg.gui_enabled:
            try:
                grant = self.gui.grant(root, user)
                if grant is not None:
                    extra_env = self.gui.environment(user, grant)
            except VChrootError as e:
                Log.warn(self.logger, f"GUI passthrough disabled: {e.user_message()}")

        if self.prompts is not None:
            self.prompts.banner(
                "Entering chroot",
                f"Root: {root} ({self.root_device})\n"
                f"User: {cfg.target_user or 'root'}\n"
                f"Shell: {shell}\n"
                "Type 'exit' to leave; everything is unmounted afterwards.",
            )
            self.prompts.pause()
        return self.launcher.launch(cfg, root, shell=shell, extra_env=extra_env)


class Orchestrator:
    """
    Top-level pipeline: host checks, single-instance lock, one ChrootSession,
    and the mapping of its outcome onto the process exit code.
    """

    def __init__(
        self,
        logger: logging.Logger,
        cfg: SessionConfig,
        *,
        prompts: Optional[Any] = None,
        log_file: Optional[str] = None,
        lock_path: Optional[Path] = None,
        verbose: int = 0,
        interactive: Optional[Any] = None,
    ):
        self.logger = logger
        self.cfg = cfg
        self.prompts = None if cfg.quiet else prompts
        self.log_file = log_file
        self.lock_path = lock_path
        self.verbose = verbose
        self.interactive = None if cfg.quiet else interactive

        Log.trace(self.logger, "🧠 Orchestrator init: cfg=%r", cfg.to_dict())

    def check_host(self) -> None:
        SanityChecker(
            self.logger,
            image_mode=self.cfg.image_mode,
            gui=self.cfg.gui_enabled,
            install_missing=self.cfg.install_missing and self.prompts is not None,
            confirm=self.prompts.confirm if self.prompts is not None else None,
        ).die_if_failed()

    def new_session(self) -> ChrootSession:
        return ChrootSession(self.logger, self.cfg, prompts=self.prompts, log_file=self.log_file)

    def _debug_snapshot(self, session: ChrootSession) -> None:
        if not self.cfg.debug:
            return
        try:
            write_debug_snapshot(self.logger, session.stack.snapshot())
        except OSError as e:
            Log.warn(self.logger, f"Could not write debug snapshot: {e}")

    def _report_error(self, e: BaseException) -> None:
        msg = format_exception_for_cli(e, verbose=self.verbose)
        Log.fail(self.logger, msg)
        if self.prompts is not None:
            self.prompts.error(msg)

    def run_session(self) -> int:
        session = self.new_session()
        failed = False
        try:
            with session:
                try:
                    session.acquire()
                except VChrootError:
                    self._debug_snapshot(session)
                    raise
                session.launch()
        except SessionInterrupted as e:
            Log.warn(self.logger, f"Received {e.signal_name}; session aborted")
            failed = True
        except KeyboardInterrupt:
            Log.warn(self.logger, "Interrupted by user (Ctrl+C).")
            failed = True
        except VChrootError as e:
            self._report_error(e)
            failed = True

        if session.failures:
            residue = TeardownPartialFailure(
                msg=f"{len(session.failures)} resource(s) could not be released",
                failures=list(session.failures),
            )
            Log.fail(self.logger, residue.user_message())
            if self.prompts is not None:
                self.prompts.error(residue.user_message())
            if not failed:
                return int(ExitCode.TEARDOWN_INCOMPLETE)
        if failed:
            return int(ExitCode.FAILURE)
        Log.ok(self.logger, "Session finished")
        return int(ExitCode.OK)

    def run(self) -> int:
        if self.interactive is not None:
            U.require_root(self.logger)
            self.cfg = self.interactive.run(self.cfg)
        self.check_host()
        with SessionLock(self.logger, self.lock_path):
            return self.run_session()
