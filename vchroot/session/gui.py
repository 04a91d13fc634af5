# SPDX-License-Identifier: LGPL-3.0-or-later
# vchroot/session/gui.py
"""
Experimental X11 passthrough.

Granting access weakens host-side isolation (the X11 socket directory is
made world-writable and local connections are allowed through xhost), so the
grant is recorded on the ResourceStack and reverted by teardown however the
session ends.
"""
from __future__ import annotations

import logging
import os
import shutil
from pathlib import Path
from typing import Dict, Mapping, Optional, Union

from ..core.exceptions import VChrootError
from ..core.logger import Log
from ..core.utils import PasswdEntry, U
from .mounts import in_root
from .resources import GuiGrant, ResourceStack

COOKIE_NAME = ".Xauthority-vchroot"
SOCKET_DIR_MODE = 0o1777


class GuiPassthrough:
    def __init__(
        self,
        logger: logging.Logger,
        stack: ResourceStack,
        *,
        socket_dir: Path = Path("/tmp/.X11-unix"),
        host_home_base: Path = Path("/home"),
        env: Optional[Mapping[str, str]] = None,
    ):
        self.logger = logger
        self.stack = stack
        self.socket_dir = Path(socket_dir)
        self.host_home_base = Path(host_home_base)
        self.env = dict(os.environ if env is None else env)

    def _host_cookie(self) -> Optional[Path]:
        xa = self.env.get("XAUTHORITY")
        if xa and Path(xa).is_file():
            return Path(xa)
        user = self.env.get("SUDO_USER") or self.env.get("USER")
        if user:
            p = self.host_home_base / user / ".Xauthority"
            if p.is_file():
                return p
        return None

    @staticmethod
    def cookie_home(user: Optional[PasswdEntry]) -> str:
        return user.home if user is not None else "/root"

    def grant(self, root: Union[str, Path], user: Optional[PasswdEntry]) -> Optional[GuiGrant]:
        """Returns the recorded grant, or None when the display is unusable."""
        Log.warn(self.logger, "GUI support is experimental and relaxes X11 access control on the host")
        if not self.env.get("DISPLAY"):
            Log.warn(self.logger, "DISPLAY not set, X11 support will not work")
            return None

        previous_mode: Optional[int] = None
        socket_dir: Optional[str] = None
        cookie_path: Optional[str] = None
        xhost_granted = False
        with self.stack.acquiring():
            try:
                if self.socket_dir.is_dir():
                    previous_mode = self.socket_dir.stat().st_mode & 0o7777
                    if previous_mode != SOCKET_DIR_MODE:
                        os.chmod(self.socket_dir, SOCKET_DIR_MODE)
                        socket_dir = str(self.socket_dir)
                else:
                    Log.warn(self.logger, f"{self.socket_dir} does not exist on host")

                src = self._host_cookie()
                if src is None:
                    Log.warn(self.logger, "Xauthority file not found; X11 authentication may fail")
                else:
                    dst = in_root(root, self.cookie_home(user)) / COOKIE_NAME
                    dst.parent.mkdir(parents=True, exist_ok=True)
                    shutil.copyfile(src, dst)
                    cookie_path = str(dst)
                    os.chmod(dst, 0o600)
                    if user is not None:
                        os.chown(dst, user.uid, user.gid)
                    self.logger.info("Copied Xauthority file to %s", dst)

                if U.which("xhost"):
                    cp = U.run_cmd(self.logger, ["xhost", "+local:"], check=False, capture=True)
                    xhost_granted = cp.returncode == 0
                    if not xhost_granted:
                        Log.warn(self.logger, "Failed to configure xhost")
                else:
                    Log.warn(self.logger, "xhost not found, X11 authentication may fail")
            except OSError as e:
                Log.warn(self.logger, f"GUI setup incomplete: {e}")
            finally:
                handle: Optional[GuiGrant] = None
                if cookie_path or xhost_granted or socket_dir:
                    handle = self.stack.push(
                        GuiGrant(
                            cookie_path=cookie_path,
                            xhost_granted=xhost_granted,
                            socket_dir=socket_dir,
                            previous_mode=previous_mode if socket_dir else None,
                        )
                    )
        return handle

    def environment(self, user: Optional[PasswdEntry], grant: Optional[GuiGrant]) -> Dict[str, str]:
        env = {"DISPLAY": self.env.get("DISPLAY", ":0")}
        uid = user.uid if user is not None else 0
        env["XDG_RUNTIME_DIR"] = f"/run/user/{uid}"
        if grant is not None and grant.cookie_path:
            env["XAUTHORITY"] = f"{self.cookie_home(user).rstrip('/')}/{COOKIE_NAME}"
        return env

    def revoke(self, handle: GuiGrant) -> None:
        problems = []
        if handle.cookie_path:
            try:
                Path(handle.cookie_path).unlink(missing_ok=True)
            except OSError as e:
                problems.append(f"remove {handle.cookie_path}: {e}")
        if handle.xhost_granted:
            cp = U.run_cmd(self.logger, ["xhost", "-local:"], check=False, capture=True)
            if cp.returncode != 0:
                problems.append("xhost -local: failed")
        if handle.socket_dir and handle.previous_mode is not None:
            try:
                os.chmod(handle.socket_dir, handle.previous_mode)
            except OSError as e:
                problems.append(f"chmod {handle.socket_dir}: {e}")
        if problems:
            raise VChrootError(code=1, msg="GUI access not fully reverted: " + "; ".join(problems))
        self.logger.debug("GUI access reverted")
