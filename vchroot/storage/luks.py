# SPDX-License-Identifier: LGPL-3.0-or-later
# vchroot/storage/luks.py
from __future__ import annotations

import logging
import os
import time
from pathlib import Path
from typing import Callable, List, Optional, Sequence

from ..core.exceptions import EncryptionError
from ..core.logger import Log
from ..core.utils import U
from ..session.resources import EncryptedVolume, ResourceStack
from .devices import DeviceResolver
from .filesystems import FilesystemKind

PassphrasePrompt = Callable[[str], Optional[str]]


class EncryptionLayer:
    """
    Opens LUKS partitions with cryptsetup and records each mapping on the stack.

    Key material comes from (first match wins): a key file, an environment
    variable holding the passphrase, or an interactive prompt per partition.
    Quiet runs without key material skip encrypted partitions.
    """

    MAX_PROMPT_ATTEMPTS = 3

    def __init__(
        self,
        logger: logging.Logger,
        stack: ResourceStack,
        resolver: DeviceResolver,
        *,
        keyfile: Optional[Path] = None,
        passphrase_env: Optional[str] = None,
        prompt: Optional[PassphrasePrompt] = None,
        quiet: bool = False,
        mapper_prefix: str = "vchroot-luks",
        clock: Callable[[], float] = time.time,
        settle_s: float = 1.0,
    ):
        self.logger = logger
        self.stack = stack
        self.resolver = resolver
        self.keyfile = Path(keyfile) if keyfile else None
        self.passphrase_env = passphrase_env
        self.prompt = prompt
        self.quiet = quiet
        self.mapper_prefix = mapper_prefix
        self.clock = clock
        self.settle_s = settle_s

    def list_encrypted_partitions(self, device: str) -> List[str]:
        return [p.path for p in self.resolver.partitions_of(device) if p.fstype is FilesystemKind.LUKS]

    def mapper_name(self, idx: int) -> str:
        return f"{self.mapper_prefix}{int(self.clock())}_{idx}"

    def _env_passphrase(self) -> Optional[str]:
        if not self.passphrase_env:
            return None
        return os.environ.get(self.passphrase_env) or None

    def open(self, partition: str, passphrase: Optional[str], *, idx: int = 0) -> EncryptedVolume:
        """
        Unlock `partition`. With passphrase=None the configured key file is used.
        """
        name = self.mapper_name(idx)
        Log.step(self.logger, f"Opening LUKS partition {partition} as /dev/mapper/{name}")
        if passphrase is None:
            if self.keyfile is None:
                raise EncryptionError(code=1, msg=f"No key material for {partition}", context={"partition": partition})
            cmd = ["cryptsetup", "luksOpen", "--key-file", str(self.keyfile), partition, name]
            stdin = None
        else:
            cmd = ["cryptsetup", "luksOpen", "--key-file=-", partition, name]
            stdin = passphrase
        with self.stack.acquiring():
            cp = U.run_cmd(self.logger, cmd, check=False, capture=True, input_text=stdin)
            if cp.returncode != 0:
                raise EncryptionError(
                    code=1,
                    msg=f"Failed to open LUKS partition: {partition}",
                    context={"partition": partition, "stderr": (cp.stderr or "").strip()},
                )
            return self.stack.push(EncryptedVolume(source_partition=partition, mapper_name=name))

    def _open_one(self, partition: str, idx: int) -> Optional[EncryptedVolume]:
        if self.keyfile is not None:
            return self.open(partition, None, idx=idx)
        env_pw = self._env_passphrase()
        if env_pw is not None:
            return self.open(partition, env_pw, idx=idx)
        if self.quiet or self.prompt is None:
            Log.warn(self.logger, f"No key material for encrypted partition {partition}; skipping it")
            return None

        last: Optional[EncryptionError] = None
        for _ in range(self.MAX_PROMPT_ATTEMPTS):
            pw = self.prompt(partition)
            if not pw:
                self.logger.info("Passphrase entry for %s cancelled", partition)
                return None
            try:
                return self.open(partition, pw, idx=idx)
            except EncryptionError as e:
                last = e
                Log.warn(self.logger, f"Wrong passphrase for {partition}?")
        assert last is not None
        raise last

    def open_all(self, partitions: Sequence[str]) -> List[EncryptedVolume]:
        """Open every partition; a failure skips that partition only."""
        opened: List[EncryptedVolume] = []
        for idx, part in enumerate(partitions):
            try:
                vol = self._open_one(part, idx)
            except EncryptionError as e:
                Log.warn(self.logger, e.user_message())
                continue
            if vol is not None:
                opened.append(vol)
                Log.ok(self.logger, f"LUKS: opened {part} -> {vol.mapper_path}")
        if opened:
            time.sleep(self.settle_s)
        return opened

    def close(self, handle: EncryptedVolume) -> None:
        Log.step(self.logger, f"Closing LUKS mapping {handle.mapper_name}")
        cp = U.run_cmd(self.logger, ["cryptsetup", "luksClose", handle.mapper_name], check=False, capture=True)
        if cp.returncode != 0:
            raise EncryptionError(
                code=1,
                msg=f"could not close encryption mapping {handle.mapper_name}",
                context={"stderr": (cp.stderr or "").strip()},
            )
