# SPDX-License-Identifier: LGPL-3.0-or-later
# vchroot/cli/prompts.py
"""
Interactive prompt surface (rich). Nothing here is reached in --quiet runs.
"""
from __future__ import annotations

from typing import Optional, Sequence

from rich.console import Console
from rich.panel import Panel
from rich.prompt import Confirm, Prompt
from rich.table import Table

from ..core.utils import U
from ..storage.devices import DeviceInfo


class RichPrompts:
    def __init__(self, console: Optional[Console] = None):
        self.console = console or Console(stderr=True)

    def confirm(self, question: str, default: bool = False) -> bool:
        return bool(Confirm.ask(question, default=default, console=self.console))

    def ask_text(self, question: str, default: Optional[str] = None) -> str:
        answer = Prompt.ask(question, default=default or "", console=self.console, show_default=bool(default))
        return (answer or "").strip()

    def ask_choice(self, question: str, choices: Sequence[str], default: Optional[str] = None) -> str:
        return Prompt.ask(question, choices=list(choices), default=default, console=self.console)

    def ask_passphrase(self, partition: str) -> Optional[str]:
        pw = Prompt.ask(
            f"Passphrase for [cyan]{partition}[/cyan] (empty to skip)",
            password=True,
            default="",
            show_default=False,
            console=self.console,
        )
        return pw or None

    def choose_device(self, devices: Sequence[DeviceInfo], title: str, *, allow_skip: bool = False) -> Optional[str]:
        if not devices:
            return None
        table = Table(title=f"Select {title} device", show_lines=False)
        table.add_column("#", justify="right")
        table.add_column("Device")
        table.add_column("Size", justify="right")
        table.add_column("Filesystem")
        table.add_column("Mounted at")
        for i, d in enumerate(devices, 1):
            table.add_row(str(i), d.path, d.size_human, d.fstype_raw or d.fstype.value, d.mountpoint or "unmounted")
        self.console.print(table)

        choices = [str(i) for i in range(1, len(devices) + 1)]
        if allow_skip:
            choices.append("0")
            self.console.print("  0 = skip")
        picked = Prompt.ask(f"{title} device", choices=choices, console=self.console)
        if picked == "0":
            return None
        return devices[int(picked) - 1].path

    def banner(self, title: str, body: str) -> None:
        self.console.print(Panel(body, title=title, border_style="cyan"))

    def error(self, message: str) -> None:
        self.console.print(Panel(message, title="Error", border_style="red"))

    def pause(self, message: str = "Press Enter to continue...") -> None:
        if U.is_tty():
            self.console.input(message)
