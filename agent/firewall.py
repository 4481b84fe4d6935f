# SPDX-License-Identifier: GPL-3.0-or-later
"""
goal: adds and removes inbound allow rules in Windows Defender Firewall through netsh. a failed netsh
call raises FirewallError carrying the tool's output; callers treat that as recoverable.
"""

from __future__ import annotations  # lets us use string annotations before functions are defined

import ctypes  # for the admin check on Windows
import os  # for the admin check elsewhere
import subprocess  # for running netsh
import sys  # for checking if we are on Windows

NETSH_TIMEOUT = 15


class FirewallError(RuntimeError):
    """netsh returned non-zero or could not be run"""


def rule_name_for(port: int, protocol: str | None = None) -> str:
    base = f"PM_Ultimate_{port}"
    return f"{base}_{protocol}" if protocol else base


class FirewallManager:
    def __init__(self, netsh: str = "netsh", timeout: int = NETSH_TIMEOUT) -> None:
        self.netsh = netsh
        self.timeout = timeout

    @staticmethod
    def is_admin() -> bool:
        try:
            if sys.platform == "win32":
                return bool(ctypes.windll.shell32.IsUserAnAdmin())  # type: ignore[attr-defined]
            return os.geteuid() == 0
        except (AttributeError, OSError):
            return False

    def _run(self, args: list[str]) -> str:
        try:
            proc = subprocess.run(
                [self.netsh, *args],
                capture_output=True,
                text=True,
                timeout=self.timeout,
            )
        except (OSError, subprocess.SubprocessError) as exc:  # netsh missing, timed out
            raise FirewallError(f"netsh could not run: {exc}") from exc
        if proc.returncode != 0:
            out = (proc.stdout or proc.stderr or "").strip()
            raise FirewallError(f"Netsh failed (Exit: {proc.returncode}): {out}")
        return proc.stdout

    def add_rule(self, name: str, port: int, protocol: str) -> None:
        self._run(
            [
                "advfirewall",
                "firewall",
                "add",
                "rule",
                f"name={name}",
                "dir=in",
                "action=allow",
                f"protocol={protocol}",
                f"localport={port}",
            ]
        )

    def remove_rule(self, name: str) -> None:
        self._run(["advfirewall", "firewall", "delete", "rule", f"name={name}"])
