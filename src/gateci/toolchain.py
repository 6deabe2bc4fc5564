# toolchain.py
from __future__ import annotations

import logging
import os
import shutil
import subprocess
import threading
from typing import Dict, Iterable, Mapping, Optional

from .errors import EnvironmentSetupError
from .model import Toolchain

logger = logging.getLogger(__name__)


TOOL_HINTS = {
    "cargo": "Install Rust via rustup (https://rustup.rs) or fix PATH.",
    "rustup": "Install rustup (https://rustup.rs) or fix PATH.",
    "npm": "Install Node.js (includes npm) or fix PATH.",
    "node": "Install Node.js or fix PATH.",
    "pytest": "Install pytest (e.g., pip install pytest).",
    "ruff": "Install ruff (e.g., pip install ruff).",
    "docker": "Install Docker and ensure the daemon is running.",
    "python3": "Install Python 3 or fix PATH (python3).",
}

DEFAULT_INSTALL_TIMEOUT = 15 * 60


class ToolchainInstaller:
    """
    Installs a pinned toolchain version through an external command.

    ensure_toolchain() is idempotent: a version that installed successfully is
    remembered and never reinstalled by the same installer.
    """

    def __init__(
        self,
        install_command: Optional[str] = None,
        *,
        env: Optional[Mapping[str, str]] = None,
        timeout: float = DEFAULT_INSTALL_TIMEOUT,
    ):
        self.install_command = install_command
        self.env = dict(env or {})
        self.timeout = timeout
        self._installed: set[str] = set()
        self._lock = threading.Lock()

    def ensure_toolchain(self, version: str) -> None:
        """Raises EnvironmentSetupError if the toolchain cannot be installed."""
        with self._lock:
            if version in self._installed:
                logger.debug("toolchain %s already prepared", version)
                return
            if self.install_command:
                self._install(version)
            self._installed.add(version)

    def _install(self, version: str) -> None:
        cmd = self.install_command.replace("{version}", version)
        logger.info("installing toolchain %s: %s", version, cmd)

        env = os.environ.copy()
        env.update(self.env)
        try:
            proc = subprocess.run(
                cmd,
                shell=True,
                env=env,
                capture_output=True,
                timeout=self.timeout,
            )
        except subprocess.TimeoutExpired:
            raise EnvironmentSetupError(
                f"toolchain install timed out after {self.timeout:g}s",
                details={"version": version, "command": cmd},
            ) from None
        except OSError as e:
            raise EnvironmentSetupError(
                f"toolchain installer could not be started: {e}",
                details={"version": version, "command": cmd},
            ) from e

        if proc.returncode != 0:
            stderr = proc.stderr.decode("utf-8", errors="replace")[-4000:]
            raise EnvironmentSetupError(
                f"toolchain install failed (exit={proc.returncode})",
                details={"version": version, "command": cmd, "stderr": stderr.strip()},
            )


def check_required_tools(tools: Iterable[str], *, path: Optional[str] = None, job: str | None = None) -> None:
    """Raise EnvironmentSetupError naming every required tool missing from PATH."""
    missing = [t for t in tools if shutil.which(t, path=path) is None]
    if not missing:
        return
    hints: Dict[str, str] = {t: TOOL_HINTS.get(t, f"Install {t} or fix PATH.") for t in missing}
    raise EnvironmentSetupError(
        f"required tools not found: {', '.join(missing)}",
        job=job,
        details={"hints": hints},
    )


def prepare_environment(
    toolchain: Optional[Toolchain],
    installer: Optional[ToolchainInstaller],
    *,
    requires: Iterable[str] = (),
    env: Optional[Mapping[str, str]] = None,
    job: str | None = None,
) -> None:
    """Install the pinned toolchain (if any), then verify required tools are reachable."""
    if toolchain is not None:
        if installer is None:
            installer = ToolchainInstaller(toolchain.install, env=env)
        try:
            installer.ensure_toolchain(toolchain.version)
        except EnvironmentSetupError as e:
            e.job = job
            raise
    search_path = (env or {}).get("PATH") or os.environ.get("PATH")
    check_required_tools(requires, path=search_path, job=job)
