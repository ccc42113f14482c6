from __future__ import annotations

import logging
import os
import shutil
import subprocess
import sys
from pathlib import Path

logger = logging.getLogger(__name__)


class ShellEnvironment:
    """Resolves the PATH of the user's login shell and executables on it.

    A process started from a desktop launcher or a service manager often
    inherits a much shorter PATH than an interactive shell. Results are cached
    as an optimization only: a cached executable that disappears is looked up
    again.
    """

    def __init__(
        self,
        *,
        resolve_login_shell: bool = True,
        timeout_seconds: float = 5.0,
        platform: str = sys.platform,
        base_env: dict[str, str] | None = None,
    ) -> None:
        self.resolve_login_shell = resolve_login_shell
        self.timeout_seconds = timeout_seconds
        self.platform = platform
        self.base_env = dict(os.environ if base_env is None else base_env)
        self._shell_path: str | None = None
        self._executables: dict[str, str] = {}

    def invalidate(self) -> None:
        self._shell_path = None
        self._executables.clear()

    def _query_login_shell(self) -> str | None:
        shell = self.base_env.get("SHELL") or "/bin/sh"
        try:
            proc = subprocess.run(
                [shell, "-ilc", "echo $PATH"],
                text=True,
                capture_output=True,
                timeout=self.timeout_seconds,
                env=self.base_env,
                stdin=subprocess.DEVNULL,
            )
        except (OSError, subprocess.TimeoutExpired) as exc:
            logger.warning("Could not query PATH from %s: %s", shell, exc)
            return None
        if proc.returncode != 0:
            logger.warning("Login shell %s exited with %s while reading PATH", shell, proc.returncode)
            return None
        # Interactive shells may print banners before the PATH line.
        lines = [line.strip() for line in proc.stdout.splitlines() if line.strip()]
        return lines[-1] if lines else None

    def shell_path(self) -> str:
        if self._shell_path is not None:
            return self._shell_path
        inherited = self.base_env.get("PATH", os.defpath)
        resolved = None
        if self.resolve_login_shell and not self.platform.startswith("win"):
            resolved = self._query_login_shell()
        self._shell_path = resolved or inherited
        logger.debug("Resolved shell PATH: %s", self._shell_path)
        return self._shell_path

    def environment(self) -> dict[str, str]:
        env = dict(self.base_env)
        env["PATH"] = self.shell_path()
        return env

    @staticmethod
    def _is_executable(candidate: str) -> bool:
        path = Path(candidate)
        return path.is_file() and os.access(path, os.X_OK)

    def resolve_executable(self, name: str) -> str | None:
        if not name:
            return None
        cached = self._executables.get(name)
        if cached is not None:
            if self._is_executable(cached):
                return cached
            logger.info("Cached executable %s is gone, searching again", cached)
            self._executables.pop(name, None)

        if os.sep in name or (os.altsep and os.altsep in name):
            resolved = str(Path(name).expanduser().resolve())
            if not self._is_executable(resolved):
                return None
        else:
            resolved = shutil.which(name, path=self.shell_path())
            if resolved is None:
                return None
        self._executables[name] = resolved
        return resolved
