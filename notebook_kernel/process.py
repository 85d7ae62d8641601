"""
Default collaborators for running a kernel outside an editor.

Editor integrations supply their own launcher (e.g. one that opens a
terminal), environment resolver and diagnostics provider; these defaults
spawn a plain subprocess and read everything else from KernelSettings.
"""

import os
import shutil
import asyncio
from pathlib import Path
from typing import Dict, Optional, Sequence

import structlog

from .config import KernelSettings, settings
from .errors import EnvironmentResolutionError, KernelStartupError

logger = structlog.get_logger(__name__)


class SubprocessLauncher:
    """Spawns the interpreter as an asyncio subprocess."""

    def __init__(self, cwd: Optional[str] = None, env: Optional[Dict[str, str]] = None):
        self.cwd = cwd
        self.env = env

    async def spawn(self, executable: str, args: Sequence[str], display_name: str):
        logger.info(f"[KERNEL] Spawning '{display_name}'", executable=executable, args=list(args))
        try:
            process = await asyncio.create_subprocess_exec(
                executable, *args, cwd=self.cwd, env=self.env
            )
        except OSError as e:
            raise KernelStartupError(f"Failed to spawn {executable}: {e}") from e
        logger.info(f"[KERNEL] Started '{display_name}'", pid=process.pid)
        return process


class SettingsEnvironmentResolver:
    """Resolves the interpreter and its project environment from settings."""

    def __init__(self, config: KernelSettings = settings):
        self.config = config

    async def get_executable_path(self) -> str:
        if self.config.EXECUTABLE_PATH:
            path = Path(self.config.EXECUTABLE_PATH).expanduser()
            if not path.is_file():
                raise EnvironmentResolutionError(
                    f"Configured interpreter {path} does not exist"
                )
            if not os.access(path, os.X_OK):
                raise EnvironmentResolutionError(
                    f"Configured interpreter {path} is not executable"
                )
            return str(path)

        found = shutil.which(self.config.EXECUTABLE_NAME)
        if not found:
            raise EnvironmentResolutionError(
                f"Could not find '{self.config.EXECUTABLE_NAME}' on PATH. "
                "Set NOTEBOOK_KERNEL_EXECUTABLE_PATH to the interpreter."
            )
        return found

    async def get_environment_path(self) -> str:
        if not self.config.ENVIRONMENT_PATH:
            return str(Path.cwd())

        path = Path(self.config.ENVIRONMENT_PATH).expanduser().resolve()
        if not path.is_dir():
            raise EnvironmentResolutionError(
                f"Environment path {path} does not exist or is not a directory"
            )
        return str(path)


class StaticDiagnostics:
    def __init__(self, address: Optional[str] = None):
        self.address = settings.DIAGNOSTICS_ADDRESS if address is None else address

    def get_diagnostics_channel_address(self) -> str:
        return self.address
