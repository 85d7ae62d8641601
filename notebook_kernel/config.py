from pathlib import Path
from typing import Literal, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class KernelSettings(BaseSettings):
    """Manages kernel-wide configuration using environment variables."""

    # Interpreter resolution (None = look the executable up on PATH)
    EXECUTABLE_PATH: Optional[str] = None
    EXECUTABLE_NAME: str = "julia"
    ENVIRONMENT_PATH: Optional[str] = None

    # Interpreter-side driver script that connects back to the rendezvous address
    DRIVER_SCRIPT: Path = Path("scripts") / "notebook" / "notebook.jl"

    # Opaque to this package, passed through to the interpreter
    DIAGNOSTICS_ADDRESS: str = ""

    # Rendezvous socket naming
    PIPE_NAMESPACE: str = Field(default="nbk", min_length=1, max_length=32)

    COLOR_OUTPUT: bool = True

    # Operational limits (seconds)
    STARTUP_TIMEOUT: float = Field(default=60.0, gt=0)
    STOP_TIMEOUT: float = Field(default=5.0, gt=0)

    LOG_LEVEL: Literal["debug", "info", "warning", "error", "critical"] = Field(
        default="info"
    )

    model_config = SettingsConfigDict(
        env_prefix="NOTEBOOK_KERNEL_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )


# Instantiate a single config object to be used across the package
settings = KernelSettings()
