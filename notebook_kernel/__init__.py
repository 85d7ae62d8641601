"""Execution-request protocol between a notebook client and an interpreter process."""

from .config import KernelSettings, settings
from .errors import (
    BindError,
    DanglingReference,
    EnvironmentResolutionError,
    KernelError,
    KernelStartupError,
    OrphanedExecution,
    ProtocolError,
    UnknownStreamName,
)
from .kernel import NotebookKernel
from .protocols import RecordedExecution
from .registry import ExecutionRequest, ExecutionState, RequestRegistry

__version__ = "0.1.0"

__all__ = [
    "BindError",
    "DanglingReference",
    "EnvironmentResolutionError",
    "ExecutionRequest",
    "ExecutionState",
    "KernelError",
    "KernelSettings",
    "KernelStartupError",
    "NotebookKernel",
    "OrphanedExecution",
    "ProtocolError",
    "RecordedExecution",
    "RequestRegistry",
    "UnknownStreamName",
    "settings",
]
