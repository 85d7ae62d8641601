import asyncio
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterator, List, Optional

import structlog

from .errors import DanglingReference
from .protocols import CellExecution

logger = structlog.get_logger(__name__)


class ExecutionState(str, Enum):
    SUBMITTED = "submitted"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (ExecutionState.SUCCEEDED, ExecutionState.FAILED)


@dataclass
class ExecutionRequest:
    """One cell execution, from submission until its terminal notification."""

    request_id: int
    execution: CellExecution
    code: str = ""
    state: ExecutionState = ExecutionState.SUBMITTED
    submitted_at: float = field(default_factory=time.time)
    ended_at: Optional[float] = None
    finished: asyncio.Event = field(default_factory=asyncio.Event, repr=False)

    @property
    def duration(self) -> Optional[float]:
        if self.ended_at is None:
            return None
        return self.ended_at - self.submitted_at


class RequestRegistry:
    """
    Maps request id -> in-flight ExecutionRequest.

    Single source of truth for which execution an inbound notification
    belongs to. Entries are released once their terminal notification has
    been processed; later notifications for the same id are dangling.
    """

    def __init__(self):
        self._requests: Dict[int, ExecutionRequest] = {}

    def register(self, request: ExecutionRequest) -> None:
        if request.request_id in self._requests:
            raise ValueError(f"Request id {request.request_id} is already registered")
        self._requests[request.request_id] = request
        logger.debug(f"Registered request {request.request_id}")

    def lookup(self, request_id: int) -> ExecutionRequest:
        """
        Raises:
            DanglingReference: If no execution is registered under ``request_id``
        """
        try:
            return self._requests[request_id]
        except KeyError:
            raise DanglingReference(request_id) from None

    def get(self, request_id: int) -> Optional[ExecutionRequest]:
        return self._requests.get(request_id)

    def release(self, request_id: int) -> Optional[ExecutionRequest]:
        request = self._requests.pop(request_id, None)
        if request is not None:
            logger.debug(f"Released request {request_id}")
        return request

    def active(self) -> List[ExecutionRequest]:
        """Registered requests that have not reached a terminal state, oldest first."""
        return sorted(
            (r for r in self._requests.values() if not r.state.is_terminal),
            key=lambda r: r.request_id,
        )

    def drain(self) -> List[ExecutionRequest]:
        """Remove and return every entry, oldest first."""
        requests = sorted(self._requests.values(), key=lambda r: r.request_id)
        self._requests.clear()
        return requests

    def __contains__(self, request_id: int) -> bool:
        return request_id in self._requests

    def __len__(self) -> int:
        return len(self._requests)

    def __iter__(self) -> Iterator[ExecutionRequest]:
        return iter(list(self._requests.values()))
