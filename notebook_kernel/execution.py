"""
Execution Lifecycle
===================

Drives one cell execution from submission to its terminal notification:

    SUBMITTED -> RUNNING -> SUCCEEDED | FAILED

Inbound notifications are never closed over a particular execution; each is
resolved through the RequestRegistry by its request id. A notification for
an id that is no longer registered (already finished, or released during
teardown) is logged and dropped.
"""

import time
from typing import Callable, List, Optional

import nbformat
import structlog

from .channel import (
    DISPLAY,
    RUN_CELL,
    RUN_CELL_FAILED,
    RUN_CELL_SUCCEEDED,
    STREAM_OUTPUT,
    MessageChannel,
)
from .errors import DanglingReference, OrphanedExecution, UnknownStreamName
from .events import EventEmitter
from .models import (
    DisplayParams,
    RunCellFailedParams,
    RunCellParams,
    RunCellSucceededParams,
    StreamOutputParams,
)
from .observability import get_tracer
from .protocols import CellExecution
from .registry import ExecutionRequest, ExecutionState, RequestRegistry

logger = structlog.get_logger(__name__)
tracer = get_tracer(__name__)

STREAM_NAMES = ("stdout", "stderr")


class ExecutionController:
    """
    Allocates request ids, sends run-cell messages and applies the
    interpreter's output notifications to the matching execution.

    Args:
        sessions: SessionManager providing ``ensure_started()`` and the live session
        registry: Request registry (a fresh one by default)
        clock: Wall-clock source for start/end timestamps
    """

    def __init__(
        self,
        sessions,
        registry: Optional[RequestRegistry] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.sessions = sessions
        self.registry = registry if registry is not None else RequestRegistry()
        self.on_run_finished: EventEmitter[ExecutionRequest] = EventEmitter("run finished")
        self._clock = clock

    def attach(self, channel: MessageChannel) -> None:
        """Register the four inbound notification handlers on ``channel``."""
        channel.on_notification(RUN_CELL_SUCCEEDED, self.on_succeeded)
        channel.on_notification(RUN_CELL_FAILED, self.on_failed)
        channel.on_notification(DISPLAY, self.on_display)
        channel.on_notification(STREAM_OUTPUT, self.on_stream_output)

    async def submit(self, code: str, execution: CellExecution) -> int:
        """Submit ``code`` and return its request id."""
        request = await self.submit_request(code, execution)
        return request.request_id

    async def submit_request(self, code: str, execution: CellExecution) -> ExecutionRequest:
        """
        Submit ``code`` and return the registered ExecutionRequest.

        Starts the session first if needed; startup errors propagate.
        """
        with tracer.start_as_current_span("notebook_kernel.submit"):
            session = await self.sessions.ensure_started()

            active = self.registry.active()
            if active:
                logger.warning(
                    f"Submitting while {len(active)} execution(s) still running "
                    f"(ids: {[r.request_id for r in active]})"
                )

            request_id = session.next_request_id()
            request = ExecutionRequest(
                request_id=request_id,
                execution=execution,
                code=code,
                submitted_at=self._clock(),
            )
            self.registry.register(request)

            execution.start(request.submitted_at)
            execution.clear_output()
            execution.execution_order = request_id

            try:
                await session.channel.send_notification(
                    RUN_CELL, RunCellParams(request_id=request_id, code=code)
                )
            except ConnectionError as e:
                logger.error(f"Failed to send run-cell for request {request_id}: {e}")
                self._finish(
                    request,
                    success=False,
                    error_output=self._error_output(type(e).__name__, str(e)),
                )
                raise

            # Output may already have completed the request while the frame drained
            if request.state is ExecutionState.SUBMITTED:
                request.state = ExecutionState.RUNNING
            logger.info(f"Submitted request {request_id} ({len(code)} chars)")
            return request

    # ------------------------------------------------------------------
    # Inbound notifications
    # ------------------------------------------------------------------

    def on_display(self, params: DisplayParams) -> None:
        request = self._resolve(params.request_id, DISPLAY.method)
        if request is None:
            return
        request.execution.append_output(
            nbformat.v4.new_output("display_data", data={params.mimetype: params.data})
        )

    def on_stream_output(self, params: StreamOutputParams) -> None:
        if params.name not in STREAM_NAMES:
            raise UnknownStreamName(params.name, params.request_id)
        request = self._resolve(params.request_id, STREAM_OUTPUT.method)
        if request is None:
            return
        # stderr is rendered as stdout
        request.execution.append_output(
            nbformat.v4.new_output("stream", name="stdout", text=params.data)
        )

    def on_succeeded(self, params: RunCellSucceededParams) -> None:
        request = self._resolve(params.request_id, RUN_CELL_SUCCEEDED.method)
        if request is None:
            return
        self._finish(request, success=True)

    def on_failed(self, params: RunCellFailedParams) -> None:
        request = self._resolve(params.request_id, RUN_CELL_FAILED.method)
        if request is None:
            return
        error = params.output
        self._finish(
            request,
            success=False,
            error_output=self._error_output(error.ename, error.evalue, [error.traceback]),
        )

    def fail_orphans(self, reason: str) -> List[ExecutionRequest]:
        """
        End every still-running execution as failed.

        Called when the session goes away (process exit, connection loss or
        stop) while executions are waiting for a terminal notification that
        will never arrive.
        """
        orphans = [r for r in self.registry.drain() if not r.state.is_terminal]
        for request in orphans:
            logger.warning(f"Request {request.request_id} orphaned: {reason}")
            self._finish(
                request,
                success=False,
                error_output=self._error_output(OrphanedExecution.__name__, reason),
            )
        return orphans

    # ------------------------------------------------------------------

    def _resolve(self, request_id: int, method: str) -> Optional[ExecutionRequest]:
        try:
            return self.registry.lookup(request_id)
        except DanglingReference as e:
            logger.warning(f"Dropping '{method}': {e}")
            return None

    def _finish(
        self,
        request: ExecutionRequest,
        success: bool,
        error_output=None,
    ) -> None:
        if request.state.is_terminal:
            logger.debug(
                f"Ignoring terminal notification for finished request {request.request_id}"
            )
            return

        ended_at = self._clock()
        if error_output is not None:
            request.execution.append_output(error_output)
        request.execution.end(success, ended_at)
        request.ended_at = ended_at
        request.state = ExecutionState.SUCCEEDED if success else ExecutionState.FAILED
        request.finished.set()

        logger.info(
            f"Request {request.request_id} {request.state.value} "
            f"after {request.duration:.3f}s"
        )
        self.on_run_finished.fire(request)
        self.registry.release(request.request_id)

    @staticmethod
    def _error_output(ename: str, evalue: str, traceback: Optional[List[str]] = None):
        return nbformat.v4.new_output(
            "error", ename=ename, evalue=evalue, traceback=traceback or []
        )
