"""
Message Channel
===============

JSON-RPC 2.0 notifications over the rendezvous connection, framed the way
the editor's JSON-RPC stack frames them:

    Content-Length: <n>\\r\\n
    \\r\\n
    <n bytes of UTF-8 JSON>

This module handles:
- Framing and unframing messages
- Typed notification send (pydantic payloads)
- Dispatching inbound notifications to registered handlers

Unregistered methods are ignored. A handler that raises is logged and the
dispatch loop carries on with the next message; only a broken frame (which
makes the stream unreadable) ends the channel.
"""

import json
import asyncio
import inspect
from dataclasses import dataclass
from typing import Any, Callable, Dict, Generic, Optional, Tuple, Type, TypeVar, Union

import structlog
from pydantic import BaseModel, ValidationError

from .errors import ProtocolError
from .events import EventEmitter
from .models import (
    DisplayParams,
    RunCellFailedParams,
    RunCellParams,
    RunCellSucceededParams,
    StreamOutputParams,
)
from .transport import Connection

logger = structlog.get_logger(__name__)

M = TypeVar("M", bound=BaseModel)


@dataclass(frozen=True)
class NotificationType(Generic[M]):
    """A notification method bound to the model of its params."""

    method: str
    params_model: Type[M]


RUN_CELL = NotificationType("notebook/runcell", RunCellParams)
DISPLAY = NotificationType("notebook/display", DisplayParams)
STREAM_OUTPUT = NotificationType("streamoutput", StreamOutputParams)
RUN_CELL_SUCCEEDED = NotificationType("runcellsucceeded", RunCellSucceededParams)
RUN_CELL_FAILED = NotificationType("runcellfailed", RunCellFailedParams)


def encode_message(message: Dict[str, Any]) -> bytes:
    body = json.dumps(message, ensure_ascii=False).encode("utf-8")
    header = f"Content-Length: {len(body)}\r\n\r\n".encode("ascii")
    return header + body


async def read_frame(reader: asyncio.StreamReader) -> Optional[bytes]:
    """
    Read one framed message body.

    Returns:
        The raw body, or None on a clean EOF between messages

    Raises:
        ProtocolError: If the headers are malformed or the peer hangs up mid-frame
    """
    headers: Dict[str, str] = {}
    while True:
        line = await reader.readline()
        if not line:
            if headers:
                raise ProtocolError("Connection closed inside message header")
            return None
        try:
            text = line.decode("ascii").strip()
        except UnicodeDecodeError as e:
            raise ProtocolError(f"Non-ASCII header line: {line!r}") from e
        if not text:
            if headers:
                break
            # Stray separator between frames
            continue
        name, sep, value = text.partition(":")
        if not sep:
            raise ProtocolError(f"Malformed header line: {text!r}")
        headers[name.strip().lower()] = value.strip()

    try:
        length = int(headers["content-length"])
    except (KeyError, ValueError) as e:
        raise ProtocolError(f"Missing or invalid Content-Length in {headers}") from e
    if length < 0:
        raise ProtocolError(f"Negative Content-Length: {length}")

    try:
        return await reader.readexactly(length)
    except asyncio.IncompleteReadError as e:
        raise ProtocolError(
            f"Connection closed inside message body ({len(e.partial)}/{length} bytes)"
        ) from e


def decode_message(body: bytes) -> Dict[str, Any]:
    try:
        message = json.loads(body.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise ProtocolError(f"Message body is not valid JSON: {e}") from e
    if not isinstance(message, dict):
        raise ProtocolError(f"Expected a JSON object, got {type(message).__name__}")
    return message


Handler = Callable[[Any], Any]


class MessageChannel:
    """Duplex notification stream over a rendezvous connection."""

    def __init__(self, connection: Connection):
        self.connection = connection
        self.on_close: EventEmitter["MessageChannel"] = EventEmitter("channel closed")
        self.messages_received = 0
        self._handlers: Dict[str, Tuple[NotificationType, Handler]] = {}
        self._dispatch_task: Optional[asyncio.Task] = None
        self._closed = False
        self._close_fired = False

    @property
    def is_closed(self) -> bool:
        return self._closed

    @property
    def is_listening(self) -> bool:
        return self._dispatch_task is not None and not self._dispatch_task.done()

    async def send_notification(
        self, notification: NotificationType, payload: Union[BaseModel, Dict[str, Any]]
    ) -> None:
        """
        Send a notification; no acknowledgement is expected.

        Frames are written synchronously before the first await, so sends on
        one channel reach the peer in call order.
        """
        if self._closed:
            raise ConnectionError(f"Cannot send '{notification.method}': channel is closed")

        if not isinstance(payload, BaseModel):
            payload = notification.params_model.model_validate(payload)
        message = {
            "jsonrpc": "2.0",
            "method": notification.method,
            "params": payload.model_dump(by_alias=True),
        }
        self.connection.writer.write(encode_message(message))
        await self.connection.writer.drain()

    def on_notification(self, notification: NotificationType, handler: Handler) -> None:
        """Route inbound ``notification`` messages to ``handler`` (sync or async)."""
        if self._dispatch_task is not None:
            logger.warning(
                f"Handler for '{notification.method}' registered after listen(); "
                "earlier messages were not delivered to it"
            )
        self._handlers[notification.method] = (notification, handler)

    def listen(self) -> None:
        """Start dispatching inbound messages to the registered handlers."""
        if self._dispatch_task is not None:
            raise RuntimeError("Channel is already listening")
        if self._closed:
            raise ConnectionError("Cannot listen on a closed channel")
        self._dispatch_task = asyncio.create_task(self._read_loop())

    async def _read_loop(self) -> None:
        reader = self.connection.reader
        try:
            while True:
                try:
                    body = await read_frame(reader)
                except ProtocolError as e:
                    logger.error(f"Unrecoverable framing error, closing channel: {e}")
                    break
                except (ConnectionError, OSError) as e:
                    logger.info(f"Connection lost: {e}")
                    break

                if body is None:
                    logger.info("Interpreter closed the connection")
                    break

                self.messages_received += 1
                try:
                    message = decode_message(body)
                except ProtocolError as e:
                    logger.error(f"Dropping undecodable message: {e}")
                    continue

                await self._dispatch(message)
        except asyncio.CancelledError:
            logger.debug("Channel dispatch cancelled")
            raise
        finally:
            if not self._closed:
                self._closed = True
                self.connection.writer.close()
                self._fire_closed()

    async def _dispatch(self, message: Dict[str, Any]) -> None:
        method = message.get("method")
        if method is None:
            logger.debug(f"Ignoring non-notification message (id={message.get('id')})")
            return

        entry = self._handlers.get(method)
        if entry is None:
            logger.debug(f"Ignoring unregistered notification '{method}'")
            return
        notification, handler = entry

        try:
            params = notification.params_model.model_validate(message.get("params") or {})
        except ValidationError as e:
            logger.error(f"Dropping '{method}' with invalid params: {e}")
            return

        try:
            result = handler(params)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.error(f"Handler for '{method}' failed: {e}", exc_info=True)

    def _fire_closed(self) -> None:
        if not self._close_fired:
            self._close_fired = True
            self.on_close.fire(self)

    async def close(self) -> None:
        """Release the connection; idempotent."""
        if self._closed:
            return
        self._closed = True

        task = self._dispatch_task
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
            await asyncio.wait({task})

        await self.connection.close()
        self._fire_closed()
