"""
Rendezvous Transport
====================

The interpreter process is spawned with the address of a local socket and
connects back to it exactly once per session. This module owns that socket:

- Allocating a collision-resistant address (random uuid + namespace tag)
- Binding and accepting the single inbound connection
- Rejecting any further peers while the session is live
"""

import os
import uuid
import asyncio
import contextlib
from dataclasses import dataclass
from typing import Optional

import structlog

from .config import settings
from .errors import BindError
from .utils import generate_pipe_name

logger = structlog.get_logger(__name__)


@dataclass
class Connection:
    """Raw duplex byte stream to the interpreter."""

    reader: asyncio.StreamReader
    writer: asyncio.StreamWriter

    async def close(self) -> None:
        if self.writer.is_closing():
            return
        self.writer.close()
        try:
            await self.writer.wait_closed()
        except (ConnectionError, OSError) as e:
            # Peer already gone; nothing left to release
            logger.debug(f"Connection closed with error: {e}")


class RendezvousListener:
    """Accepts exactly one connection from the interpreter per session."""

    def __init__(self, namespace: Optional[str] = None):
        self.namespace = namespace or settings.PIPE_NAMESPACE
        self.address: Optional[str] = None
        self.rejected_connections = 0
        self._owns_socket = False
        self._server: Optional[asyncio.AbstractServer] = None
        self._connection: Optional[asyncio.Future] = None

    def allocate_address(self) -> str:
        """Generate a fresh address; does not touch the filesystem."""
        self.address = generate_pipe_name(uuid.uuid4().hex, self.namespace)
        return self.address

    @property
    def is_listening(self) -> bool:
        return self._server is not None and self._server.is_serving()

    async def listen(self, address: Optional[str] = None) -> None:
        """
        Bind ``address`` and start accepting.

        Returns once the socket is bound, not once a peer connects.

        Raises:
            BindError: If the address is already in use
        """
        if self._server is not None:
            raise RuntimeError(f"Listener already bound to {self.address}")

        address = address or self.address or self.allocate_address()

        # asyncio silently replaces an existing socket file; treat it as in use
        if os.path.exists(address):
            raise BindError(address)

        self._connection = asyncio.get_running_loop().create_future()
        try:
            self._server = await asyncio.start_unix_server(
                self._handle_connection, path=address
            )
        except OSError as e:
            self._connection = None
            raise BindError(address, e.strerror or str(e)) from e

        # Restrict socket to owner-only
        os.chmod(address, 0o600)
        self.address = address
        self._owns_socket = True
        logger.info(f"Rendezvous listener bound to {address}")

    async def accept_once(self) -> Connection:
        """Wait for the first peer to connect."""
        if self._connection is None:
            raise RuntimeError("Listener is not bound; call listen() first")
        return await self._connection

    async def _handle_connection(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> None:
        if self._connection is None or self._connection.done():
            self.rejected_connections += 1
            logger.warning(
                f"Rejecting extra connection on {self.address} "
                f"(rejected so far: {self.rejected_connections})"
            )
            writer.close()
            return

        logger.info(f"Interpreter connected on {self.address}")
        self._connection.set_result(Connection(reader, writer))

        # One peer per session: stop accepting, keep the accepted stream open
        if self._server is not None:
            self._server.close()

    def close(self) -> None:
        """Stop accepting and remove the socket file; idempotent."""
        if self._server is not None:
            self._server.close()
            self._server = None
        if self._connection is not None and not self._connection.done():
            self._connection.cancel()
        if self._owns_socket and self.address:
            with contextlib.suppress(FileNotFoundError):
                os.unlink(self.address)
            self._owns_socket = False
