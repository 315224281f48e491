import asyncio
from typing import Optional, Set

import structlog

from .connection_handler import ConnectionHandler

logger = structlog.get_logger(__name__)

DEFAULT_LINE_LIMIT_BYTES = 1024


class Listener:
    """
    Accepts TCP connections and runs one ConnectionHandler task per connection.

    Accepting never waits on in-flight handlers. `stop()` closes the listening socket
    first and then waits for every in-flight handler to finish on its own.
    """

    def __init__(self, handler: ConnectionHandler, host: str, port: int,
                 line_limit_bytes: int = DEFAULT_LINE_LIMIT_BYTES):
        self.handler = handler
        self.host = host
        self.port = port
        self.line_limit_bytes = line_limit_bytes
        self._server: Optional[asyncio.AbstractServer] = None
        self._in_flight: Set[asyncio.Task] = set()
        self._stopping = False

    @property
    def is_serving(self) -> bool:
        return self._server is not None and self._server.is_serving()

    @property
    def bound_port(self) -> int:
        """Actual listening port; differs from `port` when 0 was requested."""
        if self._server is None or not self._server.sockets:
            raise RuntimeError("Listener is not started.")
        return self._server.sockets[0].getsockname()[1]

    @property
    def in_flight_count(self) -> int:
        return len(self._in_flight)

    async def start(self):
        if self._server is not None:
            raise RuntimeError("Listener already started.")
        self._server = await asyncio.start_server(
            self._on_connection, host=self.host, port=self.port, limit=self.line_limit_bytes
        )
        logger.info("Billing server listening", host=self.host, port=self.bound_port)

    async def _on_connection(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        # start_server already runs this callback in its own task
        task = asyncio.current_task()
        self._in_flight.add(task)
        try:
            await self.handler.handle(reader, writer)
        finally:
            self._in_flight.discard(task)

    async def stop(self):
        if self._server is None or self._stopping:
            return
        self._stopping = True
        logger.info("Stopping billing server; no new connections will be accepted",
                    in_flight=len(self._in_flight))
        self._server.close()

        # A connection accepted just before close() has a task that has not run yet
        await asyncio.sleep(0)
        while self._in_flight:
            results = await asyncio.gather(*list(self._in_flight), return_exceptions=True)
            for result in results:
                if isinstance(result, BaseException) and not isinstance(result, asyncio.CancelledError):
                    logger.error("Connection handler ended with an error", error=str(result))
        await self._server.wait_closed()
        logger.info("Billing server stopped")
