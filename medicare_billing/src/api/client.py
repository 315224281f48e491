import asyncio
from typing import Optional, Tuple

import structlog

from .models.billing_models import BillBreakdown, BillingRequest
from .protocol import wire_codec
from .protocol.errors import ServerRejected, TransportFailure

logger = structlog.get_logger(__name__)

DEFAULT_CLIENT_TIMEOUT_SECONDS = 10.0


class BillingClient:
    """
    Submits one billing request per connection to a billing server.

    Each `submit` connects, reads the greeting, sends the request line, reads the single
    response line and closes the connection.
    """

    def __init__(self, host: str, port: int, timeout_seconds: float = DEFAULT_CLIENT_TIMEOUT_SECONDS):
        self.host = host
        self.port = port
        self.timeout_seconds = timeout_seconds
        self.last_greeting: Optional[str] = None

    async def submit(self, request: BillingRequest) -> BillBreakdown:
        """
        Returns the server's breakdown for `request`.

        Raises:
            ServerRejected: the server answered with an ERROR: line; `message` is the server's text.
            TransportFailure: connecting, sending or receiving failed, or the server closed early.
            MalformedResponse / UnknownResponse: the response line could not be decoded.
        """
        greeting, response_line = await self._exchange(wire_codec.encode_request(request))
        self.last_greeting = greeting

        response = wire_codec.decode_response(response_line)
        if not response.is_success:
            logger.info("Billing request rejected by server", patient_id=request.patient_id,
                        error=response.error_message)
            raise ServerRejected(response.error_message)

        logger.info("Bill received", patient_id=request.patient_id, service_code=response.breakdown.service_code,
                    final_amount=str(response.breakdown.final_amount))
        return response.breakdown

    async def _exchange(self, request_line: str) -> Tuple[str, str]:
        try:
            reader, writer = await asyncio.wait_for(
                asyncio.open_connection(self.host, self.port), timeout=self.timeout_seconds
            )
        except asyncio.TimeoutError as e:
            raise TransportFailure(f"Timed out connecting to {self.host}:{self.port}.") from e
        except OSError as e:
            raise TransportFailure(f"Cannot connect to server at {self.host}:{self.port}: {e}") from e

        try:
            greeting = await self._read_line(reader, "greeting")
            logger.debug("Connected to billing server", host=self.host, port=self.port, greeting=greeting)

            writer.write(wire_codec.frame(request_line))
            await asyncio.wait_for(writer.drain(), timeout=self.timeout_seconds)

            response_line = await self._read_line(reader, "response")
            return greeting, response_line
        except asyncio.TimeoutError as e:
            raise TransportFailure("Timed out communicating with server.") from e
        except (ConnectionError, OSError) as e:
            raise TransportFailure(f"Communication error: {e}") from e
        finally:
            writer.close()
            try:
                await writer.wait_closed()
            except (ConnectionError, OSError) as e:
                logger.debug("Error while closing client connection", error=str(e))

    async def _read_line(self, reader: asyncio.StreamReader, what: str) -> str:
        raw = await asyncio.wait_for(reader.readline(), timeout=self.timeout_seconds)
        if not raw:
            raise TransportFailure(f"No {what} received from server.")
        return wire_codec.unframe(raw)
