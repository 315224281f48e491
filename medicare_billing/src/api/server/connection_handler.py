import asyncio
import itertools
import time
from enum import Enum
from typing import Optional

import structlog

from ..models.billing_models import BillBreakdown, BillingRequest, round_money
from ..protocol import wire_codec
from ..protocol.errors import (
    BillingProtocolError, CalculationFault, InvalidServiceCode, LookupFailure, MalformedRequest,
    PatientNotFound, PersistFailure, TransportFailure,
)
from ...core.monitoring.app_metrics import MetricsCollector
from ...processing.billing_engine import BillingEngine
from ...storage.billing_store import BillingStore

logger = structlog.get_logger(__name__)

DEFAULT_GREETING = "CONNECTED:MedicareServer Ready"
DEFAULT_IO_TIMEOUT_SECONDS = 30.0


class ConnectionState(str, Enum):
    AWAITING_REQUEST = "awaiting_request"
    VALIDATING = "validating"
    PRICING = "pricing"
    PERSISTING = "persisting"
    RESPONDING = "responding"
    ERROR = "error"
    CLOSED = "closed"


class _ConnectionContext:
    """Per-connection state; never shared between connections."""

    def __init__(self, connection_id: int, peer: Optional[str]):
        self.connection_id = connection_id
        self.log = logger.bind(connection_id=connection_id, peer=peer)
        self.state = ConnectionState.AWAITING_REQUEST
        self.visited = [self.state]
        self.outcome = "peer_disconnected"
        self.final_amount: Optional[float] = None

    def transition(self, new_state: ConnectionState):
        self.log.debug("Connection state change", from_state=self.state.value, to_state=new_state.value)
        self.state = new_state
        self.visited.append(new_state)


class ConnectionHandler:
    """
    Runs one request/response exchange on an accepted stream connection.

    The greeting is written first, then exactly one request line is read and answered
    with exactly one SUCCESS: or ERROR: line. The connection is always closed before
    `handle` returns. A peer that disconnects (or stays silent past the I/O timeout)
    before sending a request gets no response.

    One handler instance serves every connection; all per-connection state lives in
    `handle`'s locals.
    """

    def __init__(
        self,
        billing_engine: BillingEngine,
        store: BillingStore,
        metrics_collector: MetricsCollector,
        greeting: str = DEFAULT_GREETING,
        io_timeout_seconds: float = DEFAULT_IO_TIMEOUT_SECONDS,
    ):
        self.billing_engine = billing_engine
        self.pricing_table = billing_engine.pricing_table
        self.store = store
        self.metrics_collector = metrics_collector
        self.greeting = greeting
        self.io_timeout_seconds = io_timeout_seconds
        self._connection_ids = itertools.count(1)
        logger.info("ConnectionHandler initialized.", io_timeout_seconds=io_timeout_seconds)

    async def handle(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        peername = writer.get_extra_info("peername")
        ctx = _ConnectionContext(next(self._connection_ids), str(peername) if peername else None)
        start_time = time.perf_counter()
        self.metrics_collector.connection_opened()
        ctx.log.info("Connection accepted")

        try:
            await self._write_line(writer, self.greeting)

            line = await self._read_request_line(reader, ctx)
            if line is None:
                return

            response_line = await self._process_request(line, ctx)

            ctx.transition(ConnectionState.RESPONDING)
            await self._write_line(writer, response_line)
            ctx.log.info("Response sent", outcome=ctx.outcome)
        except TransportFailure as e:
            # The peer cannot be told anything once the channel is broken
            ctx.outcome = e.outcome
            ctx.final_amount = None
            ctx.log.warn("Transport failure, closing connection", state=ctx.state.value, error=e.message)
        finally:
            await self._close(writer, ctx)
            self.metrics_collector.connection_closed()
            self.metrics_collector.record_connection_duration(time.perf_counter() - start_time)
            self.metrics_collector.record_request_outcome(ctx.outcome, final_amount=ctx.final_amount)

    async def _read_request_line(self, reader: asyncio.StreamReader, ctx: _ConnectionContext) -> Optional[str]:
        """Returns the request line, or None when the peer went away without sending one."""
        try:
            raw = await asyncio.wait_for(reader.readline(), timeout=self.io_timeout_seconds)
        except asyncio.TimeoutError:
            ctx.outcome = "read_timeout"
            ctx.log.warn("Timed out waiting for request line", timeout_seconds=self.io_timeout_seconds)
            return None
        except ValueError:
            # StreamReader raises ValueError once the line exceeds its limit
            ctx.log.warn("Request line exceeds size limit")
            return ""
        except (ConnectionError, OSError) as e:
            ctx.log.info("Peer connection lost before request", error=str(e))
            return None

        if not raw:
            ctx.log.info("Peer closed connection before sending a request")
            return None
        return wire_codec.unframe(raw)

    async def _process_request(self, line: str, ctx: _ConnectionContext) -> str:
        try:
            ctx.transition(ConnectionState.VALIDATING)
            request = self._validate(line)

            ctx.transition(ConnectionState.PRICING)
            breakdown = await self._price(request, ctx)

            ctx.transition(ConnectionState.PERSISTING)
            await self._persist(request, breakdown, ctx)
        except BillingProtocolError as e:
            ctx.transition(ConnectionState.ERROR)
            ctx.outcome = e.outcome
            ctx.log.warn("Billing request rejected", outcome=e.outcome, error=e.message)
            return wire_codec.encode_error(e.message)

        ctx.outcome = "success"
        ctx.final_amount = float(round_money(breakdown.final_amount))
        return wire_codec.encode_success(breakdown)

    def _validate(self, line: str) -> BillingRequest:
        if not line:
            raise MalformedRequest()
        return wire_codec.decode_request(line, valid_codes=self.pricing_table.valid_codes)

    async def _price(self, request: BillingRequest, ctx: _ConnectionContext) -> BillBreakdown:
        try:
            coverage_plan = await self.store.lookup_coverage_plan(request.patient_id)
        except Exception as e:
            ctx.log.error("Coverage plan lookup failed", patient_id=request.patient_id, error=str(e), exc_info=True)
            raise LookupFailure() from e
        if coverage_plan is None:
            raise PatientNotFound()

        try:
            return self.billing_engine.compute_bill(request.service_code, coverage_plan, request.patient_category)
        except InvalidServiceCode as e:
            ctx.log.error("Validated service code rejected by billing engine", service_code=request.service_code)
            raise CalculationFault() from e

    async def _persist(self, request: BillingRequest, breakdown: BillBreakdown, ctx: _ConnectionContext):
        try:
            bill_id = await self.store.append_bill_record(
                request.patient_id, request.visit_date, breakdown.final_amount
            )
        except Exception as e:
            ctx.log.error("Failed to persist bill", patient_id=request.patient_id, error=str(e), exc_info=True)
            raise PersistFailure() from e
        ctx.log.debug("Bill persisted", bill_id=bill_id, patient_id=request.patient_id)

    async def _write_line(self, writer: asyncio.StreamWriter, line: str):
        try:
            writer.write(wire_codec.frame(line))
            await asyncio.wait_for(writer.drain(), timeout=self.io_timeout_seconds)
        except asyncio.TimeoutError as e:
            raise TransportFailure("Timed out writing to peer.") from e
        except (ConnectionError, OSError) as e:
            raise TransportFailure(f"Write failed: {e}") from e

    async def _close(self, writer: asyncio.StreamWriter, ctx: _ConnectionContext):
        ctx.transition(ConnectionState.CLOSED)
        writer.close()
        try:
            await writer.wait_closed()
        except (ConnectionError, OSError) as e:
            ctx.log.debug("Error while closing connection", error=str(e))
        ctx.log.debug("Connection closed", states=[state.value for state in ctx.visited])
