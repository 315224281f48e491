import argparse
import asyncio
import signal
import sys
from typing import List, Optional

import structlog
from prometheus_client import start_http_server

from .api.client import BillingClient
from .api.dependencies import get_billing_store, get_connection_handler, get_pricing_table
from .api.protocol import wire_codec
from .api.protocol.errors import BillingProtocolError, ServerRejected
from .api.server.listener import Listener
from .core.config.settings import get_settings
from .core.database.db_session import dispose_engine
from .core.logging_config import setup_logging

logger = structlog.get_logger(__name__)


async def run_server() -> int:
    app_settings = get_settings()

    store = get_billing_store()
    logger.info("Checking database connectivity before accepting connections...")
    if not await store.check_connection():
        logger.error("Database is not reachable; refusing to start the billing server.")
        await dispose_engine()
        return 1

    if app_settings.METRICS_PORT is not None:
        start_http_server(app_settings.METRICS_PORT)
        logger.info("Prometheus metrics exposed", port=app_settings.METRICS_PORT)

    listener = Listener(
        handler=get_connection_handler(),
        host=app_settings.SERVER_HOST,
        port=app_settings.SERVER_PORT,
        line_limit_bytes=app_settings.MAX_REQUEST_LINE_BYTES,
    )

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            logger.warn("Signal handlers not supported on this platform", signal=sig.name)

    await listener.start()
    try:
        await stop_event.wait()
        logger.info("Shutdown signal received")
    finally:
        await listener.stop()
        await dispose_engine()
    return 0


async def run_bill(args: argparse.Namespace) -> int:
    app_settings = get_settings()
    line = wire_codec.FIELD_DELIMITER.join([args.patient_id, args.visit_date, args.patient_type, args.service_code])
    try:
        request = wire_codec.decode_request(line)
    except BillingProtocolError as e:
        print(f"Error: {e.message}", file=sys.stderr)
        return 2

    client = BillingClient(
        host=args.host or app_settings.CLIENT_HOST,
        port=args.port if args.port is not None else app_settings.SERVER_PORT,
        timeout_seconds=args.timeout,
    )
    try:
        breakdown = await client.submit(request)
    except ServerRejected as e:
        print(f"Error: {e.message}", file=sys.stderr)
        return 1
    except BillingProtocolError as e:
        logger.error("Billing request failed", error=e.message, outcome=e.outcome)
        print(f"Error: {e.message}", file=sys.stderr)
        return 1

    print(breakdown.format_receipt(), end="")
    return 0


async def run_check_db() -> int:
    try:
        healthy = await get_billing_store().check_connection()
    finally:
        await dispose_engine()
    print("Database connection OK" if healthy else "Database connection FAILED")
    return 0 if healthy else 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="medicare-billing", description="MediCare Oman billing service.")
    parser.add_argument("--log-level", default=None, help="Overrides LOG_LEVEL.")
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("serve", help="Run the billing server until SIGINT/SIGTERM.")

    bill_parser = subparsers.add_parser("bill", help="Submit one billing request and print the receipt.")
    bill_parser.add_argument("patient_id", help="Patient ID (positive integer).")
    bill_parser.add_argument("visit_date", help="Visit date, YYYY-MM-DD.")
    bill_parser.add_argument("patient_type", help="Outpatient, Inpatient or Emergency.")
    bill_parser.add_argument("service_code", help="Service code, e.g. CONS100.")
    bill_parser.add_argument("--host", default=None, help="Server host (default: CLIENT_HOST).")
    bill_parser.add_argument("--port", type=int, default=None, help="Server port (default: SERVER_PORT).")
    bill_parser.add_argument("--timeout", type=float, default=10.0, help="Per-operation timeout in seconds.")

    subparsers.add_parser("services", help="List the service catalog.")
    subparsers.add_parser("check-db", help="Check database connectivity.")
    return parser


def cli(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(log_level=args.log_level)

    if args.command == "serve":
        return asyncio.run(run_server())
    if args.command == "bill":
        return asyncio.run(run_bill(args))
    if args.command == "services":
        print(get_pricing_table().describe(), end="")
        return 0
    if args.command == "check-db":
        return asyncio.run(run_check_db())
    return 2


if __name__ == "__main__":
    sys.exit(cli())
