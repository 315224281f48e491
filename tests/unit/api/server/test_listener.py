import asyncio
import pytest
from unittest.mock import MagicMock

from medicare_billing.src.api.server.connection_handler import ConnectionHandler
from medicare_billing.src.api.server.listener import Listener

GREETING = "CONNECTED:MedicareServer Ready"


@pytest.fixture
def listener(billing_engine, fake_store, mock_metrics_collector) -> Listener:
    handler = ConnectionHandler(
        billing_engine=billing_engine,
        store=fake_store,
        metrics_collector=mock_metrics_collector,
        greeting=GREETING,
        io_timeout_seconds=5.0,
    )
    return Listener(handler, host="127.0.0.1", port=0, line_limit_bytes=1024)


async def wait_for_condition(predicate, timeout: float = 2.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


@pytest.mark.asyncio
async def test_serves_one_exchange_per_connection(listener: Listener, fake_store):
    await listener.start()
    try:
        reader, writer = await asyncio.open_connection("127.0.0.1", listener.bound_port)
        assert (await reader.readline()) == b"CONNECTED:MedicareServer Ready\n"
        writer.write(b"1|2024-01-15|Outpatient|CONS100\n")
        await writer.drain()

        response = await reader.readline()
        assert response.startswith(b"SUCCESS:CONS100|12.00|Premium|")
        # server closes after the single response
        assert await reader.read() == b""
        writer.close()
        await writer.wait_closed()
    finally:
        await listener.stop()
    assert len(fake_store.records) == 1

@pytest.mark.asyncio
async def test_accepting_is_not_blocked_by_in_flight_connection(listener: Listener, fake_store):
    await listener.start()
    try:
        idle_reader, idle_writer = await asyncio.open_connection("127.0.0.1", listener.bound_port)
        await idle_reader.readline()
        await wait_for_condition(lambda: listener.in_flight_count == 1)

        reader, writer = await asyncio.open_connection("127.0.0.1", listener.bound_port)
        await reader.readline()
        writer.write(b"3|2024-01-15|Emergency|IMG330\n")
        await writer.drain()
        response = await asyncio.wait_for(reader.readline(), timeout=2.0)
        assert response == b"SUCCESS:IMG330|25.00|Basic|0.00|10.00|10.00|Emergency|2.25|17.25\n"
        writer.close()
        await writer.wait_closed()

        # the idle peer leaves without a request
        idle_writer.close()
        await idle_writer.wait_closed()
    finally:
        await listener.stop()
    assert [record.patient_id for record in fake_store.records] == [3]

@pytest.mark.asyncio
async def test_stop_waits_for_in_flight_handlers(listener: Listener, fake_store):
    fake_store.operation_delay_seconds = 0.2
    await listener.start()
    port = listener.bound_port

    reader, writer = await asyncio.open_connection("127.0.0.1", port)
    await reader.readline()
    writer.write(b"2|2024-01-15|Inpatient|MRI700\n")
    await writer.drain()
    await wait_for_condition(lambda: fake_store.lookup_calls == [2])

    await listener.stop()

    assert listener.in_flight_count == 0
    assert not listener.is_serving
    assert len(fake_store.records) == 1
    response = await reader.readline()
    assert response.startswith(b"SUCCESS:MRI700|")
    writer.close()
    await writer.wait_closed()

    with pytest.raises(OSError):
        await asyncio.open_connection("127.0.0.1", port)

@pytest.mark.asyncio
async def test_stop_waits_for_connection_whose_task_has_not_started():
    handled = []

    async def slow_handle(reader, writer):
        await asyncio.sleep(0.05)
        handled.append(writer)

    handler = MagicMock(spec=ConnectionHandler)
    handler.handle.side_effect = slow_handle
    listener = Listener(handler, host="127.0.0.1", port=0)
    await listener.start()

    # scheduled like an accepted connection's callback, but not yet run
    writer = MagicMock()
    task = asyncio.get_running_loop().create_task(listener._on_connection(MagicMock(), writer))

    await listener.stop()

    assert task.done()
    assert handled == [writer]
    assert listener.in_flight_count == 0

@pytest.mark.asyncio
async def test_stop_is_idempotent_and_start_twice_fails(listener: Listener):
    await listener.start()
    with pytest.raises(RuntimeError):
        await listener.start()
    await listener.stop()
    await listener.stop()

def test_bound_port_requires_start(listener: Listener):
    with pytest.raises(RuntimeError):
        listener.bound_port
