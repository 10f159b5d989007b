import asyncio

import pytest

from scoreboard_bot.core.engines.single_flight import SingleFlightGate
from scoreboard_bot.core.errors import ConsistencyError
from scoreboard_bot.core.event_bus import EventBus
from scoreboard_bot.core.event_topics import QUEUE_PROMOTED, QUEUE_RESERVATION_EXPIRED

GUILD = 1


async def admit(gate, operator_id):
    async with gate.section(GUILD):
        return gate.try_admit(GUILD, operator_id)


async def release(gate, operator_id):
    async with gate.section(GUILD):
        promotion = gate.release(GUILD, operator_id)
    await gate.announce_promotion(promotion)
    return promotion


@pytest.mark.asyncio
async def test_second_operator_is_queued_in_fifo_order():
    gate = SingleFlightGate()

    assert (await admit(gate, 10)).admitted
    y = await admit(gate, 20)
    z = await admit(gate, 30)

    assert (y.admitted, y.position, y.ahead) == (False, 1, 0)
    assert (z.position, z.ahead) == (2, 1)
    again = await admit(gate, 20)
    assert again.position == 1 and not again.newly_queued
    info = gate.queue_info(GUILD, 30)
    assert info.holder == 10 and info.waiters == [20, 30] and info.position == 2


@pytest.mark.asyncio
async def test_holder_cannot_open_twice():
    gate = SingleFlightGate()
    await admit(gate, 10)

    with pytest.raises(ConsistencyError):
        await admit(gate, 10)


@pytest.mark.asyncio
async def test_release_reserves_for_head_of_queue():
    bus = EventBus()
    promoted = []
    bus.subscribe(QUEUE_PROMOTED, lambda **payload: promoted.append(payload["operator_id"]))
    gate = SingleFlightGate(event_bus=bus)
    await admit(gate, 10)
    await admit(gate, 20)
    await admit(gate, 30)

    await release(gate, 10)

    assert promoted == [20]
    # only the reserved operator may take the gate
    assert not (await admit(gate, 30)).admitted
    admission = await admit(gate, 20)
    assert admission.admitted and admission.via_reservation
    assert gate.holder(GUILD) == 20


@pytest.mark.asyncio
async def test_unused_reservation_moves_to_next_waiter():
    bus = EventBus()
    expired = []
    promoted = []
    bus.subscribe(QUEUE_RESERVATION_EXPIRED, lambda **payload: expired.append(payload["operator_id"]))
    bus.subscribe(QUEUE_PROMOTED, lambda **payload: promoted.append(payload["operator_id"]))
    gate = SingleFlightGate(reservation_seconds=0.05, event_bus=bus)
    await admit(gate, 10)
    await admit(gate, 20)
    await admit(gate, 30)

    await release(gate, 10)
    await asyncio.sleep(0.2)

    assert expired == [20, 30]
    assert promoted == [20, 30]
    assert gate.queue_info(GUILD).waiters == []
    assert (await admit(gate, 40)).admitted


@pytest.mark.asyncio
async def test_release_by_non_holder_is_ignored():
    gate = SingleFlightGate()
    await admit(gate, 10)

    assert await release(gate, 99) is None
    assert gate.holder(GUILD) == 10


@pytest.mark.asyncio
async def test_reservation_window_comes_from_lookup():
    bus = EventBus()
    windows = []
    bus.subscribe(QUEUE_PROMOTED, lambda **payload: windows.append(payload["expires_in"]))
    gate = SingleFlightGate(reservation_lookup=lambda guild_id: 120.0, event_bus=bus)
    await admit(gate, 10)
    await admit(gate, 20)

    await release(gate, 10)

    assert windows == [120.0]
    await gate.shutdown()


@pytest.mark.asyncio
async def test_waiter_can_leave_the_queue():
    gate = SingleFlightGate()
    await admit(gate, 10)
    await admit(gate, 20)
    await admit(gate, 30)

    async with gate.section(GUILD):
        assert gate.leave_queue(GUILD, 20) == (True, None)
        assert gate.leave_queue(GUILD, 99) == (False, None)

    assert gate.queue_info(GUILD, 30).position == 1
    await release(gate, 10)
    assert gate.queue_info(GUILD).reserved_for == 30
    await gate.shutdown()


@pytest.mark.asyncio
async def test_giving_up_a_reservation_promotes_next_waiter():
    bus = EventBus()
    promoted = []
    bus.subscribe(QUEUE_PROMOTED, lambda **payload: promoted.append(payload["operator_id"]))
    gate = SingleFlightGate(event_bus=bus)
    await admit(gate, 10)
    await admit(gate, 20)
    await admit(gate, 30)
    await release(gate, 10)

    async with gate.section(GUILD):
        left, promotion = gate.leave_queue(GUILD, 20)
    await gate.announce_promotion(promotion)

    assert left
    assert promoted == [20, 30]
    assert not (await admit(gate, 20)).admitted
    assert (await admit(gate, 30)).admitted
    await gate.shutdown()
