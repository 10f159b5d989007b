"""
Per-guild single-flight gate with a FIFO waiter queue.

At most one operator per guild holds the gate. Operators arriving while it is
held are queued; on release the head of the queue receives a reservation that
only they may redeem until it expires, after which the next waiter is promoted.

The mutating methods are synchronous and must be called inside
``async with gate.section(guild_id)``, the per-guild critical section that also
guards the SessionManager's session map.
"""
from __future__ import annotations

import asyncio
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Callable, Deque, Dict, List, Optional, Tuple

from scoreboard_bot.core.engines.base.logging_utils import get_logger
from scoreboard_bot.core.errors import ConsistencyError
from scoreboard_bot.core.event_topics import QUEUE_JOINED, QUEUE_PROMOTED, QUEUE_RESERVATION_EXPIRED

logger = get_logger("single_flight")


@dataclass
class Waiter:
    operator_id: int
    added_at: float


@dataclass
class Reservation:
    operator_id: int
    expires_at: float
    task: Optional[asyncio.Task] = None


@dataclass(frozen=True)
class Admission:
    admitted: bool
    position: int = 0  # 1-based queue position when not admitted
    ahead: int = 0
    via_reservation: bool = False
    newly_queued: bool = False


@dataclass(frozen=True)
class Promotion:
    guild_id: int
    operator_id: int
    expires_in: float


@dataclass
class QueueInfo:
    holder: Optional[int]
    reserved_for: Optional[int]
    waiters: List[int]
    position: Optional[int]

    @property
    def ahead(self) -> int:
        return (self.position - 1) if self.position else len(self.waiters)


@dataclass
class _GuildGate:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    holder: Optional[int] = None
    waiters: Deque[Waiter] = field(default_factory=deque)
    reservation: Optional[Reservation] = None


class SingleFlightGate:
    """Mutual exclusion per guild plus the FIFO waiter queue and reservations."""

    def __init__(
        self,
        *,
        reservation_seconds: float = 300,
        reservation_lookup: Optional[Callable[[int], float]] = None,
        event_bus=None,
    ) -> None:
        self.reservation_seconds = reservation_seconds
        self._reservation_lookup = reservation_lookup
        self._event_bus = event_bus
        self._gates: Dict[int, _GuildGate] = {}

    def _gate(self, guild_id: int) -> _GuildGate:
        gate = self._gates.get(guild_id)
        if gate is None:
            gate = self._gates[guild_id] = _GuildGate()
        return gate

    def section(self, guild_id: int) -> asyncio.Lock:
        """The per-guild critical section."""
        return self._gate(guild_id).lock

    # ------------------------------------------------------------------
    # Mutators (call under section)
    # ------------------------------------------------------------------
    def try_admit(self, guild_id: int, operator_id: int) -> Admission:
        gate = self._gate(guild_id)
        if gate.holder is not None:
            if gate.holder == operator_id:
                raise ConsistencyError(
                    "You already have an active session on this server",
                    context={"guild_id": guild_id, "operator_id": operator_id},
                )
            return self._enqueue(gate, operator_id)

        if gate.reservation is not None:
            if gate.reservation.operator_id != operator_id:
                return self._enqueue(gate, operator_id)
            self._cancel_reservation(gate)
            self._grant(gate, operator_id)
            logger.info("Operator %s redeemed reservation on guild %s", operator_id, guild_id)
            return Admission(admitted=True, via_reservation=True)

        if gate.waiters and gate.waiters[0].operator_id != operator_id:
            return self._enqueue(gate, operator_id)

        self._grant(gate, operator_id)
        return Admission(admitted=True)

    def release(self, guild_id: int, operator_id: int) -> Optional[Promotion]:
        """Release the gate held by ``operator_id`` (no-op otherwise) and promote the next waiter."""
        gate = self._gate(guild_id)
        if gate.holder != operator_id:
            return None
        gate.holder = None
        logger.info("Guild %s released by %s (%d waiting)", guild_id, operator_id, len(gate.waiters))
        return self._promote(guild_id, gate)

    def leave_queue(self, guild_id: int, operator_id: int) -> Tuple[bool, Optional[Promotion]]:
        """
        Take ``operator_id`` out of the queue, or drop the reservation they were
        promoted to. Returns whether they were queued and the promotion of the
        next waiter when a reservation was given up.
        """
        gate = self._gate(guild_id)
        if gate.reservation is not None and gate.reservation.operator_id == operator_id:
            self._cancel_reservation(gate)
            logger.info("Operator %s gave up the reservation on guild %s", operator_id, guild_id)
            return True, self._promote(guild_id, gate)
        for waiter in list(gate.waiters):
            if waiter.operator_id == operator_id:
                gate.waiters.remove(waiter)
                logger.info("Operator %s left the queue on guild %s", operator_id, guild_id)
                return True, None
        return False, None

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    def reservation_window(self, guild_id: int) -> float:
        """Seconds a promoted waiter has to start; per guild when a lookup is configured."""
        if self._reservation_lookup is not None:
            return self._reservation_lookup(guild_id)
        return self.reservation_seconds

    def holder(self, guild_id: int) -> Optional[int]:
        return self._gate(guild_id).holder

    def queue_info(self, guild_id: int, operator_id: Optional[int] = None) -> QueueInfo:
        gate = self._gate(guild_id)
        waiters = [w.operator_id for w in gate.waiters]
        position = waiters.index(operator_id) + 1 if operator_id in waiters else None
        return QueueInfo(
            holder=gate.holder,
            reserved_for=gate.reservation.operator_id if gate.reservation else None,
            waiters=waiters,
            position=position,
        )

    # ------------------------------------------------------------------
    # Notifications
    # ------------------------------------------------------------------
    async def announce_queued(self, guild_id: int, operator_id: int, admission: Admission) -> None:
        if self._event_bus is not None and admission.newly_queued:
            await self._event_bus.emit(QUEUE_JOINED, guild_id=guild_id, operator_id=operator_id, position=admission.position)

    async def announce_promotion(self, promotion: Optional[Promotion]) -> None:
        if promotion is None or self._event_bus is None:
            return
        await self._event_bus.emit(
            QUEUE_PROMOTED,
            guild_id=promotion.guild_id,
            operator_id=promotion.operator_id,
            expires_in=promotion.expires_in,
        )

    async def shutdown(self) -> None:
        for gate in self._gates.values():
            self._cancel_reservation(gate)
            gate.waiters.clear()
            gate.holder = None

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _grant(self, gate: _GuildGate, operator_id: int) -> None:
        gate.holder = operator_id
        for waiter in list(gate.waiters):
            if waiter.operator_id == operator_id:
                gate.waiters.remove(waiter)

    @staticmethod
    def _enqueue(gate: _GuildGate, operator_id: int) -> Admission:
        for index, waiter in enumerate(gate.waiters):
            if waiter.operator_id == operator_id:
                return Admission(admitted=False, position=index + 1, ahead=index)
        gate.waiters.append(Waiter(operator_id=operator_id, added_at=time.time()))
        position = len(gate.waiters)
        return Admission(admitted=False, position=position, ahead=position - 1, newly_queued=True)

    def _promote(self, guild_id: int, gate: _GuildGate) -> Optional[Promotion]:
        if gate.holder is not None or gate.reservation is not None or not gate.waiters:
            return None
        waiter = gate.waiters.popleft()
        window = self.reservation_window(guild_id)
        expires_at = time.monotonic() + window
        reservation = Reservation(operator_id=waiter.operator_id, expires_at=expires_at)
        reservation.task = asyncio.get_running_loop().create_task(
            self._expire_later(guild_id, reservation),
            name=f"reservation-{guild_id}-{waiter.operator_id}",
        )
        gate.reservation = reservation
        logger.info("Operator %s promoted on guild %s (%.0fs to start)", waiter.operator_id, guild_id, window)
        return Promotion(guild_id=guild_id, operator_id=waiter.operator_id, expires_in=window)

    @staticmethod
    def _cancel_reservation(gate: _GuildGate) -> None:
        reservation = gate.reservation
        gate.reservation = None
        if reservation and reservation.task and reservation.task is not asyncio.current_task():
            reservation.task.cancel()

    async def _expire_later(self, guild_id: int, reservation: Reservation) -> None:
        await asyncio.sleep(max(0.0, reservation.expires_at - time.monotonic()))
        gate = self._gate(guild_id)
        async with gate.lock:
            if gate.reservation is not reservation:
                return
            gate.reservation = None
            promotion = self._promote(guild_id, gate)
        logger.info("Reservation for %s on guild %s expired", reservation.operator_id, guild_id)
        if self._event_bus is not None:
            await self._event_bus.emit(QUEUE_RESERVATION_EXPIRED, guild_id=guild_id, operator_id=reservation.operator_id)
        await self.announce_promotion(promotion)
