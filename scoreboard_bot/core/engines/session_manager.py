"""
Session coordinator for the multi-image aggregation workflow.

One SessionManager owns every active session, the per-guild single-flight gate
and the waiter queues. The transport calls three operations:

- ``open_session``   -> SessionHandle | Queued
- ``submit_images``  -> ImageBatch (per-image outcomes + prompts to render)
- ``operator_decision`` -> prompts to render

Stage changes are computed by :func:`transition`, which only touches the
session object and returns the prompts plus an optional side effect
(summary, commit, cancel) that the manager then carries out.
"""
from __future__ import annotations

import asyncio
import shutil
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Awaitable, Callable, Dict, List, Optional, Sequence, Union

from scoreboard_bot.core.domain.models import (
    Decision,
    DecisionType,
    ImageOutcome,
    Member,
    OutboundEvent,
    Session,
    Stage,
)
from scoreboard_bot.core.engines.aggregator import Aggregator
from scoreboard_bot.core.engines.base.logging_utils import get_logger, session_scope
from scoreboard_bot.core.engines.confirm_flow import (
    build_awaiting_images_payload,
    build_conflict_payload,
    build_final_summary_payload,
    build_overwrite_payload,
    build_progress_payload,
    build_queue_payload,
    build_terminal_payload,
    build_uncertain_payload,
)
from scoreboard_bot.core.engines.conflict_resolver import PROMPT_CONFLICT, ConflictResolver
from scoreboard_bot.core.engines.line_parser import LineParser
from scoreboard_bot.core.engines.result_store import PHASE2_ROUNDS, ResultKey, ResultStore
from scoreboard_bot.core.engines.roster_matcher import RosterMatcher
from scoreboard_bot.core.engines.screenshot_pipeline import ScreenshotPipeline
from scoreboard_bot.core.engines.single_flight import QueueInfo, SingleFlightGate
from scoreboard_bot.core.engines.statistics import compute_progress, phase2_total_top30, summarize
from scoreboard_bot.core.errors import ConsistencyError, FatalError, InputError, MatchingError, ScoreboardError
from scoreboard_bot.core.event_topics import (
    SESSION_CANCELLED,
    SESSION_COMMITTED,
    SESSION_EXPIRED,
    SESSION_FAILED,
    SESSION_OPENED,
    SESSION_PING,
)
from scoreboard_bot.core.utils.week import current_week_info
from scoreboard_bot.integrations.system_config import GuildConfig, ServerConfigRegistry

logger = get_logger("session_manager")

RosterProvider = Callable[[int, int], Awaitable[Sequence[Member]]]  # (guild_id, role_id) -> members
PipelineFactory = Callable[[GuildConfig], ScreenshotPipeline]

EFFECT_SUMMARY = "summary"
EFFECT_COMMIT = "commit"
EFFECT_CANCEL = "cancel"

TERMINAL_TOPICS = {
    "committed": SESSION_COMMITTED,
    "cancelled": SESSION_CANCELLED,
    "expired": SESSION_EXPIRED,
    "failed": SESSION_FAILED,
}


@dataclass
class SessionHandle:
    session: Session
    events: List[OutboundEvent] = field(default_factory=list)


@dataclass
class Queued:
    position: int
    ahead: int
    holder: Optional[int] = None
    events: List[OutboundEvent] = field(default_factory=list)


@dataclass
class ImageBatch:
    outcomes: List[ImageOutcome] = field(default_factory=list)
    events: List[OutboundEvent] = field(default_factory=list)


@dataclass
class Transition:
    events: List[OutboundEvent] = field(default_factory=list)
    effect: Optional[str] = None


# ----------------------------------------------------------------------
# Pure stage logic
# ----------------------------------------------------------------------
def build_resolver(session: Session, aggregator: Aggregator) -> ConflictResolver:
    reading_set = aggregator.aggregate(session.image_readings)
    return ConflictResolver(reading_set, session.resolved_conflicts, session.included_uncertain)


def _awaiting_images(session: Session, clan_label: str) -> OutboundEvent:
    return OutboundEvent("awaiting_images", session.session_id, build_awaiting_images_payload(session, clan_label))


def _advance(session: Session, resolver: ConflictResolver) -> Transition:
    """Next open prompt, or final confirmation once every decision is made."""
    session.conflicts = [entry.member_id for entry in resolver.reading_set.conflicts]
    session.uncertain_members = [entry.member_id for entry in resolver.reading_set.uncertain]
    prompt = resolver.next_prompt()
    if prompt is None:
        session.stage = Stage.FINAL_CONFIRMATION
        return Transition(effect=EFFECT_SUMMARY)
    session.stage = Stage.RESOLVING_CONFLICTS
    if prompt.kind == PROMPT_CONFLICT:
        payload = build_conflict_payload(session, prompt)
    else:
        payload = build_uncertain_payload(session, prompt)
    return Transition([OutboundEvent(prompt.kind, session.session_id, payload)])


def transition(session: Session, decision: Decision, *, aggregator: Aggregator, clan_label: str) -> Transition:
    """
    Apply one operator decision to ``session``.

    Raises InputError / ConsistencyError without touching the session when the
    decision does not fit the current stage.
    """
    kind = decision.type
    stage = session.stage

    if kind is DecisionType.CANCEL:
        return Transition(effect=EFFECT_CANCEL)

    if session.pending_overwrite:
        if kind is not DecisionType.CONFIRM_OVERWRITE:
            raise InputError("Confirm or cancel overwriting the stored results first")
        session.pending_overwrite = False
        return Transition([_awaiting_images(session, clan_label)])

    if kind is DecisionType.DONE and stage in (Stage.AWAITING_IMAGES, Stage.AWAITING_COMPLETION):
        if not session.has_readings:
            raise InputError("No scores were read yet; post leaderboard screenshots first")
        resolver = build_resolver(session, aggregator)
        for member_id, score in aggregator.auto_resolutions(resolver.reading_set).items():
            session.resolved_conflicts.setdefault(member_id, score)
        return _advance(session, resolver)

    if kind is DecisionType.ADD_MORE and stage is Stage.AWAITING_COMPLETION:
        session.stage = Stage.AWAITING_IMAGES
        return Transition([_awaiting_images(session, clan_label)])

    if stage is Stage.RESOLVING_CONFLICTS and kind in (DecisionType.RESOLVE, DecisionType.INCLUDE):
        if decision.member_id is None:
            raise InputError("Pick a player first")
        resolver = build_resolver(session, aggregator)
        if kind is DecisionType.RESOLVE:
            if decision.score is not None:
                resolver.resolve(decision.member_id, decision.score)
            elif decision.choice is not None:
                resolver.resolve_choice(decision.member_id, decision.choice)
            else:
                raise InputError("Pick one of the offered scores")
        else:
            resolver.decide_uncertain(decision.member_id, bool(decision.include))
        return _advance(session, resolver)

    if stage is Stage.FINAL_CONFIRMATION:
        if kind is DecisionType.CANCEL_COMMIT:
            return Transition(effect=EFFECT_CANCEL)
        if kind is DecisionType.CONFIRM_COMMIT:
            if session.phase == 2 and session.current_round < PHASE2_ROUNDS:
                raise ConsistencyError(
                    f"Round {session.current_round}/{PHASE2_ROUNDS}: continue with the next round before saving",
                    context={"session_id": session.session_id},
                )
            return Transition(effect=EFFECT_COMMIT)
        if kind is DecisionType.PHASE2_NEXT_ROUND:
            if session.phase != 2:
                raise InputError("Rounds only exist in phase 2")
            if session.current_round >= PHASE2_ROUNDS:
                raise ConsistencyError(
                    f"Phase 2 has only {PHASE2_ROUNDS} rounds; confirm to save",
                    context={"session_id": session.session_id},
                )
            results = build_resolver(session, aggregator).final_results()
            session.rounds_data.append(results)
            session.current_round += 1
            session.reset_round()
            return Transition([_awaiting_images(session, clan_label)])

    raise InputError(
        f"'{kind.value}' is not available at this step ({stage.value})",
        context={"session_id": session.session_id, "stage": stage.value},
    )


# ----------------------------------------------------------------------
# Coordinator
# ----------------------------------------------------------------------
@dataclass
class _Runtime:
    """A session plus everything the manager keeps alongside it."""

    session: Session
    config: GuildConfig
    work_dir: Path
    pipeline: ScreenshotPipeline
    parser: LineParser
    matcher: RosterMatcher
    aggregator: Aggregator
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    timeout_task: Optional[asyncio.Task] = None
    ping_task: Optional[asyncio.Task] = None
    image_counter: int = 0
    closed: bool = False


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class SessionManager:
    """Owns sessions, timers and the single-flight gate; one instance per process."""

    def __init__(
        self,
        *,
        configs: ServerConfigRegistry,
        store: ResultStore,
        pipeline_factory: PipelineFactory,
        roster_provider: RosterProvider,
        gate: Optional[SingleFlightGate] = None,
        event_bus=None,
        error_engine=None,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._configs = configs
        self._store = store
        self._pipeline_factory = pipeline_factory
        self._roster_provider = roster_provider
        self._event_bus = event_bus
        self._error_engine = error_engine
        self._gate = gate or SingleFlightGate(event_bus=event_bus)
        self._clock = clock
        self._sessions: Dict[str, _Runtime] = {}
        self._by_guild: Dict[int, str] = {}

    @property
    def gate(self) -> SingleFlightGate:
        return self._gate

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------
    def get_session(self, session_id: str) -> Optional[Session]:
        runtime = self._sessions.get(session_id)
        return runtime.session if runtime else None

    def session_for(self, guild_id: int, operator_id: Optional[int] = None) -> Optional[Session]:
        """The guild's active session, optionally only if ``operator_id`` owns it."""
        session_id = self._by_guild.get(guild_id)
        session = self.get_session(session_id) if session_id else None
        if session is None or (operator_id is not None and session.operator_id != operator_id):
            return None
        return session

    def active_sessions(self) -> List[Session]:
        return [runtime.session for runtime in self._sessions.values()]

    async def queue_info(self, guild_id: int, operator_id: Optional[int] = None) -> QueueInfo:
        async with self._gate.section(guild_id):
            return self._gate.queue_info(guild_id, operator_id)

    async def leave_queue(self, guild_id: int, operator_id: int) -> bool:
        """Remove ``operator_id`` from the guild queue or its reservation; False when they were in neither."""
        async with self._gate.section(guild_id):
            left, promotion = self._gate.leave_queue(guild_id, operator_id)
        await self._gate.announce_promotion(promotion)
        return left

    # ------------------------------------------------------------------
    # open_session
    # ------------------------------------------------------------------
    async def open_session(
        self,
        guild_id: int,
        operator_id: int,
        phase: int,
        clan: str,
        *,
        channel_id: Optional[int] = None,
    ) -> Union[SessionHandle, Queued]:
        if phase not in (1, 2):
            raise InputError(f"Unknown phase {phase}; use 1 or 2")
        try:
            config = self._configs.get(guild_id)
            role_id = config.clan_role(clan)
        except FatalError as exc:
            await self._record(exc, context="session_manager.open_session", guild_id=guild_id)
            raise

        async with self._gate.section(guild_id):
            admission = self._gate.try_admit(guild_id, operator_id)
            if admission.admitted:
                runtime = self._register(config, guild_id, operator_id, phase, clan, channel_id)
            else:
                holder = self._gate.holder(guild_id)

        if not admission.admitted:
            await self._gate.announce_queued(guild_id, operator_id, admission)
            logger.info("Operator %s queued on guild %s at position %d", operator_id, guild_id, admission.position)
            return Queued(
                position=admission.position,
                ahead=admission.ahead,
                holder=holder,
                events=[OutboundEvent("queued", "", build_queue_payload(admission.position, admission.ahead, holder))],
            )

        session = runtime.session
        with session_scope(session.session_id, guild_id):
            try:
                events = await self._prepare(runtime, role_id)
            except Exception as exc:
                if isinstance(exc, FatalError):
                    await self._record(
                        exc, context="session_manager.open_session", session_id=session.session_id, guild_id=guild_id
                    )
                await self._finish(runtime, "failed", "The session could not be started.")
                raise
            self._touch(runtime)
            if config.ping_interval_seconds > 0:
                runtime.ping_task = asyncio.get_running_loop().create_task(
                    self._ping_loop(runtime), name=f"session-ping-{session.session_id}"
                )
            logger.info(
                "Session %s opened: guild=%s operator=%s phase=%s clan=%s %s roster=%d",
                session.session_id, guild_id, operator_id, phase, clan, session.week_info, len(session.roster),
            )
            await self._emit(SESSION_OPENED, runtime, reason=None, payload=events[0].payload if events else None)
        return SessionHandle(session=session, events=events)

    def _register(
        self,
        config: GuildConfig,
        guild_id: int,
        operator_id: int,
        phase: int,
        clan: str,
        channel_id: Optional[int],
    ) -> _Runtime:
        now = self._clock()
        session_id = f"{guild_id}-{operator_id}-{int(time.time() * 1000)}"
        session = Session(
            session_id=session_id,
            guild_id=guild_id,
            operator_id=operator_id,
            phase=phase,
            clan=clan,
            week_info=current_week_info(config.timezone, now),
            created_at=now,
            channel_id=channel_id,
        )
        ocr = config.ocr
        runtime = _Runtime(
            session=session,
            config=config,
            work_dir=Path(ocr.temp_dir) / session_id,
            pipeline=self._pipeline_factory(config),
            parser=LineParser(min_line_length=ocr.min_line_length, detailed_logging=ocr.detailed_logging.enabled),
            matcher=RosterMatcher(
                threshold=config.match_threshold,
                detailed_logging=ocr.detailed_logging.enabled,
                log_threshold=ocr.detailed_logging.similarity_threshold,
            ),
            aggregator=Aggregator(auto_resolve_majority=config.auto_resolve_majority),
        )
        self._sessions[session_id] = runtime
        self._by_guild[guild_id] = session_id
        return runtime

    async def _prepare(self, runtime: _Runtime, role_id: int) -> List[OutboundEvent]:
        """Roster snapshot, work dir and the overwrite check."""
        session = runtime.session
        roster = await self._roster_provider(session.guild_id, role_id)
        session.roster = tuple(roster)
        await asyncio.to_thread(runtime.work_dir.mkdir, parents=True, exist_ok=True)

        key = ResultKey.for_week(session.guild_id, session.phase, session.week_info, session.clan)
        summary = await self._store.phase_summary(key)
        if summary is not None:
            session.pending_overwrite = True
            logger.info("Results for %s already exist; waiting for overwrite confirmation", key.relative_path())
            return [OutboundEvent("overwrite_warning", session.session_id, build_overwrite_payload(session, summary))]
        return [_awaiting_images(session, runtime.config.clan_label(session.clan))]

    # ------------------------------------------------------------------
    # submit_images
    # ------------------------------------------------------------------
    async def submit_images(self, session_id: str, urls: Sequence[str]) -> ImageBatch:
        """Process ``urls`` in order; failures are reported per image and never abort the session."""
        runtime = self._require(session_id)
        session = runtime.session
        with session_scope(session_id, runtime.session.guild_id):
            async with runtime.lock:
                self._ensure_open(runtime)
                if session.pending_overwrite:
                    raise InputError("Confirm or cancel overwriting the stored results first")
                if session.stage not in (Stage.AWAITING_IMAGES, Stage.AWAITING_COMPLETION):
                    raise InputError(
                        f"Screenshots are not accepted at this step ({session.stage.value})",
                        context={"session_id": session_id},
                    )
                if not urls:
                    raise InputError("No attachments to process")
                self._touch(runtime)
                try:
                    batch = await self._process_batch(runtime, urls)
                finally:
                    if not runtime.closed:
                        self._touch(runtime)
        return batch

    async def _process_batch(self, runtime: _Runtime, urls: Sequence[str]) -> ImageBatch:
        session = runtime.session
        batch = ImageBatch()
        for url in urls:
            index = runtime.image_counter
            runtime.image_counter += 1
            outcome = await runtime.pipeline.process(
                index=index,
                url=url,
                work_dir=runtime.work_dir,
                parser=runtime.parser,
                matcher=runtime.matcher,
                roster=session.roster,
                kind=f"phase{session.phase}",
            )
            batch.outcomes.append(outcome)
            if outcome.downloaded_path:
                session.downloaded_files.append(outcome.downloaded_path)
            if outcome.processed_path:
                session.processed_images.append(outcome.processed_path)
            if outcome.ok:
                session.image_readings.append(list(outcome.readings))
            if outcome.ok and not outcome.readings and outcome.dropped_tokens:
                await self._record(
                    MatchingError(
                        f"Image {index + 1}: none of {len(outcome.dropped_tokens)} nick(s) matched the roster",
                        context={"tokens": outcome.dropped_tokens[:10]},
                    ),
                    context="session_manager.submit_images",
                    session_id=session.session_id,
                    guild_id=session.guild_id,
                    roster_size=len(session.roster),
                )

        if session.has_readings:
            session.stage = Stage.AWAITING_COMPLETION
            stats = runtime.aggregator.aggregate(session.image_readings).progress()
            payload = build_progress_payload(session, stats, batch.outcomes)
            batch.events.append(OutboundEvent("awaiting_completion", session.session_id, payload))
        else:
            notices = [o.notice for o in batch.outcomes if o.notice]
            if not session.roster:
                notices.append("Nobody holds this clan's role, so no nick can be matched")
            payload = build_awaiting_images_payload(session, runtime.config.clan_label(session.clan), notices)
            batch.events.append(OutboundEvent("awaiting_images", session.session_id, payload))
        logger.info(
            "Batch of %d image(s) for %s: %d ok, stage=%s",
            len(urls), session.session_id, sum(1 for o in batch.outcomes if o.ok), session.stage.value,
        )
        return batch

    # ------------------------------------------------------------------
    # operator_decision
    # ------------------------------------------------------------------
    async def operator_decision(self, session_id: str, decision: Decision) -> List[OutboundEvent]:
        runtime = self._require(session_id)
        session = runtime.session
        with session_scope(session_id, runtime.session.guild_id):
            async with runtime.lock:
                self._ensure_open(runtime)
                self._touch(runtime)
                logger.debug("Decision %s in stage %s", decision.type.value, session.stage.value)
                try:
                    result = transition(
                        session,
                        decision,
                        aggregator=runtime.aggregator,
                        clan_label=runtime.config.clan_label(session.clan),
                    )
                    if result.effect == EFFECT_CANCEL:
                        return await self._finish(runtime, "cancelled", "Nothing was saved.")
                    if result.effect == EFFECT_COMMIT:
                        return await self._commit(runtime)
                    if result.effect == EFFECT_SUMMARY:
                        result.events.extend(await self._summary_events(runtime))
                except FatalError as exc:
                    return await self._fail(runtime, exc, context="session_manager.operator_decision")
                return result.events

    async def _summary_events(self, runtime: _Runtime) -> List[OutboundEvent]:
        session = runtime.session
        results = build_resolver(session, runtime.aggregator).final_results()
        stats = summarize(results)
        bests = None
        progress = None
        total_top30 = None
        if session.phase == 1:
            bests = await self._store.historical_bests(
                session.guild_id,
                session.clan,
                [p.member_id for p in results.players],
                session.week_info.week,
                session.week_info.year,
            )
            progress = compute_progress(results, bests)
        else:
            total_top30 = phase2_total_top30([*session.rounds_data, results])
        payload = build_final_summary_payload(
            session, results, stats, progress, bests, phase2_total_top30=total_top30
        )
        return [OutboundEvent("final_confirmation", session.session_id, payload)]

    async def _commit(self, runtime: _Runtime) -> List[OutboundEvent]:
        session = runtime.session
        results = build_resolver(session, runtime.aggregator).final_results()
        key = ResultKey.for_week(session.guild_id, session.phase, session.week_info, session.clan)
        if session.phase == 1:
            if not results.players:
                raise InputError("Nothing to save: no players were recognised")
            record = await self._store.save_phase1(key, results, session.operator_id)
        else:
            record = await self._store.save_phase2(key, [*session.rounds_data, results], session.operator_id)
        logger.info("Committed %s (%d players)", key.relative_path(), len(record.ranked_players))
        message = f"{len(record.ranked_players)} player(s) saved • TOP30 {record.top30_sum():,}"
        return await self._finish(runtime, "committed", message)

    # ------------------------------------------------------------------
    # Cleanup
    # ------------------------------------------------------------------
    async def cancel(self, session_id: str, reason: str = "Nothing was saved.") -> List[OutboundEvent]:
        runtime = self._require(session_id)
        with session_scope(session_id, runtime.session.guild_id):
            async with runtime.lock:
                return await self._finish(runtime, "cancelled", reason)

    async def shutdown(self) -> None:
        """Cancel every active session and clear the gate."""
        for runtime in list(self._sessions.values()):
            with session_scope(runtime.session.session_id, runtime.session.guild_id):
                await self._finish(runtime, "cancelled", "The bot is shutting down; nothing was saved.")
        await self._gate.shutdown()
        logger.info("SessionManager shut down")

    async def _record(self, exc: ScoreboardError, *, context: str, **metadata) -> None:
        if self._error_engine is not None:
            await self._error_engine.log_error(exc, context=context, **metadata)
        else:
            logger.error("%s failed: %s %s", context, exc, metadata)

    async def _fail(self, runtime: _Runtime, exc: ScoreboardError, *, context: str) -> List[OutboundEvent]:
        session = runtime.session
        await self._record(exc, context=context, session_id=session.session_id, guild_id=session.guild_id)
        return await self._finish(runtime, "failed", exc.user_message)

    async def _finish(self, runtime: _Runtime, kind: str, message: str) -> List[OutboundEvent]:
        """Terminal transition; runs at most once per session."""
        session = runtime.session
        async with self._gate.section(session.guild_id):
            if runtime.closed:
                return []
            runtime.closed = True
            self._sessions.pop(session.session_id, None)
            if self._by_guild.get(session.guild_id) == session.session_id:
                del self._by_guild[session.guild_id]
            promotion = self._gate.release(session.guild_id, session.operator_id)

        current = asyncio.current_task()
        for task in (runtime.timeout_task, runtime.ping_task):
            if task is not None and task is not current:
                task.cancel()
        await asyncio.to_thread(shutil.rmtree, runtime.work_dir, True)

        event = OutboundEvent(kind, session.session_id, build_terminal_payload(kind, session, message))
        logger.info("Session %s %s: %s", session.session_id, kind, message)
        await self._emit(TERMINAL_TOPICS[kind], runtime, reason=message, payload=event.payload)
        await self._gate.announce_promotion(promotion)
        return [event]

    # ------------------------------------------------------------------
    # Timers
    # ------------------------------------------------------------------
    def _touch(self, runtime: _Runtime) -> None:
        """(Re)start the inactivity timer."""
        task = runtime.timeout_task
        if task is not None and task is not asyncio.current_task():
            task.cancel()
        runtime.timeout_task = asyncio.get_running_loop().create_task(
            self._expire_after(runtime), name=f"session-timeout-{runtime.session.session_id}"
        )

    async def _expire_after(self, runtime: _Runtime) -> None:
        timeout = runtime.config.session_timeout_seconds
        await asyncio.sleep(timeout)
        async with runtime.lock:
            if runtime.closed:
                return
            with session_scope(runtime.session.session_id, runtime.session.guild_id):
                minutes = max(1, round(timeout / 60))
                await self._finish(runtime, "expired", f"No activity for {minutes} minute(s); nothing was saved.")

    async def _ping_loop(self, runtime: _Runtime) -> None:
        session = runtime.session
        while not runtime.closed:
            await asyncio.sleep(runtime.config.ping_interval_seconds)
            if runtime.closed or self._event_bus is None:
                continue
            await self._event_bus.emit(
                SESSION_PING,
                session_id=session.session_id,
                guild_id=session.guild_id,
                operator_id=session.operator_id,
                channel_id=session.channel_id,
            )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _require(self, session_id: str) -> _Runtime:
        runtime = self._sessions.get(session_id)
        if runtime is None:
            raise InputError("This session is no longer active", context={"session_id": session_id})
        return runtime

    @staticmethod
    def _ensure_open(runtime: _Runtime) -> None:
        if runtime.closed:
            raise InputError("This session is no longer active", context={"session_id": runtime.session.session_id})

    async def _emit(self, topic: str, runtime: _Runtime, **extra) -> None:
        if self._event_bus is None:
            return
        session = runtime.session
        await self._event_bus.emit(
            topic,
            session_id=session.session_id,
            guild_id=session.guild_id,
            operator_id=session.operator_id,
            phase=session.phase,
            clan=session.clan,
            channel_id=session.channel_id,
            **extra,
        )
