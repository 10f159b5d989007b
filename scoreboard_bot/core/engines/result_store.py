"""
File-backed result storage.

Layout::

    <base>/phases/guild_<id>/phase<1|2>/<year>/week-<N>_<clan>.json

Every write goes to a temporary file in the target directory followed by
``os.replace`` so readers only ever see the previous or the new record.
"""
from __future__ import annotations

import asyncio
import json
import os
import re
import tempfile
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple

from scoreboard_bot.core.domain.models import FinalResults, PlayerScore, WeekInfo
from scoreboard_bot.core.engines.base.logging_utils import get_logger, timed
from scoreboard_bot.core.engines.statistics import sum_rounds, top_sum
from scoreboard_bot.core.errors import ConsistencyError, CorruptRecordError, InputError, StorageError

logger = get_logger("result_store")

PHASE2_ROUNDS = 3
_WEEK_FILE_RE = re.compile(r"^week-(?P<week>\d+)_(?P<clan>.+)\.json$")
LEGACY_FILES = {1: "phase1_results.json", 2: "phase2_results.json"}


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _player_from_dict(data: Dict[str, Any]) -> PlayerScore:
    # legacy records used "userId"
    if "memberId" not in data and "userId" in data:
        data = {**data, "memberId": data["userId"]}
    return PlayerScore.from_dict(data)


@dataclass(frozen=True)
class ResultKey:
    guild_id: int
    phase: int
    year: int
    week: int
    clan: str

    @classmethod
    def for_week(cls, guild_id: int, phase: int, week_info: WeekInfo, clan: str) -> "ResultKey":
        return cls(guild_id, phase, week_info.year, week_info.week, clan)

    @property
    def week_info(self) -> WeekInfo:
        return WeekInfo(year=self.year, week=self.week)

    def relative_path(self) -> Path:
        return Path("phases") / f"guild_{self.guild_id}" / f"phase{self.phase}" / str(self.year) / f"week-{self.week}_{self.clan}.json"


@dataclass
class RoundRecord:
    round: int
    players: List[PlayerScore] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {"round": self.round, "players": [p.to_dict() for p in self.players]}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RoundRecord":
        return cls(round=int(data["round"]), players=[_player_from_dict(p) for p in data.get("players", [])])


@dataclass
class StoredResultRecord:
    """One clan's results for one week; phase 2 adds rounds and a summed summary."""

    week_number: int
    year: int
    clan: str
    created_at: str
    created_by: int
    players: List[PlayerScore] = field(default_factory=list)
    rounds: Optional[List[RoundRecord]] = None
    summary: Optional[List[PlayerScore]] = None
    updated_at: Optional[str] = None

    @property
    def phase(self) -> int:
        return 2 if self.rounds is not None else 1

    @property
    def ranked_players(self) -> List[PlayerScore]:
        """Players the week is ranked by: ``players`` for phase 1, ``summary`` for phase 2."""
        return list(self.summary or []) if self.phase == 2 else list(self.players)

    def top30_sum(self) -> int:
        if self.phase == 2:
            return sum(top_sum(p.score for p in r.players) for r in self.rounds or [])
        return top_sum(p.score for p in self.players)

    def recompute_summary(self) -> None:
        rounds = [FinalResults(players=list(r.players)) for r in self.rounds or []]
        self.summary = sum_rounds(rounds).players

    def validate(self) -> None:
        if self.phase == 1:
            ids = [p.member_id for p in self.players]
            if len(ids) != len(set(ids)):
                raise ConsistencyError("Phase 1 record has duplicate members")
            if self.summary is not None:
                raise ConsistencyError("Phase 1 record cannot carry a summary")
            return
        if len(self.rounds or []) != PHASE2_ROUNDS or self.summary is None:
            raise ConsistencyError("Phase 2 record needs exactly three rounds and a summary")
        for round_record in self.rounds or []:
            ids = [p.member_id for p in round_record.players]
            if len(ids) != len(set(ids)):
                raise ConsistencyError(f"Round {round_record.round} has duplicate members")

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "weekNumber": self.week_number,
            "year": self.year,
            "clan": self.clan,
        }
        if self.phase == 2:
            data["rounds"] = [r.to_dict() for r in self.rounds or []]
            data["summary"] = {
                "players": [p.to_dict() for p in self.summary or []],
                "top30Sum": self.top30_sum(),
            }
        else:
            data["players"] = [p.to_dict() for p in self.players]
        data["createdAt"] = self.created_at
        data["createdBy"] = self.created_by
        if self.updated_at is not None:
            data["updatedAt"] = self.updated_at
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StoredResultRecord":
        rounds = data.get("rounds")
        summary = data.get("summary")
        return cls(
            week_number=int(data["weekNumber"]),
            year=int(data["year"]),
            clan=str(data["clan"]),
            created_at=str(data.get("createdAt") or ""),
            created_by=int(data["createdBy"]),
            players=[_player_from_dict(p) for p in data.get("players", [])] if rounds is None else [],
            rounds=[RoundRecord.from_dict(r) for r in rounds] if rounds is not None else None,
            summary=[_player_from_dict(p) for p in summary.get("players", [])] if summary is not None else None,
            updated_at=data.get("updatedAt"),
        )

    @classmethod
    def phase1(cls, key: ResultKey, results: FinalResults, created_by: int) -> "StoredResultRecord":
        return cls(
            week_number=key.week,
            year=key.year,
            clan=key.clan,
            created_at=_utc_now(),
            created_by=created_by,
            players=list(results.players),
        )

    @classmethod
    def phase2(cls, key: ResultKey, rounds: List[FinalResults], created_by: int) -> "StoredResultRecord":
        record = cls(
            week_number=key.week,
            year=key.year,
            clan=key.clan,
            created_at=_utc_now(),
            created_by=created_by,
            rounds=[RoundRecord(round=i + 1, players=list(r.players)) for i, r in enumerate(rounds)],
        )
        record.recompute_summary()
        return record


@dataclass
class AvailableWeek:
    week: int
    year: int
    clans: List[str]
    created_at: str

    @property
    def week_key(self) -> str:
        return f"{self.week}-{self.year}"


class ResultStore:
    """Persist and query per-(guild, phase, year, week, clan) result records."""

    def __init__(self, base_dir: Path) -> None:
        self.base_dir = Path(base_dir)
        self._locks: Dict[ResultKey, asyncio.Lock] = {}

    def path_for(self, key: ResultKey) -> Path:
        return self.base_dir / key.relative_path()

    def _phase_dir(self, guild_id: int, phase: int) -> Path:
        return self.base_dir / "phases" / f"guild_{guild_id}" / f"phase{phase}"

    def _lock_for(self, key: ResultKey) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock

    # ------------------------------------------------------------------
    # Basic operations
    # ------------------------------------------------------------------
    async def exists(self, key: ResultKey) -> bool:
        return await asyncio.to_thread(self.path_for(key).exists)

    async def get(self, key: ResultKey) -> Optional[StoredResultRecord]:
        """Load a record; a missing file yields None."""
        return await asyncio.to_thread(self._read, self.path_for(key))

    async def put(self, key: ResultKey, record: StoredResultRecord) -> None:
        """Validate and atomically replace the record stored under ``key``."""
        async with self._lock_for(key):
            await self._put_locked(key, record)

    async def _put_locked(self, key: ResultKey, record: StoredResultRecord) -> None:
        # caller holds self._lock_for(key)
        if record.phase != key.phase:
            raise ConsistencyError(f"Phase {record.phase} record cannot be stored under phase {key.phase}")
        record.validate()
        with timed(logger, "result_store.put", extra={"path": str(key.relative_path())}):
            await asyncio.to_thread(self._write, self.path_for(key), record.to_dict())

    async def get_phase2(self, guild_id: int, week: int, year: int, clan: str) -> Optional[StoredResultRecord]:
        return await self.get(ResultKey(guild_id, 2, year, week, clan))

    # ------------------------------------------------------------------
    # Saving with created_by preservation
    # ------------------------------------------------------------------
    async def save_phase1(self, key: ResultKey, results: FinalResults, created_by: int) -> StoredResultRecord:
        record = StoredResultRecord.phase1(key, results, created_by)
        return await self._save_preserving(key, record)

    async def save_phase2(self, key: ResultKey, rounds: List[FinalResults], created_by: int) -> StoredResultRecord:
        if len(rounds) != PHASE2_ROUNDS:
            raise ConsistencyError(f"Phase 2 needs {PHASE2_ROUNDS} rounds, got {len(rounds)}")
        record = StoredResultRecord.phase2(key, rounds, created_by)
        return await self._save_preserving(key, record)

    async def _save_preserving(self, key: ResultKey, record: StoredResultRecord) -> StoredResultRecord:
        async with self._lock_for(key):
            previous = await self.get(key)
            if previous is not None:
                record.created_by = previous.created_by
                record.created_at = previous.created_at or record.created_at
                record.updated_at = _utc_now()
                logger.info("Overwriting %s (created by %s)", key.relative_path(), previous.created_by)
            await self._put_locked(key, record)
        return record

    # ------------------------------------------------------------------
    # Edits
    # ------------------------------------------------------------------
    async def update_player_score(
        self,
        key: ResultKey,
        member_id: int,
        score: int,
        *,
        round_number: Optional[int] = None,
    ) -> Tuple[int, StoredResultRecord]:
        """Change one player's score; returns (old score, updated record)."""
        if score < 0:
            raise InputError("Score must be a non-negative integer")
        async with self._lock_for(key):
            record = await self._require(key)
            players = self._editable_players(record, round_number)
            for player in players:
                if player.member_id == member_id:
                    old = player.score
                    player.score = score
                    break
            else:
                raise InputError(f"Player {member_id} is not in this result set", context={"member_id": member_id})
            if record.phase == 2:
                record.recompute_summary()
            record.updated_at = _utc_now()
            await self._put_locked(key, record)
        return old, record

    async def add_player(
        self,
        key: ResultKey,
        player: PlayerScore,
        *,
        round_number: Optional[int] = None,
    ) -> StoredResultRecord:
        """Add a player missing from an existing week."""
        if player.score < 0:
            raise InputError("Score must be a non-negative integer")
        async with self._lock_for(key):
            record = await self._require(key)
            players = self._editable_players(record, round_number)
            if any(p.member_id == player.member_id for p in players):
                raise InputError(f"{player.display_name} is already in this result set")
            players.append(player)
            if record.phase == 2:
                record.recompute_summary()
            record.updated_at = _utc_now()
            await self._put_locked(key, record)
        return record

    async def _require(self, key: ResultKey) -> StoredResultRecord:
        record = await self.get(key)
        if record is None:
            raise InputError(
                f"No phase {key.phase} results for {key.clan}, week {key.week}/{key.year}",
                context={"path": str(key.relative_path())},
            )
        return record

    @staticmethod
    def _editable_players(record: StoredResultRecord, round_number: Optional[int]) -> List[PlayerScore]:
        if record.phase == 1:
            return record.players
        if round_number is None or not 1 <= round_number <= PHASE2_ROUNDS:
            raise InputError(f"Phase 2 edits need a round between 1 and {PHASE2_ROUNDS}")
        for round_record in record.rounds or []:
            if round_record.round == round_number:
                return round_record.players
        raise InputError(f"Round {round_number} is missing from this record")

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    async def list_available_weeks(self, guild_id: int, phase: int) -> List[AvailableWeek]:
        """Weeks with at least one record, newest first; ``created_at`` is the earliest of the clans."""
        return await asyncio.to_thread(self._list_weeks_sync, guild_id, phase)

    async def historical_best(
        self,
        guild_id: int,
        member_id: int,
        exclude_week: int,
        exclude_year: int,
        clan: str,
    ) -> Optional[int]:
        """Best phase-1 score of ``member_id`` for ``clan`` outside the excluded week, or None."""
        bests = await self.historical_bests(guild_id, clan, [member_id], exclude_week, exclude_year)
        return bests.get(member_id)

    async def historical_bests(
        self,
        guild_id: int,
        clan: str,
        member_ids: Iterable[int],
        exclude_week: int,
        exclude_year: int,
    ) -> Dict[int, Optional[int]]:
        wanted = set(member_ids)
        bests: Dict[int, Optional[int]] = {m: None for m in wanted}
        for key, record in await asyncio.to_thread(self._scan_sync, guild_id, 1, clan):
            if (key.week, key.year) == (exclude_week, exclude_year):
                continue
            for player in record.players:
                if player.member_id in wanted:
                    current = bests[player.member_id]
                    bests[player.member_id] = player.score if current is None else max(current, player.score)
        return bests

    async def previous_week_record(self, guild_id: int, clan: str, week: int, year: int) -> Optional[StoredResultRecord]:
        """Latest phase-1 record for ``clan`` strictly before (week, year)."""
        earlier = [
            (key.year, key.week, record)
            for key, record in await asyncio.to_thread(self._scan_sync, guild_id, 1, clan)
            if (key.year, key.week) < (year, week)
        ]
        if not earlier:
            return None
        return max(earlier, key=lambda item: (item[0], item[1]))[2]

    async def previous_week_top30(self, guild_id: int, clan: str, week: int, year: int) -> Optional[int]:
        record = await self.previous_week_record(guild_id, clan, week, year)
        return record.top30_sum() if record is not None else None

    async def phase_summary(self, key: ResultKey) -> Optional[Dict[str, Any]]:
        record = await self.get(key)
        if record is None:
            return None
        return {
            "player_count": len(record.ranked_players),
            "top30_sum": record.top30_sum(),
            "created_by": record.created_by,
            "created_at": record.created_at,
            "updated_at": record.updated_at,
        }

    # ------------------------------------------------------------------
    # Legacy migration
    # ------------------------------------------------------------------
    async def migrate_legacy(self, legacy_dir: Path) -> Dict[str, int]:
        """Split ``phase{1,2}_results.json`` (guild -> "week-year" -> clan -> record) into per-week files."""
        counts = {"phase1": 0, "phase2": 0, "errors": 0}
        for phase, filename in LEGACY_FILES.items():
            source = Path(legacy_dir) / filename
            if not source.exists():
                logger.info("Legacy file %s not found, skipping", source)
                continue
            data = await asyncio.to_thread(self._read_json, source)
            for guild_id, weeks in data.items():
                for week_key, clans in weeks.items():
                    week, _, year = week_key.partition("-")
                    for clan, raw in clans.items():
                        key = ResultKey(int(guild_id), phase, int(year), int(week), clan)
                        try:
                            record = StoredResultRecord.from_dict(
                                {"weekNumber": week, "year": year, "clan": clan, **raw}
                            )
                            if record.phase == 2 and record.summary is None:
                                record.recompute_summary()
                            await self.put(key, record)
                        except (KeyError, TypeError, ValueError, ConsistencyError) as exc:
                            counts["errors"] += 1
                            logger.error("Migration of %s failed: %s", key.relative_path(), exc)
                            continue
                        counts[f"phase{phase}"] += 1
            backup = source.with_name(source.name + ".backup")
            await asyncio.to_thread(os.replace, source, backup)
            logger.info("Legacy %s moved to %s", source.name, backup.name)
        return counts

    # ------------------------------------------------------------------
    # Sync helpers (run in worker threads)
    # ------------------------------------------------------------------
    def _read(self, path: Path) -> Optional[StoredResultRecord]:
        if not path.exists():
            return None
        data = self._read_json(path)
        try:
            return StoredResultRecord.from_dict(data)
        except (KeyError, TypeError, ValueError, AttributeError) as exc:
            raise CorruptRecordError(f"Corrupted record {path.name}: {exc}", context={"path": str(path)}) from exc

    @staticmethod
    def _read_json(path: Path) -> Dict[str, Any]:
        try:
            with path.open("r", encoding="utf-8") as fh:
                data = json.load(fh)
        except json.JSONDecodeError as exc:
            raise CorruptRecordError(f"Corrupted record {path.name}: {exc}", context={"path": str(path)}) from exc
        except OSError as exc:
            raise StorageError(f"Cannot read {path}: {exc}", context={"path": str(path)}) from exc
        if not isinstance(data, dict):
            raise CorruptRecordError(f"Corrupted record {path.name}: not an object", context={"path": str(path)})
        return data

    @staticmethod
    def _write(path: Path, data: Dict[str, Any]) -> None:
        tmp_name: Optional[str] = None
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with tempfile.NamedTemporaryFile(
                "w", encoding="utf-8", dir=path.parent, prefix=f".{path.stem}.", suffix=".tmp", delete=False
            ) as fh:
                tmp_name = fh.name
                json.dump(data, fh, indent=2, ensure_ascii=False)
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp_name, path)
            tmp_name = None
        except OSError as exc:
            raise StorageError(f"Cannot write {path}: {exc}", context={"path": str(path)}) from exc
        finally:
            if tmp_name is not None:
                Path(tmp_name).unlink(missing_ok=True)

    def _iter_week_files(self, guild_id: int, phase: int) -> Iterable[Tuple[ResultKey, Path]]:
        phase_dir = self._phase_dir(guild_id, phase)
        if not phase_dir.exists():
            return
        for year_dir in phase_dir.iterdir():
            if not year_dir.is_dir() or not year_dir.name.isdigit():
                continue
            for path in year_dir.iterdir():
                match = _WEEK_FILE_RE.match(path.name)
                if not match:
                    continue
                yield ResultKey(guild_id, phase, int(year_dir.name), int(match["week"]), match["clan"]), path

    def _scan_sync(self, guild_id: int, phase: int, clan: Optional[str]) -> List[Tuple[ResultKey, StoredResultRecord]]:
        found = []
        for key, path in self._iter_week_files(guild_id, phase):
            if clan is not None and key.clan != clan:
                continue
            record = self._read(path)
            if record is not None:
                found.append((key, record))
        return found

    def _list_weeks_sync(self, guild_id: int, phase: int) -> List[AvailableWeek]:
        weeks: Dict[Tuple[int, int], AvailableWeek] = {}
        for key, record in self._scan_sync(guild_id, phase, None):
            entry = weeks.get((key.year, key.week))
            if entry is None:
                weeks[(key.year, key.week)] = AvailableWeek(key.week, key.year, [key.clan], record.created_at)
                continue
            entry.clans.append(key.clan)
            if record.created_at and (not entry.created_at or record.created_at < entry.created_at):
                entry.created_at = record.created_at
        for entry in weeks.values():
            entry.clans.sort()
        return sorted(weeks.values(), key=lambda w: (w.year, w.week), reverse=True)
