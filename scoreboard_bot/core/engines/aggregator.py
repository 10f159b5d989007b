from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Sequence

from scoreboard_bot.core.domain.models import MatchedReading


@dataclass
class NickReadings:
    """All readings of one roster member across a session's images; ``nick`` is what the operator sees."""

    nick: str
    member_id: int
    counts: Dict[int, int] = field(default_factory=dict)  # score -> number of images, first-seen order
    uncertain: bool = False

    @property
    def values(self) -> List[int]:
        return list(self.counts)

    @property
    def readings(self) -> int:
        return sum(self.counts.values())

    @property
    def is_conflict(self) -> bool:
        return len(self.counts) > 1

    @property
    def is_confirmed(self) -> bool:
        """Read on two or more images with a single value."""
        return not self.is_conflict and self.readings >= 2

    def ranked_values(self) -> List[int]:
        """Distinct scores ordered by how often they were read (ties keep first-seen order)."""
        return sorted(self.counts, key=lambda value: -self.counts[value])

    def majority_value(self) -> Optional[int]:
        """The only value read at least twice, if exactly one such value exists."""
        repeated = [value for value, count in self.counts.items() if count >= 2]
        return repeated[0] if len(repeated) == 1 else None


@dataclass
class ProgressStats:
    unique_nicks: int = 0
    confirmed: int = 0
    unconfirmed: int = 0
    conflicts: int = 0
    zero_count: int = 0


class ReadingSet:
    """``member -> score multiset``, iterated in order of first appearance."""

    def __init__(self) -> None:
        self._entries: Dict[int, NickReadings] = {}

    def add(self, reading: MatchedReading) -> None:
        entry = self._entries.get(reading.member_id)
        if entry is None:
            entry = NickReadings(nick=reading.nick, member_id=reading.member_id)
            self._entries[reading.member_id] = entry
        entry.counts[reading.score] = entry.counts.get(reading.score, 0) + 1
        entry.uncertain = entry.uncertain or reading.uncertain

    def __iter__(self):
        return iter(self._entries.values())

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, member_id: object) -> bool:
        return member_id in self._entries

    def get(self, member_id: int) -> Optional[NickReadings]:
        return self._entries.get(member_id)

    def find(self, nick: str) -> List[NickReadings]:
        """Entries shown as ``nick``; more than one when members share a display name."""
        return [entry for entry in self._entries.values() if entry.nick == nick]

    @property
    def conflicts(self) -> List[NickReadings]:
        return [entry for entry in self._entries.values() if entry.is_conflict]

    @property
    def uncertain(self) -> List[NickReadings]:
        return [entry for entry in self._entries.values() if entry.uncertain]

    def progress(self) -> ProgressStats:
        stats = ProgressStats(unique_nicks=len(self._entries))
        for entry in self._entries.values():
            if entry.is_conflict:
                stats.conflicts += 1
            elif entry.is_confirmed:
                stats.confirmed += 1
            else:
                stats.unconfirmed += 1
            if 0 in entry.counts:
                stats.zero_count += 1
        return stats


class Aggregator:
    """Merge per-image matched readings into a ReadingSet."""

    def __init__(self, *, auto_resolve_majority: bool = False) -> None:
        self.auto_resolve_majority = auto_resolve_majority

    def aggregate(self, images: Iterable[Sequence[MatchedReading]]) -> ReadingSet:
        reading_set = ReadingSet()
        for image in images:
            for reading in self.dedupe_image(image):
                reading_set.add(reading)
        return reading_set

    @staticmethod
    def dedupe_image(image: Sequence[MatchedReading]) -> List[MatchedReading]:
        """Collapse repeats of a member inside one image; the last occurrence wins, first position kept."""
        latest: Dict[int, MatchedReading] = {}
        for reading in image:
            latest[reading.member_id] = reading
        return list(latest.values())

    def auto_resolutions(self, reading_set: ReadingSet) -> Dict[int, int]:
        """Conflicts settled by a clear majority when ``auto_resolve_majority`` is on."""
        if not self.auto_resolve_majority:
            return {}
        resolved: Dict[int, int] = {}
        for entry in reading_set.conflicts:
            value = entry.majority_value()
            if value is not None:
                resolved[entry.member_id] = value
        return resolved
