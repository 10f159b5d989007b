from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, List, Optional

from scoreboard_bot.core.domain.models import FinalResults, PlayerScore
from scoreboard_bot.core.engines.aggregator import NickReadings, ReadingSet
from scoreboard_bot.core.errors import ConsistencyError, InputError

PROMPT_CONFLICT = "conflict"
PROMPT_UNCERTAIN = "uncertain"


@dataclass(frozen=True)
class ResolutionPrompt:
    kind: str
    entry: NickReadings
    remaining: int  # prompts still open, this one included


class ConflictResolver:
    """
    Walk the operator through score conflicts, then uncertain rows.

    Decisions are written into the ``resolved`` / ``included`` dicts handed in by
    the caller (the session) and are immutable once recorded.
    """

    def __init__(
        self,
        reading_set: ReadingSet,
        resolved: Optional[Dict[int, int]] = None,
        included: Optional[Dict[int, bool]] = None,
    ) -> None:
        self.reading_set = reading_set
        self.resolved = resolved if resolved is not None else {}
        self.included = included if included is not None else {}

    def pending_conflicts(self) -> List[NickReadings]:
        return [entry for entry in self.reading_set.conflicts if entry.member_id not in self.resolved]

    def pending_uncertain(self) -> List[NickReadings]:
        return [entry for entry in self.reading_set.uncertain if entry.member_id not in self.included]

    def next_prompt(self) -> Optional[ResolutionPrompt]:
        conflicts = self.pending_conflicts()
        uncertain = self.pending_uncertain()
        remaining = len(conflicts) + len(uncertain)
        if conflicts:
            return ResolutionPrompt(PROMPT_CONFLICT, conflicts[0], remaining)
        if uncertain:
            return ResolutionPrompt(PROMPT_UNCERTAIN, uncertain[0], remaining)
        return None

    @property
    def is_complete(self) -> bool:
        return self.next_prompt() is None

    def resolve(self, member_id: int, score: int) -> None:
        entry = self.reading_set.get(member_id)
        if entry is None or not entry.is_conflict:
            raise InputError(f"Member {member_id} has no conflicting scores", context={"member_id": member_id})
        if member_id in self.resolved:
            raise ConsistencyError(
                f"Score for '{entry.nick}' was already chosen ({self.resolved[member_id]})",
                context={"member_id": member_id, "nick": entry.nick},
            )
        if score not in entry.counts:
            raise InputError(
                f"{score} was not read for '{entry.nick}'; choose one of {', '.join(map(str, entry.values))}",
                context={"member_id": member_id, "score": score},
            )
        self.resolved[member_id] = score

    def resolve_choice(self, member_id: int, choice: int) -> int:
        """Resolve with the ``choice``-th offered button (``ranked_values`` order); returns the score."""
        entry = self.reading_set.get(member_id)
        ranked = entry.ranked_values() if entry is not None else []
        if not 0 <= choice < len(ranked):
            raise InputError("This button is no longer valid", context={"member_id": member_id, "choice": choice})
        self.resolve(member_id, ranked[choice])
        return ranked[choice]

    def decide_uncertain(self, member_id: int, include: bool) -> None:
        entry = self.reading_set.get(member_id)
        if entry is None or not entry.uncertain:
            raise InputError(f"Member {member_id} is not an uncertain row", context={"member_id": member_id})
        if member_id in self.included:
            raise ConsistencyError(f"'{entry.nick}' was already decided", context={"member_id": member_id})
        self.included[member_id] = bool(include)

    def final_results(self) -> FinalResults:
        """Exactly one score per member; refuses while any prompt is still open."""
        prompt = self.next_prompt()
        if prompt is not None:
            raise ConsistencyError(
                f"{prompt.remaining} decision(s) still open (next: {prompt.entry.nick})",
                context={"nick": prompt.entry.nick},
            )
        players: List[PlayerScore] = []
        for entry in self.reading_set:
            if entry.uncertain and not self.included.get(entry.member_id, True):
                continue
            score = self.resolved[entry.member_id] if entry.is_conflict else entry.values[0]
            players.append(PlayerScore(member_id=entry.member_id, display_name=entry.nick, score=score))
        return FinalResults(players=players)
