"""
Score statistics and the small text renderers used in summaries.

TOP-30 is the sum of the 30 highest scores. Historical deltas compare a player's
score with their best earlier phase-1 score for the same clan; players without a
positive earlier best have no delta.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Mapping, Optional, Sequence

from scoreboard_bot.core.domain.models import FinalResults, PlayerScore

TOP_N = 30
RESULT_BAR_WIDTH = 16
PROGRESS_BAR_WIDTH = 20
BAR_FULL = "█"
BAR_EMPTY = "░"

_SUPERSCRIPT = str.maketrans("0123456789", "⁰¹²³⁴⁵⁶⁷⁸⁹")
_SUBSCRIPT = str.maketrans("0123456789", "₀₁₂₃₄₅₆₇₈₉")


@dataclass
class SummaryStats:
    player_count: int
    above_zero: int
    zero_count: int
    top30_sum: int
    sorted_players: List[PlayerScore] = field(default_factory=list)


@dataclass
class PlayerDelta:
    member_id: int
    display_name: str
    score: int
    best: Optional[int]
    delta: Optional[int]


@dataclass
class ProgressSummary:
    deltas: List[PlayerDelta] = field(default_factory=list)
    total_progress: int = 0
    total_regress: int = 0
    top_progress: List[PlayerDelta] = field(default_factory=list)
    top_regress: List[PlayerDelta] = field(default_factory=list)

    def delta_for(self, member_id: int) -> Optional[PlayerDelta]:
        for entry in self.deltas:
            if entry.member_id == member_id:
                return entry
        return None


def top_sum(scores: Iterable[int], n: int = TOP_N) -> int:
    return sum(sorted(scores, reverse=True)[:n])


def sort_players(players: Iterable[PlayerScore]) -> List[PlayerScore]:
    """Highest score first; equal scores keep their incoming order."""
    return sorted(players, key=lambda p: -p.score)


def summarize(results: FinalResults) -> SummaryStats:
    scores = results.scores()
    zero_count = sum(1 for s in scores if s == 0)
    return SummaryStats(
        player_count=len(scores),
        above_zero=len(scores) - zero_count,
        zero_count=zero_count,
        top30_sum=top_sum(scores),
        sorted_players=sort_players(results.players),
    )


def compute_progress(results: FinalResults, historical_best: Mapping[int, Optional[int]], *, top: int = 3) -> ProgressSummary:
    """
    Deltas against historical bests.

    ``historical_best`` maps member_id to the best earlier score (None or 0 means no history).
    """
    summary = ProgressSummary()
    for player in results.players:
        best = historical_best.get(player.member_id)
        delta = player.score - best if best is not None and best > 0 else None
        entry = PlayerDelta(player.member_id, player.display_name, player.score, best, delta)
        summary.deltas.append(entry)
        if delta is None:
            continue
        if delta > 0:
            summary.total_progress += delta
        elif delta < 0 and player.score > 0:
            summary.total_regress += -delta

    progressed = [d for d in summary.deltas if d.delta is not None and d.delta > 0]
    regressed = [d for d in summary.deltas if d.delta is not None and d.delta < 0 and d.score > 0]
    summary.top_progress = sorted(progressed, key=lambda d: -d.delta)[:top]
    summary.top_regress = sorted(regressed, key=lambda d: d.delta)[:top]
    return summary


def sum_rounds(rounds: Sequence[FinalResults]) -> FinalResults:
    """Per-member sum across rounds; the display name comes from the member's latest round."""
    totals: Dict[int, PlayerScore] = {}
    for round_results in rounds:
        for player in round_results.players:
            current = totals.get(player.member_id)
            if current is None:
                totals[player.member_id] = PlayerScore(player.member_id, player.display_name, player.score)
            else:
                current.score += player.score
                current.display_name = player.display_name
    return FinalResults(players=list(totals.values()))


def phase2_total_top30(rounds: Sequence[FinalResults]) -> int:
    """Sum of each round's TOP-30, not the TOP-30 of the summed scores."""
    return sum(top_sum(r.scores()) for r in rounds)


def superscript(value: int) -> str:
    return str(value).translate(_SUPERSCRIPT)


def subscript(value: int) -> str:
    return str(value).translate(_SUBSCRIPT)


def delta_marker(score: int, best: Optional[int]) -> str:
    """``▲¹²`` for progress over a positive best, ``▼₃₄`` for regress of a non-zero score."""
    if best is None or best <= 0:
        return ""
    delta = score - best
    if delta > 0:
        return f"▲{superscript(delta)}"
    if delta < 0 and score > 0:
        return f"▼{subscript(-delta)}"
    return ""


def render_bar(value: int, maximum: int, width: int = RESULT_BAR_WIDTH) -> str:
    if maximum <= 0 or value <= 0:
        return BAR_EMPTY * width
    filled = max(1, round(width * min(value, maximum) / maximum))
    return BAR_FULL * filled + BAR_EMPTY * (width - filled)


def progress_bar(done: int, total: int, width: int = PROGRESS_BAR_WIDTH) -> str:
    if total <= 0:
        return BAR_EMPTY * width
    filled = min(width, round(width * done / total))
    return BAR_FULL * filled + BAR_EMPTY * (width - filled)
