"""
Stored-results report shown by ``/results``.

Phase 1 ranks the week's players with bars and deltas against each player's
historical best, lists the TOP-3 progress and regress and compares TOP-30 with
the previous stored week. Phase 2 ranks the summed scores and lists each
round's TOP-30.
"""
from __future__ import annotations

from typing import Any, Dict, List, Optional

from scoreboard_bot.core.domain.models import FinalResults
from scoreboard_bot.core.engines.base.logging_utils import get_logger
from scoreboard_bot.core.engines.confirm_flow import COLOR_INFO, format_player_lines, truncate_description
from scoreboard_bot.core.engines.result_store import ResultKey, ResultStore, StoredResultRecord
from scoreboard_bot.core.engines.statistics import PlayerDelta, compute_progress, summarize, top_sum
from scoreboard_bot.core.errors import InputError

logger = get_logger("results_report")


def _delta_lines(entries: List[PlayerDelta], sign: str) -> str:
    if not entries:
        return "—"
    return "\n".join(f"{entry.display_name}: {sign}{abs(entry.delta or 0):,}" for entry in entries)


class ResultsReport:
    """Builds the report payload for one stored (guild, phase, week, clan)."""

    def __init__(self, store: ResultStore) -> None:
        self.store = store

    async def build(
        self,
        guild_id: int,
        phase: int,
        clan: str,
        week: int,
        year: int,
        *,
        clan_label: Optional[str] = None,
    ) -> Dict[str, Any]:
        key = ResultKey(guild_id, phase, year, week, clan)
        if phase == 2:
            record = await self.store.get_phase2(guild_id, week, year, clan)
        else:
            record = await self.store.get(key)
        if record is None:
            raise InputError(f"No phase {phase} results for {clan_label or clan}, week {week}/{year}")
        title = f"🏆 Phase {phase} • {clan_label or clan} • week {week}/{year}"
        if phase == 1:
            embed = await self._phase1_embed(key, record)
        else:
            embed = self._phase2_embed(record)
        embed['title'] = title
        embed['color'] = COLOR_INFO
        embed['footer'] = f"Saved by {record.created_by} • {record.updated_at or record.created_at}"
        logger.debug("Report built for %s", key.relative_path())
        return {'type': 'results_report', 'embed': embed, 'components': []}

    async def _phase1_embed(self, key: ResultKey, record: StoredResultRecord) -> Dict[str, Any]:
        results = FinalResults(players=list(record.players))
        stats = summarize(results)
        bests = await self.store.historical_bests(
            key.guild_id, key.clan, [p.member_id for p in results.players], key.week, key.year
        )
        progress = compute_progress(results, bests)
        previous = await self.store.previous_week_top30(key.guild_id, key.clan, key.week, key.year)

        top30 = f"{stats.top30_sum:,}"
        if previous is not None:
            diff = stats.top30_sum - previous
            top30 += f" ({'+' if diff >= 0 else '-'}{abs(diff):,} vs previous week)"
        fields = [
            {'name': '🏆 TOP30', 'value': top30, 'inline': False},
            {'name': '📈 TOP3 progress', 'value': _delta_lines(progress.top_progress, '+'), 'inline': True},
            {'name': '📉 TOP3 regress', 'value': _delta_lines(progress.top_regress, '-'), 'inline': True},
            {
                'name': 'Σ Progress / regress',
                'value': f"+{progress.total_progress:,} / -{progress.total_regress:,}",
                'inline': False,
            },
            {'name': '0️⃣ Zero', 'value': str(stats.zero_count), 'inline': True},
        ]
        return {
            'description': truncate_description("\n".join(format_player_lines(results, stats, bests)) or "No players"),
            'fields': fields,
        }

    @staticmethod
    def _phase2_embed(record: StoredResultRecord) -> Dict[str, Any]:
        results = FinalResults(players=record.ranked_players)
        stats = summarize(results)
        fields = [
            {'name': f"Round {r.round} TOP30", 'value': f"{top_sum(p.score for p in r.players):,}", 'inline': True}
            for r in record.rounds or []
        ]
        fields.append({'name': 'Σ TOP30', 'value': f"{record.top30_sum():,}", 'inline': False})
        fields.append({'name': '0️⃣ Zero', 'value': str(stats.zero_count), 'inline': True})
        return {
            'description': truncate_description("\n".join(format_player_lines(results, stats)) or "No players"),
            'fields': fields,
        }
