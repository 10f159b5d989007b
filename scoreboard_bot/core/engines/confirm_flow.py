"""
Session prompts.
Discord-agnostic payload builders for every step of the aggregation flow.

Each builder returns ``{'type', 'embed', 'components'}``. Button custom ids follow
``scoreboard:<session_id>:<action>[:<arg>...]``; the transport parses them back
with :func:`parse_custom_id`.
"""

from typing import Any, Dict, List, Optional, Sequence, Tuple

from scoreboard_bot.core.domain.models import FinalResults, ImageOutcome, Session
from scoreboard_bot.core.engines.aggregator import ProgressStats
from scoreboard_bot.core.engines.conflict_resolver import ResolutionPrompt
from scoreboard_bot.core.engines.statistics import (
    ProgressSummary,
    SummaryStats,
    delta_marker,
    progress_bar,
    render_bar,
)

CUSTOM_ID_PREFIX = "scoreboard"
EMBED_DESCRIPTION_LIMIT = 4000

COLOR_INFO = 0x3498DB  # Blue
COLOR_WARNING = 0xF39C12  # Orange
COLOR_SUCCESS = 0x2ECC71  # Green
COLOR_DANGER = 0xE74C3C  # Red


def custom_id(session_id: str, action: str, *args: Any) -> str:
    return ":".join([CUSTOM_ID_PREFIX, session_id, action, *(str(a) for a in args)])


def parse_custom_id(value: str) -> Optional[Tuple[str, str, List[str]]]:
    """
    Split a custom id into (session_id, action, args).

    Arguments are numbers or fixed words only (member ids, button indexes,
    ``yes``/``no``), so every id stays under Discord's 100 character limit
    whatever the players are called.
    """
    parts = value.split(":")
    if len(parts) < 3 or parts[0] != CUSTOM_ID_PREFIX:
        return None
    return parts[1], parts[2], parts[3:]


def _button(label: str, style: str, cid: str) -> Dict[str, Any]:
    return {'type': 'button', 'label': label, 'style': style, 'custom_id': cid}


def _phase_title(session: Session) -> str:
    title = f"Phase {session.phase} • {session.clan} • week {session.week_info.week}/{session.week_info.year}"
    if session.phase == 2:
        title += f" • round {session.current_round}/3"
    return title


def truncate_description(text: str, limit: int = EMBED_DESCRIPTION_LIMIT) -> str:
    if len(text) <= limit:
        return text
    return text[: limit - 2].rstrip() + "\n…"


def build_awaiting_images_payload(
    session: Session,
    clan_label: str,
    notices: Sequence[str] = (),
) -> Dict[str, Any]:
    """Ask the operator for leaderboard screenshots."""
    description = (
        f"Post screenshots of the **{clan_label}** leaderboard in this channel.\n"
        "You can send several images in one message; overlapping screenshots are merged."
    )
    if notices:
        description += "\n\n" + "\n".join(f"⚠️ {n}" for n in notices)
    return {
        'type': 'awaiting_images',
        'embed': {
            'title': f"📸 {_phase_title(session)}",
            'description': truncate_description(description),
            'color': COLOR_INFO,
        },
        'components': [
            _button('Cancel', 'danger', custom_id(session.session_id, 'cancel')),
        ],
    }


def build_overwrite_payload(session: Session, summary: Dict[str, Any]) -> Dict[str, Any]:
    """Warn that results for this week already exist."""
    return {
        'type': 'overwrite_warning',
        'embed': {
            'title': '⚠️ Results already stored',
            'description': (
                f"{_phase_title(session)} already has results "
                f"({summary.get('player_count', 0)} players, TOP30 {summary.get('top30_sum', 0):,}) "
                f"saved by <@{summary.get('created_by')}>.\n"
                "Continuing will replace them when you confirm."
            ),
            'color': COLOR_WARNING,
        },
        'components': [
            _button('Continue', 'primary', custom_id(session.session_id, 'confirm_overwrite')),
            _button('Cancel', 'danger', custom_id(session.session_id, 'cancel')),
        ],
    }


def build_progress_payload(
    session: Session,
    stats: ProgressStats,
    outcomes: Sequence[ImageOutcome],
) -> Dict[str, Any]:
    """Per-batch progress and the "done?" prompt."""
    ok = sum(1 for o in outcomes if o.ok)
    lines = [
        f"`{progress_bar(ok, len(outcomes))}` {ok}/{len(outcomes)} image(s) processed",
        "",
        f"👥 Unique nicks: **{stats.unique_nicks}**",
        f"✅ Confirmed: **{stats.confirmed}**",
        f"❓ Read once: **{stats.unconfirmed}**",
        f"⚔️ Conflicts: **{stats.conflicts}**",
        f"0️⃣ With zero: **{stats.zero_count}**",
    ]
    notices = [o.notice for o in outcomes if o.notice]
    if notices:
        lines.append("")
        lines.extend(f"⚠️ {n}" for n in notices)
    return {
        'type': 'awaiting_completion',
        'embed': {
            'title': f"📊 {_phase_title(session)}",
            'description': truncate_description("\n".join(lines)),
            'color': COLOR_INFO,
        },
        'components': [
            _button('Done', 'success', custom_id(session.session_id, 'done')),
            _button('Add more', 'secondary', custom_id(session.session_id, 'add_more')),
            _button('Cancel', 'danger', custom_id(session.session_id, 'cancel')),
        ],
    }


def build_conflict_payload(session: Session, prompt: ResolutionPrompt) -> Dict[str, Any]:
    """One conflicting nick with a button per distinct score (most frequent first)."""
    entry = prompt.entry
    lines = [f"**{entry.nick}** was read with different scores:"]
    for value in entry.ranked_values():
        lines.append(f"• {value:,} ({entry.counts[value]}× read)")
    lines.append("")
    lines.append(f"{prompt.remaining} decision(s) left")
    return {
        'type': 'conflict',
        'embed': {
            'title': '⚔️ Score conflict',
            'description': "\n".join(lines),
            'color': COLOR_WARNING,
        },
        'components': [
            _button(f"{value:,}", 'primary', custom_id(session.session_id, 'resolve', entry.member_id, index))
            for index, value in enumerate(entry.ranked_values()[:24])
        ] + [_button('Cancel', 'danger', custom_id(session.session_id, 'cancel'))],
    }


def build_uncertain_payload(session: Session, prompt: ResolutionPrompt) -> Dict[str, Any]:
    """Ask whether a low-confidence row belongs in the results."""
    entry = prompt.entry
    score = entry.values[0] if len(entry.values) == 1 else None
    detail = f" with {score:,}" if score is not None else ""
    return {
        'type': 'uncertain',
        'embed': {
            'title': '❔ Uncertain row',
            'description': (
                f"The recogniser was not sure about **{entry.nick}**{detail}.\n"
                f"Include {entry.nick}?\n\n{prompt.remaining} decision(s) left"
            ),
            'color': COLOR_WARNING,
        },
        'components': [
            _button('Yes', 'success', custom_id(session.session_id, 'include', entry.member_id, 'yes')),
            _button('No', 'danger', custom_id(session.session_id, 'include', entry.member_id, 'no')),
        ],
    }


def format_player_lines(
    results: FinalResults,
    stats: SummaryStats,
    historical_best: Optional[Dict[int, Optional[int]]] = None,
) -> List[str]:
    top = stats.sorted_players[0].score if stats.sorted_players else 0
    lines = []
    for position, player in enumerate(stats.sorted_players, start=1):
        marker = delta_marker(player.score, (historical_best or {}).get(player.member_id))
        lines.append(
            f"{position}. `{render_bar(player.score, top)}` {player.display_name} — {player.score:,} {marker}".rstrip()
        )
    return lines


def build_final_summary_payload(
    session: Session,
    results: FinalResults,
    stats: SummaryStats,
    progress: Optional[ProgressSummary] = None,
    historical_best: Optional[Dict[int, Optional[int]]] = None,
    *,
    phase2_total_top30: Optional[int] = None,
) -> Dict[str, Any]:
    """Final approval screen: ranking with bars and deltas plus TOP30 figures."""
    lines = format_player_lines(results, stats, historical_best)
    if not lines:
        lines = ["No players were recognised. Add screenshots or cancel."]

    fields = [
        {'name': '🏆 TOP30', 'value': f"{stats.top30_sum:,}", 'inline': True},
        {'name': '👥 Players', 'value': str(stats.player_count), 'inline': True},
        {'name': '0️⃣ Zero', 'value': str(stats.zero_count), 'inline': True},
    ]
    if progress is not None and (progress.total_progress or progress.total_regress):
        fields.append({'name': '📈 Progress', 'value': f"+{progress.total_progress:,}", 'inline': True})
        fields.append({'name': '📉 Regress', 'value': f"-{progress.total_regress:,}", 'inline': True})
    if phase2_total_top30 is not None:
        fields.append({'name': 'Σ TOP30 (rounds)', 'value': f"{phase2_total_top30:,}", 'inline': True})

    sid = session.session_id
    if session.phase == 2 and session.current_round < 3:
        components = [
            _button(f"Next round ({session.current_round + 1}/3)", 'success', custom_id(sid, 'phase2_next_round')),
            _button('Cancel', 'danger', custom_id(sid, 'cancel_commit')),
        ]
    else:
        components = [
            _button('Confirm', 'success', custom_id(sid, 'confirm_commit')),
            _button('Cancel', 'danger', custom_id(sid, 'cancel_commit')),
        ]

    return {
        'type': 'final_confirmation',
        'embed': {
            'title': f"✅ {_phase_title(session)}",
            'description': truncate_description("\n".join(lines)),
            'color': COLOR_SUCCESS,
            'fields': fields,
        },
        'components': components,
    }


def build_terminal_payload(kind: str, session: Session, message: str) -> Dict[str, Any]:
    """Single closing message for committed / cancelled / expired / failed sessions."""
    titles = {
        'committed': ('💾 Results saved', COLOR_SUCCESS),
        'cancelled': ('🛑 Session cancelled', COLOR_DANGER),
        'expired': ('⌛ Session timed out', COLOR_DANGER),
        'failed': ('❌ Session failed', COLOR_DANGER),
    }
    title, color = titles.get(kind, ('Session closed', COLOR_INFO))
    return {
        'type': kind,
        'embed': {
            'title': title,
            'description': f"{_phase_title(session)}\n{message}",
            'color': color,
        },
        'components': [],
    }


def build_queue_payload(position: int, ahead: int, holder_id: Optional[int]) -> Dict[str, Any]:
    """Shown to an operator who had to wait for the guild's active session."""
    holder = f"<@{holder_id}>" if holder_id else "another operator"
    return {
        'type': 'queued',
        'embed': {
            'title': '⏳ You are in the queue',
            'description': (
                f"{holder} is currently processing results.\n"
                f"Your position: **{position}** ({ahead} ahead of you). "
                "You will be pinged when it is your turn."
            ),
            'color': COLOR_WARNING,
        },
        'components': [],
    }
