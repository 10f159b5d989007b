from datetime import datetime, timezone

from scoreboard_bot.core.domain.models import FinalResults, PlayerScore, Session, WeekInfo
from scoreboard_bot.core.engines.aggregator import NickReadings
from scoreboard_bot.core.engines.confirm_flow import (
    EMBED_DESCRIPTION_LIMIT,
    build_conflict_payload,
    build_final_summary_payload,
    build_uncertain_payload,
    custom_id,
    format_player_lines,
    parse_custom_id,
    truncate_description,
)
from scoreboard_bot.core.engines.conflict_resolver import PROMPT_CONFLICT, PROMPT_UNCERTAIN, ResolutionPrompt
from scoreboard_bot.core.engines.statistics import summarize


def make_session(phase=1, current_round=1):
    return Session(
        session_id="100-42-1",
        guild_id=100,
        operator_id=42,
        phase=phase,
        clan="clan1",
        week_info=WeekInfo(2024, 12),
        created_at=datetime(2024, 3, 20, tzinfo=timezone.utc),
        current_round=current_round,
    )


def test_custom_id_round_trip():
    value = custom_id("100-42-1", "include", 4, "yes")

    assert value == "scoreboard:100-42-1:include:4:yes"
    assert parse_custom_id(value) == ("100-42-1", "include", ["4", "yes"])
    assert parse_custom_id("scoreboard:100-42-1:done") == ("100-42-1", "done", [])
    assert parse_custom_id("help:menu:x") is None
    assert parse_custom_id("scoreboard") is None


def test_prompt_button_ids_fit_discord_limit_with_long_names_and_ids():
    session = make_session()
    session.session_id = "1234567890123456789-987654321098765432-1760000000000"
    nick = "Ω" * 16 + "Dr:Who_" + "x" * 9
    entry = NickReadings(nick=nick, member_id=12345678901234567890, counts={v: 1 for v in range(1_000_000_000, 1_000_000_024)})
    uncertain = NickReadings(nick=nick, member_id=12345678901234567890, counts={0: 1}, uncertain=True)

    conflict = build_conflict_payload(session, ResolutionPrompt(PROMPT_CONFLICT, entry, 2))
    question = build_uncertain_payload(session, ResolutionPrompt(PROMPT_UNCERTAIN, uncertain, 1))

    ids = [c["custom_id"] for c in conflict["components"] + question["components"]]
    assert len(ids) == 27
    assert all(len(value) <= 100 for value in ids)
    assert parse_custom_id(ids[23]) == (session.session_id, "resolve", ["12345678901234567890", "23"])
    assert nick in conflict["embed"]["description"]


def test_truncate_description():
    text = "x" * (EMBED_DESCRIPTION_LIMIT + 10)

    assert len(truncate_description(text)) <= EMBED_DESCRIPTION_LIMIT
    assert truncate_description("short") == "short"


def test_player_lines_are_ranked_with_delta_markers():
    results = FinalResults([PlayerScore(1, "Bob", 800), PlayerScore(2, "Alice", 1300)])

    lines = format_player_lines(results, summarize(results), {1: 1000, 2: 1000})

    assert lines[0].startswith("1. `") and "Alice — 1,300 ▲³⁰⁰" in lines[0]
    assert lines[1].endswith("Bob — 800 ▼₂₀₀")


def test_final_summary_buttons_depend_on_phase_and_round():
    results = FinalResults([PlayerScore(1, "Alice", 10)])
    stats = summarize(results)

    phase1 = build_final_summary_payload(make_session(), results, stats)
    round1 = build_final_summary_payload(make_session(phase=2, current_round=1), results, stats, phase2_total_top30=10)
    round3 = build_final_summary_payload(make_session(phase=2, current_round=3), results, stats, phase2_total_top30=30)

    def actions(payload):
        return [parse_custom_id(c["custom_id"])[1] for c in payload["components"]]

    assert actions(phase1) == ["confirm_commit", "cancel_commit"]
    assert actions(round1) == ["phase2_next_round", "cancel_commit"]
    assert actions(round3) == ["confirm_commit", "cancel_commit"]
    assert "round 3/3" in round3["embed"]["title"]
