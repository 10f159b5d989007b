from scoreboard_bot.core.domain.models import FinalResults, PlayerScore
from scoreboard_bot.core.engines.statistics import (
    compute_progress,
    delta_marker,
    phase2_total_top30,
    progress_bar,
    render_bar,
    sum_rounds,
    summarize,
    top_sum,
)


def results(*players):
    return FinalResults(players=[PlayerScore(i, name, score) for i, name, score in players])


def test_summary_counts_and_top30():
    stats = summarize(results((1, "Alice", 1200), (2, "Bob", 0)))

    assert stats.player_count == 2
    assert stats.zero_count == 1
    assert stats.above_zero == 1
    assert stats.top30_sum == 1200
    assert [p.display_name for p in stats.sorted_players] == ["Alice", "Bob"]


def test_top_sum_uses_thirty_highest():
    assert top_sum(range(1, 41)) == sum(range(11, 41))


def test_progress_against_historical_best():
    current = results((1, "Alice", 1300), (2, "Bob", 800), (3, "Carol", 0), (4, "Dave", 50))
    bests = {1: 1000, 2: 1000, 3: 500, 4: None}

    summary = compute_progress(current, bests)

    assert summary.total_progress == 300
    # zero scores do not count as regress
    assert summary.total_regress == 200
    assert [d.display_name for d in summary.top_progress] == ["Alice"]
    assert [d.display_name for d in summary.top_regress] == ["Bob"]
    assert summary.delta_for(4).delta is None


def test_delta_marker():
    assert delta_marker(1300, 1000) == "▲³⁰⁰"
    assert delta_marker(800, 1000) == "▼₂₀₀"
    assert delta_marker(0, 1000) == ""
    assert delta_marker(10, None) == ""
    assert delta_marker(10, 0) == ""


def test_phase2_totals_sum_round_top30s():
    rounds = [results((1, "Alice", 100)), results((1, "Alice", 200)), results((1, "Alice", 50), (2, "Bob", 5))]

    assert sum_rounds(rounds).as_map() == {"Alice": 350, "Bob": 5}
    assert phase2_total_top30(rounds) == 355


def test_bars():
    assert render_bar(0, 100, width=4) == "░░░░"
    assert render_bar(100, 100, width=4) == "████"
    assert progress_bar(1, 2, width=10) == "█████░░░░░"
    assert progress_bar(0, 0, width=3) == "░░░"
