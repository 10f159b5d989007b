import pytest

from scoreboard_bot.core.domain.models import MatchedReading
from scoreboard_bot.core.engines.aggregator import Aggregator
from scoreboard_bot.core.engines.conflict_resolver import PROMPT_CONFLICT, PROMPT_UNCERTAIN, ConflictResolver
from scoreboard_bot.core.errors import ConsistencyError, InputError


def r(member_id, nick, score, uncertain=False):
    return MatchedReading(member_id=member_id, nick=nick, score=score, uncertain=uncertain)


def test_overlapping_images_confirm_and_conflict():
    images = [
        [r(1, "Alice", 1200), r(3, "Carol", 900)],
        [r(1, "Alice", 1250), r(3, "Carol", 900)],
    ]

    reading_set = Aggregator().aggregate(images)

    assert [e.nick for e in reading_set] == ["Alice", "Carol"]
    assert [e.nick for e in reading_set.conflicts] == ["Alice"]
    assert reading_set.get(1).values == [1200, 1250]
    stats = reading_set.progress()
    assert (stats.unique_nicks, stats.confirmed, stats.conflicts, stats.unconfirmed) == (2, 1, 1, 0)


def test_repeat_inside_one_image_keeps_last_value_at_first_position():
    image = [r(1, "Alice", 100), r(2, "Bob", 5), r(1, "Alice", 150)]

    deduped = Aggregator.dedupe_image(image)

    assert [(x.nick, x.score) for x in deduped] == [("Alice", 150), ("Bob", 5)]
    assert not Aggregator().aggregate([image]).conflicts


def test_ranked_values_and_majority():
    images = [[r(1, "Alice", 10)], [r(1, "Alice", 20)], [r(1, "Alice", 20)]]
    entry = Aggregator().aggregate(images).get(1)

    assert entry.ranked_values() == [20, 10]
    assert entry.majority_value() == 20


def test_auto_resolution_only_when_enabled():
    images = [[r(1, "Alice", 10)], [r(1, "Alice", 20)], [r(1, "Alice", 20)]]

    assert Aggregator().auto_resolutions(Aggregator().aggregate(images)) == {}
    enabled = Aggregator(auto_resolve_majority=True)
    assert enabled.auto_resolutions(enabled.aggregate(images)) == {1: 20}


def test_resolver_walks_conflicts_before_uncertain_rows():
    images = [
        [r(1, "Alice", 1200), r(4, "Dave", 0, uncertain=True)],
        [r(1, "Alice", 1250)],
    ]
    resolver = ConflictResolver(Aggregator().aggregate(images))

    prompt = resolver.next_prompt()
    assert (prompt.kind, prompt.entry.nick, prompt.remaining) == (PROMPT_CONFLICT, "Alice", 2)
    resolver.resolve(1, 1250)

    prompt = resolver.next_prompt()
    assert (prompt.kind, prompt.entry.nick, prompt.remaining) == (PROMPT_UNCERTAIN, "Dave", 1)
    resolver.decide_uncertain(4, False)

    assert resolver.is_complete
    assert resolver.final_results().as_map() == {"Alice": 1250}


def test_included_uncertain_row_keeps_its_score():
    resolver = ConflictResolver(Aggregator().aggregate([[r(4, "Dave", 0, uncertain=True)]]))
    resolver.decide_uncertain(4, True)

    assert resolver.final_results().as_map() == {"Dave": 0}


def test_resolver_rejects_invalid_or_repeated_choices():
    resolver = ConflictResolver(Aggregator().aggregate([[r(1, "Alice", 1)], [r(1, "Alice", 2)]]))

    with pytest.raises(InputError):
        resolver.resolve(1, 3)
    with pytest.raises(InputError):
        resolver.resolve(2, 1)
    with pytest.raises(ConsistencyError):
        resolver.final_results()

    resolver.resolve(1, 2)
    with pytest.raises(ConsistencyError):
        resolver.resolve(1, 1)


def test_members_sharing_a_display_name_stay_separate():
    images = [
        [r(7, "Max", 500), r(8, "Max", 300)],
        [r(7, "Max", 500), r(8, "Max", 300)],
    ]

    reading_set = Aggregator().aggregate(images)

    assert len(reading_set) == 2
    assert [e.member_id for e in reading_set.find("Max")] == [7, 8]
    assert not reading_set.conflicts
    results = ConflictResolver(reading_set).final_results()
    assert [(p.member_id, p.score) for p in results.players] == [(7, 500), (8, 300)]


def test_resolve_choice_follows_button_order():
    images = [[r(1, "Alice", 10)], [r(1, "Alice", 20)], [r(1, "Alice", 20)]]
    resolver = ConflictResolver(Aggregator().aggregate(images))

    with pytest.raises(InputError):
        resolver.resolve_choice(1, 2)
    assert resolver.resolve_choice(1, 1) == 10
    assert resolver.final_results().as_map() == {"Alice": 10}
