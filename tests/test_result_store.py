import asyncio
import json
import os

import pytest

from scoreboard_bot.core.domain.models import FinalResults, PlayerScore
from scoreboard_bot.core.engines.result_store import ResultKey, ResultStore, StoredResultRecord
from scoreboard_bot.core.errors import ConsistencyError, CorruptRecordError, InputError, StorageError


def results(*players):
    return FinalResults(players=[PlayerScore(i, name, score) for i, name, score in players])


@pytest.mark.asyncio
async def test_phase1_round_trip_and_layout(store, tmp_path):
    key = ResultKey(7, 1, 2024, 12, "clan1")

    await store.save_phase1(key, results((1, "Alice", 1200), (2, "Bob", 0)), created_by=42)

    path = tmp_path / "data" / "phases" / "guild_7" / "phase1" / "2024" / "week-12_clan1.json"
    data = json.loads(path.read_text(encoding="utf-8"))
    assert data["players"][0] == {"memberId": 1, "displayName": "Alice", "score": 1200}
    assert data["createdBy"] == 42
    record = await store.get(key)
    assert record.top30_sum() == 1200
    assert not list(path.parent.glob("*.tmp"))


@pytest.mark.asyncio
async def test_phase2_edit_recomputes_summary_and_keeps_creator(store):
    key = ResultKey(7, 2, 2024, 12, "clan1")
    rounds = [results((1, "Alice", 100)), results((1, "Alice", 200)), results((1, "Alice", 50))]
    await store.save_phase2(key, rounds, created_by=42)

    old, record = await store.update_player_score(key, 1, 250, round_number=2)

    assert old == 200
    assert [(p.display_name, p.score) for p in record.summary] == [("Alice", 400)]
    stored = await store.get(key)
    assert stored.created_by == 42
    assert stored.updated_at is not None
    assert stored.summary[0].score == 400


@pytest.mark.asyncio
async def test_overwrite_preserves_original_creator(store):
    key = ResultKey(7, 1, 2024, 12, "clan1")
    await store.save_phase1(key, results((1, "Alice", 10)), created_by=42)

    record = await store.save_phase1(key, results((1, "Alice", 20)), created_by=99)

    assert record.created_by == 42
    assert (await store.phase_summary(key))["top30_sum"] == 20


@pytest.mark.asyncio
async def test_phase2_requires_three_rounds(store):
    key = ResultKey(7, 2, 2024, 12, "clan1")

    with pytest.raises(ConsistencyError):
        await store.save_phase2(key, [results((1, "Alice", 1))], created_by=1)


@pytest.mark.asyncio
async def test_edit_validation(store):
    key = ResultKey(7, 1, 2024, 12, "clan1")
    with pytest.raises(InputError):
        await store.update_player_score(key, 1, 5)

    await store.save_phase1(key, results((1, "Alice", 10)), created_by=1)
    with pytest.raises(InputError):
        await store.update_player_score(key, 1, -5)
    with pytest.raises(InputError):
        await store.update_player_score(key, 2, 5)
    with pytest.raises(InputError):
        await store.add_player(key, PlayerScore(1, "Alice", 3))

    record = await store.add_player(key, PlayerScore(2, "Bob", 30))
    assert record.top30_sum() == 40


@pytest.mark.asyncio
async def test_historical_best_excludes_current_week(store):
    for week, score in ((10, 500), (11, 900), (12, 700)):
        await store.save_phase1(ResultKey(7, 1, 2024, week, "clan1"), results((1, "Alice", score)), created_by=1)
    await store.save_phase1(ResultKey(7, 1, 2024, 11, "clan2"), results((1, "Alice", 5000)), created_by=1)

    assert await store.historical_best(7, 1, 11, 2024, "clan1") == 700
    assert await store.historical_best(7, 1, 13, 2024, "clan1") == 900
    assert await store.historical_best(7, 2, 13, 2024, "clan1") is None
    assert await store.previous_week_top30(7, "clan1", 12, 2024) == 900


@pytest.mark.asyncio
async def test_list_available_weeks_newest_first(store):
    await store.save_phase1(ResultKey(7, 1, 2023, 52, "clan1"), results((1, "Alice", 1)), created_by=1)
    await store.save_phase1(ResultKey(7, 1, 2024, 2, "clan1"), results((1, "Alice", 1)), created_by=1)
    await store.save_phase1(ResultKey(7, 1, 2024, 2, "clan2"), results((1, "Alice", 1)), created_by=1)

    weeks = await store.list_available_weeks(7, 1)

    assert [(w.week, w.year) for w in weeks] == [(2, 2024), (52, 2023)]
    assert sorted(weeks[0].clans) == ["clan1", "clan2"]


@pytest.mark.asyncio
async def test_corrupt_record_is_reported(store):
    key = ResultKey(7, 1, 2024, 12, "clan1")
    path = store.path_for(key)
    path.parent.mkdir(parents=True)
    path.write_text("{not json", encoding="utf-8")

    with pytest.raises(CorruptRecordError):
        await store.get(key)


@pytest.mark.asyncio
async def test_migrate_legacy_files(tmp_path):
    legacy_dir = tmp_path / "legacy"
    legacy_dir.mkdir()
    (legacy_dir / "phase1_results.json").write_text(
        json.dumps(
            {
                "7": {
                    "12-2024": {
                        "clan1": {
                            "players": [{"userId": 1, "displayName": "Alice", "score": 10}],
                            "createdAt": "2024-03-20T10:00:00+00:00",
                            "createdBy": 42,
                        }
                    }
                }
            }
        ),
        encoding="utf-8",
    )
    store = ResultStore(tmp_path / "data")

    counts = await store.migrate_legacy(legacy_dir)

    assert counts == {"phase1": 1, "phase2": 0, "errors": 0}
    record = await store.get(ResultKey(7, 1, 2024, 12, "clan1"))
    assert record.players[0].member_id == 1
    assert (legacy_dir / "phase1_results.json.backup").exists()


@pytest.mark.asyncio
@pytest.mark.parametrize("phase", [1, 2])
async def test_stored_record_reads_back_equal(store, phase):
    key = ResultKey(7, phase, 2024, 12, "clan1")
    if phase == 1:
        record = StoredResultRecord.phase1(key, results((1, "Alice", 1200), (5, "Żółw_123", 0)), created_by=42)
    else:
        record = StoredResultRecord.phase2(
            key,
            [results((1, "Alice", 100), (2, "Bob", 5)), results((1, "Alice", 200)), results((2, "Bob", 50))],
            created_by=42,
        )
    record.updated_at = "2024-03-21T08:00:00+00:00"

    await store.put(key, record)

    assert await store.get(key) == record
    if phase == 2:
        assert await store.get_phase2(7, 12, 2024, "clan1") == record


@pytest.mark.asyncio
async def test_failed_write_keeps_previous_record(store, monkeypatch):
    key = ResultKey(7, 1, 2024, 12, "clan1")
    await store.save_phase1(key, results((1, "Alice", 10)), created_by=42)
    before = store.path_for(key).read_bytes()

    def broken_replace(src, dst):
        raise OSError("disk full")

    monkeypatch.setattr(os, "replace", broken_replace)
    with pytest.raises(StorageError):
        await store.save_phase1(key, results((1, "Alice", 99)), created_by=42)
    monkeypatch.undo()

    assert store.path_for(key).read_bytes() == before
    assert not list(store.path_for(key).parent.glob("*.tmp"))
    assert (await store.get(key)).players[0].score == 10


@pytest.mark.asyncio
async def test_concurrent_edits_of_one_week_all_persist(store):
    key = ResultKey(7, 2, 2024, 12, "clan1")
    rounds = [results((1, "Alice", 100), (2, "Bob", 10)), results((1, "Alice", 200)), results((1, "Alice", 50))]
    await store.save_phase2(key, rounds, created_by=42)

    await asyncio.gather(
        store.update_player_score(key, 1, 111, round_number=1),
        store.update_player_score(key, 1, 222, round_number=2),
        store.update_player_score(key, 2, 20, round_number=1),
        store.add_player(key, PlayerScore(3, "Carol", 7), round_number=3),
    )

    stored = await store.get(key)
    assert [[(p.member_id, p.score) for p in r.players] for r in stored.rounds] == [
        [(1, 111), (2, 20)],
        [(1, 222)],
        [(1, 50), (3, 7)],
    ]
    assert {p.member_id: p.score for p in stored.summary} == {1: 383, 2: 20, 3: 7}
