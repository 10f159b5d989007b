import types
from unittest.mock import AsyncMock, MagicMock

import discord
import pytest

from scoreboard_bot.cogs.phase_cog import PhaseCog, build_embed
from scoreboard_bot.core.domain.models import Decision, DecisionType, FinalResults, OutboundEvent, PlayerScore
from scoreboard_bot.core.engines.result_store import ResultKey, ResultStore
from scoreboard_bot.core.engines.session_manager import ImageBatch
from scoreboard_bot.core.errors import InputError, StorageError
from scoreboard_bot.core.event_bus import EventBus
from scoreboard_bot.core.event_topics import SESSION_EXPIRED

PAYLOAD = {
    "type": "final_confirmation",
    "embed": {
        "title": "Phase 1",
        "description": "1. Alice — 1,200",
        "color": 0x2ECC71,
        "fields": [{"name": "🏆 TOP30", "value": "1,200", "inline": True}],
        "footer": "saved",
    },
    "components": [
        {"type": "button", "label": "Confirm", "style": "success", "custom_id": "scoreboard:s1:confirm_commit"},
    ],
}


def make_channel():
    channel = MagicMock()
    channel.id = 9
    channel.send = AsyncMock(return_value=MagicMock(id=77, edit=AsyncMock()))
    return channel


@pytest.fixture()
def cog():
    bot = MagicMock()
    sessions = MagicMock()
    sessions.get_session.return_value = None
    return PhaseCog(
        bot,
        session_manager=sessions,
        store=MagicMock(),
        report=MagicMock(),
        configs=MagicMock(),
        event_bus=EventBus(),
    )


def test_build_embed_maps_payload():
    embed = build_embed(PAYLOAD)

    assert embed.title == "Phase 1"
    assert embed.fields[0].name == "🏆 TOP30"
    assert embed.footer.text == "saved"


@pytest.mark.asyncio
async def test_button_press_becomes_operator_decision(cog):
    channel = make_channel()
    cog.sessions.operator_decision = AsyncMock(return_value=[OutboundEvent("final_confirmation", "s1", PAYLOAD)])
    interaction = MagicMock()
    interaction.user = types.SimpleNamespace(id=42)
    interaction.channel = channel
    interaction.response.defer = AsyncMock()

    await cog.handle_component(interaction, "scoreboard:s1:resolve:1:0")

    session_id, decision = cog.sessions.operator_decision.await_args.args
    assert session_id == "s1"
    assert decision == Decision(DecisionType.RESOLVE, member_id=1, choice=0)
    kwargs = channel.send.await_args.kwargs
    assert kwargs["embed"].title == "Phase 1"
    assert isinstance(kwargs["view"], discord.ui.View)


@pytest.mark.asyncio
async def test_malformed_button_is_rejected_without_a_decision(cog):
    cog.sessions.operator_decision = AsyncMock()
    interaction = MagicMock()
    interaction.response.send_message = AsyncMock()

    await cog.handle_component(interaction, "scoreboard:s1:include:yes:Dave")

    cog.sessions.operator_decision.assert_not_awaited()
    assert interaction.response.send_message.await_args.args == ("This button is no longer valid.",)


@pytest.mark.asyncio
async def test_terminal_events_are_left_to_the_bus(cog):
    channel = make_channel()

    await cog._render(channel, "s1", 42, [OutboundEvent("committed", "s1", PAYLOAD)])

    channel.send.assert_not_awaited()


@pytest.mark.asyncio
async def test_operator_screenshots_are_submitted(cog):
    channel = make_channel()
    session = types.SimpleNamespace(session_id="s1", operator_id=42, channel_id=9)
    cog.sessions.session_for.return_value = session
    cog.sessions.submit_images = AsyncMock(
        return_value=ImageBatch(events=[OutboundEvent("awaiting_completion", "s1", PAYLOAD)])
    )
    message = MagicMock()
    message.author = types.SimpleNamespace(id=42, bot=False)
    message.guild = types.SimpleNamespace(id=100)
    message.channel = channel
    message.attachments = [
        types.SimpleNamespace(url="https://cdn.test/a.png", content_type="image/png"),
        types.SimpleNamespace(url="https://cdn.test/notes.txt", content_type="text/plain"),
    ]

    await cog.on_message(message)

    cog.sessions.submit_images.assert_awaited_once_with("s1", ["https://cdn.test/a.png"])
    channel.send.assert_awaited()


@pytest.mark.asyncio
async def test_expired_session_is_announced_in_its_channel(cog):
    channel = make_channel()
    cog.bot.get_channel.return_value = channel

    await cog.event_bus.emit(SESSION_EXPIRED, session_id="s1", guild_id=100, operator_id=42, channel_id=9, payload=PAYLOAD)

    cog.bot.get_channel.assert_called_with(9)
    assert channel.send.await_args.kwargs["embed"].title == "Phase 1"


@pytest.mark.asyncio
async def test_results_storage_failure_reaches_error_engine(cog):
    cog.configs.get.return_value = types.SimpleNamespace(timezone="UTC", clan_label=lambda clan: clan.upper())
    cog.report.build = AsyncMock(side_effect=StorageError("Cannot read results"))
    cog.error_engine = MagicMock(log_error=AsyncMock())
    interaction = MagicMock()
    interaction.guild_id = 100
    interaction.user = types.SimpleNamespace(id=42)
    interaction.response.defer = AsyncMock()
    interaction.response.is_done.return_value = True
    interaction.followup.send = AsyncMock()

    await PhaseCog.results.callback(cog, interaction, 1, "clan1", "5-2026")

    cog.report.build.assert_awaited_once_with(100, 1, "clan1", 5, 2026, clan_label="CLAN1")
    assert cog.error_engine.log_error.await_args.kwargs["context"] == "phase_cog.results"
    interaction.followup.send.assert_awaited_once_with("❌ Cannot read results", ephemeral=True)


async def stored_weeks(tmp_path):
    store = ResultStore(tmp_path / "data")
    rows = FinalResults([PlayerScore(1, "Alice", 10)])
    await store.save_phase1(ResultKey(100, 1, 2023, 52, "clan1"), rows, created_by=1)
    await store.save_phase1(ResultKey(100, 1, 2024, 2, "clan2"), rows, created_by=1)
    await store.save_phase1(ResultKey(100, 1, 2024, 3, "clan1"), rows, created_by=1)
    await store.save_phase2(ResultKey(100, 2, 2024, 4, "clan1"), [rows, rows, rows], created_by=1)
    return store


@pytest.mark.asyncio
async def test_week_autocomplete_lists_stored_weeks_of_clan_and_phase(cog, tmp_path):
    cog.store = await stored_weeks(tmp_path)
    interaction = MagicMock()
    interaction.guild_id = 100
    interaction.namespace = types.SimpleNamespace(phase=1, clan="clan1")

    choices = await cog._week_autocomplete(interaction, "")

    assert [c.value for c in choices] == ["3-2024", "52-2023"]
    assert choices[0].name == "Week 3/2024 (clan1)"
    assert [c.value for c in await cog._week_autocomplete(interaction, "52")] == ["52-2023"]

    interaction.namespace = types.SimpleNamespace(phase=2, clan="clan1")
    assert [c.value for c in await cog._week_autocomplete(interaction, "")] == ["4-2024"]


@pytest.mark.asyncio
async def test_modify_without_week_edits_newest_stored_week(cog, tmp_path):
    cog.store = await stored_weeks(tmp_path)
    cog.configs.get.return_value = types.SimpleNamespace(timezone="UTC")
    cog._is_authorised = lambda member, guild_id: True
    interaction = MagicMock()
    interaction.guild_id = 100
    interaction.user = types.SimpleNamespace(id=42)
    interaction.response.defer = AsyncMock()
    interaction.followup.send = AsyncMock()
    player = types.SimpleNamespace(id=1, display_name="Alice")

    await PhaseCog.modify.callback(cog, interaction, 1, "clan1", player, 99)

    assert (await cog.store.get(ResultKey(100, 1, 2024, 3, "clan1"))).players[0].score == 99
    assert (await cog.store.get(ResultKey(100, 1, 2023, 52, "clan1"))).players[0].score == 10
    assert "week 3/2024" in interaction.followup.send.await_args.args[0]


@pytest.mark.asyncio
async def test_unknown_week_is_rejected(cog):
    cog.configs.get.return_value = types.SimpleNamespace(timezone="UTC")

    with pytest.raises(InputError):
        await cog._resolve_week(100, 1, "clan1", "last week")
    with pytest.raises(InputError):
        await cog._resolve_week(100, 1, "clan1", "60-2024")


@pytest.mark.asyncio
async def test_queue_leave_option_removes_operator(cog):
    cog.sessions.leave_queue = AsyncMock(return_value=True)
    cog._queue_channels[(100, 42)] = 9
    interaction = MagicMock()
    interaction.guild_id = 100
    interaction.user = types.SimpleNamespace(id=42)
    interaction.response.send_message = AsyncMock()

    await PhaseCog.queue.callback(cog, interaction, leave=True)

    cog.sessions.leave_queue.assert_awaited_once_with(100, 42)
    assert (100, 42) not in cog._queue_channels
    interaction.response.send_message.assert_awaited_once_with("You left the queue.", ephemeral=True)
