"""
Phase Cog - collect weekly clan scores from leaderboard screenshots.

Commands:
- /phase1 clan          - start a phase 1 session (one result set)
- /phase2 clan          - start a phase 2 session (three rounds)
- /results phase clan [week] - show stored results for a stored week
- /modify               - change one stored score
- /add-player           - add a player missing from a stored week
- /queue [leave]        - show who is processing and your queue position, or leave it

Screenshots posted by the session operator in the session channel are forwarded
to the SessionManager; every prompt it returns is rendered here.
"""
from __future__ import annotations

import asyncio
from typing import Any, Dict, List, Optional, Sequence

import discord
from discord import app_commands
from discord.ext import commands

from scoreboard_bot.core.domain.models import Decision, OutboundEvent, PlayerScore
from scoreboard_bot.core.engines.base.logging_utils import get_logger
from scoreboard_bot.core.engines.confirm_flow import parse_custom_id
from scoreboard_bot.core.engines.result_store import ResultKey, ResultStore
from scoreboard_bot.core.engines.results_report import ResultsReport
from scoreboard_bot.core.engines.screenshot_pipeline import looks_like_image
from scoreboard_bot.core.engines.session_manager import Queued, SessionManager
from scoreboard_bot.core.errors import ConfigurationError, FatalError, InputError, ScoreboardError
from scoreboard_bot.core.event_topics import (
    QUEUE_PROMOTED,
    QUEUE_RESERVATION_EXPIRED,
    SESSION_CANCELLED,
    SESSION_COMMITTED,
    SESSION_EXPIRED,
    SESSION_FAILED,
    SESSION_PING,
)
from scoreboard_bot.core.utils.week import current_week_info
from scoreboard_bot.integrations.system_config import ServerConfigRegistry

logger = get_logger("phase_cog")

GHOST_PING_SECONDS = 5
TERMINAL_KINDS = {"committed", "cancelled", "expired", "failed"}
BUTTON_STYLES = {
    'primary': discord.ButtonStyle.primary,
    'secondary': discord.ButtonStyle.secondary,
    'success': discord.ButtonStyle.success,
    'danger': discord.ButtonStyle.danger,
}


def build_embed(payload: Dict[str, Any]) -> discord.Embed:
    """Turn a transport-agnostic payload into a discord.Embed."""
    data = payload.get('embed', {})
    embed = discord.Embed(
        title=data.get('title'),
        description=data.get('description'),
        color=data.get('color'),
    )
    for field in data.get('fields', []):
        embed.add_field(name=field['name'], value=field['value'], inline=field.get('inline', True))
    if data.get('footer'):
        embed.set_footer(text=data['footer'])
    return embed


class SessionPromptView(discord.ui.View):
    """Buttons of one prompt; only the session operator may press them."""

    def __init__(self, cog: "PhaseCog", *, operator_id: int, components: Sequence[Dict[str, Any]]) -> None:
        super().__init__(timeout=None)
        self._cog = cog
        self._operator_id = operator_id
        for component in components:
            button = discord.ui.Button(
                label=component['label'],
                style=BUTTON_STYLES.get(component.get('style', 'secondary'), discord.ButtonStyle.secondary),
                custom_id=component['custom_id'],
            )
            button.callback = self._make_callback(component['custom_id'])
            self.add_item(button)

    def _make_callback(self, custom_id: str):
        async def callback(interaction: discord.Interaction) -> None:
            await self._cog.handle_component(interaction, custom_id)
        return callback

    async def interaction_check(self, interaction: discord.Interaction) -> bool:
        if interaction.user.id != self._operator_id:
            await interaction.response.send_message(
                "Only the operator who started this session can use these buttons.",
                ephemeral=True,
            )
            return False
        return True


class PhaseCog(commands.Cog):
    """Weekly score collection commands."""

    def __init__(
        self,
        bot: commands.Bot,
        *,
        session_manager: SessionManager,
        store: ResultStore,
        report: ResultsReport,
        configs: ServerConfigRegistry,
        event_bus=None,
        error_engine=None,
    ) -> None:
        self.bot = bot
        self.sessions = session_manager
        self.store = store
        self.report = report
        self.configs = configs
        self.event_bus = event_bus
        self.error_engine = error_engine
        self._prompt_messages: Dict[str, discord.Message] = {}
        self._queue_channels: Dict[tuple, int] = {}
        self._session_channels: Dict[str, int] = {}
        if event_bus is not None:
            for topic in (SESSION_COMMITTED, SESSION_CANCELLED, SESSION_EXPIRED, SESSION_FAILED):
                event_bus.subscribe(topic, self._on_session_closed)
            event_bus.subscribe(SESSION_PING, self._on_session_ping)
            event_bus.subscribe(QUEUE_PROMOTED, self._on_queue_promoted)
            event_bus.subscribe(QUEUE_RESERVATION_EXPIRED, self._on_reservation_expired)

    # -----------------
    # Internal helpers
    # -----------------
    def _is_authorised(self, member: Any, guild_id: int) -> bool:
        """Administrators and holders of a configured moderator role."""
        perms = getattr(member, "guild_permissions", None)
        if perms is not None and perms.administrator:
            return True
        try:
            config = self.configs.get(guild_id)
        except ConfigurationError:
            return False
        role_ids = {role.id for role in getattr(member, "roles", [])}
        return bool(role_ids & set(config.allowed_punish_roles))

    async def _reply_error(
        self,
        interaction: discord.Interaction,
        exc: ScoreboardError,
        *,
        context: str,
        recorded: bool = False,
    ) -> None:
        """``recorded``: the session manager already sent the error to the error engine."""
        if not isinstance(exc, FatalError):
            logger.info("%s rejected for %s: %s", context, interaction.user.id, exc)
        elif not recorded:
            if self.error_engine is not None:
                await self.error_engine.log_error(exc, context=f"phase_cog.{context}", guild_id=interaction.guild_id)
            else:
                logger.error("%s failed for %s: %s", context, interaction.user.id, exc)
        msg = f"❌ {exc.user_message}"
        if interaction.response.is_done():
            await interaction.followup.send(msg, ephemeral=True)
        else:
            await interaction.response.send_message(msg, ephemeral=True)

    async def _clan_autocomplete(self, interaction: discord.Interaction, current: str) -> List[app_commands.Choice[str]]:
        try:
            config = self.configs.get(interaction.guild_id or 0)
        except ConfigurationError:
            return []
        return [
            app_commands.Choice(name=config.clan_label(key), value=key)
            for key in config.target_roles
            if current.lower() in key.lower() or current.lower() in config.clan_label(key).lower()
        ][:25]

    async def _render(self, channel: Any, session_id: str, operator_id: int, events: Sequence[OutboundEvent]) -> None:
        """Post each prompt; the previous prompt of the session loses its buttons."""
        for event in events:
            if event.kind in TERMINAL_KINDS:
                continue  # rendered once from the session.* bus topic
            previous = self._prompt_messages.pop(session_id, None)
            if previous is not None:
                try:
                    await previous.edit(view=None)
                except discord.HTTPException:
                    logger.debug("Could not strip buttons from previous prompt of %s", session_id)
            components = event.payload.get('components', [])
            view = SessionPromptView(self, operator_id=operator_id, components=components) if components else None
            kwargs = {'embed': build_embed(event.payload)}
            if view is not None:
                kwargs['view'] = view
            message = await channel.send(**kwargs)
            self._prompt_messages[session_id] = message
            session = self.sessions.get_session(session_id)
            if session is not None:
                session.public_message_handle = message.id

    # -----------------
    # Session commands
    # -----------------
    async def _start(self, interaction: discord.Interaction, phase: int, clan: str) -> None:
        if interaction.guild_id is None:
            await interaction.response.send_message("Use this command on a server.", ephemeral=True)
            return
        if not self._is_authorised(interaction.user, interaction.guild_id):
            await interaction.response.send_message("You are not allowed to submit results.", ephemeral=True)
            return
        await interaction.response.defer(ephemeral=True)
        try:
            result = await self.sessions.open_session(
                interaction.guild_id,
                interaction.user.id,
                phase,
                clan,
                channel_id=interaction.channel_id,
            )
        except ScoreboardError as exc:
            await self._reply_error(interaction, exc, context=f"phase{phase}.open", recorded=True)
            return

        if isinstance(result, Queued):
            self._queue_channels[(interaction.guild_id, interaction.user.id)] = interaction.channel_id
            await interaction.followup.send(embed=build_embed(result.events[0].payload), ephemeral=True)
            return

        session = result.session
        self._session_channels[session.session_id] = interaction.channel_id
        await interaction.followup.send(f"Session started for **{clan}** ({session.week_info}).", ephemeral=True)
        await self._render(interaction.channel, session.session_id, session.operator_id, result.events)

    @app_commands.command(name="phase1", description="Collect phase 1 scores from leaderboard screenshots")
    @app_commands.describe(clan="Clan whose leaderboard you will post")
    @app_commands.autocomplete(clan=_clan_autocomplete)
    async def phase1(self, interaction: discord.Interaction, clan: str) -> None:
        await self._start(interaction, 1, clan)

    @app_commands.command(name="phase2", description="Collect phase 2 scores (three rounds) from screenshots")
    @app_commands.describe(clan="Clan whose leaderboard you will post")
    @app_commands.autocomplete(clan=_clan_autocomplete)
    async def phase2(self, interaction: discord.Interaction, clan: str) -> None:
        await self._start(interaction, 2, clan)

    @app_commands.command(name="queue", description="Show the results processing queue")
    @app_commands.describe(leave="Leave the queue (or give up your reserved turn)")
    async def queue(self, interaction: discord.Interaction, leave: bool = False) -> None:
        if interaction.guild_id is None:
            await interaction.response.send_message("Use this command on a server.", ephemeral=True)
            return
        if leave:
            left = await self.sessions.leave_queue(interaction.guild_id, interaction.user.id)
            self._queue_channels.pop((interaction.guild_id, interaction.user.id), None)
            message = "You left the queue." if left else "You are not in the queue."
            await interaction.response.send_message(message, ephemeral=True)
            return
        info = await self.sessions.queue_info(interaction.guild_id, interaction.user.id)
        lines = [f"🔒 Processing: {f'<@{info.holder}>' if info.holder else 'nobody'}"]
        if info.reserved_for:
            lines.append(f"🎟️ Reserved for <@{info.reserved_for}>")
        if info.waiters:
            lines.append("⏳ Waiting: " + ", ".join(f"<@{w}>" for w in info.waiters))
        if info.position:
            lines.append(f"Your position: **{info.position}** ({info.ahead} ahead)")
        embed = discord.Embed(title="Results queue", description="\n".join(lines), color=discord.Color.blurple())
        await interaction.response.send_message(embed=embed, ephemeral=True)

    # -----------------
    # Stored results
    # -----------------
    async def _week_autocomplete(self, interaction: discord.Interaction, current: str) -> List[app_commands.Choice[str]]:
        """Stored weeks of the chosen phase and clan, newest first."""
        namespace = interaction.namespace
        phase = getattr(namespace, "phase", None) or 1
        clan = getattr(namespace, "clan", None)
        try:
            weeks = await self.store.list_available_weeks(interaction.guild_id or 0, int(phase))
        except ScoreboardError as exc:
            logger.warning("Week list unavailable for guild %s: %s", interaction.guild_id, exc)
            return []
        choices = []
        for entry in weeks:
            if clan and clan not in entry.clans:
                continue
            name = f"Week {entry.week}/{entry.year} ({', '.join(entry.clans)})"
            if current and not (entry.week_key.startswith(current) or current.lower() in name.lower()):
                continue
            choices.append(app_commands.Choice(name=name[:100], value=entry.week_key))
        return choices[:25]

    async def _resolve_week(self, guild_id: int, phase: int, clan: str, week: Optional[str]) -> ResultKey:
        """
        ``week`` is ``"<week>-<year>"`` from the autocomplete or a bare week of
        the current year. Without it the newest stored week of the clan is used,
        and the current week when nothing is stored yet.
        """
        current = current_week_info(self.configs.get(guild_id).timezone)
        if not week:
            for entry in await self.store.list_available_weeks(guild_id, phase):
                if clan in entry.clans:
                    return ResultKey(guild_id, phase, entry.year, entry.week, clan)
            return ResultKey(guild_id, phase, current.year, current.week, clan)
        number, _, year = week.strip().partition("-")
        try:
            week_number = int(number)
            year_number = int(year) if year else current.year
        except ValueError:
            raise InputError(f"'{week}' is not a week; pick one from the list") from None
        if not 1 <= week_number <= 53:
            raise InputError(f"Week {week_number} does not exist; pick one from the list")
        return ResultKey(guild_id, phase, year_number, week_number, clan)

    @app_commands.command(name="results", description="Show stored results for a week")
    @app_commands.describe(phase="1 or 2", clan="Clan", week="Stored week (default: the newest)")
    @app_commands.autocomplete(clan=_clan_autocomplete, week=_week_autocomplete)
    async def results(
        self,
        interaction: discord.Interaction,
        phase: app_commands.Range[int, 1, 2],
        clan: str,
        week: Optional[str] = None,
    ) -> None:
        await interaction.response.defer()
        try:
            key = await self._resolve_week(interaction.guild_id or 0, phase, clan, week)
            label = self.configs.get(interaction.guild_id or 0).clan_label(clan)
            payload = await self.report.build(key.guild_id, phase, clan, key.week, key.year, clan_label=label)
        except ScoreboardError as exc:
            await self._reply_error(interaction, exc, context="results")
            return
        await interaction.followup.send(embed=build_embed(payload))

    @app_commands.command(name="modify", description="Change one player's stored score")
    @app_commands.describe(week="Stored week (default: the newest)", round_number="Phase 2 round (1-3)")
    @app_commands.rename(round_number="round")
    @app_commands.autocomplete(clan=_clan_autocomplete, week=_week_autocomplete)
    async def modify(
        self,
        interaction: discord.Interaction,
        phase: app_commands.Range[int, 1, 2],
        clan: str,
        player: discord.Member,
        score: app_commands.Range[int, 0],
        week: Optional[str] = None,
        round_number: Optional[app_commands.Range[int, 1, 3]] = None,
    ) -> None:
        if not self._is_authorised(interaction.user, interaction.guild_id or 0):
            await interaction.response.send_message("You are not allowed to edit results.", ephemeral=True)
            return
        await interaction.response.defer(ephemeral=True)
        try:
            key = await self._resolve_week(interaction.guild_id or 0, phase, clan, week)
            old, record = await self.store.update_player_score(key, player.id, score, round_number=round_number)
        except ScoreboardError as exc:
            await self._reply_error(interaction, exc, context="modify")
            return
        logger.info("%s changed %s in %s from %s to %s", interaction.user.id, player.id, key.relative_path(), old, score)
        await interaction.followup.send(
            f"✅ {player.display_name} ({key.week_info}): {old:,} → {score:,} (TOP30 now {record.top30_sum():,})",
            ephemeral=True,
        )

    @app_commands.command(name="add-player", description="Add a player missing from stored results")
    @app_commands.describe(week="Stored week (default: the newest)", round_number="Phase 2 round (1-3)")
    @app_commands.rename(round_number="round")
    @app_commands.autocomplete(clan=_clan_autocomplete, week=_week_autocomplete)
    async def add_player(
        self,
        interaction: discord.Interaction,
        phase: app_commands.Range[int, 1, 2],
        clan: str,
        player: discord.Member,
        score: app_commands.Range[int, 0],
        week: Optional[str] = None,
        round_number: Optional[app_commands.Range[int, 1, 3]] = None,
    ) -> None:
        if not self._is_authorised(interaction.user, interaction.guild_id or 0):
            await interaction.response.send_message("You are not allowed to edit results.", ephemeral=True)
            return
        await interaction.response.defer(ephemeral=True)
        try:
            key = await self._resolve_week(interaction.guild_id or 0, phase, clan, week)
            await self.store.add_player(
                key, PlayerScore(player.id, player.display_name, score), round_number=round_number
            )
        except ScoreboardError as exc:
            await self._reply_error(interaction, exc, context="add_player")
            return
        await interaction.followup.send(f"✅ {player.display_name} added to {key.week_info} with {score:,}", ephemeral=True)

    # -----------------
    # Session input
    # -----------------
    @commands.Cog.listener()
    async def on_message(self, message: discord.Message) -> None:
        if message.author.bot or message.guild is None or not message.attachments:
            return
        session = self.sessions.session_for(message.guild.id, message.author.id)
        if session is None or session.channel_id != message.channel.id:
            return
        urls = [a.url for a in message.attachments if looks_like_image(a.url, a.content_type)]
        if not urls:
            await message.reply("Only image attachments are read.", delete_after=10)
            return
        try:
            async with message.channel.typing():
                batch = await self.sessions.submit_images(session.session_id, urls)
        except ScoreboardError as exc:
            await message.reply(f"❌ {exc.user_message}", delete_after=15)
            return
        await self._render(message.channel, session.session_id, session.operator_id, batch.events)

    async def handle_component(self, interaction: discord.Interaction, custom_id: str) -> None:
        parsed = parse_custom_id(custom_id)
        if parsed is None:
            return
        session_id, action, args = parsed
        try:
            if action == "resolve":
                decision = Decision.pick(int(args[0]), int(args[1]))
            elif action == "include":
                decision = Decision.include_row(int(args[0]), args[1] == "yes")
            else:
                decision = Decision.of(action)
        except (ValueError, IndexError):
            await interaction.response.send_message("This button is no longer valid.", ephemeral=True)
            return

        await interaction.response.defer()
        try:
            events = await self.sessions.operator_decision(session_id, decision)
        except ScoreboardError as exc:
            await self._reply_error(interaction, exc, context=f"decision.{action}", recorded=True)
            return
        await self._render(interaction.channel, session_id, interaction.user.id, events)

    # -----------------
    # Bus handlers
    # -----------------
    async def _on_session_closed(self, *, session_id: str, channel_id: Optional[int] = None, payload=None, **_: Any) -> None:
        previous = self._prompt_messages.pop(session_id, None)
        if previous is not None:
            try:
                await previous.edit(view=None)
            except discord.HTTPException:
                logger.debug("Could not strip buttons from last prompt of %s", session_id)
        channel_id = channel_id or self._session_channels.get(session_id)
        self._session_channels.pop(session_id, None)
        channel = self.bot.get_channel(channel_id) if channel_id else None
        if channel is None or not payload:
            return
        await channel.send(embed=build_embed(payload))

    async def _on_session_ping(self, *, operator_id: int, channel_id: Optional[int] = None, **_: Any) -> None:
        channel = self.bot.get_channel(channel_id) if channel_id else None
        if channel is None:
            return
        await channel.send(f"<@{operator_id}>", delete_after=GHOST_PING_SECONDS)

    async def _on_queue_promoted(self, *, guild_id: int, operator_id: int, expires_in: float = 0, **_: Any) -> None:
        channel_id = self._queue_channels.pop((guild_id, operator_id), None)
        channel = self.bot.get_channel(channel_id) if channel_id else None
        if channel is None:
            return
        minutes = max(1, round(expires_in / 60))
        await channel.send(
            f"<@{operator_id}> it's your turn! Start your session within {minutes} minute(s) or the next person goes."
        )

    async def _on_reservation_expired(self, *, guild_id: int, operator_id: int, **_: Any) -> None:
        logger.info("Reservation of %s on guild %s expired", operator_id, guild_id)

    async def cog_unload(self) -> None:
        if self.event_bus is None:
            return
        for topic in (SESSION_COMMITTED, SESSION_CANCELLED, SESSION_EXPIRED, SESSION_FAILED):
            self.event_bus.unsubscribe(topic, self._on_session_closed)
        self.event_bus.unsubscribe(SESSION_PING, self._on_session_ping)
        self.event_bus.unsubscribe(QUEUE_PROMOTED, self._on_queue_promoted)
        self.event_bus.unsubscribe(QUEUE_RESERVATION_EXPIRED, self._on_reservation_expired)


async def setup(
    bot: commands.Bot,
    *,
    session_manager: SessionManager,
    store: ResultStore,
    report: ResultsReport,
    configs: ServerConfigRegistry,
    event_bus=None,
    error_engine=None,
) -> None:
    await bot.add_cog(
        PhaseCog(
            bot,
            session_manager=session_manager,
            store=store,
            report=report,
            configs=configs,
            event_bus=event_bus,
            error_engine=error_engine,
        )
    )
