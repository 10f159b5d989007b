from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Tuple

import discord
from discord.ext import commands

from scoreboard_bot.core.domain.models import Member
from scoreboard_bot.core.engines.base.logging_utils import get_logger
from scoreboard_bot.core.engines.error_engine import GuardianErrorEngine
from scoreboard_bot.core.engines.image_preprocessor import ImagePreprocessor, ProcessedImageStore
from scoreboard_bot.core.engines.ocr_adapter import TesseractOCRAdapter
from scoreboard_bot.core.engines.result_store import ResultStore
from scoreboard_bot.core.engines.results_report import ResultsReport
from scoreboard_bot.core.engines.screenshot_pipeline import AttachmentDownloader, ScreenshotPipeline
from scoreboard_bot.core.engines.session_manager import SessionManager
from scoreboard_bot.core.engines.single_flight import SingleFlightGate
from scoreboard_bot.core.errors import ConfigurationError
from scoreboard_bot.core.event_bus import EventBus
from scoreboard_bot.core.event_topics import ENGINE_ERROR, SHUTDOWN_INITIATED
from scoreboard_bot.integrations.system_config import (
    PROJECT_ROOT,
    GuildConfig,
    ServerConfigRegistry,
    load_config,
)

logger = get_logger("integration_loader")


def _parse_id_set(raw: str) -> Set[int]:
    """Parse comma/semicolon separated IDs from the environment."""
    values: Set[int] = set()
    for chunk in (raw or "").replace(";", ",").split(","):
        token = chunk.strip()
        if not token:
            continue
        try:
            values.add(int(token))
        except ValueError:
            logger.warning("Skipping invalid ID value: %s", token)
    return values


class ScoreboardBot(commands.Bot):
    """Bot subclass that performs first-run command tree sync and runs shutdown hooks on close."""

    def __init__(self, *args: Any, test_guild_ids: Optional[Set[int]] = None, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self.test_guild_ids: Set[int] = test_guild_ids or set()
        self._synced = False
        self._post_setup_hooks: List[Callable[[], Awaitable[None]]] = []
        self._shutdown_hooks: List[Callable[[], Awaitable[None]]] = []

    async def on_ready(self) -> None:
        logger.info("Scoreboard bot logged in as %s (%s)", self.user, getattr(self.user, "id", "-"))

        # Don't sync on every reconnect, only on first ready
        if self._synced:
            logger.info("Commands already synced, skipping re-sync")
            return

        try:
            if self.test_guild_ids:
                for guild_id in self.test_guild_ids:
                    guild = self.get_guild(guild_id)
                    if not guild:
                        logger.warning("Skipping command sync for guild %s: not a member of that guild.", guild_id)
                        continue
                    try:
                        self.tree.copy_global_to(guild=guild)
                        synced = await self.tree.sync(guild=guild)
                        logger.info("Synced %d app commands for guild %s", len(synced), guild_id)
                    except discord.Forbidden:
                        logger.warning("Missing access syncing commands for guild %s; skipping.", guild_id)
            else:
                synced = await self.tree.sync()
                logger.info("Synced %d app commands globally", len(synced))
            self._synced = True
        except discord.HTTPException:
            logger.exception("Failed to sync application commands on ready")

    def add_post_setup_hook(self, hook: Callable[[], Awaitable[None]]) -> None:
        self._post_setup_hooks.append(hook)

    def add_shutdown_hook(self, hook: Callable[[], Awaitable[None]]) -> None:
        self._shutdown_hooks.append(hook)

    async def setup_hook(self) -> None:
        await super().setup_hook()
        for hook in self._post_setup_hooks:
            try:
                await hook()
            except Exception:
                logger.exception("Post-setup hook failed")

    async def close(self) -> None:
        for hook in self._shutdown_hooks:
            try:
                await hook()
            except Exception:
                logger.exception("Shutdown hook failed")
        await super().close()


class IntegrationLoader:
    """
    Orchestrates engine wiring, dependency injection, and cog mounting.

    This loader is the only module that imports both engines and cogs. Engines
    never import discord; the roster snapshot is the one place where guild
    members are read and it is injected into the SessionManager as a callable.
    """

    def __init__(
        self,
        *,
        configs: Optional[ServerConfigRegistry] = None,
        data_dir: Optional[Path] = None,
    ) -> None:
        # Core infrastructure
        self.event_bus = EventBus()
        self.error_engine = GuardianErrorEngine(event_bus=self.event_bus)
        self.bot: Optional[ScoreboardBot] = None

        self.configs = configs if configs is not None else load_config()
        self.data_dir = Path(data_dir or os.getenv("SCOREBOARD_DATA_DIR") or PROJECT_ROOT / "data")
        logger.debug("Result data directory: %s", self.data_dir)

        # Storage and reporting
        self.store = ResultStore(self.data_dir)
        self.report = ResultsReport(self.store)

        # Screenshot pipeline pieces shared by every guild
        self.downloader = AttachmentDownloader()
        self._pipelines: Dict[int, ScreenshotPipeline] = {}
        self._processed_stores: Dict[Path, ProcessedImageStore] = {}

        # Session coordination
        self.gate = SingleFlightGate(
            event_bus=self.event_bus,
            reservation_lookup=lambda guild_id: self.configs.get(guild_id).reservation_seconds,
        )
        self.session_manager = SessionManager(
            configs=self.configs,
            store=self.store,
            pipeline_factory=self.pipeline_for,
            roster_provider=self.roster_for,
            gate=self.gate,
            event_bus=self.event_bus,
            error_engine=self.error_engine,
        )

    # ------------------------------------------------------------------
    # Engine factories
    # ------------------------------------------------------------------
    def pipeline_for(self, config: GuildConfig) -> ScreenshotPipeline:
        """One pipeline per guild; preprocessing and OCR settings are per guild."""
        pipeline = self._pipelines.get(config.guild_id)
        if pipeline is not None:
            return pipeline
        ocr = config.ocr
        processed_store = None
        if ocr.save_processed:
            # guilds sharing a directory share the store and its lock
            processed_store = self._processed_stores.get(ocr.processed_dir)
            if processed_store is None:
                processed_store = ProcessedImageStore(ocr.processed_dir, max_files=ocr.max_processed_files)
                self._processed_stores[ocr.processed_dir] = processed_store
        pipeline = ScreenshotPipeline(
            downloader=self.downloader,
            preprocessor=ImagePreprocessor(ocr.preprocessing),
            ocr=TesseractOCRAdapter(
                alphabet=ocr.alphabet,
                language=ocr.language,
                tesseract_cmd=os.getenv("TESSERACT_CMD"),
            ),
            processed_store=processed_store,
        )
        self._pipelines[config.guild_id] = pipeline
        return pipeline

    async def roster_for(self, guild_id: int, role_id: int) -> List[Member]:
        """Snapshot of members holding ``role_id``; account name is kept as alias."""
        if not self.bot:
            raise ConfigurationError("Bot is not running")
        guild = self.bot.get_guild(guild_id)
        if guild is None:
            raise ConfigurationError("The bot is not a member of this server", context={"guild_id": guild_id})
        role = guild.get_role(role_id)
        if role is None:
            raise ConfigurationError(
                f"Clan role {role_id} does not exist on this server",
                context={"guild_id": guild_id, "role_id": role_id},
            )
        return [Member(member_id=m.id, display_name=m.display_name, alias=m.name) for m in role.members]

    # ------------------------------------------------------------------
    # Bot build
    # ------------------------------------------------------------------
    def build_bot(self) -> ScoreboardBot:
        """Constructs the bot instance with necessary intents and settings."""
        intents = discord.Intents.default()
        intents.message_content = True
        intents.members = True
        intents.guilds = True
        intents.messages = True

        test_guilds = _parse_id_set(os.getenv("TEST_GUILDS", ""))

        self.bot = ScoreboardBot(
            command_prefix=os.getenv("CMD_PREFIX", "!"),
            intents=intents,
            test_guild_ids=test_guilds,
            help_command=None,
        )
        logger.info("Preparing engines and integrations for %d configured server(s)", len(self.configs))

        self._expose_bot_attributes()

        async def mount_cogs() -> None:
            await self._mount_cogs()

        async def migrate_legacy() -> None:
            counts = await self.store.migrate_legacy(self.data_dir)
            if any(counts.values()):
                logger.info("Legacy results migrated: %s", counts)

        async def shutdown() -> None:
            await self.event_bus.emit(SHUTDOWN_INITIATED, reason="bot closing")
            await self.session_manager.shutdown()

        self.bot.add_post_setup_hook(migrate_legacy)
        self.bot.add_post_setup_hook(mount_cogs)
        self.bot.add_shutdown_hook(shutdown)
        return self.bot

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _expose_bot_attributes(self) -> None:
        if not self.bot:
            return
        mapping = {
            "event_bus": self.event_bus,
            "error_engine": self.error_engine,
            "server_configs": self.configs,
            "result_store": self.store,
            "results_report": self.report,
            "session_manager": self.session_manager,
        }
        for name, value in mapping.items():
            if value is None:
                continue
            setattr(self.bot, name, value)

    async def _mount_cogs(self) -> None:
        if not self.bot:
            return
        try:
            from scoreboard_bot.cogs.phase_cog import setup as setup_phase_cog

            await setup_phase_cog(
                self.bot,
                session_manager=self.session_manager,
                store=self.store,
                report=self.report,
                configs=self.configs,
                event_bus=self.event_bus,
                error_engine=self.error_engine,
            )
            logger.info("Mounted cogs: phase")
        except Exception as exc:
            logger.exception("Failed to mount cogs")
            # Report cog mount errors through the standard error topic.
            await self.event_bus.emit(
                ENGINE_ERROR,
                context="integration_loader.mount_cogs",
                message=str(exc),
                kind="fatal",
                severity="error",
                category="cog",
                metadata={},
            )


def build_application(**kwargs: Any) -> Tuple[ScoreboardBot, IntegrationLoader]:
    """Entry point used by main.py."""
    loader = IntegrationLoader(**kwargs)
    bot = loader.build_bot()
    return bot, loader
