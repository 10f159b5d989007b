from io import BytesIO
from pathlib import Path
from typing import Dict, List

import pytest
from PIL import Image

from scoreboard_bot.core.domain.models import Member
from scoreboard_bot.core.engines.image_preprocessor import ImagePreprocessor
from scoreboard_bot.core.engines.result_store import ResultStore
from scoreboard_bot.core.engines.screenshot_pipeline import ScreenshotPipeline
from scoreboard_bot.core.engines.session_manager import SessionManager
from scoreboard_bot.core.engines.single_flight import SingleFlightGate
from scoreboard_bot.core.errors import TransientError
from scoreboard_bot.core.event_bus import EventBus
from scoreboard_bot.integrations.system_config import ServerConfigRegistry, build_guild_config

GUILD_ID = 100
CLAN = "clan1"
CLAN_ROLE = 555


def png_bytes(size=(24, 12), color=40) -> bytes:
    buffer = BytesIO()
    Image.new("L", size, color=color).save(buffer, format="PNG")
    return buffer.getvalue()


class FakeDownloader:
    """Serves a tiny PNG for every known url; unknown urls fail like a dead link."""

    def __init__(self, texts: Dict[str, str]) -> None:
        self.texts = texts
        self.by_stem: Dict[str, str] = {}

    async def download(self, url: str, target: Path) -> Path:
        if url not in self.texts:
            raise TransientError("download failed with HTTP 404", context={"url": url})
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(png_bytes())
        self.by_stem[target.stem] = self.texts[url]
        return target


class FakeOCR:
    """Returns the text registered for the image by the downloader."""

    def __init__(self, downloader: FakeDownloader) -> None:
        self.downloader = downloader
        self.calls: List[Path] = []

    async def recognise(self, processed_path: Path) -> str:
        self.calls.append(Path(processed_path))
        return self.downloader.by_stem[Path(processed_path).stem]


@pytest.fixture()
def roster() -> List[Member]:
    return [
        Member(1, "Alice", alias="alice_acc"),
        Member(2, "Bob", alias="bobby"),
        Member(3, "Carol", alias="carol"),
        Member(4, "Dave", alias="dave"),
        Member(5, "Żółw_123", alias="turtle"),
    ]


@pytest.fixture()
def guild_config(tmp_path):
    return build_guild_config(
        GUILD_ID,
        {
            "target_roles": {CLAN: CLAN_ROLE},
            "role_display_names": {CLAN: "Clan One"},
            "ping_interval_seconds": 0,
            "ocr": {
                "save_processed": False,
                "temp_dir": str(tmp_path / "temp"),
                "processed_dir": str(tmp_path / "processed"),
            },
        },
    )


@pytest.fixture()
def ocr_texts() -> Dict[str, str]:
    """url -> recognised text; tests fill it before submitting images."""
    return {}


@pytest.fixture()
def store(tmp_path) -> ResultStore:
    return ResultStore(tmp_path / "data")


@pytest.fixture()
def bus() -> EventBus:
    return EventBus()


@pytest.fixture()
def make_manager(guild_config, store, bus, roster, ocr_texts):
    """Factory so tests can tune the guild config or the gate before building the manager."""

    def factory(*, config=None, gate=None, members=None, error_engine=None):
        config = config or guild_config
        downloader = FakeDownloader(ocr_texts)
        pipeline = ScreenshotPipeline(
            downloader=downloader,
            preprocessor=ImagePreprocessor(),
            ocr=FakeOCR(downloader),
        )

        async def roster_provider(guild_id, role_id):
            assert role_id == CLAN_ROLE
            return list(roster if members is None else members)

        return SessionManager(
            configs=ServerConfigRegistry({config.guild_id: config}),
            store=store,
            pipeline_factory=lambda cfg: pipeline,
            roster_provider=roster_provider,
            gate=gate or SingleFlightGate(event_bus=bus),
            event_bus=bus,
            error_engine=error_engine,
        )

    return factory
