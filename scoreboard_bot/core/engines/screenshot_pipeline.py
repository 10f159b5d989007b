"""
Screenshot ingestion for one session image: download -> preprocess -> OCR -> parse -> match.

Failures are contained per image: the caller receives an ImageOutcome with
``ok=False`` and a short reason instead of an exception.
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Optional, Sequence

import aiohttp

from scoreboard_bot.core.domain.models import ImageOutcome, Member
from scoreboard_bot.core.engines.base.logging_utils import get_logger, log_exception, timed
from scoreboard_bot.core.engines.image_preprocessor import ImagePreprocessor, ProcessedImageStore
from scoreboard_bot.core.engines.line_parser import LineParser
from scoreboard_bot.core.engines.ocr_adapter import OCRAdapter
from scoreboard_bot.core.engines.roster_matcher import RosterMatcher
from scoreboard_bot.core.errors import InputError, TransientError

logger = get_logger("screenshot_pipeline")

IMAGE_EXTENSIONS = (".png", ".jpg", ".jpeg", ".webp", ".bmp")


def looks_like_image(url: str, content_type: Optional[str] = None) -> bool:
    if content_type:
        return content_type.lower().startswith("image/")
    path = url.split("?", 1)[0].lower()
    return path.endswith(IMAGE_EXTENSIONS)


class AttachmentDownloader:
    """Fetch attachment bytes over HTTP into a session-local file."""

    def __init__(self, *, timeout: float = 30.0, max_bytes: int = 25 * 1024 * 1024) -> None:
        self.timeout = timeout
        self.max_bytes = max_bytes

    async def download(self, url: str, target: Path) -> Path:
        if not looks_like_image(url):
            raise InputError("attachment is not an image", context={"url": url})
        client_timeout = aiohttp.ClientTimeout(total=self.timeout)
        try:
            async with aiohttp.ClientSession(timeout=client_timeout) as session:
                async with session.get(url) as response:
                    if response.status != 200:
                        raise TransientError(f"download failed with HTTP {response.status}", context={"url": url})
                    if response.content_length and response.content_length > self.max_bytes:
                        raise InputError("attachment is too large", context={"url": url})
                    data = await response.read()
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise TransientError(f"download failed: {exc}", context={"url": url}) from exc

        target.parent.mkdir(parents=True, exist_ok=True)
        await asyncio.to_thread(target.write_bytes, data)
        return target


class ScreenshotPipeline:
    """Runs every stage for a single screenshot and reports the outcome."""

    def __init__(
        self,
        *,
        downloader: AttachmentDownloader,
        preprocessor: ImagePreprocessor,
        ocr: OCRAdapter,
        processed_store: Optional[ProcessedImageStore] = None,
    ) -> None:
        self.downloader = downloader
        self.preprocessor = preprocessor
        self.ocr = ocr
        self.processed_store = processed_store

    async def process(
        self,
        *,
        index: int,
        url: str,
        work_dir: Path,
        parser: LineParser,
        matcher: RosterMatcher,
        roster: Sequence[Member],
        kind: str = "phase1",
    ) -> ImageOutcome:
        outcome = ImageOutcome(index=index, url=url, ok=False)
        raw_path = work_dir / f"image_{index:03d}.raw"
        processed_path = work_dir / f"image_{index:03d}.png"
        try:
            with timed(logger, "download", extra={"index": index}):
                await self.downloader.download(url, raw_path)
            outcome.downloaded_path = str(raw_path)

            with timed(logger, "preprocess", extra={"index": index}):
                await self.preprocessor.enhance_file(raw_path, processed_path)
            outcome.processed_path = str(processed_path)
            if self.processed_store is not None:
                await self.processed_store.save(processed_path, kind)

            with timed(logger, "ocr", extra={"index": index}):
                text = await self.ocr.recognise(processed_path)
        except (InputError, TransientError) as exc:
            outcome.error = exc.message
            logger.warning("Image %d dropped: %s", index + 1, exc.message)
            return outcome
        except OSError as exc:
            log_exception(logger, exc, context="screenshot_pipeline.process", extra={"index": index})
            outcome.error = "could not store the image"
            return outcome

        readings = parser.parse(text)
        matched, dropped = matcher.match_readings(readings, roster)
        outcome.ok = True
        outcome.readings = matched
        outcome.dropped_tokens = dropped
        if dropped:
            logger.info("Image %d: %d token(s) without roster match: %s", index + 1, len(dropped), ", ".join(dropped))
        logger.info("Image %d: %d row(s) parsed, %d matched", index + 1, len(readings), len(matched))
        return outcome
