from __future__ import annotations

import asyncio
import shlex
from pathlib import Path
from typing import Optional, Protocol

import pytesseract
from PIL import Image

from scoreboard_bot.core.engines.base.logging_utils import get_logger
from scoreboard_bot.core.errors import TransientError
from scoreboard_bot.integrations.system_config import DEFAULT_ALPHABET

logger = get_logger("ocr_adapter")


class OCRAdapter(Protocol):
    """Anything that turns a processed image into line-preserving text."""

    async def recognise(self, processed_path: Path) -> str:
        ...


class TesseractOCRAdapter:
    """Run tesseract (via pytesseract) restricted to the configured alphabet."""

    # single uniform block of text keeps leaderboard rows on separate lines
    PAGE_SEGMENTATION_MODE = 6

    def __init__(self, *, alphabet: str = DEFAULT_ALPHABET, language: str = "pol+eng", tesseract_cmd: Optional[str] = None) -> None:
        self.alphabet = alphabet
        self.language = language
        if tesseract_cmd:
            pytesseract.pytesseract.tesseract_cmd = tesseract_cmd

    @property
    def config(self) -> str:
        # tesseract emits spaces on its own; a literal space breaks the -c value
        whitelist = "".join(dict.fromkeys(ch for ch in self.alphabet if not ch.isspace()))
        return (
            f"--psm {self.PAGE_SEGMENTATION_MODE} "
            f"-c preserve_interword_spaces=1 "
            f"-c tessedit_char_whitelist={shlex.quote(whitelist)}"
        )

    def _recognise_sync(self, processed_path: Path) -> str:
        with Image.open(processed_path) as image:
            return pytesseract.image_to_string(image, lang=self.language, config=self.config)

    async def recognise(self, processed_path: Path) -> str:
        try:
            text = await asyncio.to_thread(self._recognise_sync, Path(processed_path))
        except (pytesseract.TesseractError, pytesseract.TesseractNotFoundError, OSError) as exc:
            raise TransientError(f"OCR failed: {exc}", context={"path": str(processed_path)}) from exc
        logger.debug("OCR produced %d line(s) for %s", len(text.splitlines()), Path(processed_path).name)
        return text
