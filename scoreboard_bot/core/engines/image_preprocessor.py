"""
Screenshot preprocessing for OCR.

Leaderboard screenshots are light text on a dark, textured background. The
pipeline turns them into large black-on-white binary images:

    greyscale -> upscale (lanczos) -> gamma -> median -> blur -> autocontrast
    -> negate -> contrast/brightness -> sharpen -> white-threshold binarisation
"""
from __future__ import annotations

import asyncio
from datetime import datetime
from io import BytesIO
from pathlib import Path
from typing import List, Optional

import numpy as np
from PIL import Image, ImageFilter, ImageOps, UnidentifiedImageError

from scoreboard_bot.core.engines.base.logging_utils import get_logger
from scoreboard_bot.core.errors import TransientError
from scoreboard_bot.integrations.system_config import PreprocessingConfig

logger = get_logger("image_preprocessor")

# Pillow limits the median filter to odd sizes
_MIN_MEDIAN = 3


class ImagePreprocessor:
    """Apply the tunable OCR pipeline to raw screenshot bytes."""

    def __init__(self, config: Optional[PreprocessingConfig] = None) -> None:
        self.config = config or PreprocessingConfig()

    def enhance(self, image_bytes: bytes) -> Image.Image:
        """Decode ``image_bytes`` and return the binarised, upscaled image (mode "L")."""
        try:
            image = Image.open(BytesIO(image_bytes))
            image.load()
        except (UnidentifiedImageError, Image.DecompressionBombError, OSError) as exc:
            raise TransientError(f"unreadable image: {exc}") from exc

        cfg = self.config
        image = ImageOps.grayscale(image)

        if cfg.upscale and cfg.upscale != 1:
            width, height = image.size
            image = image.resize(
                (max(1, int(width * cfg.upscale)), max(1, int(height * cfg.upscale))),
                resample=Image.LANCZOS,
            )

        image = self._apply_gamma(image, cfg.gamma)

        if cfg.median and cfg.median > 1:
            size = max(_MIN_MEDIAN, int(cfg.median) | 1)
            image = image.filter(ImageFilter.MedianFilter(size=size))
        if cfg.blur and cfg.blur > 0:
            image = image.filter(ImageFilter.GaussianBlur(radius=cfg.blur))

        image = ImageOps.autocontrast(image)
        image = ImageOps.invert(image)
        image = self._apply_linear(image, cfg.contrast, cfg.brightness)
        image = image.filter(ImageFilter.UnsharpMask(radius=1.5, percent=150, threshold=2))
        return self._threshold(image, cfg.white_threshold)

    async def enhance_file(self, source: Path, target: Path) -> Path:
        """Read ``source``, run the pipeline off the event loop and write a PNG to ``target``."""
        data = await asyncio.to_thread(source.read_bytes)
        image = await asyncio.to_thread(self.enhance, data)
        target.parent.mkdir(parents=True, exist_ok=True)
        await asyncio.to_thread(image.save, target, "PNG")
        return target

    @staticmethod
    def _apply_gamma(image: Image.Image, gamma: float) -> Image.Image:
        if not gamma or gamma == 1:
            return image
        lut = (255.0 * (np.arange(256) / 255.0) ** (1.0 / gamma)).round().astype(np.uint8)
        return Image.fromarray(lut[np.asarray(image, dtype=np.uint8)])

    @staticmethod
    def _apply_linear(image: Image.Image, contrast: float, brightness: float) -> Image.Image:
        arr = np.asarray(image, dtype=np.float32)
        arr = (arr - 128.0) * contrast + 128.0 + brightness
        return Image.fromarray(np.clip(arr, 0, 255).astype(np.uint8))

    @staticmethod
    def _threshold(image: Image.Image, white_threshold: int) -> Image.Image:
        arr = np.asarray(image, dtype=np.uint8)
        binary = np.where(arr >= white_threshold, 255, 0).astype(np.uint8)
        return Image.fromarray(binary)


class ProcessedImageStore:
    """
    Bounded directory of processed artifacts kept for diagnosing OCR issues.

    Files are named ``[BOT][ YYYY-MM-DD hh:mm:ss ][KIND].png``; after every write
    the oldest files by mtime are evicted so at most ``max_files`` remain.
    """

    def __init__(self, directory: Path, *, max_files: int = 400) -> None:
        self.directory = Path(directory)
        self.max_files = max_files
        self._lock = asyncio.Lock()

    async def save(self, image_path: Path, kind: str, *, now: Optional[datetime] = None) -> Path:
        async with self._lock:
            return await asyncio.to_thread(self._save_sync, Path(image_path), kind, now or datetime.now())

    def _save_sync(self, image_path: Path, kind: str, now: datetime) -> Path:
        self.directory.mkdir(parents=True, exist_ok=True)
        stamp = now.strftime("%Y-%m-%d %H:%M:%S")
        kind = kind.upper()
        target = self.directory / f"[BOT][ {stamp} ][{kind}].png"
        suffix = 2
        while target.exists():
            target = self.directory / f"[BOT][ {stamp} ][{kind}-{suffix}].png"
            suffix += 1
        target.write_bytes(image_path.read_bytes())
        evicted = self._evict()
        if evicted:
            logger.debug("Evicted %d processed image(s) from %s", len(evicted), self.directory)
        return target

    def _evict(self) -> List[Path]:
        files = sorted(self.directory.glob("*.png"), key=lambda p: p.stat().st_mtime)
        excess = len(files) - self.max_files
        if excess <= 0:
            return []
        evicted = files[:excess]
        for path in evicted:
            path.unlink(missing_ok=True)
        return evicted

    def count(self) -> int:
        if not self.directory.exists():
            return 0
        return sum(1 for _ in self.directory.glob("*.png"))
