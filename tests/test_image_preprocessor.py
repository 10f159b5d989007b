import os
from datetime import datetime
from io import BytesIO

import pytest
from PIL import Image

from scoreboard_bot.core.engines.image_preprocessor import ImagePreprocessor, ProcessedImageStore
from scoreboard_bot.core.errors import TransientError
from scoreboard_bot.integrations.system_config import PreprocessingConfig


def screenshot_bytes():
    image = Image.new("RGB", (30, 10), color=(20, 20, 30))
    for x in range(5, 25):
        image.putpixel((x, 5), (240, 240, 240))
    buffer = BytesIO()
    image.save(buffer, format="PNG")
    return buffer.getvalue()


def test_enhance_upscales_and_binarises():
    result = ImagePreprocessor(PreprocessingConfig(upscale=2.0)).enhance(screenshot_bytes())

    assert result.mode == "L"
    assert result.size == (60, 20)
    assert set(result.getdata()) <= {0, 255}


def test_unreadable_bytes_raise_transient_error():
    with pytest.raises(TransientError):
        ImagePreprocessor().enhance(b"not an image")


@pytest.mark.asyncio
async def test_enhance_file_writes_png(tmp_path):
    source = tmp_path / "raw.bin"
    source.write_bytes(screenshot_bytes())

    target = await ImagePreprocessor().enhance_file(source, tmp_path / "out" / "image.png")

    with Image.open(target) as image:
        assert image.format == "PNG"


@pytest.mark.asyncio
async def test_processed_store_evicts_oldest(tmp_path):
    store = ProcessedImageStore(tmp_path / "processed", max_files=2)
    image = tmp_path / "image.png"
    image.write_bytes(screenshot_bytes())

    saved = []
    for second in range(3):
        path = await store.save(image, "phase1", now=datetime(2024, 3, 20, 12, 0, second))
        os.utime(path, (1_000_000 + second, 1_000_000 + second))
        saved.append(path)

    assert store.count() == 2
    assert not saved[0].exists()
    assert saved[2].name == "[BOT][ 2024-03-20 12:00:02 ][PHASE1].png"


def test_oversized_image_raises_transient_error(monkeypatch):
    # 30x10 is more than twice the lowered limit, which Pillow refuses to open
    monkeypatch.setattr(Image, "MAX_IMAGE_PIXELS", 100)

    with pytest.raises(TransientError):
        ImagePreprocessor().enhance(screenshot_bytes())
