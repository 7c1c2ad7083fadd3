from __future__ import annotations

import os
import tempfile
from io import BytesIO

import numpy as np
import pytest
from PIL import Image

# The API module creates its job directory at import time.
os.environ.setdefault("DEPTHCUT_LOCAL_DIR", tempfile.mkdtemp(prefix="depthcut-tests-"))


def gradient(width: int, height: int) -> Image.Image:
    """Horizontal gray ramp: column x has value round(x / (width - 1) * 255)."""
    row = np.array([int(round(x / (width - 1) * 255)) for x in range(width)], dtype=np.uint8)
    return Image.fromarray(np.tile(row, (height, 1)))


def png_bytes(im: Image.Image) -> bytes:
    buf = BytesIO()
    im.save(buf, format="PNG")
    return buf.getvalue()


@pytest.fixture
def red_image() -> Image.Image:
    return Image.new("RGBA", (100, 100), (255, 0, 0, 255))


@pytest.fixture
def gradient_depth() -> Image.Image:
    return gradient(100, 100)
