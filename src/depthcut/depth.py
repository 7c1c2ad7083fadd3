from __future__ import annotations

import logging
from typing import Tuple

import numpy as np
from PIL import Image

from .errors import ConfigError, InputError, ResourceError
from .imaging import resize_to

logger = logging.getLogger("depthcut.depth")

DEPTH_SCALE = 100.0

# Band index within an RGBA buffer for each selectable channel.
_CHANNEL_BANDS = {"R": 0, "G": 1, "B": 2, "A": 3}


class DepthField:
    """Per-pixel depth on the 0..100 scale, sized like the color image.

    The underlying array is read-only; compositors share one instance.
    """

    __slots__ = ("values",)

    def __init__(self, values: np.ndarray):
        values = np.asarray(values, dtype=np.float32)
        if values.ndim != 2:
            raise InputError(f"Depth field must be 2D, got shape {values.shape}")
        if values.flags.writeable:
            values = values.copy()
            values.setflags(write=False)
        self.values = values

    @property
    def shape(self) -> Tuple[int, int]:
        return self.values.shape  # type: ignore[return-value]

    @property
    def size(self) -> Tuple[int, int]:
        """(width, height), matching PIL's convention."""
        h, w = self.values.shape
        return w, h

    def __getitem__(self, key):
        return self.values[key]

    def stats(self) -> dict:
        v = self.values
        return {
            "min": float(v.min()),
            "max": float(v.max()),
            "mean": float(v.mean()),
        }


def _channel_values(depth_image: Image.Image, channel: str) -> np.ndarray:
    channel = channel.upper()
    if channel == "L":
        return np.asarray(depth_image.convert("L"), dtype=np.uint8)
    if channel not in _CHANNEL_BANDS:
        raise ConfigError(f"Unknown depth channel {channel!r}; expected one of R, G, B, A, L")
    rgba = depth_image if depth_image.mode == "RGBA" else depth_image.convert("RGBA")
    return np.asarray(rgba, dtype=np.uint8)[:, :, _CHANNEL_BANDS[channel]]


def extract_depth_field(
    color_image: Image.Image,
    depth_image: Image.Image,
    *,
    channel: str = "R",
    invert: bool = False,
) -> DepthField:
    """
    Convert a grayscale depth image into a DepthField for `color_image`.

    The depth image is resampled (Lanczos) to the color image's size when the
    two differ. Each pixel maps linearly from 0..255 to 0..100; `invert`
    flips the scale for depth sources where bright means far.
    """
    if not isinstance(color_image, Image.Image):
        raise InputError("Color image is missing or not a decoded image")
    if not isinstance(depth_image, Image.Image):
        raise InputError("Depth image is missing or not a decoded image")

    target = color_image.size
    if depth_image.size != target:
        logger.info(
            "resampling depth %dx%d -> %dx%d",
            depth_image.size[0],
            depth_image.size[1],
            target[0],
            target[1],
        )
    else:
        logger.debug("depth size matches color image (%dx%d)", *target)

    try:
        # I;16 and F depth maps lose their range through convert("RGBA"), so
        # bring them down to 8-bit gray before resampling.
        if depth_image.mode in ("I", "I;16", "I;16B", "I;16L", "F"):
            depth_image = _to_8bit(depth_image)
        elif depth_image.mode not in ("L", "RGB", "RGBA"):
            depth_image = depth_image.convert("RGBA")
        resized = resize_to(depth_image, target)
        raw = _channel_values(resized, channel)
        values = raw.astype(np.float32) / np.float32(255.0) * np.float32(DEPTH_SCALE)
        if invert:
            values = np.float32(DEPTH_SCALE) - values
        values.setflags(write=False)
    except MemoryError as exc:
        raise ResourceError(f"Not enough memory for a {target[0]}x{target[1]} depth field") from exc

    return DepthField(values)


def _to_8bit(im: Image.Image) -> Image.Image:
    arr = np.asarray(im, dtype=np.float64)
    if im.mode == "F":
        lo, hi = float(arr.min()), float(arr.max())
        scaled = (arr - lo) / (hi - lo) * 255.0 if hi > lo else np.zeros_like(arr)
    else:
        # Integer modes carry 16-bit samples (Pillow opens 16-bit PNGs as I;16 or I).
        scaled = arr / 65535.0 * 255.0
    return Image.fromarray(np.clip(np.rint(scaled), 0, 255).astype(np.uint8))
