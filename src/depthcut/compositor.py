from __future__ import annotations

import logging
from typing import Optional, Tuple

import numpy as np
from PIL import Image

from .borders import BorderStrategy, OutlineBorder
from .depth import DepthField
from .errors import ConfigError, InputError, ResourceError
from .imaging import encode_png, make_preview
from .ranges import DepthRange
from .results import Layer, layer_filename

logger = logging.getLogger("depthcut.compositor")


def cut_mask(depth_field: DepthField, depth_range: DepthRange) -> np.ndarray:
    """Pixels that stay opaque for `depth_range`."""
    return depth_range.mask(depth_field.values)


def composite(
    color_image: Image.Image,
    depth_field: DepthField,
    depth_range: DepthRange,
    border_width: int = 0,
    *,
    border: Optional[BorderStrategy] = None,
    preview_size: Tuple[int, int] = (150, 150),
) -> Layer:
    """
    Cut one layer out of `color_image`.

    Pixels whose depth falls outside `depth_range` get alpha 0; the rest keep
    the source color at full opacity. With `border_width > 0` the opaque region
    is then grown by that many pixels using `border` (outline by default).
    Neither input is modified.
    """
    if not isinstance(color_image, Image.Image):
        raise InputError("Color image is missing or not a decoded image")
    if depth_field.size != color_image.size:
        raise InputError(
            f"Depth field {depth_field.size[0]}x{depth_field.size[1]} does not match "
            f"color image {color_image.size[0]}x{color_image.size[1]}"
        )
    if border_width < 0:
        raise ConfigError(f"border_width must be >= 0, got {border_width}")

    try:
        rgb = np.asarray(color_image.convert("RGB"), dtype=np.uint8)
        h, w = rgb.shape[:2]
        rgba = np.empty((h, w, 4), dtype=np.uint8)
        rgba[:, :, :3] = rgb
        rgba[:, :, 3] = 255

        opaque = cut_mask(depth_field, depth_range)
        rgba[~opaque, 3] = 0

        if border_width > 0:
            strategy = border or OutlineBorder()
            rgba = strategy.apply(rgba, opaque, int(border_width))

        out = Image.fromarray(rgba)
        png = encode_png(out)
        preview_png = encode_png(make_preview(out, preview_size))
    except MemoryError as exc:
        raise ResourceError(f"Not enough memory to composite a {color_image.size[0]}x{color_image.size[1]} layer") from exc

    opaque_pixels = int(np.count_nonzero(rgba[:, :, 3]))
    logger.debug(
        "layer %d depth %s opaque=%d/%d",
        depth_range.index + 1,
        depth_range.label,
        opaque_pixels,
        h * w,
    )
    return Layer(
        ordinal=depth_range.index + 1,
        depth_range=depth_range,
        filename=layer_filename(depth_range.index),
        image=out,
        png=png,
        preview_png=preview_png,
        opaque_pixels=opaque_pixels,
    )
