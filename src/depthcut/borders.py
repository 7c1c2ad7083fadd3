from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
from typing import Protocol, Tuple, runtime_checkable

import numpy as np
from scipy import ndimage

from .errors import ConfigError


@lru_cache(maxsize=32)
def disc_structure(radius: int) -> np.ndarray:
    """Boolean disc of the given pixel radius (center included)."""
    y, x = np.ogrid[-radius : radius + 1, -radius : radius + 1]
    return (x * x + y * y) <= radius * radius


def grow_mask(mask: np.ndarray, width: int) -> np.ndarray:
    """Dilate `mask` outward by `width` pixels with a disc kernel."""
    if width <= 0 or not mask.any():
        return mask.copy()
    return ndimage.binary_dilation(mask, structure=disc_structure(int(width)))


@runtime_checkable
class BorderStrategy(Protocol):
    def apply(self, rgba: np.ndarray, opaque: np.ndarray, width: int) -> np.ndarray:
        """Return a new RGBA array with the opaque region grown by `width`."""
        ...


@dataclass(frozen=True)
class OutlineBorder:
    """Paint the grown ring in a single color, giving the cut-out an outline."""

    color: Tuple[int, int, int, int] = (255, 255, 255, 255)

    def apply(self, rgba: np.ndarray, opaque: np.ndarray, width: int) -> np.ndarray:
        out = rgba.copy()
        ring = grow_mask(opaque, width) & ~opaque
        out[ring] = np.asarray(self.color, dtype=np.uint8)
        return out


@dataclass(frozen=True)
class ExtendBorder:
    """Fill the grown ring with the color of the nearest opaque pixel."""

    def apply(self, rgba: np.ndarray, opaque: np.ndarray, width: int) -> np.ndarray:
        out = rgba.copy()
        if not opaque.any():
            return out
        ring = grow_mask(opaque, width) & ~opaque
        if not ring.any():
            return out
        # Indices of the nearest opaque pixel for every transparent one.
        _, (iy, ix) = ndimage.distance_transform_edt(~opaque, return_indices=True)
        out[ring, :3] = rgba[iy[ring], ix[ring], :3]
        out[ring, 3] = 255
        return out


def make_border(mode: str, color: Tuple[int, int, int, int] = (255, 255, 255, 255)) -> BorderStrategy:
    mode = (mode or "outline").lower()
    if mode == "outline":
        return OutlineBorder(color=tuple(color))  # type: ignore[arg-type]
    if mode == "extend":
        return ExtendBorder()
    raise ConfigError(f"Unknown border mode {mode!r}; expected 'outline' or 'extend'")
