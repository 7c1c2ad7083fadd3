from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List

import numpy as np

from .errors import ConfigError

MAX_DEPTH = 100.0


def _round1(value: float) -> float:
    # Half-up rounding to one decimal, like Math.round(v * 10) / 10.
    return float(np.floor(value * 10.0 + 0.5) / 10.0)


@dataclass(frozen=True)
class DepthRange:
    """A band of the depth scale: [min, max), or [min, max] when final."""

    index: int
    min: float
    max: float
    final: bool = False

    @property
    def label(self) -> str:
        return f"{_fmt(self.min)}~{_fmt(self.max)}"

    def contains(self, depth: float) -> bool:
        if depth < self.min:
            return False
        if self.final:
            return depth <= self.max
        return depth < self.max

    def mask(self, values: np.ndarray) -> np.ndarray:
        """Boolean mask of the pixels whose depth falls inside this range."""
        upper = values <= self.max if self.final else values < self.max
        return (values >= self.min) & upper

    def to_dict(self) -> Dict[str, Any]:
        return {
            "index": self.index,
            "min": self.min,
            "max": self.max,
            "final": self.final,
            "label": self.label,
        }


def _fmt(value: float) -> str:
    return f"{value:g}"


def partition(layer_count: int, overlap: float = 0.0) -> List[DepthRange]:
    """
    Split the 0..100 depth scale into `layer_count` ascending ranges.

    Every range except the last has its upper bound pushed out by `overlap`
    (capped at 100), so neighbouring layers share a band of pixels. Lower
    bounds never move, which keeps every pixel in at least one layer.
    """
    if isinstance(layer_count, bool) or not isinstance(layer_count, (int, np.integer)):
        raise ConfigError(f"layer_count must be an integer, got {layer_count!r}")
    if layer_count < 1:
        raise ConfigError(f"layer_count must be >= 1, got {layer_count}")
    try:
        overlap = float(overlap)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"overlap must be a number, got {overlap!r}") from exc
    if not np.isfinite(overlap) or overlap < 0:
        raise ConfigError(f"overlap must be a finite number >= 0, got {overlap}")

    step = MAX_DEPTH / layer_count
    ranges: List[DepthRange] = []
    for i in range(layer_count):
        lo = _round1(step * i)
        hi = _round1(step * (i + 1))
        final = i == layer_count - 1
        if final:
            hi = MAX_DEPTH
        else:
            hi = _round1(min(MAX_DEPTH, hi + overlap))
        ranges.append(DepthRange(index=i, min=lo, max=hi, final=final))
    return ranges
