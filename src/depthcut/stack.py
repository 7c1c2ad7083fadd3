from __future__ import annotations

from typing import Any, Dict, Iterable

from .results import Layer

MIN_SPACING_RATIO = 0.01
MAX_SPACING_RATIO = 1.0


def clamp_spacing(ratio: float) -> float:
    return max(MIN_SPACING_RATIO, min(MAX_SPACING_RATIO, float(ratio)))


def stack_layout(layers: Iterable[Layer], *, spacing_ratio: float = 0.5, base_width: float = 1.0) -> Dict[str, Any]:
    """
    Plane positions for a 3D layer-stack preview.

    Layers are spaced `base_width * spacing_ratio` apart along z and centered
    on z=0; the first layer sits farthest back. Plane sizes keep each layer's
    aspect ratio at `base_width` wide.
    """
    items = list(layers)
    ratio = clamp_spacing(spacing_ratio)
    spacing = base_width * ratio
    total_depth = (len(items) - 1) * spacing if items else 0.0
    start_z = -total_depth / 2

    planes = []
    for i, layer in enumerate(items):
        w, h = layer.dimensions
        planes.append(
            {
                "layer": layer.ordinal,
                "filename": layer.filename,
                "depth_range": layer.label,
                "z": round(start_z + i * spacing, 6),
                "width": base_width,
                "height": round(base_width * h / w, 6) if w else base_width,
            }
        )
    return {
        "spacing_ratio": ratio,
        "spacing": spacing,
        "total_depth": total_depth,
        "planes": planes,
    }
