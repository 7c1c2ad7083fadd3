from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, List, Optional, Sequence

from PIL import Image

from .errors import InputError
from .imaging import to_data_uri
from .packaging import bundle_layers, bundle_name
from .ranges import DepthRange


def layer_filename(index: int, ext: str = "png") -> str:
    """0-based index -> "0000.png", "0001.png", ..."""
    return f"{index:04d}.{ext}"


@dataclass(frozen=True)
class Layer:
    ordinal: int  # 1-based
    depth_range: DepthRange
    filename: str
    image: Image.Image = field(repr=False, compare=False)
    png: bytes = field(repr=False)
    preview_png: bytes = field(repr=False)
    opaque_pixels: int = 0

    @property
    def index(self) -> int:
        return self.ordinal - 1

    @property
    def size(self) -> int:
        return len(self.png)

    @property
    def dimensions(self) -> tuple:
        return self.image.size

    @property
    def label(self) -> str:
        return self.depth_range.label

    def data_uri(self) -> str:
        return to_data_uri(self.png, "image/png")

    def preview_data_uri(self) -> str:
        return to_data_uri(self.preview_png, "image/png")

    def to_dict(self) -> Dict[str, Any]:
        w, h = self.image.size
        return {
            "layer": self.ordinal,
            "index": self.index,
            "filename": self.filename,
            "depth_range": self.label,
            "min": self.depth_range.min,
            "max": self.depth_range.max,
            "width": w,
            "height": h,
            "size": self.size,
            "opaque_pixels": self.opaque_pixels,
        }


class ResultSet:
    """Ordered, read-only collection of the layers produced by one job."""

    def __init__(self, layers: Sequence[Layer], *, ranges: Optional[Sequence[DepthRange]] = None):
        ordered = list(layers)
        for pos, layer in enumerate(ordered, start=1):
            if layer.ordinal != pos:
                raise ValueError(f"Layers out of order: position {pos} holds ordinal {layer.ordinal}")
        self._layers: List[Layer] = ordered
        self.ranges: List[DepthRange] = list(ranges) if ranges is not None else [l.depth_range for l in ordered]
        self.created_at = datetime.now(timezone.utc)

    def __len__(self) -> int:
        return len(self._layers)

    def __iter__(self) -> Iterator[Layer]:
        return iter(self._layers)

    def __getitem__(self, index: int) -> Layer:
        return self._layers[index]

    @property
    def layers(self) -> List[Layer]:
        return list(self._layers)

    def get(self, index: int) -> Optional[Layer]:
        if 0 <= index < len(self._layers):
            return self._layers[index]
        return None

    def by_filename(self, filename: str) -> Optional[Layer]:
        for layer in self._layers:
            if layer.filename == filename:
                return layer
        return None

    def select(self, indices: Sequence[int]) -> List[Layer]:
        """Layers at the given 0-based indices, ascending, ignoring out-of-range ones."""
        if not indices:
            raise InputError("Select at least one layer")
        wanted = sorted({int(i) for i in indices if 0 <= int(i) < len(self._layers)})
        return [self._layers[i] for i in wanted]

    def stats(self) -> Optional[Dict[str, Any]]:
        if not self._layers:
            return None
        total = sum(l.size for l in self._layers)
        return {
            "total_layers": len(self._layers),
            "total_size": total,
            "avg_size": round(total / len(self._layers)),
            "total_size_mb": round(total / 1024 / 1024, 2),
            "depth_ranges": [r.to_dict() for r in self.ranges],
        }

    def to_zip(self, indices: Optional[Sequence[int]] = None) -> bytes:
        layers = self.layers if indices is None else self.select(indices)
        return bundle_layers(layers)

    def bundle_filename(self, *, selected: bool = False) -> str:
        return bundle_name(selected=selected, when=self.created_at)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "layers": [l.to_dict() for l in self._layers],
            "stats": self.stats(),
        }
