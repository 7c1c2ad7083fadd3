from __future__ import annotations

import io
import zipfile
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Iterable, Optional

from .errors import InputError

if TYPE_CHECKING:
    from .results import Layer


def bundle_name(*, selected: bool = False, when: Optional[datetime] = None) -> str:
    """DepthCut_<timestamp>.zip, or DepthCut_Selected_<timestamp>.zip for a subset."""
    when = when or datetime.now(timezone.utc)
    stamp = when.strftime("%Y-%m-%dT%H-%M-%S-") + f"{when.microsecond // 1000:03d}Z"
    prefix = "DepthCut_Selected_" if selected else "DepthCut_"
    return f"{prefix}{stamp}.zip"


def bundle_layers(layers: Iterable["Layer"]) -> bytes:
    """Pack each layer's PNG under its own filename into an in-memory ZIP."""
    items = list(layers)
    if not items:
        raise InputError("No layers to bundle")
    buf = io.BytesIO()
    # PNG data is already deflated; storing avoids a second compression pass.
    with zipfile.ZipFile(buf, "w", compression=zipfile.ZIP_STORED) as zf:
        for layer in items:
            zf.writestr(layer.filename, layer.png)
    return buf.getvalue()
