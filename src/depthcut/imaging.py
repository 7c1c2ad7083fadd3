from __future__ import annotations

import base64
from io import BytesIO
from pathlib import Path
from typing import Dict, Tuple, Union

from PIL import Image, UnidentifiedImageError

from .errors import InputError, ResourceError

ImageSource = Union[str, Path, bytes, bytearray, Image.Image]

# Upload formats accepted from users (Pillow format name -> MIME type).
ALLOWED_FORMATS: Dict[str, str] = {
    "JPEG": "image/jpeg",
    "PNG": "image/png",
    "BMP": "image/bmp",
    "WEBP": "image/webp",
}
MAX_UPLOAD_BYTES = 10 * 1024 * 1024


def load_image(source: ImageSource, *, label: str = "image") -> Image.Image:
    """Decode `source` into a fully loaded Pillow image.

    Accepts a path, raw encoded bytes or an already decoded image.
    """
    if source is None:
        raise InputError(f"Missing {label}")
    if isinstance(source, Image.Image):
        return source
    try:
        if isinstance(source, (bytes, bytearray)):
            if not source:
                raise InputError(f"Empty {label}")
            im = Image.open(BytesIO(bytes(source)))
        else:
            im = Image.open(str(source))
        im.load()
    except InputError:
        raise
    except FileNotFoundError as exc:
        raise InputError(f"{label} not found: {source}") from exc
    except UnidentifiedImageError as exc:
        raise InputError(f"Unsupported or unreadable {label}") from exc
    except (Image.DecompressionBombError, MemoryError) as exc:
        raise ResourceError(f"{label} is too large to decode: {exc}") from exc
    except OSError as exc:
        raise InputError(f"Unreadable {label}: {exc}") from exc
    return im


def validate_upload(data: bytes, *, label: str = "image", max_bytes: int = MAX_UPLOAD_BYTES) -> str:
    """Check an uploaded file against the accepted formats and size limit.

    Returns the MIME type of the upload.
    """
    if not data:
        raise InputError(f"Please provide a {label}")
    if len(data) > max_bytes:
        raise InputError(
            f"{label} is too large ({len(data) / 1024 / 1024:.2f}MB); "
            f"uploads must be smaller than {max_bytes / 1024 / 1024:.0f}MB"
        )
    try:
        with Image.open(BytesIO(data)) as im:
            fmt = (im.format or "").upper()
    except UnidentifiedImageError as exc:
        raise InputError(f"Unreadable {label}") from exc
    if fmt not in ALLOWED_FORMATS:
        raise InputError(f"Unsupported {label} format {fmt or 'unknown'}; upload JPG, PNG, BMP or WebP")
    return ALLOWED_FORMATS[fmt]


def ensure_rgba(im: Image.Image) -> Image.Image:
    if im.mode != "RGBA":
        return im.convert("RGBA")
    return im


def resize_to(im: Image.Image, size: Tuple[int, int]) -> Image.Image:
    """Resample to exactly `size` with high-quality interpolation."""
    if im.size == tuple(size):
        return im
    return im.resize(tuple(size), Image.Resampling.LANCZOS)


def make_preview(im: Image.Image, max_size: Tuple[int, int] = (150, 150)) -> Image.Image:
    """Downscale to fit inside `max_size`, keeping aspect ratio. Never upscales."""
    w, h = im.size
    max_w, max_h = max_size
    scale = min(max_w / w, max_h / h, 1.0)
    pw = max(1, int(w * scale))
    ph = max(1, int(h * scale))
    if (pw, ph) == (w, h):
        return im.copy()
    return im.resize((pw, ph), Image.Resampling.LANCZOS)


def encode_png(im: Image.Image) -> bytes:
    buf = BytesIO()
    im.save(buf, format="PNG")
    return buf.getvalue()


def to_data_uri(data: bytes, mime: str = "image/png") -> str:
    b64 = base64.b64encode(data).decode("utf-8")
    return f"data:{mime};base64,{b64}"


def from_data_uri(uri: str) -> bytes:
    if not uri.startswith("data:") or "," not in uri:
        raise InputError("Not a data URI")
    header, payload = uri.split(",", 1)
    if ";base64" not in header:
        raise InputError("Only base64 data URIs are supported")
    return base64.b64decode(payload)


def image_info(im: Image.Image) -> Dict[str, float]:
    w, h = im.size
    return {
        "width": w,
        "height": h,
        "megapixels": round(w * h / 1_000_000, 1),
        "aspect_ratio": round(w / h, 2) if h else 0.0,
    }
