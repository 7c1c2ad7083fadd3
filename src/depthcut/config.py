from __future__ import annotations

import os
from typing import Any, Dict, Literal, Tuple

from pydantic import BaseModel, Field, ValidationError, field_validator

from .errors import ConfigError

BorderMode = Literal["outline", "extend"]
DepthChannel = Literal["R", "G", "B", "A", "L"]

MAX_LAYERS = 64
MAX_BORDER_WIDTH = 64
MAX_DEPTH = 100.0


def _truthy(value: str) -> bool:
    return value.strip().lower() in {"1", "true", "yes", "y", "on"}


def _parse_color(raw: str) -> Tuple[int, int, int, int]:
    raw = raw.strip().lstrip("#")
    if "," in raw:
        parts = [int(p) for p in raw.split(",")]
    elif len(raw) in (6, 8):
        parts = [int(raw[i : i + 2], 16) for i in range(0, len(raw), 2)]
    else:
        raise ConfigError(f"Unrecognized color {raw!r}; use #RRGGBB[AA] or r,g,b[,a]")
    if len(parts) == 3:
        parts.append(255)
    if len(parts) != 4:
        raise ConfigError(f"Unrecognized color {raw!r}; expected 3 or 4 components")
    return tuple(parts)  # type: ignore[return-value]


class CutConfig(BaseModel):
    """
    Options consumed by the layer cutter.

    Layer count, depth overlap and border width are the user-facing controls.
    The remaining fields tune how depth is read and how borders are painted.
    """

    layer_count: int = Field(default=8, ge=1, le=MAX_LAYERS)
    depth_overlap: float = Field(default=1.0, ge=0.0, le=MAX_DEPTH)
    border_width: int = Field(default=0, ge=0, le=MAX_BORDER_WIDTH)

    # How dilated border pixels are colored.
    border_mode: BorderMode = "outline"
    border_color: Tuple[int, int, int, int] = (255, 255, 255, 255)

    # Which channel of the depth image carries the signal, and whether
    # high values mean near (invert) or far (default).
    depth_channel: DepthChannel = "R"
    depth_invert: bool = False

    preview_size: Tuple[int, int] = (150, 150)

    # >1 composites layers on a thread pool.
    concurrency: int = Field(default=1, ge=1, le=16)

    @field_validator("border_color", mode="before")
    @classmethod
    def _coerce_color(cls, v: Any) -> Any:
        if isinstance(v, str):
            return _parse_color(v)
        if isinstance(v, (list, tuple)) and len(v) == 3:
            return (*v, 255)
        return v

    @field_validator("border_color")
    @classmethod
    def _validate_color(cls, v: Tuple[int, int, int, int]) -> Tuple[int, int, int, int]:
        if any(c < 0 or c > 255 for c in v):
            raise ValueError("border_color components must be within 0..255")
        return v

    @field_validator("preview_size")
    @classmethod
    def _validate_preview(cls, v: Tuple[int, int]) -> Tuple[int, int]:
        if v[0] < 1 or v[1] < 1:
            raise ValueError("preview_size must be positive")
        return v

    @classmethod
    def build(cls, **data: Any) -> "CutConfig":
        """Construct a config, turning validation failures into ConfigError."""
        try:
            return cls(**data)
        except ValidationError as exc:
            raise ConfigError(_describe(exc)) from exc

    def merged(self, overrides: Dict[str, Any]) -> "CutConfig":
        data = self.model_dump()
        data.update({k: v for k, v in overrides.items() if v is not None})
        return CutConfig.build(**data)

    @classmethod
    def from_env(cls) -> "CutConfig":
        """
        Load config overrides from environment variables.

        Supported env vars (optional):
          - DEPTHCUT_LAYER_COUNT
          - DEPTHCUT_DEPTH_OVERLAP
          - DEPTHCUT_BORDER_WIDTH
          - DEPTHCUT_BORDER_MODE
          - DEPTHCUT_BORDER_COLOR
          - DEPTHCUT_DEPTH_CHANNEL
          - DEPTHCUT_DEPTH_INVERT
          - DEPTHCUT_CONCURRENCY
        """
        data: Dict[str, Any] = {}
        if os.getenv("DEPTHCUT_LAYER_COUNT"):
            data["layer_count"] = int(os.environ["DEPTHCUT_LAYER_COUNT"])
        if os.getenv("DEPTHCUT_DEPTH_OVERLAP"):
            data["depth_overlap"] = float(os.environ["DEPTHCUT_DEPTH_OVERLAP"])
        if os.getenv("DEPTHCUT_BORDER_WIDTH"):
            data["border_width"] = int(os.environ["DEPTHCUT_BORDER_WIDTH"])
        if os.getenv("DEPTHCUT_BORDER_MODE"):
            data["border_mode"] = os.environ["DEPTHCUT_BORDER_MODE"].strip().lower()
        if os.getenv("DEPTHCUT_BORDER_COLOR"):
            data["border_color"] = os.environ["DEPTHCUT_BORDER_COLOR"]
        if os.getenv("DEPTHCUT_DEPTH_CHANNEL"):
            data["depth_channel"] = os.environ["DEPTHCUT_DEPTH_CHANNEL"].strip().upper()
        if os.getenv("DEPTHCUT_DEPTH_INVERT"):
            data["depth_invert"] = _truthy(os.environ["DEPTHCUT_DEPTH_INVERT"])
        if os.getenv("DEPTHCUT_CONCURRENCY"):
            data["concurrency"] = int(os.environ["DEPTHCUT_CONCURRENCY"])
        return cls.build(**data)


class DepthSourceConfig(BaseModel):
    """
    Settings for the Replicate depth-estimation collaborator.

    The API token is not stored here; see clients.replicate_client.TokenStore.
    """

    base_url: str = Field(default="https://api.replicate.com/v1")
    depth_model: str = Field(
        default="chenxwh/depth-anything-v2:b239ea33cff32bb7abb5db39ffe9a09c14cbc2894331d1ef66fe096eed88ebd4"
    )
    depth_params: Dict[str, Any] = Field(default_factory=dict)

    poll_interval_s: float = Field(default=5.0, gt=0.0)
    max_poll_attempts: int = Field(default=60, ge=1)
    request_timeout_s: float = Field(default=60.0, gt=0.0)

    max_upload_bytes: int = Field(default=10 * 1024 * 1024, ge=1)

    @classmethod
    def from_env(cls) -> "DepthSourceConfig":
        """
        Supported env vars (optional):
          - DEPTHCUT_REPLICATE_BASE_URL
          - DEPTHCUT_DEPTH_MODEL
          - DEPTHCUT_POLL_INTERVAL_S
          - DEPTHCUT_MAX_POLL_ATTEMPTS
          - DEPTHCUT_MAX_UPLOAD_MB
        """
        data: Dict[str, Any] = {}
        if os.getenv("DEPTHCUT_REPLICATE_BASE_URL"):
            data["base_url"] = os.environ["DEPTHCUT_REPLICATE_BASE_URL"].rstrip("/")
        if os.getenv("DEPTHCUT_DEPTH_MODEL"):
            data["depth_model"] = os.environ["DEPTHCUT_DEPTH_MODEL"]
        if os.getenv("DEPTHCUT_POLL_INTERVAL_S"):
            data["poll_interval_s"] = float(os.environ["DEPTHCUT_POLL_INTERVAL_S"])
        if os.getenv("DEPTHCUT_MAX_POLL_ATTEMPTS"):
            data["max_poll_attempts"] = int(os.environ["DEPTHCUT_MAX_POLL_ATTEMPTS"])
        if os.getenv("DEPTHCUT_MAX_UPLOAD_MB"):
            data["max_upload_bytes"] = int(float(os.environ["DEPTHCUT_MAX_UPLOAD_MB"]) * 1024 * 1024)
        try:
            return cls(**data)
        except ValidationError as exc:
            raise ConfigError(_describe(exc)) from exc


def _describe(exc: ValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ())) or "config"
        parts.append(f"{loc}: {err.get('msg')}")
    return "Invalid configuration: " + "; ".join(parts)
