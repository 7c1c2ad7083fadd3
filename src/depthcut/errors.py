from __future__ import annotations


class DepthCutError(Exception):
    """Base class for every error raised by depthcut."""


class InputError(DepthCutError, ValueError):
    """Missing, unreadable or unsupported color/depth image."""


class ResourceError(DepthCutError, RuntimeError):
    """Buffer allocation failed (oversized image)."""


class ConfigError(DepthCutError, ValueError):
    """Invalid layer count, overlap, border or channel settings."""


class DepthGenerationError(DepthCutError, RuntimeError):
    """The external depth-estimation service failed or returned garbage."""


class JobCanceled(DepthCutError):
    """The job was canceled before it completed."""
