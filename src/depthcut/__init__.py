from .compositor import composite
from .config import CutConfig
from .depth import DepthField, extract_depth_field
from .errors import ConfigError, DepthCutError, DepthGenerationError, InputError, JobCanceled, ResourceError
from .pipeline import CutJob, DepthCutPipeline, JobState
from .ranges import DepthRange, partition
from .results import Layer, ResultSet

__all__ = [
    "CutConfig",
    "CutJob",
    "DepthCutPipeline",
    "JobState",
    "DepthField",
    "extract_depth_field",
    "DepthRange",
    "partition",
    "composite",
    "Layer",
    "ResultSet",
    "DepthCutError",
    "InputError",
    "ResourceError",
    "ConfigError",
    "DepthGenerationError",
    "JobCanceled",
]
