"""Configuration management for the Storage Image Describer."""

from .settings import (
    PipelineConfig,
    VertexConfig,
    GenerationSettings,
    DEFAULT_SAFETY_SETTINGS,
    load_generation_settings,
    get_pipeline_config,
)

__all__ = [
    "PipelineConfig",
    "VertexConfig",
    "GenerationSettings",
    "DEFAULT_SAFETY_SETTINGS",
    "load_generation_settings",
    "get_pipeline_config",
]
