"""
Configuration settings for the Storage Image Describer.

All settings are read once at process start and never mutated afterwards.
Values come from environment variables (a local .env file is honoured for
development) and, for generation parameters, an optional YAML file.
"""

import os
import logging
from pathlib import Path
from types import MappingProxyType
from dataclasses import dataclass, field, replace
from typing import Any, Dict, Mapping, Optional

import yaml
from dotenv import load_dotenv

logger = logging.getLogger(__name__)

load_dotenv()


DEFAULT_INSTRUCTION = "Describe this image in portuguese"
DEFAULT_MODEL_NAME = "gemini-1.5-flash-002"
DEFAULT_LOCATION = "us-central1"
DEFAULT_MIME_TYPE = "image/jpeg"

# All major harm categories relaxed to "no filtering"
DEFAULT_SAFETY_SETTINGS: Mapping[str, str] = MappingProxyType({
    "HARM_CATEGORY_HATE_SPEECH": "OFF",
    "HARM_CATEGORY_DANGEROUS_CONTENT": "OFF",
    "HARM_CATEGORY_SEXUALLY_EXPLICIT": "OFF",
    "HARM_CATEGORY_HARASSMENT": "OFF",
})


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class VertexConfig:
    """Vertex AI project and model selection."""
    project_id: Optional[str] = None  # None lets google-genai read GOOGLE_CLOUD_PROJECT
    location: str = DEFAULT_LOCATION
    model_name: str = DEFAULT_MODEL_NAME


@dataclass(frozen=True)
class GenerationSettings:
    """
    Fixed generation parameters and safety policy.

    Shared read-only by every invocation; the safety mapping is wrapped in a
    MappingProxyType so it cannot be changed after construction.
    """
    max_output_tokens: int = 8192
    temperature: float = 1.0
    top_p: float = 0.95
    safety_settings: Mapping[str, str] = field(default_factory=lambda: DEFAULT_SAFETY_SETTINGS)

    def __post_init__(self):
        if self.max_output_tokens <= 0:
            raise ValueError(f"max_output_tokens must be positive, got {self.max_output_tokens}")
        if not 0.0 <= self.temperature <= 2.0:
            raise ValueError(f"temperature must be within [0, 2], got {self.temperature}")
        if not 0.0 < self.top_p <= 1.0:
            raise ValueError(f"top_p must be within (0, 1], got {self.top_p}")
        if not isinstance(self.safety_settings, MappingProxyType):
            object.__setattr__(self, "safety_settings", MappingProxyType(dict(self.safety_settings)))


@dataclass(frozen=True)
class PipelineConfig:
    """Main pipeline configuration."""
    vertex: VertexConfig = field(default_factory=VertexConfig)
    generation: GenerationSettings = field(default_factory=GenerationSettings)
    instruction_text: str = DEFAULT_INSTRUCTION
    default_mime_type: str = DEFAULT_MIME_TYPE
    retry_on_failure: bool = False  # raise on retryable failures so the platform redelivers
    log_level: str = "INFO"


def _threshold_value(category: str, threshold: Any) -> str:
    # YAML 1.1 reads unquoted OFF/ON as booleans
    if isinstance(threshold, bool):
        return "ON" if threshold else "OFF"
    if not isinstance(threshold, str) or not threshold:
        raise ValueError(f"Invalid safety threshold for {category}: {threshold!r}")
    return threshold


def load_generation_settings(config_path: Optional[str] = None) -> GenerationSettings:
    """
    Load generation settings from a YAML file, falling back to defaults.

    Expected layout:

        max_output_tokens: 8192
        temperature: 1.0
        top_p: 0.95
        safety_settings:
          HARM_CATEGORY_HATE_SPEECH: "OFF"

    Args:
        config_path: Path to the YAML file. Missing files yield the defaults.

    Returns:
        GenerationSettings built from the file contents.
    """
    settings = GenerationSettings()
    if config_path is None:
        return settings

    path = Path(config_path)
    if not path.exists():
        logger.warning(f"Generation config file not found: {path}")
        return settings

    with open(path, 'r') as f:
        raw: Dict[str, Any] = yaml.safe_load(f) or {}

    overrides: Dict[str, Any] = {}
    if 'max_output_tokens' in raw:
        overrides['max_output_tokens'] = int(raw['max_output_tokens'])
    if 'temperature' in raw:
        overrides['temperature'] = float(raw['temperature'])
    if 'top_p' in raw:
        overrides['top_p'] = float(raw['top_p'])
    if raw.get('safety_settings'):
        overrides['safety_settings'] = {
            str(category): _threshold_value(category, threshold)
            for category, threshold in raw['safety_settings'].items()
        }

    logger.info(f"Loaded generation settings from {path}")
    return replace(settings, **overrides)


def get_pipeline_config() -> PipelineConfig:
    """
    Create pipeline configuration from environment variables.

    Environment variables (all optional):
        GCP_PROJECT_ID / GOOGLE_CLOUD_PROJECT: Google Cloud project ID
        GCP_LOCATION: Vertex AI region (default: us-central1)
        GEMINI_MODEL_NAME: Model identifier (default: gemini-1.5-flash-002)
        GENERATION_CONFIG_PATH: YAML file with generation/safety settings
        GEMINI_MAX_OUTPUT_TOKENS, GEMINI_TEMPERATURE, GEMINI_TOP_P: scalar overrides
        DESCRIBE_INSTRUCTION: Instruction sent alongside each image
        DEFAULT_MIME_TYPE: MIME type used when none can be determined
        RETRY_ON_FAILURE: "true" to surface retryable failures to the platform
        LOG_LEVEL: Logging level (default: INFO)
    """
    vertex = VertexConfig(
        project_id=os.getenv('GCP_PROJECT_ID') or os.getenv('GOOGLE_CLOUD_PROJECT'),
        location=os.getenv('GCP_LOCATION', DEFAULT_LOCATION),
        model_name=os.getenv('GEMINI_MODEL_NAME', DEFAULT_MODEL_NAME),
    )

    generation = load_generation_settings(os.getenv('GENERATION_CONFIG_PATH'))

    scalar_overrides: Dict[str, Any] = {}
    if os.getenv('GEMINI_MAX_OUTPUT_TOKENS'):
        scalar_overrides['max_output_tokens'] = int(os.environ['GEMINI_MAX_OUTPUT_TOKENS'])
    if os.getenv('GEMINI_TEMPERATURE'):
        scalar_overrides['temperature'] = float(os.environ['GEMINI_TEMPERATURE'])
    if os.getenv('GEMINI_TOP_P'):
        scalar_overrides['top_p'] = float(os.environ['GEMINI_TOP_P'])
    if scalar_overrides:
        generation = replace(generation, **scalar_overrides)

    return PipelineConfig(
        vertex=vertex,
        generation=generation,
        instruction_text=os.getenv('DESCRIBE_INSTRUCTION', DEFAULT_INSTRUCTION),
        default_mime_type=os.getenv('DEFAULT_MIME_TYPE', DEFAULT_MIME_TYPE),
        retry_on_failure=_env_bool('RETRY_ON_FAILURE'),
        log_level=os.getenv('LOG_LEVEL', 'INFO').upper(),
    )
