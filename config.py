from dataclasses import dataclass
from pathlib import Path
from typing import Optional
import os

from dotenv import load_dotenv

load_dotenv(Path(__file__).parent / ".env")


@dataclass(frozen=True)
class ModelConfig:
    """Configuration for a specific LLM model."""
    name: str
    context_tokens: int
    max_output_tokens: int
    tokens_per_char: float = 0.4

    @property
    def chars_per_token(self) -> float:
        """Characters per token (inverse of tokens_per_char)."""
        return 1 / self.tokens_per_char


@dataclass(frozen=True)
class MappingConfig:
    """Configuration for the tag mapping pipeline."""

    # Model settings
    model: ModelConfig

    # Oracle
    min_confidence: float = 0.7
    section_min_confidence: float = 0.6
    checkbox_min_confidence: float = 0.7
    request_timeout: float = 600.0
    max_retries: int = 2
    max_completion_tokens: int = 16_000

    # Prompt budgets
    system_prompt_tokens: int = 1_500
    safety_margin_tokens: int = 2_000
    max_prompt_nodes: int = 400
    max_segment_paragraphs: int = 60
    max_segment_tag_contexts: int = 30
    max_section_paragraphs: int = 50
    node_preview_chars: int = 80
    section_preview_chars: int = 50
    checkbox_context_chars: int = 4_000

    # Segmentation
    use_segmentation: bool = True
    segmentation_min_nodes: int = 150
    min_segment_size: int = 50
    merge_segment_size: int = 100
    segment_match_threshold: int = 30

    # Repair loop
    max_iterations_per_section: int = 3
    satisfaction_threshold: int = 80

    # Extraction
    max_paragraphs: int = 5_000
    label_lookback: int = 5

    # Fallback
    min_keyword_score: int = 5

    # Checkboxes ("template", "oracle" or "off")
    checkbox_mode: str = "template"

    # Output
    include_trace: bool = False
    document_type: Optional[str] = None

    # Debug
    debug_enabled: bool = False
    debug_dir: str = "debug_prompts"

    # Derived properties
    @property
    def available_input_tokens(self) -> int:
        return (
            self.model.context_tokens
            - self.system_prompt_tokens
            - self.safety_margin_tokens
        )

    @property
    def prompt_char_budget(self) -> int:
        """Maximum prompt size in characters."""
        return int(self.available_input_tokens * self.model.chars_per_token)


# Predefined model configurations
GPT5_MINI = ModelConfig(
    name="gpt-5-mini",
    context_tokens=400_000,
    max_output_tokens=128_000,
)

GPT5 = ModelConfig(
    name="gpt-5",
    context_tokens=400_000,
    max_output_tokens=128_000,
)

GPT4O = ModelConfig(
    name="gpt-4o-2024-08-06",
    context_tokens=128_000,
    max_output_tokens=16_384,
)

GPT4O_MINI = ModelConfig(
    name="gpt-4o-mini",
    context_tokens=128_000,
    max_output_tokens=16_384,
)


CHECKBOX_MODES = ("template", "oracle", "off")

# Form families named in data-structure prompts
DOCUMENT_TYPES = ("DC1", "DC2", "AE", "ATTRI1", "CERFA", "autre")


def get_model_by_name(model_name: str) -> ModelConfig:
    """Get model config by name."""
    model_map = {
        "gpt-5-mini": GPT5_MINI,
        "gpt-5": GPT5,
        "gpt-4o-2024-08-06": GPT4O,
        "gpt-4o": GPT4O,
        "gpt-4o-mini": GPT4O_MINI,
    }
    return model_map.get(model_name, GPT5_MINI)


def _env_flag(name: str) -> bool:
    return os.getenv(name, "").lower() in ("1", "true", "yes")


def get_default_config() -> MappingConfig:
    """Get default configuration based on environment."""
    model = get_model_by_name(os.getenv("OPENAI_MODEL", "gpt-5-mini"))

    checkbox_mode = os.getenv("MAPPER_CHECKBOX_MODE", "template").lower()
    if checkbox_mode not in CHECKBOX_MODES:
        print(f"[Config] Unknown checkbox mode '{checkbox_mode}', using 'template'")
        checkbox_mode = "template"

    min_confidence = 0.7
    raw_confidence = os.getenv("MAPPER_MIN_CONFIDENCE")
    if raw_confidence:
        try:
            min_confidence = float(raw_confidence)
        except ValueError:
            print(f"[Config] Ignoring invalid MAPPER_MIN_CONFIDENCE={raw_confidence!r}")

    return MappingConfig(
        model=model,
        min_confidence=min_confidence,
        checkbox_mode=checkbox_mode,
        debug_enabled=_env_flag("MAPPER_DEBUG"),
    )


# Global default (can be overridden)
DEFAULT_CONFIG = get_default_config()
