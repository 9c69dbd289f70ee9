"""
Configuration for the Phi-3 core model.

This module provides validated configuration management on top of
HuggingFace's PretrainedConfig. Key features:
- Eager validation of every hyperparameter combination (head divisibility,
  rotary sub-slice, scaling strategy payload)
- Preset loading for common Phi-3 sizes
- Conversion from HuggingFace Phi-3 ``config.json`` dictionaries

Rationale: configuration errors are reported when the config is built, naming
the offending field, instead of surfacing as shape mismatches mid forward pass.
"""

from __future__ import annotations

import enum
import logging
import numbers
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional, Sequence, Tuple, Union

from transformers import PretrainedConfig
from transformers.activations import ACT2FN

from .constants import (
    ACTIVATION_ALIASES,
    DEFAULT_ACTIVATION,
    DEFAULT_CLASSIFIER_DROPOUT,
    DEFAULT_HIDDEN_SIZE,
    DEFAULT_INITIALIZER_SCALE,
    DEFAULT_INTERMEDIATE_SIZE,
    DEFAULT_LAYER_NORM_EPSILON,
    DEFAULT_MAX_POSITIONS,
    DEFAULT_NUM_ATTENTION_HEADS,
    DEFAULT_NUM_BLOCKS,
    DEFAULT_PAD_TOKEN_ID,
    DEFAULT_ROTARY_BASE,
    DEFAULT_VOCAB_SIZE,
    LONGROPE_TYPES,
)

logger = logging.getLogger(__name__)


class Phi3Architecture(str, enum.Enum):
    """Output head variants. The value is what gets stored in the config."""

    BASE = "base"
    CAUSAL_LM = "for_causal_language_modeling"
    SEQUENCE_CLASSIFICATION = "for_sequence_classification"
    TOKEN_CLASSIFICATION = "for_token_classification"


def _is_number(value: Any) -> bool:
    return isinstance(value, numbers.Real) and not isinstance(value, bool)


def resolve_activation(name: str) -> str:
    """Map an activation name onto its ``ACT2FN`` key."""
    resolved = ACTIVATION_ALIASES.get(name, name)
    if resolved not in ACT2FN:
        raise ValueError(f"activation '{name}' is not supported, expected one of {sorted(ACT2FN.keys())}")
    return resolved


@dataclass(frozen=True)
class LongRopeScaling:
    """
    LongRoPE rotary scaling strategy.

    Two per-dimension multiplier sequences: ``short_factor`` applies while the
    sequence fits in ``original_max_positions``, ``long_factor`` beyond it.
    Each sequence has one entry per rotated dimension pair.
    """

    short_factor: Tuple[float, ...]
    long_factor: Tuple[float, ...]
    original_max_positions: int

    def __post_init__(self) -> None:
        for name in ("short_factor", "long_factor"):
            factors = getattr(self, name)
            if isinstance(factors, (str, bytes)) or not isinstance(factors, Sequence):
                raise ValueError(f"rotary scaling {name} must be a list of numbers, got {factors!r}")
            if len(factors) == 0:
                raise ValueError(f"rotary scaling {name} must not be empty")
            if not all(_is_number(f) for f in factors):
                raise ValueError(f"rotary scaling {name} must contain only numbers, got {list(factors)!r}")
            if any(f <= 0 for f in factors):
                raise ValueError(f"rotary scaling {name} must contain only positive numbers, got {list(factors)!r}")
            object.__setattr__(self, name, tuple(float(f) for f in factors))

        if len(self.short_factor) != len(self.long_factor):
            raise ValueError(
                f"rotary scaling short_factor ({len(self.short_factor)} entries) and "
                f"long_factor ({len(self.long_factor)} entries) must have the same length"
            )

        original = self.original_max_positions
        if not _is_number(original) or original <= 0 or int(original) != original:
            raise ValueError(
                f"rotary scaling original_max_positions must be a positive integer, got {original!r}"
            )
        object.__setattr__(self, "original_max_positions", int(original))

    @classmethod
    def from_value(cls, value: Union["LongRopeScaling", Mapping[str, Any]]) -> "LongRopeScaling":
        """Parse the dictionary form stored on the config."""
        if isinstance(value, cls):
            return value
        if not isinstance(value, Mapping):
            raise ValueError(f"rotary scaling strategy must be a mapping, got {value!r}")

        scaling_type = value.get("type", "longrope")
        if scaling_type not in LONGROPE_TYPES:
            raise ValueError(
                f"unsupported rotary scaling type '{scaling_type}', expected one of {list(LONGROPE_TYPES)}"
            )
        missing = [key for key in ("short_factor", "long_factor", "original_max_positions") if key not in value]
        if missing:
            raise ValueError(f"rotary scaling strategy is missing {missing}, got {dict(value)!r}")

        return cls(
            short_factor=value["short_factor"],
            long_factor=value["long_factor"],
            original_max_positions=value["original_max_positions"],
        )

    def factors_for(self, seq_len: int) -> Tuple[float, ...]:
        """Select the multiplier sequence for a sequence of ``seq_len`` tokens."""
        if seq_len > self.original_max_positions:
            return self.long_factor
        return self.short_factor

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": "longrope",
            "short_factor": list(self.short_factor),
            "long_factor": list(self.long_factor),
            "original_max_positions": self.original_max_positions,
        }


class Phi3Config(PretrainedConfig):
    """
    Phi-3 configuration with eager validation.

    Grouped-query attention is controlled by ``num_key_value_heads``: equal to
    ``num_attention_heads`` gives regular multi-head attention, 1 gives
    multi-query attention, anything in between gives GQA with groups of
    ``num_attention_heads // num_key_value_heads`` query heads.

    ``attention_window_size`` restricts every query to the nearest W positions
    on its left (itself included) on top of causal masking. None disables it.
    """

    model_type = "phi3_core"
    attribute_map = {
        "num_hidden_layers": "num_blocks",
        "max_position_embeddings": "max_positions",
    }

    def __init__(
        self,
        vocab_size: int = DEFAULT_VOCAB_SIZE,
        max_positions: int = DEFAULT_MAX_POSITIONS,
        hidden_size: int = DEFAULT_HIDDEN_SIZE,
        intermediate_size: int = DEFAULT_INTERMEDIATE_SIZE,
        num_blocks: int = DEFAULT_NUM_BLOCKS,
        num_attention_heads: int = DEFAULT_NUM_ATTENTION_HEADS,
        num_key_value_heads: Optional[int] = None,
        attention_window_size: Optional[int] = None,
        activation: str = DEFAULT_ACTIVATION,
        rotary_embedding_percentage: float = 1.0,
        rotary_embedding_base: float = DEFAULT_ROTARY_BASE,
        rotary_embedding_scaling_strategy: Optional[Union[LongRopeScaling, Dict[str, Any]]] = None,
        layer_norm_epsilon: float = DEFAULT_LAYER_NORM_EPSILON,
        initializer_scale: float = DEFAULT_INITIALIZER_SCALE,
        classifier_dropout: float = DEFAULT_CLASSIFIER_DROPOUT,
        architecture: Union[str, Phi3Architecture] = Phi3Architecture.BASE,
        pad_token_id: Optional[int] = DEFAULT_PAD_TOKEN_ID,
        tie_word_embeddings: bool = False,
        **kwargs,
    ):
        super().__init__(
            pad_token_id=pad_token_id,
            tie_word_embeddings=tie_word_embeddings,
            **kwargs,
        )
        self.pad_token_id = pad_token_id
        self.tie_word_embeddings = tie_word_embeddings

        # Basic validation
        for name, value in (
            ("vocab_size", vocab_size),
            ("max_positions", max_positions),
            ("hidden_size", hidden_size),
            ("intermediate_size", intermediate_size),
            ("num_blocks", num_blocks),
            ("num_attention_heads", num_attention_heads),
        ):
            if not isinstance(value, int) or isinstance(value, bool):
                raise ValueError(f"{name} must be an integer, got {value!r}")
            if value < 1:
                raise ValueError(f"{name} must be >= 1, got {value}")

        if num_key_value_heads is None:
            logger.debug("num_key_value_heads not set, using num_attention_heads=%d", num_attention_heads)
            num_key_value_heads = num_attention_heads
        if not isinstance(num_key_value_heads, int) or isinstance(num_key_value_heads, bool):
            raise ValueError(f"num_key_value_heads must be an integer or None, got {num_key_value_heads!r}")
        if num_key_value_heads < 1:
            raise ValueError(f"num_key_value_heads must be >= 1, got {num_key_value_heads}")
        if num_key_value_heads > num_attention_heads:
            raise ValueError(
                f"num_key_value_heads ({num_key_value_heads}) cannot exceed "
                f"num_attention_heads ({num_attention_heads})"
            )
        if num_attention_heads % num_key_value_heads != 0:
            raise ValueError(
                f"num_attention_heads ({num_attention_heads}) must be divisible by "
                f"num_key_value_heads ({num_key_value_heads})"
            )
        if hidden_size % num_attention_heads != 0:
            raise ValueError(
                f"hidden_size ({hidden_size}) must be divisible by num_attention_heads ({num_attention_heads})"
            )

        if not (0.0 < rotary_embedding_percentage <= 1.0):
            raise ValueError(
                f"rotary_embedding_percentage must be in (0, 1], got {rotary_embedding_percentage}"
            )
        head_dim = hidden_size // num_attention_heads
        rotary_dim = int(round(head_dim * rotary_embedding_percentage))
        if rotary_dim < 2 or rotary_dim % 2 != 0:
            raise ValueError(
                f"rotary sub-slice of head_dim ({head_dim}) x rotary_embedding_percentage "
                f"({rotary_embedding_percentage}) = {rotary_dim} must be a positive even number"
            )
        if rotary_embedding_base <= 0:
            raise ValueError(f"rotary_embedding_base must be > 0, got {rotary_embedding_base}")

        if rotary_embedding_scaling_strategy is not None:
            scaling = LongRopeScaling.from_value(rotary_embedding_scaling_strategy)
            if len(scaling.short_factor) != rotary_dim // 2:
                raise ValueError(
                    f"rotary scaling factors must have rotary_dim // 2 = {rotary_dim // 2} entries, "
                    f"got {len(scaling.short_factor)}"
                )
            rotary_embedding_scaling_strategy = scaling.to_dict()

        if attention_window_size is not None:
            if attention_window_size < 1:
                raise ValueError(f"attention_window_size must be >= 1 or None, got {attention_window_size}")
            if attention_window_size >= max_positions:
                logger.warning(
                    "attention_window_size (%d) is not smaller than max_positions (%d), "
                    "the sliding window never restricts attention",
                    attention_window_size,
                    max_positions,
                )

        if layer_norm_epsilon < 0:
            raise ValueError(f"layer_norm_epsilon must be >= 0, got {layer_norm_epsilon}")
        if initializer_scale <= 0:
            raise ValueError(f"initializer_scale must be > 0, got {initializer_scale}")
        if not (0.0 <= classifier_dropout < 1.0):
            raise ValueError(f"classifier_dropout must be in [0, 1), got {classifier_dropout}")

        try:
            architecture = Phi3Architecture(architecture).value
        except ValueError:
            raise ValueError(
                f"architecture must be one of {[a.value for a in Phi3Architecture]}, got {architecture!r}"
            ) from None

        # Set attributes
        self.vocab_size = vocab_size
        self.max_positions = max_positions
        self.hidden_size = hidden_size
        self.intermediate_size = intermediate_size
        self.num_blocks = num_blocks
        self.num_attention_heads = num_attention_heads
        self.num_key_value_heads = num_key_value_heads
        self.attention_window_size = attention_window_size
        self.activation = resolve_activation(activation)
        self.rotary_embedding_percentage = rotary_embedding_percentage
        self.rotary_embedding_base = rotary_embedding_base
        self.rotary_embedding_scaling_strategy = rotary_embedding_scaling_strategy
        self.layer_norm_epsilon = layer_norm_epsilon
        self.initializer_scale = initializer_scale
        self.classifier_dropout = classifier_dropout
        self.architecture = architecture

    @property
    def head_dim(self) -> int:
        return self.hidden_size // self.num_attention_heads

    @property
    def num_key_value_groups(self) -> int:
        """Number of query heads sharing one key/value head."""
        return self.num_attention_heads // self.num_key_value_heads

    @property
    def rotary_dim(self) -> int:
        """Number of leading head dimensions rotated by the rotary encoding."""
        return int(round(self.head_dim * self.rotary_embedding_percentage))

    @property
    def rotary_scaling(self) -> Optional[LongRopeScaling]:
        if self.rotary_embedding_scaling_strategy is None:
            return None
        return LongRopeScaling.from_value(self.rotary_embedding_scaling_strategy)

    @classmethod
    def from_preset(cls, preset: str, **overrides) -> "Phi3Config":
        """
        Load configuration from predefined presets.

        - tiny: a few thousand parameters, for tests and smoke runs
        - mini_4k / medium_4k: the published Phi-3 4k-context shapes
        """
        presets = {
            "tiny": {
                "vocab_size": 256, "max_positions": 128, "hidden_size": 64,
                "intermediate_size": 128, "num_blocks": 2, "num_attention_heads": 4,
                "num_key_value_heads": 2, "activation": "silu", "layer_norm_epsilon": 1e-5,
                "pad_token_id": 0,
            },
            "mini_4k": {
                "vocab_size": 32064, "max_positions": 4096, "hidden_size": 3072,
                "intermediate_size": 8192, "num_blocks": 32, "num_attention_heads": 32,
                "num_key_value_heads": 32, "attention_window_size": 2047, "activation": "silu",
                "layer_norm_epsilon": 1e-5, "pad_token_id": 32000,
            },
            "medium_4k": {
                "vocab_size": 32064, "max_positions": 4096, "hidden_size": 5120,
                "intermediate_size": 17920, "num_blocks": 40, "num_attention_heads": 40,
                "num_key_value_heads": 10, "attention_window_size": 2047, "activation": "silu",
                "layer_norm_epsilon": 1e-5, "pad_token_id": 32000,
            },
        }

        if preset not in presets:
            available = list(presets.keys())
            raise ValueError(f"Invalid preset '{preset}'. Available presets: {available}")

        return cls(**{**presets[preset], **overrides})

    @classmethod
    def from_transformers_dict(cls, data: Mapping[str, Any], **overrides) -> "Phi3Config":
        """
        Build a config from a HuggingFace Phi-3 ``config.json`` dictionary.

        Only the architecture description is converted; weights are loaded
        elsewhere.
        """
        mapping = {
            "vocab_size": "vocab_size",
            "max_positions": "max_position_embeddings",
            "hidden_size": "hidden_size",
            "intermediate_size": "intermediate_size",
            "num_blocks": "num_hidden_layers",
            "num_attention_heads": "num_attention_heads",
            "num_key_value_heads": "num_key_value_heads",
            "attention_window_size": "sliding_window",
            "activation": "hidden_act",
            "rotary_embedding_percentage": "partial_rotary_factor",
            "rotary_embedding_base": "rope_theta",
            "initializer_scale": "initializer_range",
            "layer_norm_epsilon": "rms_norm_eps",
            "pad_token_id": "pad_token_id",
            "tie_word_embeddings": "tie_word_embeddings",
        }
        kwargs: Dict[str, Any] = {name: data[key] for name, key in mapping.items() if key in data}

        rope_scaling = data.get("rope_scaling")
        if rope_scaling is not None:
            kwargs["rotary_embedding_scaling_strategy"] = _convert_rope_scaling(
                rope_scaling, data.get("original_max_position_embeddings")
            )

        if "id2label" in data:
            kwargs["id2label"] = {int(k): v for k, v in data["id2label"].items()}
        elif "num_labels" in data:
            kwargs["num_labels"] = data["num_labels"]

        kwargs.update(overrides)
        return cls(**kwargs)


def _convert_rope_scaling(value: Any, original_max_positions: Any) -> Dict[str, Any]:
    if (
        isinstance(value, Mapping)
        and value.get("type", value.get("rope_type")) in LONGROPE_TYPES
        and isinstance(value.get("long_factor"), list)
        and isinstance(value.get("short_factor"), list)
        and _is_number(original_max_positions)
    ):
        return {
            "type": "longrope",
            "short_factor": value["short_factor"],
            "long_factor": value["long_factor"],
            "original_max_positions": original_max_positions,
        }
    raise ValueError(f"invalid format for rope_scaling, got: {value!r}")
