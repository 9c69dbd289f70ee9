"""
Phi3 Core - the Phi-3 decoder-only transformer in PyTorch.

A stack of pre-normalization transformer blocks with grouped-query causal
self-attention, partial rotary position encoding with LongRoPE scaling,
optional sliding-window attention and a gated feedforward network.

Modules:
- configuration_phi3.py: hyperparameters, validation, presets, HF config conversion
- model.py: rotary encoding, attention, blocks, decoder and the base model
- modeling_phi3.py: causal LM, sequence and token classification heads
- cache_utils.py: fixed-size key/value cache for incremental decoding
- attention_utils.py: causal, sliding window and padding masks
"""

__version__ = "0.1.0"

from .configuration_phi3 import LongRopeScaling, Phi3Architecture, Phi3Config
from .base import Phi3PreTrainedModel
from .cache_utils import CacheOverflowError, DecoderCache
from .model import (
    Embedder,
    GatedFFN,
    Phi3Decoder,
    Phi3Model,
    RotaryEmbedding,
    SelfAttention,
    TransformerBlock,
    apply_rotary_embedding,
)
from .modeling_phi3 import (
    Phi3ForCausalLM,
    Phi3ForSequenceClassification,
    Phi3ForTokenClassification,
    build_model,
)
from .attention_utils import process_attention_mask

__all__ = [
    "Phi3Config",
    "Phi3Architecture",
    "LongRopeScaling",
    "Phi3PreTrainedModel",
    "DecoderCache",
    "CacheOverflowError",
    "Phi3Model",
    "Phi3Decoder",
    "TransformerBlock",
    "SelfAttention",
    "GatedFFN",
    "Embedder",
    "RotaryEmbedding",
    "apply_rotary_embedding",
    "Phi3ForCausalLM",
    "Phi3ForSequenceClassification",
    "Phi3ForTokenClassification",
    "build_model",
    "process_attention_mask",
]
