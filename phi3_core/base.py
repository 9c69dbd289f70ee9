"""Base classes for Phi-3 core models."""

from __future__ import annotations

from typing import Callable, Dict

import torch
from torch import nn
from transformers import PreTrainedModel

from .cache_utils import DecoderCache
from .configuration_phi3 import Phi3Config


class Phi3PreTrainedModel(PreTrainedModel):
    """Base class to integrate with the HF checkpoint ecosystem."""

    config_class = Phi3Config
    base_model_prefix = "model"
    supports_gradient_checkpointing = False
    _no_split_modules = ["TransformerBlock"]

    def _init_weights(self, module: nn.Module) -> None:
        std = self.config.initializer_scale
        if isinstance(module, nn.Linear):
            nn.init.normal_(module.weight, mean=0.0, std=std)
            if module.bias is not None:
                nn.init.zeros_(module.bias)
        elif isinstance(module, nn.Embedding):
            nn.init.normal_(module.weight, mean=0.0, std=std)
        elif isinstance(module, nn.RMSNorm) and module.weight is not None:
            nn.init.ones_(module.weight)

    def init_cache(self, batch_size: int, max_length: int) -> DecoderCache:
        """Allocate an empty cache for a decoding session on the model's device and dtype."""
        return DecoderCache.init(self.config, batch_size, max_length, dtype=self.dtype, device=self.device)

    def traverse_cache(self, cache: DecoderCache, fn: Callable[[torch.Tensor], torch.Tensor]) -> DecoderCache:
        return cache.traverse(fn)

    def input_template(self) -> Dict[str, torch.Tensor]:
        """Minimal inputs accepted by ``forward``, for shape checks and tracing."""
        return {"input_ids": torch.zeros((1, 1), dtype=torch.long, device=self.device)}
