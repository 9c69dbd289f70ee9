"""Hugging Face compatible Phi-3 core heads and Auto-class registration."""

from __future__ import annotations

import logging
from typing import Optional, Tuple, Union

import torch
from torch import nn
from transformers import (
    AutoConfig,
    AutoModel,
    AutoModelForCausalLM,
    AutoModelForSequenceClassification,
    AutoModelForTokenClassification,
)
from transformers.modeling_outputs import (
    BaseModelOutputWithPast,
    CausalLMOutputWithPast,
    SequenceClassifierOutputWithPast,
    TokenClassifierOutput,
)

from .base import Phi3PreTrainedModel
from .cache_utils import DecoderCache
from .configuration_phi3 import Phi3Architecture, Phi3Config
from .model import Phi3Model

logger = logging.getLogger(__name__)


class OutputHead(nn.Module):
    """A linear projection of the final hidden state, optionally preceded by dropout."""

    def __init__(self, in_features: int, out_features: int, bias: bool = False, dropout: Optional[float] = None):
        super().__init__()
        self.dropout = nn.Dropout(dropout) if dropout is not None else None
        self.output = nn.Linear(in_features, out_features, bias=bias)

    def forward(self, hidden_states: torch.Tensor) -> torch.Tensor:
        if self.dropout is not None:
            hidden_states = self.dropout(hidden_states)
        return self.output(hidden_states)


class _Phi3HeadModel(Phi3PreTrainedModel):
    """Shared plumbing of the head classes: the core model plus embedding accessors."""

    def get_input_embeddings(self) -> nn.Embedding:
        return self.model.embedder.token_embedding

    def set_input_embeddings(self, new_embeddings: nn.Embedding) -> None:
        self.model.embedder.token_embedding = new_embeddings

    def _run_model(self, output_attentions, output_hidden_states, **inputs) -> BaseModelOutputWithPast:
        return self.model(
            output_attentions=output_attentions,
            output_hidden_states=output_hidden_states,
            return_dict=True,
            **inputs,
        )


class Phi3ForCausalLM(_Phi3HeadModel):
    """Phi-3 core with a language modeling head producing next-token logits."""

    _tied_weights_keys = ["language_modeling_head.output.weight"]

    def __init__(self, config: Phi3Config) -> None:
        super().__init__(config)
        self.model = Phi3Model(config)
        self.language_modeling_head = OutputHead(config.hidden_size, config.vocab_size)
        self.post_init()

    def get_output_embeddings(self) -> nn.Linear:
        """Get the language modeling head."""
        return self.language_modeling_head.output

    def set_output_embeddings(self, new_embeddings: nn.Linear) -> None:
        self.language_modeling_head.output = new_embeddings

    def forward(
        self,
        input_ids: Optional[torch.Tensor] = None,
        attention_mask: Optional[torch.Tensor] = None,
        position_ids: Optional[torch.Tensor] = None,
        attention_head_mask: Optional[torch.Tensor] = None,
        inputs_embeds: Optional[torch.Tensor] = None,
        past_key_values: Optional[DecoderCache] = None,
        output_attentions: Optional[bool] = None,
        output_hidden_states: Optional[bool] = None,
        return_dict: Optional[bool] = None,
    ) -> Union[Tuple, CausalLMOutputWithPast]:
        return_dict = return_dict if return_dict is not None else self.config.use_return_dict

        model_outputs = self._run_model(
            output_attentions,
            output_hidden_states,
            input_ids=input_ids,
            attention_mask=attention_mask,
            position_ids=position_ids,
            attention_head_mask=attention_head_mask,
            inputs_embeds=inputs_embeds,
            past_key_values=past_key_values,
        )
        logits = self.language_modeling_head(model_outputs.last_hidden_state)

        if not return_dict:
            output = (logits, model_outputs.past_key_values, model_outputs.hidden_states, model_outputs.attentions)
            return tuple(v for v in output if v is not None)

        return CausalLMOutputWithPast(
            logits=logits,
            past_key_values=model_outputs.past_key_values,
            hidden_states=model_outputs.hidden_states,
            attentions=model_outputs.attentions,
        )


class Phi3ForSequenceClassification(_Phi3HeadModel):
    """
    Phi-3 core with a per-sequence classification head.

    Logits are computed at every position and pooled at the last real token
    of each sequence: ``count(input_ids != pad_token_id) - 1``. Without
    input_ids or a pad token id the last position is used.
    """

    def __init__(self, config: Phi3Config) -> None:
        super().__init__(config)
        self.num_labels = config.num_labels
        self.model = Phi3Model(config)
        self.sequence_classification_head = OutputHead(config.hidden_size, config.num_labels)
        self.post_init()

    def pooling_indices(self, input_ids: Optional[torch.Tensor], batch_size: int, seq_len: int, device) -> torch.Tensor:
        if input_ids is None or self.config.pad_token_id is None:
            if input_ids is None:
                logger.debug("No input_ids given, pooling sequence logits at the last position")
            return torch.full((batch_size,), seq_len - 1, dtype=torch.long, device=device)
        lengths = (input_ids != self.config.pad_token_id).sum(dim=-1).to(device)
        # An all-padding row wraps around to the last position
        return (lengths - 1) % seq_len

    def forward(
        self,
        input_ids: Optional[torch.Tensor] = None,
        attention_mask: Optional[torch.Tensor] = None,
        position_ids: Optional[torch.Tensor] = None,
        attention_head_mask: Optional[torch.Tensor] = None,
        inputs_embeds: Optional[torch.Tensor] = None,
        past_key_values: Optional[DecoderCache] = None,
        output_attentions: Optional[bool] = None,
        output_hidden_states: Optional[bool] = None,
        return_dict: Optional[bool] = None,
    ) -> Union[Tuple, SequenceClassifierOutputWithPast]:
        return_dict = return_dict if return_dict is not None else self.config.use_return_dict

        model_outputs = self._run_model(
            output_attentions,
            output_hidden_states,
            input_ids=input_ids,
            attention_mask=attention_mask,
            position_ids=position_ids,
            attention_head_mask=attention_head_mask,
            inputs_embeds=inputs_embeds,
            past_key_values=past_key_values,
        )
        logits = self.sequence_classification_head(model_outputs.last_hidden_state)

        batch_size, seq_len = logits.shape[:2]
        # Pooling follows input_ids whenever they are given, however the hidden states were embedded
        indices = self.pooling_indices(input_ids, batch_size, seq_len, logits.device)
        pooled_logits = logits[torch.arange(batch_size, device=logits.device), indices]

        if not return_dict:
            output = (pooled_logits, model_outputs.past_key_values, model_outputs.hidden_states, model_outputs.attentions)
            return tuple(v for v in output if v is not None)

        return SequenceClassifierOutputWithPast(
            logits=pooled_logits,
            past_key_values=model_outputs.past_key_values,
            hidden_states=model_outputs.hidden_states,
            attentions=model_outputs.attentions,
        )


class Phi3ForTokenClassification(_Phi3HeadModel):
    """Phi-3 core with a per-token classification head (dropout, then a biased projection)."""

    def __init__(self, config: Phi3Config) -> None:
        super().__init__(config)
        self.num_labels = config.num_labels
        self.model = Phi3Model(config)
        self.token_classification_head = OutputHead(
            config.hidden_size, config.num_labels, bias=True, dropout=config.classifier_dropout
        )
        self.post_init()

    def forward(
        self,
        input_ids: Optional[torch.Tensor] = None,
        attention_mask: Optional[torch.Tensor] = None,
        position_ids: Optional[torch.Tensor] = None,
        attention_head_mask: Optional[torch.Tensor] = None,
        inputs_embeds: Optional[torch.Tensor] = None,
        past_key_values: Optional[DecoderCache] = None,
        output_attentions: Optional[bool] = None,
        output_hidden_states: Optional[bool] = None,
        return_dict: Optional[bool] = None,
    ) -> Union[Tuple, TokenClassifierOutput]:
        return_dict = return_dict if return_dict is not None else self.config.use_return_dict

        model_outputs = self._run_model(
            output_attentions,
            output_hidden_states,
            input_ids=input_ids,
            attention_mask=attention_mask,
            position_ids=position_ids,
            attention_head_mask=attention_head_mask,
            inputs_embeds=inputs_embeds,
            past_key_values=past_key_values,
        )
        logits = self.token_classification_head(model_outputs.last_hidden_state)

        # Per-token outputs carry no cache
        if not return_dict:
            output = (logits, model_outputs.hidden_states, model_outputs.attentions)
            return tuple(v for v in output if v is not None)

        return TokenClassifierOutput(
            logits=logits,
            hidden_states=model_outputs.hidden_states,
            attentions=model_outputs.attentions,
        )


MODEL_CLASSES = {
    Phi3Architecture.BASE: Phi3Model,
    Phi3Architecture.CAUSAL_LM: Phi3ForCausalLM,
    Phi3Architecture.SEQUENCE_CLASSIFICATION: Phi3ForSequenceClassification,
    Phi3Architecture.TOKEN_CLASSIFICATION: Phi3ForTokenClassification,
}


def build_model(config: Phi3Config) -> Phi3PreTrainedModel:
    """Instantiate the model class selected by ``config.architecture``."""
    try:
        architecture = Phi3Architecture(config.architecture)
    except ValueError:
        available = [a.value for a in Phi3Architecture]
        raise ValueError(f"Unknown architecture '{config.architecture}'. Available: {available}") from None
    model_class = MODEL_CLASSES[architecture]
    logger.debug("Building %s for architecture %s", model_class.__name__, architecture.value)
    return model_class(config)


AutoConfig.register(Phi3Config.model_type, Phi3Config, exist_ok=True)
AutoModel.register(Phi3Config, Phi3Model, exist_ok=True)
AutoModelForCausalLM.register(Phi3Config, Phi3ForCausalLM, exist_ok=True)
AutoModelForSequenceClassification.register(Phi3Config, Phi3ForSequenceClassification, exist_ok=True)
AutoModelForTokenClassification.register(Phi3Config, Phi3ForTokenClassification, exist_ok=True)
