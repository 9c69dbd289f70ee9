# Phi-3 Core Model - Decoder-only Transformer
# ============================================================
#
# The forward computation of the Phi-3 family: a stack of pre-normalization
# transformer blocks over a token embedding, finished by an RMS normalization.
#
# Core Features:
# - Grouped-query causal self-attention with an optional sliding window
# - Rotary Position Encoding (RoPE) on a configurable fraction of each head
# - LongRoPE scaling: short/long per-dimension frequency factors
# - Gated feed-forward network (intermediate * act(gate))
# - RMSNorm, no bias in any attention or FFN projection
# - Fixed-size KV cache so a decoding step costs one new token
#
# Parameter slots follow one naming scheme: embedder.token_embedding,
# decoder.blocks.{n}.self_attention.{query,key,value,output},
# decoder.blocks.{n}.self_attention_norm, decoder.blocks.{n}.ffn.{intermediate,gate,output},
# decoder.blocks.{n}.output_norm and output_norm.

import logging
import math
from dataclasses import dataclass
from typing import Optional, Tuple, Union

import torch
import torch.nn as nn
import torch.nn.functional as F
from transformers.activations import ACT2FN
from transformers.modeling_outputs import BaseModelOutputWithPast

from .attention_utils import default_position_ids, process_attention_mask, repeat_kv, to_additive_mask
from .base import Phi3PreTrainedModel
from .cache_utils import DecoderCache
from .configuration_phi3 import Phi3Config

logger = logging.getLogger(__name__)


"""
Rotary Position Embedding (RoPE) with LongRoPE scaling.

LongRoPE extends the usable context of a model by rescaling rotary
frequencies per dimension: one factor sequence for sequences within the
original training length, another for longer ones. When the model's
max_positions exceeds the original length, cos/sin are additionally scaled
by sqrt(1 + log(max_positions / original) / log(original)).
"""


class RotaryEmbedding(nn.Module):
    """
    Rotary Position Embedding with optional LongRoPE scaling.

    Stateless: cos/sin are derived from the position ids of each call, so the
    same positions always give the same rotation whether the sequence is
    processed at once or one token at a time.
    """

    def __init__(self, config: Phi3Config):
        super().__init__()
        self.dim = config.rotary_dim
        self.base = config.rotary_embedding_base
        self.scaling = config.rotary_scaling

        self.attention_scaling = 1.0
        if self.scaling is not None:
            original = self.scaling.original_max_positions
            scale = config.max_positions / original
            if scale > 1.0:
                self.attention_scaling = math.sqrt(1 + math.log(scale) / math.log(original))

    def inverse_frequencies(self, seq_len: int, device: Optional[torch.device] = None) -> torch.Tensor:
        """
        Inverse frequency schedule used for a sequence of ``seq_len`` tokens.

        Returns:
            Tensor [dim // 2]; divided elementwise by the short or long factor
            when LongRoPE scaling is configured
        """
        exponents = torch.arange(0, self.dim, 2, dtype=torch.float32, device=device) / self.dim
        inv_freq = 1.0 / (self.base ** exponents)
        if self.scaling is not None:
            factors = torch.tensor(self.scaling.factors_for(seq_len), dtype=torch.float32, device=device)
            inv_freq = inv_freq / factors
        return inv_freq

    def forward(self, position_ids: torch.Tensor, dtype: torch.dtype = torch.float32) -> Tuple[torch.Tensor, torch.Tensor]:
        """
        Compute rotation parameters for every token.

        Args:
            position_ids: [batch_size, seq_len] absolute positions
            dtype: dtype of the returned tensors

        Returns:
            (cos, sin), each [batch_size, seq_len, dim // 2]
        """
        seq_len = int(position_ids.max().item()) + 1 if self.scaling is not None else 0
        inv_freq = self.inverse_frequencies(seq_len, device=position_ids.device)

        # Outer product per sequence: [batch, seq_len, dim // 2]
        freqs = position_ids.unsqueeze(-1).float() * inv_freq
        cos = freqs.cos() * self.attention_scaling
        sin = freqs.sin() * self.attention_scaling
        return cos.to(dtype), sin.to(dtype)


def apply_rotary_embedding(x: torch.Tensor, cos: torch.Tensor, sin: torch.Tensor) -> torch.Tensor:
    """
    Rotate the leading ``2 * cos.size(-1)`` dimensions of every head.

    Args:
        x: [batch_size, n_heads, seq_len, head_dim]
        cos, sin: [batch_size, seq_len, rotary_dim // 2]

    Returns:
        Tensor of the same shape; dimensions past the rotary slice are unchanged
    """
    half = cos.size(-1)
    rotary_dim = 2 * half
    x_rot, x_pass = x[..., :rotary_dim], x[..., rotary_dim:]

    # Broadcast over heads: [batch, 1, seq_len, rotary_dim // 2]
    cos = cos.unsqueeze(1)
    sin = sin.unsqueeze(1)

    x1 = x_rot[..., :half]
    x2 = x_rot[..., half:]
    # x'₁ = x₁*cos(θ) - x₂*sin(θ), x'₂ = x₂*cos(θ) + x₁*sin(θ)
    rotated = torch.cat([x1 * cos - x2 * sin, x2 * cos + x1 * sin], dim=-1)
    return torch.cat([rotated, x_pass], dim=-1)


class SelfAttention(nn.Module):
    """
    Grouped-query causal self-attention with KV caching.

    Handles:
    - Separate bias-free query/key/value/output projections
    - RoPE on query and key
    - Appending to and reading from the block's cache slot
    - Optional per-head multiplicative mask applied after softmax
    """

    def __init__(self, config: Phi3Config, block_id: int):
        super().__init__()
        self.block_id = block_id
        self.num_heads = config.num_attention_heads
        self.num_key_value_heads = config.num_key_value_heads
        self.num_key_value_groups = config.num_key_value_groups
        self.head_dim = config.head_dim
        self.hidden_size = config.hidden_size
        self.scale = 1.0 / math.sqrt(self.head_dim)

        self.query = nn.Linear(config.hidden_size, self.num_heads * self.head_dim, bias=False)
        self.key = nn.Linear(config.hidden_size, self.num_key_value_heads * self.head_dim, bias=False)
        self.value = nn.Linear(config.hidden_size, self.num_key_value_heads * self.head_dim, bias=False)
        self.output = nn.Linear(self.num_heads * self.head_dim, config.hidden_size, bias=False)

    def forward(
        self,
        hidden_states: torch.Tensor,
        position_embeddings: Tuple[torch.Tensor, torch.Tensor],
        attention_mask: torch.Tensor,
        head_mask: Optional[torch.Tensor] = None,
        cache: Optional[DecoderCache] = None,
        output_attentions: bool = False,
    ) -> Tuple[torch.Tensor, Optional[torch.Tensor]]:
        """
        Args:
            hidden_states: [batch, seq_len, hidden_size]
            position_embeddings: (cos, sin) from RotaryEmbedding
            attention_mask: additive mask [batch, 1, seq_len, key_len]
            head_mask: [num_heads] multiplier for the attention weights
            cache: session cache; new keys/values are written to this block's slot

        Returns:
            (attention output [batch, seq_len, hidden_size], weights [batch, heads, seq_len, key_len] or None)
        """
        batch, seq_len, _ = hidden_states.shape

        q = self.query(hidden_states).view(batch, seq_len, self.num_heads, self.head_dim).transpose(1, 2)
        k = self.key(hidden_states).view(batch, seq_len, self.num_key_value_heads, self.head_dim).transpose(1, 2)
        v = self.value(hidden_states).view(batch, seq_len, self.num_key_value_heads, self.head_dim).transpose(1, 2)

        cos, sin = position_embeddings
        q = apply_rotary_embedding(q, cos, sin)
        k = apply_rotary_embedding(k, cos, sin)

        if cache is not None:
            # Cache layout is [batch, positions, kv_heads, head_dim]
            k, v = cache.append(self.block_id, k.transpose(1, 2), v.transpose(1, 2))
            k = k.transpose(1, 2)
            v = v.transpose(1, 2)

        # Repeat KV for GQA
        k = repeat_kv(k, self.num_key_value_groups)
        v = repeat_kv(v, self.num_key_value_groups)

        if output_attentions or head_mask is not None:
            scores = torch.matmul(q, k.transpose(2, 3)) * self.scale + attention_mask
            attn_weights = F.softmax(scores, dim=-1, dtype=torch.float32).to(q.dtype)
            if head_mask is not None:
                attn_weights = attn_weights * head_mask.to(attn_weights.dtype).view(1, -1, 1, 1)
            attn_output = torch.matmul(attn_weights, v)
        else:
            attn_weights = None
            attn_output = F.scaled_dot_product_attention(
                q, k, v,
                attn_mask=attention_mask,
                is_causal=False,  # causality is part of attention_mask
                scale=self.scale,
            )

        attn_output = attn_output.transpose(1, 2).contiguous().view(batch, seq_len, self.hidden_size)
        return self.output(attn_output), attn_weights


class GatedFFN(nn.Module):
    """
    Gated feedforward network: output(intermediate(x) * act(gate(x))).

    The gate decides, per element, how much of the intermediate signal passes.
    """

    def __init__(self, config: Phi3Config):
        super().__init__()
        self.intermediate = nn.Linear(config.hidden_size, config.intermediate_size, bias=False)
        self.gate = nn.Linear(config.hidden_size, config.intermediate_size, bias=False)
        self.output = nn.Linear(config.intermediate_size, config.hidden_size, bias=False)
        self.activation = ACT2FN[config.activation]

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        return self.output(self.intermediate(x) * self.activation(self.gate(x)))


# One norm-first block: attention and feedforward, each wrapped in a residual
class TransformerBlock(nn.Module):
    def __init__(self, config: Phi3Config, block_id: int) -> None:
        super().__init__()
        self.self_attention_norm = nn.RMSNorm(config.hidden_size, eps=config.layer_norm_epsilon)
        self.self_attention = SelfAttention(config, block_id)
        self.output_norm = nn.RMSNorm(config.hidden_size, eps=config.layer_norm_epsilon)
        self.ffn = GatedFFN(config)

    def forward(
        self,
        hidden_states: torch.Tensor,
        position_embeddings: Tuple[torch.Tensor, torch.Tensor],
        attention_mask: torch.Tensor,
        head_mask: Optional[torch.Tensor] = None,
        cache: Optional[DecoderCache] = None,
        output_attentions: bool = False,
    ) -> Tuple[torch.Tensor, Optional[torch.Tensor]]:
        residual = hidden_states
        hidden_states = self.self_attention_norm(hidden_states)
        attn_output, attn_weights = self.self_attention(
            hidden_states, position_embeddings, attention_mask, head_mask, cache, output_attentions
        )
        hidden_states = residual + attn_output

        residual = hidden_states
        hidden_states = self.ffn(self.output_norm(hidden_states))
        hidden_states = residual + hidden_states

        return hidden_states, attn_weights


# What the decoder stack returns for one forward step
@dataclass
class DecoderOutput:
    hidden_state: torch.Tensor  # Output of the last block, before the output norm
    hidden_states: Optional[Tuple[torch.Tensor, ...]] = None  # Embeddings then every block output
    attentions: Optional[Tuple[torch.Tensor, ...]] = None  # Attention weights of every block
    cache: Optional[DecoderCache] = None


class Phi3Decoder(nn.Module):
    """
    Stack of transformer blocks sharing one mask, one set of rotary
    parameters and one cache cursor per forward step.

    Each block reads and writes its own cache slot (indexed by block id); the
    cursor advances once, after the last block.
    """

    def __init__(self, config: Phi3Config):
        super().__init__()
        self.config = config
        self.rotary_embedding = RotaryEmbedding(config)
        self.blocks = nn.ModuleList([TransformerBlock(config, i) for i in range(config.num_blocks)])

    def forward(
        self,
        hidden_states: torch.Tensor,
        position_ids: torch.Tensor,
        attention_mask: Optional[torch.Tensor] = None,
        attention_head_mask: Optional[torch.Tensor] = None,
        cache: Optional[DecoderCache] = None,
        output_attentions: bool = False,
        output_hidden_states: bool = False,
    ) -> DecoderOutput:
        batch, seq_len, _ = hidden_states.shape
        offset = cache.offset if cache is not None else 0

        if cache is not None:
            padding_mask = cache.update_attention_mask(attention_mask, seq_len)
        else:
            padding_mask = attention_mask

        mask = process_attention_mask(
            padding_mask,
            batch,
            offset,
            seq_len,
            offset + seq_len,  # key_len includes cached positions
            hidden_states.device,
            window_size=self.config.attention_window_size,
        )
        mask = to_additive_mask(mask, hidden_states.dtype)
        position_embeddings = self.rotary_embedding(position_ids, dtype=hidden_states.dtype)

        all_hidden_states = (hidden_states,) if output_hidden_states else None
        all_attentions = () if output_attentions else None

        for block_id, block in enumerate(self.blocks):
            head_mask = attention_head_mask[block_id] if attention_head_mask is not None else None
            hidden_states, attn_weights = block(
                hidden_states, position_embeddings, mask, head_mask, cache, output_attentions
            )
            if output_hidden_states:
                all_hidden_states += (hidden_states,)
            if output_attentions:
                all_attentions += (attn_weights,)

        if cache is not None:
            cache.advance(seq_len)

        return DecoderOutput(
            hidden_state=hidden_states,
            hidden_states=all_hidden_states,
            attentions=all_attentions,
            cache=cache,
        )


class Embedder(nn.Module):
    """Token lookup, or pass-through of caller-supplied embeddings."""

    def __init__(self, config: Phi3Config):
        super().__init__()
        self.token_embedding = nn.Embedding(config.vocab_size, config.hidden_size)

    def forward(
        self, input_ids: Optional[torch.Tensor] = None, inputs_embeds: Optional[torch.Tensor] = None
    ) -> torch.Tensor:
        # Supplied embeddings take precedence, input_ids are ignored then
        if inputs_embeds is not None:
            return inputs_embeds
        if input_ids is None:
            raise ValueError("You have to specify either input_ids or inputs_embeds")
        return self.token_embedding(input_ids)


# The base model: embedder -> decoder -> output norm, no head
class Phi3Model(Phi3PreTrainedModel):
    def __init__(self, config: Phi3Config) -> None:
        super().__init__(config)
        self.embedder = Embedder(config)
        self.decoder = Phi3Decoder(config)
        self.output_norm = nn.RMSNorm(config.hidden_size, eps=config.layer_norm_epsilon)

        self.post_init()

        logger.info(
            "Built Phi-3 core with %d blocks (hidden_size=%d, heads=%d, kv_heads=%d, window=%s)",
            config.num_blocks,
            config.hidden_size,
            config.num_attention_heads,
            config.num_key_value_heads,
            config.attention_window_size,
        )

    def get_input_embeddings(self) -> nn.Embedding:
        return self.embedder.token_embedding

    def set_input_embeddings(self, new_embeddings: nn.Embedding) -> None:
        self.embedder.token_embedding = new_embeddings

    def _validate_inputs(
        self,
        input_ids: Optional[torch.Tensor],
        attention_mask: Optional[torch.Tensor],
        position_ids: Optional[torch.Tensor],
        attention_head_mask: Optional[torch.Tensor],
        inputs_embeds: Optional[torch.Tensor],
        past_key_values: Optional[DecoderCache],
    ) -> Tuple[int, int]:
        """Check the input contract and return (batch_size, seq_len)."""
        if inputs_embeds is not None:
            if not isinstance(inputs_embeds, torch.Tensor):
                raise TypeError(f"inputs_embeds must be a torch.Tensor, got {type(inputs_embeds)}")
            if inputs_embeds.dim() != 3 or inputs_embeds.size(-1) != self.config.hidden_size:
                raise ValueError(
                    f"inputs_embeds must be [batch_size, seq_len, hidden_size={self.config.hidden_size}], "
                    f"got shape {tuple(inputs_embeds.shape)}"
                )
            batch_size, seq_len = inputs_embeds.shape[:2]
        elif input_ids is not None:
            if not isinstance(input_ids, torch.Tensor):
                raise TypeError(f"input_ids must be a torch.Tensor, got {type(input_ids)}")
            if input_ids.dtype not in (torch.int32, torch.int64):
                raise ValueError(f"input_ids must have integer dtype, got {input_ids.dtype}")
            if input_ids.dim() != 2:
                raise ValueError(f"input_ids must be 2D [batch_size, seq_len], got shape {tuple(input_ids.shape)}")
            batch_size, seq_len = input_ids.shape
        else:
            raise ValueError("You have to specify either input_ids or inputs_embeds")

        if seq_len == 0:
            raise ValueError("inputs must contain at least one position")

        offset = 0
        if past_key_values is not None:
            if not isinstance(past_key_values, DecoderCache):
                raise TypeError(
                    f"past_key_values must be a DecoderCache from init_cache(), got {type(past_key_values)}"
                )
            if past_key_values.batch_size != batch_size:
                raise ValueError(
                    f"cache was initialized for batch_size {past_key_values.batch_size}, got inputs with batch_size {batch_size}"
                )
            if past_key_values.num_blocks != self.config.num_blocks:
                raise ValueError(
                    f"cache has {past_key_values.num_blocks} blocks, model has {self.config.num_blocks}"
                )
            offset = past_key_values.offset

        if offset + seq_len > self.config.max_positions:
            raise ValueError(
                f"Input sequence length {offset + seq_len} exceeds max_positions {self.config.max_positions}"
            )

        if attention_mask is not None:
            if not isinstance(attention_mask, torch.Tensor):
                raise TypeError(f"attention_mask must be a torch.Tensor, got {type(attention_mask)}")
            if past_key_values is None and tuple(attention_mask.shape) != (batch_size, seq_len):
                raise ValueError(
                    f"attention_mask shape {tuple(attention_mask.shape)} must be [batch_size, seq_len] = {(batch_size, seq_len)}"
                )

        if position_ids is not None and tuple(position_ids.shape) not in ((batch_size, seq_len), (1, seq_len)):
            raise ValueError(
                f"position_ids shape {tuple(position_ids.shape)} must be [batch_size, seq_len] = {(batch_size, seq_len)}"
            )

        if attention_head_mask is not None:
            expected = (self.config.num_blocks, self.config.num_attention_heads)
            if tuple(attention_head_mask.shape) != expected:
                raise ValueError(
                    f"attention_head_mask shape {tuple(attention_head_mask.shape)} must be "
                    f"[num_blocks, num_attention_heads] = {expected}"
                )

        return batch_size, seq_len

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
    ) -> Union[Tuple, BaseModelOutputWithPast]:
        """
        Run the decoder over one step of inputs.

        Args:
            input_ids: [batch_size, seq_len] token ids, ignored when inputs_embeds is given
            attention_mask: [batch_size, seq_len] 1 for real tokens, 0 for padding; with a
                cache it may also cover every position so far
            position_ids: [batch_size, seq_len]; defaults to offset .. offset + seq_len - 1
            attention_head_mask: [num_blocks, num_attention_heads] multiplier for attention weights
            inputs_embeds: [batch_size, seq_len, hidden_size] precomputed embeddings
            past_key_values: DecoderCache from init_cache(), updated in place

        Returns:
            BaseModelOutputWithPast with the normalized hidden state, the cache, and optionally
            every hidden state (embeddings, each block, normalized output) and attention weights
        """
        output_attentions = output_attentions if output_attentions is not None else self.config.output_attentions
        output_hidden_states = (
            output_hidden_states if output_hidden_states is not None else self.config.output_hidden_states
        )
        return_dict = return_dict if return_dict is not None else self.config.use_return_dict

        batch_size, seq_len = self._validate_inputs(
            input_ids, attention_mask, position_ids, attention_head_mask, inputs_embeds, past_key_values
        )

        hidden_states = self.embedder(input_ids, inputs_embeds)

        if position_ids is None:
            offset = past_key_values.offset if past_key_values is not None else 0
            position_ids = default_position_ids(batch_size, seq_len, offset, hidden_states.device)
        else:
            position_ids = position_ids.expand(batch_size, -1)

        decoder_outputs = self.decoder(
            hidden_states,
            position_ids,
            attention_mask=attention_mask,
            attention_head_mask=attention_head_mask,
            cache=past_key_values,
            output_attentions=output_attentions,
            output_hidden_states=output_hidden_states,
        )

        hidden_state = self.output_norm(decoder_outputs.hidden_state)

        all_hidden_states = None
        if output_hidden_states:
            all_hidden_states = decoder_outputs.hidden_states + (hidden_state,)

        if not return_dict:
            return tuple(
                v for v in [hidden_state, past_key_values, all_hidden_states, decoder_outputs.attentions] if v is not None
            )

        return BaseModelOutputWithPast(
            last_hidden_state=hidden_state,
            past_key_values=past_key_values,
            hidden_states=all_hidden_states,
            attentions=decoder_outputs.attentions,
        )
