"""
Includes:
- process_attention_mask: causal + sliding window + padding mask in SDPA format
- repeat_kv: GQA key/value head broadcasting (as in HF Llama)
- default_position_ids: explicit substitution of absent position ids

Optimizations:
- Use torch.expand + reshape for repeat_kv (no copy until reshape)
- The combined mask is built once per forward step and shared by all blocks
"""

from __future__ import annotations

from typing import Optional

import torch


def process_attention_mask(
    padding_mask: Optional[torch.Tensor],
    batch_size: int,
    query_offset: int,
    query_len: int,
    key_len: int,
    device: torch.device,
    window_size: Optional[int] = None,
) -> torch.Tensor:
    """
    Build the boolean attention mask for causal self-attention.

    Query slot ``i`` (absolute, i.e. ``query_offset + t``) may attend key slot
    ``j`` iff:
    - ``j <= i`` (causal)
    - ``j > i - window_size`` when a sliding window is configured
    - key ``j`` is a real token according to ``padding_mask``

    Args:
        padding_mask: ``[batch, key_len]``, values > 0 (or True) mark real tokens; None means no padding
        batch_size: Number of sequences in batch
        query_offset: Absolute slot of the first query (the cache cursor)
        query_len: Number of queries
        key_len: Number of keys (cached + new)
        device: Target device for computations
        window_size: Sliding window size, or None

    Returns:
        Boolean mask ``[batch, 1, query_len, key_len]``, True = attend
    """
    query_idx = torch.arange(query_offset, query_offset + query_len, device=device).unsqueeze(-1)
    key_idx = torch.arange(key_len, device=device).unsqueeze(0)

    allowed = key_idx <= query_idx
    if window_size is not None:
        allowed = allowed & (key_idx > query_idx - window_size)
    allowed = allowed.unsqueeze(0).unsqueeze(1)  # [1, 1, query_len, key_len]

    if padding_mask is not None:
        if padding_mask.dim() != 2 or tuple(padding_mask.shape) != (batch_size, key_len):
            raise ValueError(
                f"padding mask {tuple(padding_mask.shape)} must be [batch={batch_size}, key_len={key_len}]"
            )
        key_is_real = (padding_mask > 0).to(device)
        allowed = allowed & key_is_real.unsqueeze(1).unsqueeze(2)  # [batch, 1, 1, key_len]

    return allowed.expand(batch_size, 1, query_len, key_len)


def to_additive_mask(mask: torch.Tensor, dtype: torch.dtype) -> torch.Tensor:
    """Convert a boolean mask to SDPA's additive form (0.0 attend, dtype min ignore)."""
    additive = torch.zeros(mask.shape, dtype=dtype, device=mask.device)
    return additive.masked_fill(~mask, torch.finfo(dtype).min)


def repeat_kv(hidden_states: torch.Tensor, n_rep: int) -> torch.Tensor:
    """Repeat KV heads for GQA (as in HF Llama)."""
    batch, num_key_value_heads, slen, head_dim = hidden_states.shape
    if n_rep == 1:
        return hidden_states
    hidden_states = hidden_states[:, :, None, :, :].expand(batch, num_key_value_heads, n_rep, slen, head_dim)
    return hidden_states.reshape(batch, num_key_value_heads * n_rep, slen, head_dim)


def default_position_ids(batch_size: int, seq_len: int, offset: int, device: torch.device) -> torch.Tensor:
    """Positions ``offset .. offset + seq_len - 1`` for every sequence in the batch."""
    position_ids = torch.arange(offset, offset + seq_len, dtype=torch.long, device=device)
    return position_ids.unsqueeze(0).expand(batch_size, -1)
