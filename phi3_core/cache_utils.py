"""
Key/value cache for incremental decoding.

A ``DecoderCache`` belongs to exactly one decoding session. It is allocated
once with a fixed ``max_length`` and filled in place: every forward step
writes the new keys/values of each block at the shared write cursor, and the
cursor advances once the step is complete. Attention then only reads the
valid range ``[0, offset)``, so a decoding step costs one new token rather
than the whole prefix.

Callers treat the cache as opaque. The only structural operation exposed is
``traverse``, which maps a function over every stored tensor (for example to
move the cache to another device) and rebuilds an equivalent cache.

The cache is not thread safe: at most one forward pass may write to it at a
time. Concurrent sessions must use separate caches.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Callable, List, Optional, Sequence, Tuple

import torch

if TYPE_CHECKING:
    from .configuration_phi3 import Phi3Config

logger = logging.getLogger(__name__)


class CacheOverflowError(ValueError):
    """Raised when a step would write past the allocated cache length."""


class DecoderCache:
    """
    Fixed-size per-block key/value buffers with a shared write cursor.

    Layout of every key and value buffer: ``[batch, max_length, num_key_value_heads, head_dim]``.
    ``attention_mask`` is ``[batch, max_length]`` and records which cached
    slots hold real tokens, so prompt padding stays masked in later steps.
    """

    def __init__(
        self,
        keys: Sequence[torch.Tensor],
        values: Sequence[torch.Tensor],
        attention_mask: torch.Tensor,
        offset: int = 0,
    ):
        if len(keys) != len(values):
            raise ValueError(f"got {len(keys)} key buffers but {len(values)} value buffers")
        if len(keys) == 0:
            raise ValueError("a cache needs at least one block")
        for block_id, (k, v) in enumerate(zip(keys, values)):
            if k.dim() != 4 or k.shape != v.shape:
                raise ValueError(
                    f"block {block_id}: key {tuple(k.shape)} and value {tuple(v.shape)} buffers must both be "
                    f"[batch, max_length, num_key_value_heads, head_dim]"
                )
        if tuple(attention_mask.shape) != tuple(keys[0].shape[:2]):
            raise ValueError(
                f"attention_mask buffer {tuple(attention_mask.shape)} must be [batch, max_length] = "
                f"{tuple(keys[0].shape[:2])}"
            )
        if not (0 <= offset <= keys[0].size(1)):
            raise ValueError(f"offset {offset} outside [0, {keys[0].size(1)}]")

        self._keys: List[torch.Tensor] = list(keys)
        self._values: List[torch.Tensor] = list(values)
        self._attention_mask = attention_mask
        self._offset = int(offset)

    @classmethod
    def init(
        cls,
        config: "Phi3Config",
        batch_size: int,
        max_length: int,
        dtype: torch.dtype = torch.float32,
        device: Optional[torch.device] = None,
    ) -> "DecoderCache":
        """
        Allocate zero-filled buffers for every block and set the cursor to 0.

        Args:
            config: Model configuration (block count, key/value heads, head size)
            batch_size: Number of sequences decoded together
            max_length: Total number of positions the session may hold
            dtype: Dtype of the key/value buffers, normally the model dtype
            device: Device of the buffers

        Returns:
            An empty cache
        """
        if batch_size < 1:
            raise ValueError(f"batch_size must be >= 1, got {batch_size}")
        if max_length < 1:
            raise ValueError(f"max_length must be >= 1, got {max_length}")

        shape = (batch_size, max_length, config.num_key_value_heads, config.head_dim)
        keys = [torch.zeros(shape, dtype=dtype, device=device) for _ in range(config.num_blocks)]
        values = [torch.zeros(shape, dtype=dtype, device=device) for _ in range(config.num_blocks)]
        attention_mask = torch.zeros(batch_size, max_length, dtype=torch.long, device=device)

        logger.info(
            "Initialized decoder cache: %d blocks, batch_size=%d, max_length=%d, dtype=%s",
            config.num_blocks, batch_size, max_length, dtype,
        )
        return cls(keys, values, attention_mask, offset=0)

    @property
    def offset(self) -> int:
        """Number of positions written so far."""
        return self._offset

    @property
    def num_blocks(self) -> int:
        return len(self._keys)

    @property
    def batch_size(self) -> int:
        return self._keys[0].size(0)

    @property
    def max_length(self) -> int:
        return self._keys[0].size(1)

    @property
    def attention_mask(self) -> torch.Tensor:
        """Padding mask of the positions written so far, ``[batch, offset]``."""
        return self._attention_mask[:, : self._offset]

    def get_seq_length(self) -> int:
        return self._offset

    def _check_capacity(self, length: int) -> None:
        if self._offset + length > self.max_length:
            raise CacheOverflowError(
                f"cannot write {length} positions at offset {self._offset}: "
                f"cache max_length is {self.max_length}"
            )

    def append(
        self, block_id: int, new_keys: torch.Tensor, new_values: torch.Tensor
    ) -> Tuple[torch.Tensor, torch.Tensor]:
        """
        Write one step of keys/values for a block at the cursor.

        Args:
            block_id: Index of the transformer block owning the slot
            new_keys: ``[batch, n, num_key_value_heads, head_dim]``
            new_values: same shape as ``new_keys``

        Returns:
            (keys, values) covering the valid range ``[0, offset + n)``

        Raises:
            CacheOverflowError: the write would go past ``max_length``
        """
        if not (0 <= block_id < self.num_blocks):
            raise ValueError(f"block_id {block_id} out of range for a cache with {self.num_blocks} blocks")
        if new_keys.shape != new_values.shape:
            raise ValueError(f"new keys {tuple(new_keys.shape)} and values {tuple(new_values.shape)} differ in shape")

        key_buffer = self._keys[block_id]
        expected = (key_buffer.size(0), key_buffer.size(2), key_buffer.size(3))
        actual = (new_keys.size(0), new_keys.size(2), new_keys.size(3))
        if new_keys.dim() != 4 or actual != expected:
            raise ValueError(
                f"new keys {tuple(new_keys.shape)} do not match cache layout "
                f"[batch={expected[0]}, n, num_key_value_heads={expected[1]}, head_dim={expected[2]}]"
            )

        length = new_keys.size(1)
        self._check_capacity(length)

        end = self._offset + length
        key_buffer[:, self._offset:end] = new_keys.to(key_buffer.dtype)
        self._values[block_id][:, self._offset:end] = new_values.to(key_buffer.dtype)

        return key_buffer[:, :end], self._values[block_id][:, :end]

    def update_attention_mask(self, attention_mask: Optional[torch.Tensor], length: int) -> torch.Tensor:
        """
        Record the padding mask of a step and return the mask of ``[0, offset + length)``.

        ``attention_mask`` may cover just the new positions or the whole
        sequence so far; None marks every new position as a real token.
        """
        self._check_capacity(length)
        end = self._offset + length

        if attention_mask is None:
            self._attention_mask[:, self._offset:end] = 1
        else:
            mask_len = attention_mask.size(-1)
            if attention_mask.dim() != 2 or attention_mask.size(0) != self.batch_size or mask_len not in (length, end):
                raise ValueError(
                    f"attention_mask {tuple(attention_mask.shape)} must be [batch={self.batch_size}, {length}] "
                    f"or [batch={self.batch_size}, {end}] when decoding with a cache"
                )
            self._attention_mask[:, end - mask_len:end] = (attention_mask > 0).to(self._attention_mask.dtype)

        return self._attention_mask[:, :end]

    def advance(self, length: int) -> None:
        """Move the shared cursor after every block has appended ``length`` positions."""
        self._check_capacity(length)
        self._offset += length

    def traverse(self, fn: Callable[[torch.Tensor], torch.Tensor]) -> "DecoderCache":
        """
        Apply ``fn`` to every stored tensor and rebuild an equivalent cache.

        Used for device moves and copies; the cursor is carried over
        unchanged. Key/value buffers keep whatever dtype ``fn`` gives them, so
        a dtype change must match the dtype of the model the cache is used
        with. The padding-mask buffer always keeps its integer dtype.
        """
        mask_dtype = self._attention_mask.dtype
        return DecoderCache(
            [fn(k) for k in self._keys],
            [fn(v) for v in self._values],
            fn(self._attention_mask).to(mask_dtype),
            offset=self._offset,
        )

    def __repr__(self) -> str:
        return (
            f"DecoderCache(num_blocks={self.num_blocks}, batch_size={self.batch_size}, "
            f"max_length={self.max_length}, offset={self.offset})"
        )
