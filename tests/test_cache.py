"""
Test the fixed-size decoder cache.
"""

import pytest
import torch

from phi3_core.cache_utils import CacheOverflowError, DecoderCache


@pytest.fixture
def cache(tiny_config):
    return DecoderCache.init(tiny_config, batch_size=2, max_length=8)


def _kv(config, batch=2, length=3):
    shape = (batch, length, config.num_key_value_heads, config.head_dim)
    return torch.randn(shape), torch.randn(shape)


def test_init_is_empty(cache, tiny_config):
    assert cache.offset == 0
    assert cache.num_blocks == tiny_config.num_blocks
    assert cache.batch_size == 2
    assert cache.max_length == 8
    assert cache.attention_mask.shape == (2, 0)


def test_init_rejects_bad_sizes(tiny_config):
    with pytest.raises(ValueError, match="max_length"):
        DecoderCache.init(tiny_config, batch_size=1, max_length=0)
    with pytest.raises(ValueError, match="batch_size"):
        DecoderCache.init(tiny_config, batch_size=0, max_length=4)


def test_append_returns_valid_range(cache, tiny_config):
    keys, values = _kv(tiny_config)
    k, v = cache.append(0, keys, values)
    assert k.shape == (2, 3, tiny_config.num_key_value_heads, tiny_config.head_dim)
    torch.testing.assert_close(k, keys)
    torch.testing.assert_close(v, values)
    # The cursor only moves on advance
    assert cache.offset == 0

    cache.advance(3)
    more_keys, more_values = _kv(tiny_config, length=1)
    k, v = cache.append(0, more_keys, more_values)
    assert k.shape[1] == 4
    torch.testing.assert_close(k[:, :3], keys)
    torch.testing.assert_close(k[:, 3:], more_keys)


def test_blocks_have_separate_slots(cache, tiny_config):
    keys0, values0 = _kv(tiny_config)
    keys1, values1 = _kv(tiny_config)
    cache.append(0, keys0, values0)
    k1, _ = cache.append(1, keys1, values1)
    torch.testing.assert_close(k1, keys1)


def test_overflow(cache, tiny_config):
    cache.advance(6)
    keys, values = _kv(tiny_config, length=3)
    with pytest.raises(CacheOverflowError):
        cache.append(0, keys, values)
    with pytest.raises(CacheOverflowError):
        cache.update_attention_mask(None, 3)
    assert cache.offset == 6


def test_append_validates_layout(cache, tiny_config):
    with pytest.raises(ValueError, match="block_id"):
        cache.append(5, *_kv(tiny_config))
    with pytest.raises(ValueError, match="cache layout"):
        cache.append(0, *_kv(tiny_config, batch=3))


def test_update_attention_mask_remembers_padding(cache):
    mask = cache.update_attention_mask(torch.tensor([[0, 1, 1], [1, 1, 1]]), 3)
    assert mask.tolist() == [[0, 1, 1], [1, 1, 1]]
    cache.advance(3)

    # Only the new position given: earlier padding is kept
    mask = cache.update_attention_mask(None, 1)
    assert mask.tolist() == [[0, 1, 1, 1], [1, 1, 1, 1]]
    cache.advance(1)
    assert cache.attention_mask.tolist() == [[0, 1, 1, 1], [1, 1, 1, 1]]


def test_update_attention_mask_full_length(cache):
    cache.update_attention_mask(None, 2)
    cache.advance(2)
    mask = cache.update_attention_mask(torch.tensor([[0, 1, 1], [1, 1, 1]]), 1)
    assert mask.tolist() == [[0, 1, 1], [1, 1, 1]]


def test_update_attention_mask_bad_shape(cache):
    with pytest.raises(ValueError, match="attention_mask"):
        cache.update_attention_mask(torch.ones(2, 5), 3)


def test_traverse(cache, tiny_config):
    cache.append(0, *_kv(tiny_config))
    cache.update_attention_mask(None, 3)
    cache.advance(3)

    halved = cache.traverse(lambda t: t.to(torch.float16) if t.is_floating_point() else t)
    assert halved.offset == 3
    assert halved.max_length == cache.max_length
    assert halved._keys[0].dtype == torch.float16
    assert halved.attention_mask.tolist() == cache.attention_mask.tolist()

    copied = cache.traverse(torch.clone)
    copied.advance(1)
    assert cache.offset == 3


def test_model_init_cache(tiny_model):
    cache = tiny_model.init_cache(batch_size=1, max_length=4)
    assert isinstance(cache, DecoderCache)
    assert cache._keys[0].dtype == tiny_model.dtype
    moved = tiny_model.traverse_cache(cache, lambda t: t.to("cpu"))
    assert moved.offset == 0


def test_traverse_keeps_mask_dtype(cache, tiny_config):
    cache.update_attention_mask(torch.tensor([[0, 1], [1, 1]]), 2)
    cache.advance(2)

    halved = cache.traverse(lambda t: t.half())
    assert halved._keys[0].dtype == torch.float16
    assert halved._attention_mask.dtype == torch.long
    assert halved.attention_mask.tolist() == [[0, 1], [1, 1]]
