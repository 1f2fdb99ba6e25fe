# Copyright (c) Kyutai, all rights reserved.
# This source code is licensed under the license found in the
# LICENSE file in the root directory of this source tree.

import mlx.core as mx
import numpy as np
import pytest

from moshi_stt.modules import KVCache, RotatingKVCache
from moshi_stt.modules.kv_cache import create_additive_causal_mask


def kv(T: int, start: int = 0) -> mx.array:
    # [B=1, heads=1, T, head_dim=2], each step holds its absolute position.
    pos = mx.arange(start, start + T).astype(mx.float32)
    return mx.stack([pos, pos], axis=-1).reshape(1, 1, T, 2)


def test_causal_mask_with_offset():
    mask = np.array(create_additive_causal_mask(2, offset=1))
    assert mask.shape == (2, 3)
    np.testing.assert_array_equal(mask == 0, [[True, True, False], [True, True, True]])


def test_kv_cache_appends():
    cache = KVCache(head_dim=2, n_kv_heads=1)
    cache.update_and_fetch(kv(3), kv(3))
    keys, values = cache.update_and_fetch(kv(2, 3), kv(2, 3))
    assert cache.offset == 5
    assert keys.shape == (1, 1, 5, 2)
    np.testing.assert_array_equal(np.array(keys)[0, 0, :, 0], np.arange(5))
    assert cache.capacity == 256


def test_kv_cache_grows_and_keeps_prefix():
    cache = KVCache(head_dim=2, n_kv_heads=1, step=256)
    cache.update_and_fetch(kv(5), kv(5))
    keys, _ = cache.update_and_fetch(kv(300, 5), kv(300, 5))
    assert cache.offset == 305
    # The unused tail of the first block is dropped before growing.
    assert cache.capacity == 5 + 512
    np.testing.assert_array_equal(np.array(keys)[0, 0, :, 0], np.arange(305))


def test_kv_cache_mask_and_reset():
    cache = KVCache(head_dim=2, n_kv_heads=1)
    assert cache.create_attention_mask(mx.zeros((1, 1, 4))) is None
    cache.update_and_fetch(kv(3), kv(3))
    mask = cache.create_attention_mask(mx.zeros((1, 2, 4)))
    assert mask.shape == (2, 5)
    cache.reset()
    assert cache.offset == 0
    assert cache.keys is None and cache.values is None


def test_kv_cache_head_dim_validation():
    cache = KVCache(head_dim=(2, 3), n_kv_heads=1)
    assert (cache.k_head_dim, cache.v_head_dim) == (2, 3)
    with pytest.raises(ValueError):
        KVCache(head_dim=(1, 2, 3), n_kv_heads=1)


def test_rotating_cache_wraps_around():
    cache = RotatingKVCache(head_dim=2, n_kv_heads=1, max_size=4)
    for t in range(6):
        keys, _ = cache.update_and_fetch(kv(1, t), kv(1, t))
    assert cache.offset == 6
    assert keys.shape == (1, 1, 4, 2)
    # Position p lives in slot p % 4.
    np.testing.assert_array_equal(np.array(keys)[0, 0, :, 0], [4, 5, 2, 3])


def test_rotating_cache_multi_step_write_wraps():
    cache = RotatingKVCache(head_dim=2, n_kv_heads=1, max_size=4)
    cache.update_and_fetch(kv(3), kv(3))
    keys, _ = cache.update_and_fetch(kv(3, 3), kv(3, 3))
    np.testing.assert_array_equal(np.array(keys)[0, 0, :, 0], [4, 5, 2, 3])


def test_rotating_cache_rejects_oversized_update():
    cache = RotatingKVCache(head_dim=2, n_kv_heads=1, max_size=4)
    with pytest.raises(ValueError):
        cache.update_and_fetch(kv(5), kv(5))


def test_rotating_mask_fresh_cache():
    cache = RotatingKVCache(head_dim=2, n_kv_heads=1, max_size=4)
    mask = np.array(cache.create_attention_mask(mx.zeros((1, 2, 2))))
    # Slots 2 and 3 are never written during this update.
    np.testing.assert_array_equal(
        mask == 0, [[True, False, False, False], [True, True, False, False]]
    )


def test_rotating_mask_after_wrap():
    cache = RotatingKVCache(head_dim=2, n_kv_heads=1, max_size=4)
    cache.update_and_fetch(kv(3), kv(3))
    np.testing.assert_array_equal(np.array(cache.slot_positions(2)), [4, 1, 2, 3])
    mask = np.array(cache.create_attention_mask(mx.zeros((1, 2, 2))))
    # Query at position 3 must not see position 4, written in slot 0.
    np.testing.assert_array_equal(
        mask == 0, [[False, True, True, True], [True, True, True, True]]
    )


def test_rotating_cache_reset():
    cache = RotatingKVCache(head_dim=2, n_kv_heads=1, max_size=4)
    cache.update_and_fetch(kv(2), kv(2))
    cache.reset()
    assert cache.offset == 0
    assert cache.state == (None, None)
