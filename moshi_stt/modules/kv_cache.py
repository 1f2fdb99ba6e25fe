# Most of the code below comes from:
# https://github.com/ml-explore/mlx-examples/blob/6c2369e4b97f49fb5906ec46033497b39931b25d/llms/mlx_lm/models/base.py#L1
# Copyright © 2023-2024 Apple Inc.

"""
Key-Value Caches for Streaming Attention
========================================

Each attention layer owns one cache holding the keys and values of the
timesteps it has already processed, in the layout
``[B, num_kv_heads, seq_len, head_dim]``. Two variants are provided:

1. KVCache: grows in blocks of ``step`` timesteps and returns the full
   written prefix. Used where the sequence is short or regularly reset (the
   depformer, offline evaluation).

2. RotatingKVCache: a circular buffer of ``max_size`` timesteps. Used for
   endless streams (the Mimi transformers, the main language model) where
   only the last ``context`` steps can be attended to anyway.

Each cache also builds the additive causal mask matching its layout. The
mask is computed from the offset *before* the current update, so the
transformer asks the cache for it before running the first layer.
"""

import mlx.core as mx


def create_additive_causal_mask(N: int, offset: int = 0) -> mx.array:
    """
    Additive causal mask of shape ``[N, offset + N]``.

    Query ``i`` sits at absolute position ``offset + i`` and may only see keys
    at positions ``<= offset + i``; other entries are ``-1e9``.
    """
    rinds = mx.arange(offset + N)
    linds = mx.arange(offset, offset + N) if offset else rinds
    mask = linds[:, None] < rinds[None]
    return mask * -1e9


class KVCache:
    """
    Growable key-value cache.

    Storage is allocated in multiples of ``step`` timesteps. When a write does
    not fit, the storage is cut down to the written prefix and extended by
    enough fresh blocks for the incoming keys, so previously written entries
    are always preserved.

    Attributes:
        n_kv_heads: Number of key-value heads
        k_head_dim: Dimension of key vectors
        v_head_dim: Dimension of value vectors
        offset: Number of timesteps written since the last reset
        step: Allocation quantum

    Example:
        >>> cache = KVCache(head_dim=64, n_kv_heads=8)
        >>> keys, values = cache.update_and_fetch(new_keys, new_values)
    """

    def __init__(self, head_dim: int | tuple[int, int], n_kv_heads: int, step: int = 256):
        self.n_kv_heads = n_kv_heads
        if isinstance(head_dim, int):
            self.k_head_dim = self.v_head_dim = head_dim
        elif isinstance(head_dim, tuple) and len(head_dim) == 2:
            self.k_head_dim, self.v_head_dim = head_dim
        else:
            raise ValueError("head_dim must be an int or a tuple of two ints")
        self.keys = None
        self.values = None
        self.offset = 0
        self.step = step

    @property
    def capacity(self) -> int:
        return 0 if self.keys is None else self.keys.shape[2]

    def update_and_fetch(self, keys: mx.array, values: mx.array) -> tuple[mx.array, mx.array]:
        prev = self.offset
        if self.keys is None or (prev + keys.shape[2]) > self.keys.shape[2]:
            B = keys.shape[0]
            n_steps = (self.step + keys.shape[2] - 1) // self.step
            k_shape = (B, self.n_kv_heads, n_steps * self.step, self.k_head_dim)
            v_shape = (B, self.n_kv_heads, n_steps * self.step, self.v_head_dim)
            new_k = mx.zeros(k_shape, keys.dtype)
            new_v = mx.zeros(v_shape, values.dtype)
            if self.keys is not None:
                if prev % self.step != 0:
                    # Drop the unused tail of the current storage before growing.
                    self.keys = self.keys[..., :prev, :]
                    self.values = self.values[..., :prev, :]
                self.keys = mx.concatenate([self.keys, new_k], axis=2)
                self.values = mx.concatenate([self.values, new_v], axis=2)
            else:
                self.keys, self.values = new_k, new_v

        self.offset += keys.shape[2]
        self.keys[..., prev : self.offset, :] = keys
        self.values[..., prev : self.offset, :] = values
        return self.keys[..., : self.offset, :], self.values[..., : self.offset, :]

    def create_attention_mask(self, h: mx.array) -> mx.array | None:
        """
        Causal mask for the queries in ``h`` (``[B, T, D]``).

        Single step queries can see every cached key, so no mask is needed.
        """
        T = h.shape[1]
        if T <= 1:
            return None
        return create_additive_causal_mask(T, self.offset).astype(h.dtype)

    def reset(self):
        self.offset = 0
        self.keys = None
        self.values = None

    @property
    def state(self):
        return self.keys, self.values


class RotatingKVCache:
    """
    Fixed size circular key-value cache.

    The buffer holds ``max_size`` timesteps; timestep ``p`` is stored in slot
    ``p % max_size``. ``offset`` counts every timestep ever written and keeps
    growing past ``max_size``. The full buffer is returned on every update and
    the mask from ``create_attention_mask`` hides the slots that are either
    unwritten or hold positions later than the query.

    A single update can write at most ``max_size`` timesteps. Entries
    overwritten by a multi-step update are no longer visible to the earlier
    queries of that same update.

    Example:
        >>> cache = RotatingKVCache(head_dim=64, n_kv_heads=8, max_size=250)
        >>> keys, values = cache.update_and_fetch(new_keys, new_values)
    """

    def __init__(self, head_dim: int | tuple[int, int], n_kv_heads: int, max_size: int):
        self.n_kv_heads = n_kv_heads
        if isinstance(head_dim, int):
            self.k_head_dim = self.v_head_dim = head_dim
        elif isinstance(head_dim, tuple) and len(head_dim) == 2:
            self.k_head_dim, self.v_head_dim = head_dim
        else:
            raise ValueError("head_dim must be an int or a tuple of two ints")
        self.keys = None
        self.values = None
        self.offset = 0
        self.max_size = max_size

    def update_and_fetch(self, keys: mx.array, values: mx.array) -> tuple[mx.array, mx.array]:
        B, _, T = keys.shape[:3]
        if T > self.max_size:
            raise ValueError(
                f"update with shape {keys.shape} larger than max_size {self.max_size}"
            )
        if self.keys is None:
            k_shape = (B, self.n_kv_heads, self.max_size, self.k_head_dim)
            v_shape = (B, self.n_kv_heads, self.max_size, self.v_head_dim)
            self.keys = mx.zeros(k_shape, keys.dtype)
            self.values = mx.zeros(v_shape, values.dtype)

        start = self.offset % self.max_size
        end = min(self.max_size, start + T)
        n_first = end - start
        self.keys[..., start:end, :] = keys[..., :n_first, :]
        self.values[..., start:end, :] = values[..., :n_first, :]
        left_to_copy = T - n_first
        if left_to_copy > 0:
            self.keys[..., :left_to_copy, :] = keys[..., n_first:, :]
            self.values[..., :left_to_copy, :] = values[..., n_first:, :]
        self.offset += T
        return self.keys, self.values

    def slot_positions(self, T: int) -> mx.array:
        """
        Absolute position held by each slot once ``T`` more steps are written.

        Slots that have never been written get ``offset + T + 1``, a position
        later than any query of the upcoming update.
        """
        final_offset = self.offset + T
        final_mod = final_offset % self.max_size
        slots = mx.arange(self.max_size)
        current_lap = final_offset - final_mod + slots
        previous_lap = current_lap - self.max_size
        unwritten = mx.full((self.max_size,), final_offset + 1)
        if final_mod == final_offset:
            older = unwritten
        else:
            older = previous_lap
        return mx.where(slots < final_mod, current_lap, older)

    def create_attention_mask(self, h: mx.array) -> mx.array:
        """Mask of shape ``[T, max_size]`` for the queries in ``h``."""
        T = h.shape[1]
        rinds = self.slot_positions(T)
        linds = mx.arange(self.offset, self.offset + T)
        mask = linds[:, None] < rinds[None]
        return (mask * -1e9).astype(h.dtype)

    def reset(self):
        self.offset = 0
        self.keys = None
        self.values = None

    @property
    def state(self):
        return self.keys, self.values
