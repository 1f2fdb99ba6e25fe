# Copyright (c) Kyutai, all rights reserved.
# This source code is licensed under the license found in the
# LICENSE file in the root directory of this source tree.

"""
Streaming Values
================

Every streaming layer in this package consumes and produces a ``StreamArray``:
a chunk of data that is either a tensor or explicitly empty. Convolutions
buffer input internally until they have enough samples to emit a full output
frame, so a call can legitimately produce nothing. Rather than passing
``None`` around, the empty case is a value of its own that each stage checks
and forwards unchanged.

Layout conventions:
- Audio and conv activations use ``[B, C, T]`` (time on the last axis).
- Transformer activations use ``[B, T, D]``.
Helpers that take an ``axis`` argument leave the choice to the call site.
"""

from typing import Callable

import mlx.core as mx
import mlx.nn as nn


class StreamArray:
    """
    A chunk of streamed data: either empty or holding a single ``mx.array``.

    Example:
        >>> chunk = StreamArray(mx.zeros((1, 1, 1920)))
        >>> chunk.is_empty
        False
        >>> StreamArray().map(lambda x: x * 2).is_empty
        True
    """

    __slots__ = ("_inner",)

    def __init__(self, inner: mx.array | None = None):
        self._inner = inner

    def __repr__(self) -> str:
        if self._inner is None:
            return "StreamArray(<empty>)"
        return f"StreamArray(shape={tuple(self._inner.shape)})"

    @property
    def is_empty(self) -> bool:
        return self._inner is None

    @property
    def inner(self) -> mx.array:
        """The wrapped array. Raises if the chunk is empty."""
        if self._inner is None:
            raise ValueError("cannot access the content of an empty StreamArray")
        return self._inner

    def as_array(self) -> mx.array | None:
        return self._inner

    def shape(self, axis: int) -> int:
        """Size along ``axis``, zero for an empty chunk."""
        if self._inner is None:
            return 0
        return self._inner.shape[axis]

    def cat2(self, other: "StreamArray", axis: int) -> "StreamArray":
        """Concatenate ``other`` after this chunk along ``axis``."""
        if self._inner is None:
            return other
        if other._inner is None:
            return self
        return StreamArray(mx.concatenate([self._inner, other._inner], axis=axis))

    def narrow(self, offset: int, length: int, axis: int) -> "StreamArray":
        """Slice ``length`` entries starting at ``offset`` along ``axis``."""
        if self._inner is None or length <= 0:
            return StreamArray()
        size = self._inner.shape[axis]
        if offset >= size:
            return StreamArray()
        index = [slice(None)] * self._inner.ndim
        index[axis] = slice(offset, min(offset + length, size))
        return StreamArray(self._inner[tuple(index)])

    def split(self, lhs_len: int, axis: int) -> tuple["StreamArray", "StreamArray"]:
        """Split into the first ``lhs_len`` entries along ``axis`` and the rest."""
        if self._inner is None:
            return StreamArray(), StreamArray()
        size = self._inner.shape[axis]
        lhs_len = min(lhs_len, size)
        lhs = self.narrow(0, lhs_len, axis)
        rhs = self.narrow(lhs_len, size - lhs_len, axis)
        return lhs, rhs

    def map(self, fn: Callable[[mx.array], mx.array]) -> "StreamArray":
        if self._inner is None:
            return self
        return StreamArray(fn(self._inner))

    def elu(self) -> "StreamArray":
        return self.map(nn.elu)

    def eval(self):
        if self._inner is not None:
            mx.eval(self._inner)


class StreamingAdd:
    """
    Element-wise sum of two streams whose chunks may not line up in time.

    The two branches of a residual block can emit different amounts of data
    for the same input chunk. Unmatched samples are held back until the other
    side catches up, so that each output sample is the sum of the two inputs
    at the same position.
    """

    def __init__(self, axis: int):
        self.axis = axis
        self.prev_lhs = StreamArray()
        self.prev_rhs = StreamArray()

    def reset_state(self):
        self.prev_lhs = StreamArray()
        self.prev_rhs = StreamArray()

    def step(self, lhs: StreamArray, rhs: StreamArray) -> StreamArray:
        lhs = self.prev_lhs.cat2(lhs, axis=self.axis)
        rhs = self.prev_rhs.cat2(rhs, axis=self.axis)
        n = min(lhs.shape(self.axis), rhs.shape(self.axis))
        lhs, self.prev_lhs = lhs.split(n, axis=self.axis)
        rhs, self.prev_rhs = rhs.split(n, axis=self.axis)
        if lhs.is_empty or rhs.is_empty:
            return StreamArray()
        return StreamArray(lhs.inner + rhs.inner)
