# Copyright (c) Kyutai, all rights reserved.
# This source code is licensed under the license found in the
# LICENSE file in the root directory of this source tree.

import mlx.core as mx
import numpy as np
import pytest

from moshi_stt.modules import StreamArray, StreamingAdd


def test_empty_stream_array():
    empty = StreamArray()
    assert empty.is_empty
    assert empty.shape(-1) == 0
    assert empty.as_array() is None
    assert empty.map(lambda x: x + 1).is_empty
    with pytest.raises(ValueError):
        empty.inner


def test_cat2_with_empty():
    xs = StreamArray(mx.arange(3).reshape(1, 1, 3))
    assert xs.cat2(StreamArray(), axis=-1) is xs
    assert StreamArray().cat2(xs, axis=-1) is xs
    both = xs.cat2(xs, axis=-1)
    np.testing.assert_array_equal(np.array(both.inner)[0, 0], [0, 1, 2, 0, 1, 2])


def test_narrow_and_split():
    xs = StreamArray(mx.arange(5).reshape(1, 1, 5))
    np.testing.assert_array_equal(np.array(xs.narrow(1, 2, axis=-1).inner)[0, 0], [1, 2])
    assert xs.narrow(5, 2, axis=-1).is_empty
    assert xs.narrow(0, 0, axis=-1).is_empty
    lhs, rhs = xs.split(7, axis=-1)
    assert lhs.shape(-1) == 5
    assert rhs.is_empty
    lhs, rhs = xs.split(2, axis=-1)
    np.testing.assert_array_equal(np.array(rhs.inner)[0, 0], [2, 3, 4])


def test_streaming_add_aligns_chunks():
    add = StreamingAdd(axis=-1)
    lhs = np.arange(8, dtype=np.float32)
    rhs = 10 * np.arange(8, dtype=np.float32)

    def chunk(values, start, end):
        return StreamArray(mx.array(values[start:end]).reshape(1, 1, -1))

    out = []
    for (l0, l1), (r0, r1) in [((0, 3), (0, 5)), ((3, 4), (5, 5)), ((4, 8), (5, 8))]:
        lhs_chunk = chunk(lhs, l0, l1)
        rhs_chunk = chunk(rhs, r0, r1) if r1 > r0 else StreamArray()
        ys = add.step(lhs_chunk, rhs_chunk)
        if not ys.is_empty:
            out.append(np.array(ys.inner)[0, 0])
    np.testing.assert_allclose(np.concatenate(out), lhs + rhs)


def test_streaming_add_reset():
    add = StreamingAdd(axis=-1)
    add.step(StreamArray(mx.ones((1, 1, 4))), StreamArray())
    add.reset_state()
    assert add.prev_lhs.is_empty and add.prev_rhs.is_empty
