# Copyright (c) Kyutai, all rights reserved.
# This source code is licensed under the license found in the
# LICENSE file in the root directory of this source tree.

import mlx.core as mx
import numpy as np
import pytest

from moshi_stt.modules import (
    EuclideanCodebook,
    ResidualVectorQuantizer,
    SplitResidualVectorQuantizer,
)


def with_zero_centroid(rvq):
    # Centroid 0 of every codebook is the zero vector, so no stage can
    # increase the residual.
    for m in rvq.modules():
        if isinstance(m, EuclideanCodebook):
            emb = mx.random.normal(m.embedding_sum.shape)
            m.embedding_sum = mx.concatenate([mx.zeros_like(emb[:1]), emb[1:]], axis=0)
            m.cluster_usage = mx.ones(m.cluster_usage.shape)
            m.update_in_place()
    return rvq


def test_codebook_nearest_centroid():
    codebook = EuclideanCodebook(dim=2, codebook_size=3)
    codebook.embedding_sum = mx.array([[0.0, 0.0], [2.0, 0.0], [0.0, 6.0]])
    codebook.cluster_usage = mx.array([1.0, 1.0, 2.0])
    codebook.update_in_place()
    xs = mx.array([[0.9, 0.1], [1.2, 0.0], [0.0, 2.0], [0.1, -3.0]])
    np.testing.assert_array_equal(np.array(codebook.encode(xs)), [0, 1, 2, 0])
    assert codebook.encode(xs).dtype == mx.int32
    np.testing.assert_allclose(np.array(codebook.decode(mx.array([2]))), [[0.0, 3.0]])


def test_rvq_error_does_not_increase():
    rvq = with_zero_centroid(
        ResidualVectorQuantizer(
            dim=8, input_dim=None, output_dim=None, nq=4, bins=32, force_projection=False
        )
    )
    xs = mx.random.normal((2, 8, 5))
    codes = rvq.encode(xs)
    assert codes.shape == (2, 4, 5)
    errors = []
    for n in range(1, 5):
        decoded = rvq.decode(codes[:, :n])
        errors.append(float(mx.sum((xs - decoded) ** 2)))
    assert all(b <= a + 1e-4 for a, b in zip(errors, errors[1:]))


def test_rvq_exact_centroid_is_reconstructed():
    rvq = with_zero_centroid(
        ResidualVectorQuantizer(
            dim=8, input_dim=None, output_dim=None, nq=3, bins=16, force_projection=False
        )
    )
    first = rvq.vq.layers[0].codebook.embedding
    xs = first[5].reshape(1, 8, 1)
    codes = np.array(rvq.encode(xs))
    np.testing.assert_array_equal(codes[0, :, 0], [5, 0, 0])
    np.testing.assert_allclose(np.array(rvq.decode(mx.array(codes))), np.array(xs), atol=1e-5)


def test_split_rvq_shapes():
    split = SplitResidualVectorQuantizer(dim=8, input_dim=16, output_dim=16, nq=4, bins=16)
    assert split.num_codebooks == 4
    xs = mx.random.normal((1, 16, 3))
    codes = split.encode(xs)
    assert codes.shape == (1, 4, 3)
    assert codes.dtype == mx.int32
    assert split.decode(codes).shape == (1, 16, 3)
    # Fewer codebooks than configured decode too.
    assert split.decode(codes[:, :1]).shape == (1, 16, 3)


def test_split_rvq_single_codebook():
    split = SplitResidualVectorQuantizer(dim=8, input_dim=16, output_dim=16, nq=1, bins=16)
    assert split.rvq_rest is None
    assert split.encode(mx.random.normal((1, 16, 2))).shape == (1, 1, 2)
    with pytest.raises(ValueError):
        SplitResidualVectorQuantizer(dim=8, input_dim=16, output_dim=16, nq=0, bins=16)
