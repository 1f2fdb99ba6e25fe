# Copyright (c) Kyutai, all rights reserved.
# This source code is licensed under the license found in the
# LICENSE file in the root directory of this source tree.

"""
Residual Vector Quantization
============================

Turns the continuous Mimi latents into discrete codes and back.

- EuclideanCodebook: nearest-centroid lookup in a single codebook.
- VectorQuantization: one codebook with optional in/out projections.
- ResidualVectorQuantization: a stack of codebooks, each one quantizing the
  residual left by the previous ones (coarse to fine).
- ResidualVectorQuantizer: RVQ with 1x1 conv projections on the
  ``[B, C, T]`` latents.
- SplitResidualVectorQuantizer: Mimi's layout, a first single-codebook RVQ
  for the semantic token followed by an RVQ over the remaining codebooks.
  Both halves see the same input, their decodings are summed.

Codes are laid out as ``[B, num_codebooks, T]``.
"""

import mlx.core as mx
import mlx.nn as nn

from .conv import Conv1d


class EuclideanCodebook(nn.Module):
    """
    Codebook stored as running sums, as produced by EMA training.

    The centroids are ``embedding_sum / cluster_usage``. They are cached in
    ``_embedding`` together with half their squared norms, which makes the
    nearest neighbour search a single matmul:
    ``argmin(||e||^2 / 2 - x . e)``. Call ``update_in_place`` after replacing
    the parameters.
    """

    def __init__(self, dim: int, codebook_size: int):
        super().__init__()
        self._epsilon = 1e-5
        self._dim = dim
        self.initialized = mx.zeros([1], dtype=mx.float32)
        self.embedding_sum = mx.zeros([codebook_size, dim], dtype=mx.float32)
        self.cluster_usage = mx.zeros([codebook_size], dtype=mx.float32)
        self.update_in_place()

    def update_in_place(self):
        cluster_usage = mx.maximum(self.cluster_usage, self._epsilon)[:, None]
        self._embedding = self.embedding_sum / cluster_usage
        self._c2 = self._embedding.square().sum(axis=-1) / 2

    @property
    def embedding(self) -> mx.array:
        return self._embedding

    def encode(self, xs: mx.array) -> mx.array:
        target_shape = xs.shape[:-1]
        xs = xs.flatten(end_axis=-2)
        dot_prod = xs @ self._embedding.swapaxes(-1, -2)
        codes = (self._c2 - dot_prod).argmin(axis=-1).astype(mx.int32)
        return codes.reshape(target_shape)

    def decode(self, xs: mx.array) -> mx.array:
        target_shape = list(xs.shape) + [self._dim]
        return mx.take(self._embedding, xs.flatten(), axis=0).reshape(target_shape)


class VectorQuantization(nn.Module):
    def __init__(self, dim: int, codebook_size: int, codebook_dim: int | None = None):
        super().__init__()
        codebook_dim = dim if codebook_dim is None else codebook_dim
        if dim == codebook_dim:
            self.project_in = nn.Identity()
            self.project_out = nn.Identity()
        else:
            self.project_in = nn.Linear(dim, codebook_dim)
            self.project_out = nn.Linear(codebook_dim, dim)
        self.codebook = EuclideanCodebook(dim=codebook_dim, codebook_size=codebook_size)

    def encode(self, xs: mx.array) -> mx.array:
        xs = xs.swapaxes(-1, -2)
        return self.codebook.encode(self.project_in(xs))

    def decode(self, xs: mx.array) -> mx.array:
        return self.project_out(self.codebook.decode(xs)).swapaxes(-1, -2)


class ResidualVectorQuantization(nn.Module):
    def __init__(self, nq: int, dim: int, codebook_size: int, codebook_dim: int | None):
        super().__init__()
        self.layers = [
            VectorQuantization(dim, codebook_size, codebook_dim) for _ in range(nq)
        ]

    def encode(self, xs: mx.array) -> mx.array:
        """``[B, D, T]`` latents to ``[nq, B, T]`` codes."""
        codes = []
        residual = xs
        for layer in self.layers:
            indices = layer.encode(residual)
            quantized = layer.decode(indices)
            residual = residual - quantized
            codes.append(indices)
        return mx.stack(codes, axis=0)

    def decode(self, xs: mx.array) -> mx.array:
        """Sum the decodings of the first ``xs.shape[0]`` codebooks."""
        quantized = self.layers[0].decode(xs[0])
        for i in range(1, xs.shape[0]):
            quantized = quantized + self.layers[i].decode(xs[i])
        return quantized


class ResidualVectorQuantizer(nn.Module):
    def __init__(
        self,
        dim: int,
        input_dim: int | None,
        output_dim: int | None,
        nq: int,
        bins: int,
        force_projection: bool,
    ):
        super().__init__()
        input_dim = dim if input_dim is None else input_dim
        output_dim = dim if output_dim is None else output_dim
        self.input_proj = None
        self.output_proj = None
        if input_dim != dim or force_projection:
            self.input_proj = Conv1d(input_dim, dim, 1, bias=False)
        if output_dim != dim or force_projection:
            self.output_proj = Conv1d(dim, output_dim, 1, bias=False)
        self.vq = ResidualVectorQuantization(
            nq=nq, dim=dim, codebook_size=bins, codebook_dim=None
        )

    def encode(self, xs: mx.array) -> mx.array:
        if self.input_proj is not None:
            xs = self.input_proj(xs)
        return self.vq.encode(xs).swapaxes(0, 1)

    def decode(self, xs: mx.array) -> mx.array:
        xs = xs.swapaxes(0, 1)
        quantized = self.vq.decode(xs)
        if self.output_proj is not None:
            quantized = self.output_proj(quantized)
        return quantized


class SplitResidualVectorQuantizer(nn.Module):
    def __init__(self, dim: int, input_dim: int | None, output_dim: int | None, nq: int, bins: int):
        super().__init__()
        if nq < 1:
            raise ValueError(f"at least one codebook is required, got nq={nq}")
        self._nq = nq
        self.rvq_first = ResidualVectorQuantizer(
            dim=dim,
            input_dim=input_dim,
            output_dim=output_dim,
            nq=1,
            bins=bins,
            force_projection=True,
        )
        self.rvq_rest = None
        if nq > 1:
            self.rvq_rest = ResidualVectorQuantizer(
                dim=dim,
                input_dim=input_dim,
                output_dim=output_dim,
                nq=nq - 1,
                bins=bins,
                force_projection=True,
            )

    @property
    def num_codebooks(self) -> int:
        return self._nq

    def encode(self, xs: mx.array) -> mx.array:
        codes = self.rvq_first.encode(xs)
        if self.rvq_rest is not None:
            rest_codes = self.rvq_rest.encode(xs)
            codes = mx.concatenate([codes, rest_codes], axis=1)
        return codes

    def decode(self, xs: mx.array) -> mx.array:
        quantized = self.rvq_first.decode(xs[:, :1])
        if self.rvq_rest is not None and xs.shape[1] > 1:
            quantized = quantized + self.rvq_rest.decode(xs[:, 1:])
        return quantized
