# Copyright (c) Kyutai, all rights reserved.
# This source code is licensed under the license found in the
# LICENSE file in the root directory of this source tree.

"""
Streaming Transformer
=====================

A causal, pre-norm transformer used in three places:

- the main language model (RMSNorm, gated MLP, RoPE, growable cache),
- the depformer slices (RMSNorm, gated MLP, no positional embedding),
- the Mimi encoder/decoder transformers (LayerNorm, plain MLP, layer scale,
  conv layout, rotating cache).

Every call goes through the same path whatever the number of timesteps:
a batch of ``T`` steps is appended to the per-layer caches and attends to
everything the caches hold, restricted to the causal mask and to the last
``context`` positions. Streaming decoding is simply ``T == 1``.

Layer structure (``norm_first``)::

    x = x + layer_scale_1(self_attn(norm1(x)))
    x = x + layer_scale_2(mlp(norm2(x)))
"""

from dataclasses import dataclass

import mlx.core as mx
import mlx.nn as nn

from .kv_cache import KVCache, RotatingKVCache

LayerCache = KVCache | RotatingKVCache


@dataclass
class TransformerConfig:
    """
    Transformer hyper-parameters.

    Attributes:
        d_model: Hidden size
        num_heads: Number of query heads
        num_layers: Number of layers
        causal: Only causal attention is implemented, kept for checkpoints
        norm_first: Pre-norm layers, the only layout implemented
        bias_ff: Bias in the MLP linear layers
        bias_attn: Bias in the attention projections
        layer_scale: Initial value of the per-channel residual scale, or None
        positional_embedding: "rope" or "none"
        use_conv_bias: Kept for checkpoint compatibility
        gating: Gated (SiLU) MLP instead of a GELU MLP
        norm: "layer_norm" or "rms_norm"
        context: Number of past positions attention can reach
        max_period: RoPE base
        max_seq_len: Maximum sequence length the model was trained on
        kv_repeat: Number of query heads sharing a key/value head
        dim_feedforward: MLP hidden size (before the gating adjustment)
        conv_layout: Inputs and outputs are [B, D, T] instead of [B, T, D]
    """

    d_model: int
    num_heads: int
    num_layers: int
    causal: bool
    norm_first: bool
    bias_ff: bool
    bias_attn: bool
    layer_scale: float | None
    positional_embedding: str
    use_conv_bias: bool
    gating: bool
    norm: str
    context: int
    max_period: int
    max_seq_len: int
    kv_repeat: int
    dim_feedforward: int
    conv_layout: bool

    @property
    def head_dim(self) -> int:
        return self.d_model // self.num_heads

    @property
    def num_kv_heads(self) -> int:
        return self.num_heads // self.kv_repeat


def make_norm(cfg: TransformerConfig) -> nn.Module:
    if cfg.norm == "layer_norm":
        return nn.LayerNorm(cfg.d_model, 1e-5)
    elif cfg.norm == "rms_norm":
        return nn.RMSNorm(cfg.d_model, 1e-8)
    else:
        raise ValueError(f"unsupported norm type {cfg.norm}")


class Attention(nn.Module):
    def __init__(self, cfg: TransformerConfig):
        super().__init__()
        if cfg.num_heads % cfg.kv_repeat != 0:
            raise ValueError(
                f"num_heads {cfg.num_heads} is not a multiple of kv_repeat {cfg.kv_repeat}"
            )
        self.cfg = cfg
        num_kv = cfg.num_kv_heads
        out_dim = cfg.d_model + 2 * num_kv * cfg.head_dim
        self.in_proj = nn.Linear(cfg.d_model, out_dim, bias=cfg.bias_attn)
        self.out_proj = nn.Linear(cfg.d_model, cfg.d_model, bias=cfg.bias_attn)
        self.scale = cfg.head_dim ** (-0.5)
        if cfg.positional_embedding == "rope":
            self.rope = nn.RoPE(cfg.head_dim, traditional=True, base=cfg.max_period)
        elif cfg.positional_embedding == "none":
            self.rope = None
        else:
            raise ValueError(
                f"unsupported positional embedding {cfg.positional_embedding}"
            )

    def __call__(
        self,
        xs: mx.array,
        cache: LayerCache,
        mask: mx.array | None = None,
    ) -> mx.array:
        B, T, D = xs.shape
        head_dim = self.cfg.head_dim
        num_kv = self.cfg.num_kv_heads
        kv_dim = num_kv * head_dim

        qkv = self.in_proj(xs)
        q = qkv[..., :D].reshape(B, T, self.cfg.num_heads, head_dim)
        k = qkv[..., D : D + kv_dim].reshape(B, T, num_kv, head_dim)
        v = qkv[..., D + kv_dim :].reshape(B, T, num_kv, head_dim)
        q = q.transpose(0, 2, 1, 3)
        k = k.transpose(0, 2, 1, 3)
        v = v.transpose(0, 2, 1, 3)

        if self.rope is not None:
            q = self.rope(q, offset=cache.offset)
            k = self.rope(k, offset=cache.offset)

        k, v = cache.update_and_fetch(k, v)

        # Only the last `context` positions (plus the current ones) are visible.
        k_len = k.shape[2]
        k_target_len = T + min(self.cfg.context, k_len - T)
        if k_target_len < k_len:
            k = k[:, :, k_len - k_target_len :]
            v = v[:, :, k_len - k_target_len :]
            if mask is not None and mask.shape[-1] > k_target_len:
                mask = mask[..., mask.shape[-1] - k_target_len :]

        xs = mx.fast.scaled_dot_product_attention(q, k, v, scale=self.scale, mask=mask)
        xs = xs.transpose(0, 2, 1, 3).reshape(B, T, D)
        return self.out_proj(xs)


class MlpGating(nn.Module):
    def __init__(self, cfg: TransformerConfig):
        super().__init__()

        hidden = 2 * cfg.dim_feedforward // 3
        if cfg.dim_feedforward == 4 * cfg.d_model:
            hidden = 11 * cfg.d_model // 4

        self.linear_in = nn.Linear(cfg.d_model, 2 * hidden, bias=cfg.bias_ff)
        self.linear_out = nn.Linear(hidden, cfg.d_model, bias=cfg.bias_ff)

    def __call__(self, xs: mx.array) -> mx.array:
        xs = self.linear_in(xs)
        B, T = xs.shape[0], xs.shape[1]
        xs = xs.reshape(B, T, 2, -1)
        return self.linear_out(nn.silu(xs[:, :, 0]) * xs[:, :, 1])


class MlpNoGating(nn.Module):
    def __init__(self, cfg: TransformerConfig):
        super().__init__()

        self.linear1 = nn.Linear(cfg.d_model, cfg.dim_feedforward, bias=cfg.bias_ff)
        self.linear2 = nn.Linear(cfg.dim_feedforward, cfg.d_model, bias=cfg.bias_ff)

    def __call__(self, xs: mx.array) -> mx.array:
        return self.linear2(nn.gelu_approx(self.linear1(xs)))


class LayerScale(nn.Module):
    def __init__(self, dim: int, init_value: float):
        super().__init__()
        self.scale = mx.ones(dim) * init_value

    def __call__(self, xs: mx.array) -> mx.array:
        return xs * self.scale


class TransformerLayer(nn.Module):
    def __init__(self, cfg: TransformerConfig):
        super().__init__()

        if not cfg.norm_first:
            raise ValueError("only norm_first transformers are supported")
        if cfg.gating:
            self.gating = MlpGating(cfg)
        else:
            # The MLP is stored under the same key in both cases.
            self.gating = MlpNoGating(cfg)

        self.norm1 = make_norm(cfg)
        self.norm2 = make_norm(cfg)
        if cfg.layer_scale is not None:
            self.layer_scale_1 = LayerScale(cfg.d_model, cfg.layer_scale)
            self.layer_scale_2 = LayerScale(cfg.d_model, cfg.layer_scale)
        else:
            self.layer_scale_1 = nn.Identity()
            self.layer_scale_2 = nn.Identity()
        self.self_attn = Attention(cfg)

    def __call__(
        self,
        xs: mx.array,
        cache: LayerCache,
        mask: mx.array | None = None,
    ) -> mx.array:
        n1 = self.norm1(xs)
        n1 = self.self_attn(n1, cache=cache, mask=mask)
        xs = xs + self.layer_scale_1(n1)
        xs = xs + self.layer_scale_2(self.gating(self.norm2(xs)))
        return xs


class Transformer(nn.Module):
    """
    Stack of ``TransformerLayer`` sharing a single causal mask.

    The mask is built by the first layer's cache before any cache is updated,
    so it reflects the offset at which the current timesteps start.
    """

    def __init__(self, cfg: TransformerConfig):
        super().__init__()

        self.cfg = cfg
        self.layers = [TransformerLayer(cfg=cfg) for _ in range(cfg.num_layers)]

    def __call__(self, xs: mx.array, cache: list[LayerCache]) -> mx.array:
        mask = None
        if len(cache) > 0:
            mask = cache[0].create_attention_mask(xs)
        for layer, c in zip(self.layers, cache):
            xs = layer(xs, cache=c, mask=mask)
        return xs

    def make_cache(self) -> list[KVCache]:
        return [
            KVCache(head_dim=self.cfg.head_dim, n_kv_heads=self.cfg.num_kv_heads)
            for _ in self.layers
        ]

    def make_rot_cache(self) -> list[RotatingKVCache]:
        # The current step and `context` past steps, the window `Attention`
        # keeps with a growable cache.
        return [
            RotatingKVCache(
                head_dim=self.cfg.head_dim,
                n_kv_heads=self.cfg.num_kv_heads,
                max_size=self.cfg.context + 1,
            )
            for _ in self.layers
        ]


class ProjectedTransformer(nn.Module):
    """
    Transformer with optional input/output linear projections.

    With ``conv_layout`` the inputs and outputs are ``[B, D, T]`` so that the
    module can sit between convolutional stages.
    """

    def __init__(self, cfg: TransformerConfig, input_dim: int, output_dims: list[int]):
        super().__init__()

        self.conv_layout = cfg.conv_layout
        self.transformer = Transformer(cfg)
        if input_dim == cfg.d_model:
            self.input_proj = nn.Identity()
        else:
            self.input_proj = nn.Linear(input_dim, cfg.d_model, bias=False)

        self.output_projs = []
        for output_dim in output_dims:
            if output_dim == cfg.d_model:
                p = nn.Identity()
            else:
                p = nn.Linear(cfg.d_model, output_dim, bias=False)
            self.output_projs.append(p)

    def __call__(self, xs: mx.array, cache: list[LayerCache]) -> list[mx.array]:
        if self.conv_layout:
            xs = xs.swapaxes(1, 2)
        xs = self.input_proj(xs)
        xs = self.transformer(xs, cache=cache)
        outs = []
        for output_proj in self.output_projs:
            out = output_proj(xs)
            if self.conv_layout:
                out = out.swapaxes(1, 2)
            outs.append(out)
        return outs

    def make_cache(self) -> list[KVCache]:
        return self.transformer.make_cache()

    def make_rot_cache(self) -> list[RotatingKVCache]:
        return self.transformer.make_rot_cache()
