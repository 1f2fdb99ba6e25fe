# Copyright (c) Kyutai, all rights reserved.
# This source code is licensed under the license found in the
# LICENSE file in the root directory of this source tree.

"""
Causal and Streaming Convolutions
=================================

The SEANet encoder/decoder and the Mimi resampling layers are built from the
convolutions in this module. Each streamable layer exposes two entry points:

- ``__call__(x)``: offline evaluation over a whole ``[B, C, T]`` sequence.
- ``step(x)``: streaming evaluation over one ``StreamArray`` chunk.

The streaming path must produce the same frames as the offline path for any
chunking of the input. For a causal conv this works by padding the left of the
very first chunk once, then carrying the unconsumed input tail from call to
call. A causal transposed conv carries its not-yet-final output tail instead
and overlap-adds it to the head of the next output.

MLX convolutions use the NLC layout whereas the rest of the codec works in
NCL, so the thin ``Conv1d`` / ``ConvTranspose1d`` wrappers swap axes around
the MLX primitive. Weight norm is folded into the weights when the checkpoint
is produced, ``NormConv1d`` and ``NormConvTranspose1d`` only exist to mirror
the checkpoint key layout (``*.conv.conv.weight``, ``*.convtr.convtr.weight``).
"""

import math

import mlx.core as mx
import mlx.nn as nn

from .streaming import StreamArray


class Conv1d(nn.Module):
    def __init__(
        self,
        in_channels: int,
        out_channels: int,
        ksize: int,
        stride: int = 1,
        padding: int = 0,
        groups: int = 1,
        dilation: int = 1,
        bias: bool = True,
    ):
        super().__init__()
        scale = 1 / math.sqrt(in_channels * ksize)
        self.weight = mx.random.uniform(
            low=-scale,
            high=scale,
            shape=(out_channels, ksize, in_channels // groups),
        )
        self.bias = None
        if bias:
            self.bias = mx.zeros(out_channels)
        self._padding = padding
        self._groups = groups
        self._stride = stride
        self._dilation = dilation

    @property
    def stride(self) -> int:
        return self._stride

    @property
    def dilation(self) -> int:
        return self._dilation

    def __call__(self, xs: mx.array) -> mx.array:
        # MLX uses NLC whereas the codec works with NCL.
        y = mx.conv1d(
            xs.swapaxes(-1, -2),
            self.weight,
            stride=self._stride,
            padding=self._padding,
            dilation=self._dilation,
            groups=self._groups,
        )
        if self.bias is not None:
            y = y + self.bias
        return y.swapaxes(-1, -2)


class ConvTranspose1d(nn.Module):
    """
    Transposed 1d convolution, NCL layout.

    ``mx.conv_transpose1d`` has no grouped variant, so the only grouped
    configuration accepted is the depthwise one (``groups == in == out``),
    which is rewritten as an ungrouped convolution with a block diagonal
    kernel. That kernel is derived from ``weight`` and has to be refreshed
    with ``update_in_place`` whenever ``weight`` is replaced.
    """

    def __init__(
        self,
        in_channels: int,
        out_channels: int,
        ksize: int,
        stride: int = 1,
        padding: int = 0,
        groups: int = 1,
        bias: bool = True,
    ):
        super().__init__()
        if groups > 1 and not (groups == in_channels and groups == out_channels):
            raise ValueError(
                f"groups are not supported in ConvTranspose1d, {groups}, "
                f"{in_channels}, {out_channels}"
            )
        scale = 1 / math.sqrt(in_channels * ksize)
        self.weight = mx.random.uniform(
            low=-scale,
            high=scale,
            shape=(out_channels // groups, ksize, in_channels),
        )
        self.bias = None
        if bias:
            self.bias = mx.zeros(out_channels)
        self._padding = padding
        self._groups = groups
        self._stride = stride
        self._ksize = ksize
        self._in_channels = in_channels
        self._out_channels = out_channels
        self.update_in_place()

    @property
    def stride(self) -> int:
        return self._stride

    def update_in_place(self):
        if self._groups == 1:
            self._expanded_weight = self.weight
            return
        out_c = self._out_channels
        eye = mx.eye(out_c).astype(self.weight.dtype).reshape(out_c, 1, out_c)
        eye = mx.repeat(eye, self._ksize, axis=1)
        self._expanded_weight = mx.repeat(self.weight, self._groups, axis=0) * eye

    def __call__(self, xs: mx.array) -> mx.array:
        y = mx.conv_transpose1d(
            xs.swapaxes(-1, -2),
            self._expanded_weight,
            stride=self._stride,
            padding=self._padding,
        )
        if self.bias is not None:
            y = y + self.bias
        return y.swapaxes(-1, -2)


class NormConv1d(nn.Module):
    def __init__(
        self,
        in_channels: int,
        out_channels: int,
        ksize: int,
        stride: int = 1,
        padding: int = 0,
        groups: int = 1,
        dilation: int = 1,
        bias: bool = True,
    ):
        super().__init__()
        self.conv = Conv1d(
            in_channels,
            out_channels,
            ksize,
            stride=stride,
            padding=padding,
            groups=groups,
            dilation=dilation,
            bias=bias,
        )

    def __call__(self, xs: mx.array) -> mx.array:
        return self.conv(xs)


class NormConvTranspose1d(nn.Module):
    def __init__(
        self,
        in_channels: int,
        out_channels: int,
        ksize: int,
        stride: int = 1,
        padding: int = 0,
        groups: int = 1,
        bias: bool = True,
    ):
        super().__init__()
        self.convtr = ConvTranspose1d(
            in_channels,
            out_channels,
            ksize,
            stride=stride,
            padding=padding,
            groups=groups,
            bias=bias,
        )

    def __call__(self, xs: mx.array) -> mx.array:
        return self.convtr(xs)


def get_extra_padding_for_conv1d(
    xs: mx.array, ksize: int, stride: int, padding_total: int
) -> int:
    """Right padding needed so that the last window of the conv is complete."""
    length = xs.shape[-1]
    nframes = max(length + padding_total - ksize, 0) / stride + 1.0
    ideal_len = (int(math.ceil(nframes)) - 1) * stride + ksize - padding_total
    return max(0, ideal_len - length)


def unpad1d(xs: mx.array, unpad_l: int, unpad_r: int) -> mx.array:
    right = xs.shape[-1] - unpad_r
    return xs[..., unpad_l:right]


class StreamableConv1d(nn.Module):
    """
    Causal (or centered) 1d convolution with a streaming ``step``.

    In causal mode the sequence is left padded by
    ``(ksize - 1) * dilation + 1 - stride`` samples. During streaming that
    padding is applied once, to the first chunk, and the input tail that does
    not yet cover a full window is kept in ``_prev_xs``. The buffered tail is
    always shorter than the effective kernel.
    """

    def __init__(
        self,
        in_channels: int,
        out_channels: int,
        ksize: int,
        stride: int,
        dilation: int,
        groups: int,
        bias: bool,
        causal: bool,
        pad_mode: str,
    ):
        super().__init__()
        self._causal = causal
        self._pad_mode = pad_mode
        self._ksize = ksize
        self.conv = NormConv1d(
            in_channels,
            out_channels,
            ksize,
            stride=stride,
            groups=groups,
            dilation=dilation,
            bias=bias,
        )
        self._prev_xs = StreamArray()
        self._left_pad_applied = False

    def _effective_ksize(self) -> int:
        return (self._ksize - 1) * self.conv.conv.dilation + 1

    def reset_state(self):
        self._prev_xs = StreamArray()
        self._left_pad_applied = False

    def __call__(self, xs: mx.array) -> mx.array:
        ksize = self._effective_ksize()
        stride = self.conv.conv.stride
        padding_total = ksize - stride
        extra_padding = get_extra_padding_for_conv1d(
            xs, ksize=ksize, stride=stride, padding_total=padding_total
        )
        if self._causal:
            pad = (padding_total, extra_padding)
        else:
            padding_right = padding_total // 2
            padding_left = padding_total - padding_right
            pad = (padding_left, padding_right + extra_padding)
        xs = mx.pad(xs, pad_width=[(0, 0), (0, 0), pad], mode=self._pad_mode)
        return self.conv(xs)

    def step(self, xs: StreamArray) -> StreamArray:
        if xs.is_empty:
            return StreamArray()
        stride = self.conv.conv.stride
        ksize = self._effective_ksize()
        if not self._left_pad_applied:
            self._left_pad_applied = True
            padding_total = ksize - stride
            xs = xs.map(
                lambda x: mx.pad(
                    x, pad_width=[(0, 0), (0, 0), (padding_total, 0)], mode=self._pad_mode
                )
            )
        xs = self._prev_xs.cat2(xs, axis=-1)
        seq_len = xs.shape(-1)
        num_frames = max(seq_len + stride - ksize, 0) // stride
        if num_frames == 0:
            self._prev_xs = xs
            return StreamArray()
        offset = num_frames * stride
        self._prev_xs = xs.narrow(offset, seq_len - offset, axis=-1)
        in_len = (num_frames - 1) * stride + ksize
        xs = xs.narrow(0, in_len, axis=-1)
        return xs.map(self.conv.conv)


class StreamableConvTranspose1d(nn.Module):
    """
    Causal (or centered) transposed 1d convolution with a streaming ``step``.

    Each output chunk overlaps the previous one on ``ksize - stride`` samples.
    Those samples are only final once the next input frame has been seen, so
    they are held in ``_prev_ys`` and added to the head of the next output.
    The stored tail already contains the bias, which is removed before the
    overlap-add so that it is only counted once.
    """

    def __init__(
        self,
        in_channels: int,
        out_channels: int,
        ksize: int,
        stride: int,
        groups: int,
        bias: bool,
        causal: bool,
    ):
        super().__init__()
        self._causal = causal
        self._ksize = ksize
        self.convtr = NormConvTranspose1d(
            in_channels,
            out_channels,
            ksize,
            stride=stride,
            groups=groups,
            bias=bias,
        )
        self._prev_ys = StreamArray()

    def reset_state(self):
        self._prev_ys = StreamArray()

    def __call__(self, xs: mx.array) -> mx.array:
        stride = self.convtr.convtr.stride
        padding_total = max(self._ksize - stride, 0)
        xs = self.convtr(xs)
        if self._causal:
            return unpad1d(xs, 0, padding_total)
        unpad_r = padding_total // 2
        unpad_l = padding_total - unpad_r
        return unpad1d(xs, unpad_l, unpad_r)

    def step(self, xs: StreamArray) -> StreamArray:
        if xs.is_empty:
            return StreamArray()
        convtr = self.convtr.convtr
        ys = convtr(xs.inner)
        ot = ys.shape[-1]
        if not self._prev_ys.is_empty:
            prev_ys = self._prev_ys.inner
            pt = prev_ys.shape[-1]
            if convtr.bias is not None:
                prev_ys = prev_ys - convtr.bias[None, :, None]
            ys = mx.concatenate([ys[..., :pt] + prev_ys, ys[..., pt:]], axis=-1)
        invalid_steps = self._ksize - convtr.stride
        ys, self._prev_ys = StreamArray(ys).split(ot - invalid_steps, axis=-1)
        return ys


class ConvDownsample1d(nn.Module):
    def __init__(self, stride: int, dim: int, causal: bool):
        super().__init__()
        self.conv = StreamableConv1d(
            in_channels=dim,
            out_channels=dim,
            ksize=2 * stride,
            stride=stride,
            dilation=1,
            groups=1,
            bias=False,
            causal=causal,
            pad_mode="edge",
        )

    def reset_state(self):
        self.conv.reset_state()

    def __call__(self, xs: mx.array) -> mx.array:
        return self.conv(xs)

    def step(self, xs: StreamArray) -> StreamArray:
        return self.conv.step(xs)


class ConvTrUpsample1d(nn.Module):
    def __init__(self, stride: int, dim: int, causal: bool):
        super().__init__()
        self.convtr = StreamableConvTranspose1d(
            in_channels=dim,
            out_channels=dim,
            ksize=2 * stride,
            stride=stride,
            groups=dim,
            bias=False,
            causal=causal,
        )

    def reset_state(self):
        self.convtr.reset_state()

    def __call__(self, xs: mx.array) -> mx.array:
        return self.convtr(xs)

    def step(self, xs: StreamArray) -> StreamArray:
        return self.convtr.step(xs)
