# Copyright (c) Kyutai, all rights reserved.
# This source code is licensed under the license found in the
# LICENSE file in the root directory of this source tree.

"""
Mimi Neural Audio Codec
=======================

Mimi is the audio tokenizer in front of the speech-to-text language model:
it turns 24 kHz mono audio into 12.5 Hz frames of discrete codes, one code
per RVQ codebook. Decoding goes the other way and is used when the language
model also produces audio.

Encoding path::

    audio [B, 1, samples]
        -> SEANet encoder          [B, 512, T_enc]   (960x downsampling)
        -> encoder transformer     [B, 512, T_enc]
        -> strided conv downsample [B, 512, T_frame] (2x)
        -> split RVQ encode        [B, nq, T_frame]

Decoding mirrors it with the RVQ decode, a depthwise transposed conv
upsampler, the decoder transformer and the SEANet decoder.

Offline (``encode``/``decode``) and streaming (``encode_step``/
``decode_step``) entry points compute the same thing; the streaming ones take
``StreamArray`` chunks of any length and return an empty ``StreamArray`` when
not enough audio has been buffered to complete a frame. One frame is 1920
samples (80 ms).
"""

from dataclasses import dataclass
import math

import mlx.core as mx
import mlx.nn as nn

from ..modules import (
    ConvDownsample1d,
    ConvTrUpsample1d,
    ProjectedTransformer,
    SeanetConfig,
    SeanetDecoder,
    SeanetEncoder,
    SplitResidualVectorQuantizer,
    StreamArray,
    TransformerConfig,
)


@dataclass
class MimiConfig:
    """
    Configuration for the Mimi audio codec.

    Attributes:
        channels: Number of audio channels (1, mono)
        sample_rate: Audio sample rate in Hz
        frame_rate: Rate of the code frames in Hz
        renormalize: Whether the audio is renormalized, kept for checkpoints
        seanet: SEANet encoder/decoder configuration
        transformer: Configuration of the encoder/decoder transformers
        quantizer_nq: Number of RVQ codebooks in use
        quantizer_bins: Number of entries per codebook
        quantizer_dim: Dimension of the codebook vectors

    The SEANet ratios give the encoder frame rate
    (``24000 / prod([8, 6, 5, 4]) = 25 Hz``); the downsampling stride is the
    ratio between that and ``frame_rate`` (``25 / 12.5 = 2``).
    """

    channels: int
    sample_rate: float
    frame_rate: float
    renormalize: bool
    seanet: SeanetConfig
    transformer: TransformerConfig
    quantizer_nq: int
    quantizer_bins: int
    quantizer_dim: int

    @property
    def frame_size(self) -> int:
        """Number of audio samples per code frame."""
        return int(self.sample_rate / self.frame_rate)


def mimi_202407(num_codebooks: int) -> MimiConfig:
    """
    The Mimi configuration shipped with the Kyutai speech models.

    ``num_codebooks`` is 32 for the speech-to-text models, 8 for Moshi.
    """
    seanet = SeanetConfig(
        dimension=512,
        channels=1,
        causal=True,
        nfilters=64,
        nresidual_layers=1,
        ratios=[8, 6, 5, 4],
        ksize=7,
        residual_ksize=3,
        last_ksize=3,
        dilation_base=2,
        pad_mode="constant",
        true_skip=True,
        compress=2,
    )
    transformer = TransformerConfig(
        d_model=seanet.dimension,
        num_heads=8,
        num_layers=8,
        causal=True,
        norm_first=True,
        bias_ff=False,
        bias_attn=False,
        layer_scale=0.01,
        positional_embedding="rope",
        use_conv_bias=True,
        gating=False,
        norm="layer_norm",
        context=250,
        max_period=10000,
        max_seq_len=8192,
        kv_repeat=1,
        dim_feedforward=2048,
        conv_layout=True,
    )
    return MimiConfig(
        channels=1,
        sample_rate=24000,
        frame_rate=12.5,
        renormalize=True,
        seanet=seanet,
        transformer=transformer,
        quantizer_nq=num_codebooks,
        quantizer_bins=2048,
        quantizer_dim=256,
    )


class Mimi(nn.Module):
    """
    Mimi codec.

    Streaming state lives in the SEANet convolutions, the resampling convs
    and the two transformer caches (rotating, ``context + 1`` frames long). A
    session calls ``reset_all`` once, then ``encode_step`` on each incoming
    chunk.

    Example:
        >>> mimi = Mimi(mimi_202407(num_codebooks=32))
        >>> mimi.load_pytorch_weights("mimi.safetensors")
        >>> mimi.reset_all()
        >>> codes = mimi.encode_step(StreamArray(pcm))  # [1, 32, frames] or empty
    """

    def __init__(self, cfg: MimiConfig):
        super().__init__()
        dim = cfg.seanet.dimension
        self.cfg = cfg
        encoder_frame_rate = cfg.sample_rate / math.prod(cfg.seanet.ratios)
        downsample_stride = int(encoder_frame_rate / cfg.frame_rate)
        self.encoder = SeanetEncoder(cfg.seanet)
        self.decoder = SeanetDecoder(cfg.seanet)
        self.quantizer = SplitResidualVectorQuantizer(
            dim=cfg.quantizer_dim,
            input_dim=dim,
            output_dim=dim,
            nq=cfg.quantizer_nq,
            bins=cfg.quantizer_bins,
        )
        self.encoder_transformer = ProjectedTransformer(
            cfg.transformer,
            input_dim=dim,
            output_dims=[dim],
        )
        self.decoder_transformer = ProjectedTransformer(
            cfg.transformer,
            input_dim=dim,
            output_dims=[dim],
        )
        self.downsample = ConvDownsample1d(
            stride=downsample_stride,
            dim=dim,
            causal=True,
        )
        self.upsample = ConvTrUpsample1d(
            stride=downsample_stride,
            dim=dim,
            causal=True,
        )
        self.encoder_cache = self.encoder_transformer.make_rot_cache()
        self.decoder_cache = self.decoder_transformer.make_rot_cache()

    def reset_state(self):
        self.encoder.reset_state()
        self.decoder.reset_state()
        for c in self.decoder_cache:
            c.reset()
        for c in self.encoder_cache:
            c.reset()

    def reset_all(self):
        """Reset every piece of streaming state, including the resamplers."""
        self.reset_state()
        self.upsample.reset_state()
        self.downsample.reset_state()

    def encode(self, xs: mx.array) -> mx.array:
        """
        Offline encoding of ``[B, 1, samples]`` audio to ``[B, nq, frames]``.

        The encoder state is reset first. The input is processed in one
        transformer call, so it must fit in the transformer context
        (``context`` encoder frames, 10 s for the default config).
        """
        self.encoder.reset_state()
        for c in self.encoder_cache:
            c.reset()
        xs = self.encoder(xs)
        xs = self.encoder_transformer(xs, cache=self.encoder_cache)[0]
        xs = self.downsample(xs)
        return self.quantizer.encode(xs)

    def decode(self, xs: mx.array) -> mx.array:
        """Offline decoding of ``[B, nq, frames]`` codes to audio."""
        self.decoder.reset_state()
        for c in self.decoder_cache:
            c.reset()
        xs = self.quantizer.decode(xs)
        xs = self.upsample(xs)
        xs = self.decoder_transformer(xs, cache=self.decoder_cache)[0]
        return self.decoder(xs)

    def encode_step(self, xs: StreamArray) -> StreamArray:
        xs = self.encoder.step(xs)
        xs = xs.map(lambda x: self.encoder_transformer(x, cache=self.encoder_cache)[0])
        xs = self.downsample.step(xs)
        return xs.map(self.quantizer.encode)

    def decode_step(self, xs: StreamArray) -> StreamArray:
        xs = xs.map(self.quantizer.decode)
        xs = self.upsample.step(xs)
        xs = xs.map(lambda x: self.decoder_transformer(x, cache=self.decoder_cache)[0])
        return self.decoder.step(xs)

    def warmup(self):
        pcm = mx.zeros((1, 1, self.cfg.frame_size * 4))
        codes = self.encode(pcm)
        pcm_out = self.decode(codes)
        mx.eval(pcm_out)

    @property
    def frame_rate(self) -> float:
        return self.cfg.frame_rate

    @property
    def sample_rate(self) -> float:
        return self.cfg.sample_rate

    def update_in_place(self):
        """Recompute the arrays derived from parameters after a weight update."""
        for m in self.modules():
            if m is not self and hasattr(m, "update_in_place"):
                m.update_in_place()

    def load_weights(self, file_or_weights, strict: bool = True) -> "Mimi":
        """
        Load MLX-named weights and refresh the derived arrays.

        In strict mode (the default) missing or unexpected parameters raise a
        ``ValueError``.
        """
        super().load_weights(file_or_weights, strict=strict)
        self.update_in_place()
        return self

    def load_pytorch_weights(self, file: str, strict: bool = True) -> "Mimi":
        """
        Load a checkpoint saved with the PyTorch module names.

        Keys are renamed to this module tree and conv kernels transposed to
        the MLX layout. Codebooks beyond ``quantizer_nq`` are skipped, so a 32
        codebook checkpoint can back a model using fewer codebooks.
        """
        weights = []
        for k, v in mx.load(file).items():
            k = ".".join([s.removeprefix("_") for s in k.split(".")])
            k = k.replace("encoder.model.", "encoder.")
            k = k.replace("decoder.model.", "decoder.")
            k = k.replace(".in_proj_weight", ".in_proj.weight")
            k = k.replace(".linear1.weight", ".gating.linear1.weight")
            k = k.replace(".linear2.weight", ".gating.linear2.weight")
            # SEANet layers are stored as a flat nn.Sequential in PyTorch.
            for layer_idx, decoder_idx in enumerate([2, 5, 8, 11]):
                k = k.replace(
                    f"decoder.{decoder_idx}.", f"decoder.layers.{layer_idx}.upsample."
                )
                k = k.replace(
                    f"decoder.{decoder_idx + 1}.",
                    f"decoder.layers.{layer_idx}.residuals.0.",
                )
            for layer_idx, encoder_idx in enumerate([1, 4, 7, 10]):
                k = k.replace(
                    f"encoder.{encoder_idx}.", f"encoder.layers.{layer_idx}.residuals.0."
                )
                k = k.replace(
                    f"encoder.{encoder_idx + 2}.",
                    f"encoder.layers.{layer_idx}.downsample.",
                )
            k = k.replace("decoder.0.", "decoder.init_conv1d.")
            k = k.replace("decoder.14.", "decoder.final_conv1d.")
            k = k.replace("encoder.0.", "encoder.init_conv1d.")
            k = k.replace("encoder.14.", "encoder.final_conv1d.")
            k = k.replace(".block.1.", ".block.0.")
            k = k.replace(".block.3.", ".block.1.")

            if k.startswith("quantizer.rvq_rest.vq.layers."):
                layer_idx = int(k.split(".")[4])
                if layer_idx >= self.cfg.quantizer_nq - 1:
                    continue

            # PyTorch conv weights are [out, in, k], MLX expects [out, k, in].
            if (
                k.endswith(".conv.weight")
                or k.endswith(".output_proj.weight")
                or k.endswith(".input_proj.weight")
            ):
                v = v.swapaxes(-1, -2)
            # PyTorch transposed conv weights are [in, out, k].
            if k.endswith(".convtr.weight"):
                v = v.transpose(1, 2, 0)
            weights.append((k, v))
        return self.load_weights(weights, strict=strict)
