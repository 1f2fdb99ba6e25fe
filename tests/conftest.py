# Copyright (c) Kyutai, all rights reserved.
# This source code is licensed under the license found in the
# LICENSE file in the root directory of this source tree.

import mlx.core as mx
import pytest

from moshi_stt.models import DepFormerConfig, Lm, LmConfig, Mimi, MimiConfig
from moshi_stt.modules import EuclideanCodebook, SeanetConfig, TransformerConfig


def make_transformer_cfg(**kwargs) -> TransformerConfig:
    values = dict(
        d_model=16,
        num_heads=2,
        num_layers=2,
        causal=True,
        norm_first=True,
        bias_ff=False,
        bias_attn=False,
        layer_scale=None,
        positional_embedding="rope",
        use_conv_bias=True,
        gating=True,
        norm="rms_norm",
        context=32,
        max_period=10000,
        max_seq_len=256,
        kv_repeat=1,
        dim_feedforward=64,
        conv_layout=False,
    )
    values.update(kwargs)
    return TransformerConfig(**values)


@pytest.fixture(autouse=True)
def seed():
    mx.random.seed(299792458)


@pytest.fixture
def transformer_cfg() -> TransformerConfig:
    return make_transformer_cfg()


@pytest.fixture
def seanet_cfg() -> SeanetConfig:
    # 8x downsampling, 4 -> 8 -> 16 channels.
    return SeanetConfig(
        dimension=16,
        channels=1,
        causal=True,
        nfilters=4,
        nresidual_layers=1,
        ratios=[4, 2],
        ksize=7,
        residual_ksize=3,
        last_ksize=3,
        dilation_base=2,
        pad_mode="constant",
        true_skip=True,
        compress=2,
    )


@pytest.fixture
def mimi_cfg(seanet_cfg) -> MimiConfig:
    # 1600 Hz audio, 200 Hz encoder frames, 100 Hz code frames: 16 samples per frame.
    return MimiConfig(
        channels=1,
        sample_rate=1600,
        frame_rate=100,
        renormalize=True,
        seanet=seanet_cfg,
        transformer=make_transformer_cfg(
            num_layers=1,
            layer_scale=0.01,
            gating=False,
            norm="layer_norm",
            conv_layout=True,
        ),
        quantizer_nq=4,
        quantizer_bins=16,
        quantizer_dim=8,
    )


@pytest.fixture
def randomize_codebooks():
    """Give every codebook random centroids, codebooks start all zeros."""

    def _randomize(module):
        for m in module.modules():
            if isinstance(m, EuclideanCodebook):
                m.embedding_sum = mx.random.normal(m.embedding_sum.shape)
                m.cluster_usage = mx.ones(m.cluster_usage.shape)
                m.update_in_place()
        return module

    return _randomize


@pytest.fixture
def mimi(mimi_cfg, randomize_codebooks) -> Mimi:
    return randomize_codebooks(Mimi(mimi_cfg))


@pytest.fixture
def lm_cfg() -> LmConfig:
    """Text-only model reading 4 codebooks."""
    return LmConfig(
        transformer=make_transformer_cfg(),
        depformer=None,
        text_in_vocab_size=9,
        text_out_vocab_size=8,
        audio_vocab_size=17,
        audio_codebooks=4,
        audio_delays=[0] * 4,
    )


@pytest.fixture
def dep_lm_cfg() -> LmConfig:
    """Model generating 2 delayed codebooks and reading 2 others."""
    return LmConfig(
        transformer=make_transformer_cfg(),
        depformer=DepFormerConfig(
            transformer=make_transformer_cfg(
                d_model=8,
                num_layers=1,
                dim_feedforward=32,
                positional_embedding="none",
                context=2,
            ),
            num_slices=2,
        ),
        text_in_vocab_size=9,
        text_out_vocab_size=8,
        audio_vocab_size=17,
        audio_codebooks=4,
        audio_delays=[0, 2, 0, 2],
    )


@pytest.fixture
def lm(lm_cfg) -> Lm:
    return Lm(lm_cfg)


@pytest.fixture
def dep_lm(dep_lm_cfg) -> Lm:
    return Lm(dep_lm_cfg)
