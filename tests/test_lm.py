# Copyright (c) Kyutai, all rights reserved.
# This source code is licensed under the license found in the
# LICENSE file in the root directory of this source tree.

import mlx.core as mx
import numpy as np
import pytest

from moshi_stt.models import (
    Lm,
    LmConfig,
    config_asr_1b,
    config_asr_2b,
    config_asr_300m,
    config_v0_1,
)
from moshi_stt.models.lm import ScaledEmbedding
from moshi_stt.modules import KVCache
from moshi_stt.utils import Callbacks, EventKind, Sampler

CONFIG_JSON = {
    "dim": 16,
    "num_heads": 2,
    "num_layers": 2,
    "causal": True,
    "layer_scale": None,
    "context": 32,
    "max_period": 10000,
    "positional_embedding": "rope",
    "text_card": 8,
    "card": 16,
    "n_q": 4,
    "dep_q": 0,
    "delays": [0, 0, 0, 0, 0],
}


class RecordingCallbacks(Callbacks):
    def __init__(self):
        self.events = []

    def on_event(self, kind):
        self.events.append(kind)


def test_asr_presets():
    cfg = config_asr_1b()
    assert cfg.text_init_token == 8000
    assert cfg.audio_padding_token == 2048
    assert cfg.other_codebooks == 32
    assert cfg.generated_codebooks == 0
    assert config_asr_300m().text_out_vocab_size == 48000
    assert config_asr_2b().transformer.num_layers == 24


def test_depformer_preset():
    cfg = config_v0_1()
    assert cfg.generated_codebooks == 8
    assert cfg.other_codebooks == 8


def test_from_config_dict():
    cfg = LmConfig.from_config_dict(CONFIG_JSON)
    assert cfg.depformer is None
    assert cfg.text_in_vocab_size == 9
    assert cfg.audio_vocab_size == 17
    assert cfg.audio_delays == [0, 0, 0, 0]
    assert cfg.transformer.d_model == 16


def test_from_config_dict_missing_key():
    data = dict(CONFIG_JSON)
    del data["n_q"]
    with pytest.raises(ValueError, match="n_q"):
        LmConfig.from_config_dict(data)


def test_scaled_embedding_zero_index():
    emb = ScaledEmbedding(5, 4)
    ys = np.array(emb(mx.array([[-1, 2]])))
    np.testing.assert_array_equal(ys[0, 0], np.zeros(4))
    np.testing.assert_allclose(ys[0, 1], np.array(emb.weight[2]))
    with pytest.raises(ValueError):
        ScaledEmbedding(5, 4, zero_idx=0)


def test_scaled_embedding_unsigned_ids():
    emb = ScaledEmbedding(5, 4)
    ids = mx.array([[0, 4]], dtype=mx.uint32)
    ys = np.array(emb(ids))
    np.testing.assert_allclose(ys[0], np.array(emb.weight)[[0, 4]])


def test_scaled_embedding_low_rank():
    emb = ScaledEmbedding(5, 8, low_rank=2)
    assert emb.weight.shape == (5, 2)
    assert emb(mx.array([[1, 3]])).shape == (1, 2, 8)


def test_step_main_shapes(lm, lm_cfg):
    text_ids = mx.array([[lm_cfg.text_init_token]])
    audio_ids = [mx.array([[lm_cfg.audio_padding_token]]) for _ in range(4)]
    out, logits = lm.step_main(text_ids, audio_ids)
    assert out.shape == (1, 1, 16)
    assert logits.shape == (1, 8)
    assert lm.transformer_cache[0].offset == 1
    assert isinstance(lm.transformer_cache[0], KVCache)


def test_step_main_matches_full_sequence(lm):
    tokens = mx.array([[1, 4, 2, 7, 0]])
    full = np.array(lm(tokens))
    lm.reset_cache()
    steps = []
    for t in range(tokens.shape[1]):
        _, logits = lm.step_main(tokens[:, t : t + 1], [])
        steps.append(np.array(logits))
    np.testing.assert_allclose(np.stack(steps, axis=1), full, atol=1e-4)


def test_step_without_inputs(lm):
    with pytest.raises(ValueError):
        lm.step_main(None, [])


def test_reset_cache(lm, lm_cfg):
    lm.warmup()
    assert lm.transformer_cache[0].offset == 0
    audio_ids = [mx.array([[3]]) for _ in range(4)]
    _, first = lm.step_main(mx.array([[1]]), audio_ids)
    lm.reset_cache()
    _, second = lm.step_main(mx.array([[1]]), audio_ids)
    np.testing.assert_allclose(np.array(first), np.array(second), atol=1e-6)


def test_sample_with_depformer(dep_lm):
    cb = RecordingCallbacks()
    sampler = Sampler(temp=0.0)
    audio_ids = [mx.array([[16]]) for _ in range(4)]
    text, audio = dep_lm.sample(
        mx.array([[8]]), audio_ids, step_idx=0, text_sampler=sampler, audio_sampler=sampler, cb=cb
    )
    assert text.shape == (1,)
    assert audio.shape == (1, 2)
    # Slices never predict the padding token.
    assert int(audio.max()) < 16
    assert cb.events == [
        EventKind.BEGIN_STEP,
        EventKind.END_STEP,
        EventKind.BEGIN_DEPFORMER,
        EventKind.END_DEPFORMER,
    ]


def test_sample_text_only(lm):
    sampler = Sampler(temp=0.0)
    text, audio = lm.sample(
        mx.array([[8]]), [mx.array([[16]])] * 4, 0, sampler, sampler
    )
    assert audio is None
    assert 0 <= text.item() < 8


def test_strict_load(lm, lm_cfg, tmp_path):
    path = str(tmp_path / "model.safetensors")
    lm.save_weights(path)
    other = Lm(lm_cfg)
    other.load_weights(path, strict=True)
    tokens = mx.array([[1, 2, 3]])
    np.testing.assert_allclose(np.array(other(tokens)), np.array(lm(tokens)), atol=1e-6)
    with pytest.raises(ValueError):
        other.load_weights([("text_emb.weight", mx.zeros((9, 16)))], strict=True)
