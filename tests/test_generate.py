# Copyright (c) Kyutai, all rights reserved.
# This source code is licensed under the license found in the
# LICENSE file in the root directory of this source tree.

import mlx.core as mx
import numpy as np
import pytest

from moshi_stt.models import GenerationSequence, LmGen
from moshi_stt.models.generate import UNGENERATED_TOKEN
from moshi_stt.utils import Callbacks, Sampler


class TokenRecorder(Callbacks):
    def __init__(self):
        self.text_tokens = []
        self.audio_tokens = []
        self.resets = 0

    def on_reset(self):
        self.resets += 1

    def on_output_text_token(self, token):
        self.text_tokens.append(token)

    def on_output_audio_tokens(self, codes):
        self.audio_tokens.append(codes)


def make_gen(model, max_steps, cb=None) -> LmGen:
    return LmGen(
        model,
        max_steps=max_steps,
        text_sampler=Sampler(temp=0.0),
        audio_sampler=Sampler(temp=0.0),
        cb=cb,
    )


def other_tokens(rng, n: int) -> mx.array:
    return mx.array(rng.integers(0, 16, size=(1, n)))


def test_sequence_read_unwritten():
    seq = GenerationSequence(batch_size=2, num_streams=3, max_steps=4)
    assert seq.max_steps == 4
    with pytest.raises(RuntimeError):
        seq.read(1, 0)
    seq.write(1, 0, [5, 6])
    np.testing.assert_array_equal(seq.read(1, 0), [5, 6])
    seq.reset()
    assert (seq.tokens == UNGENERATED_TOKEN).all()
    with pytest.raises(RuntimeError):
        seq.read(1, 0)


@pytest.mark.parametrize("max_steps", [1, 3, 5, 50])
def test_runs_exactly_max_steps(dep_lm, max_steps):
    rng = np.random.default_rng(0)
    cb = TokenRecorder()
    gen = make_gen(dep_lm, max_steps, cb=cb)
    assert gen.max_delay == 2
    for t in range(max_steps):
        text = gen.step(other_tokens(rng, 2))
        assert text.shape == (1,)
        last = gen.last_audio_tokens()
        # Frame t - max_delay is resolved once step t has run.
        if t < gen.max_delay:
            assert last is None
        else:
            assert last.shape == (1, 2)
            assert int(last.max()) < dep_lm.cfg.audio_padding_token
    with pytest.raises(ValueError):
        gen.step(other_tokens(rng, 2))

    seq = gen.gen_sequence
    assert seq.written[0].all()
    # Generated codebooks are written up to their delay.
    for cb_idx, delay in enumerate(gen.delays[:2]):
        assert seq.written[1 + cb_idx, : max(max_steps - delay, 0)].all()
        assert not seq.written[1 + cb_idx, max(max_steps - delay, 0) :].any()
    # Input codebooks are written at every step.
    assert seq.written[3:].all()
    assert len(cb.text_tokens) == max_steps
    assert len(cb.audio_tokens) == max(max_steps - gen.max_delay, 0)
    for codes in cb.audio_tokens:
        assert codes.shape == (1, 2, 1)


def test_text_only_model(lm):
    rng = np.random.default_rng(1)
    gen = make_gen(lm, 4)
    tokens = [gen.step(other_tokens(rng, 4)).item() for _ in range(4)]
    assert all(0 <= t < 8 for t in tokens)
    assert gen.last_audio_tokens() is None


def test_missing_input_tokens(lm):
    gen = make_gen(lm, 4)
    with pytest.raises(ValueError):
        gen.step(None)


def test_reset_replays_the_same_tokens(lm):
    rng = np.random.default_rng(2)
    inputs = [other_tokens(rng, 4) for _ in range(6)]
    cb = TokenRecorder()
    gen = make_gen(lm, 6, cb=cb)
    first = [gen.step(x).item() for x in inputs]
    gen.reset()
    assert gen.step_idx == 0
    assert cb.resets == 1
    second = [gen.step(x).item() for x in inputs]
    assert first == second


def test_first_step_reads_padding(dep_lm):
    # At step 0 every codebook input is the padding token and the text input
    # is the start token, reading the buffer would raise otherwise.
    gen = make_gen(dep_lm, 2)
    gen.step(mx.array([[1, 2]]))
    np.testing.assert_array_equal(gen.gen_sequence.read(3, 0), [1])
    np.testing.assert_array_equal(gen.gen_sequence.read(4, 0), [2])
