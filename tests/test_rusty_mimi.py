# Copyright (c) Kyutai, all rights reserved.
# This source code is licensed under the license found in the
# LICENSE file in the root directory of this source tree.

import mlx.core as mx
import numpy as np
import pytest

pytest.importorskip("rustymimi")

from moshi_stt.models import rusty_mimi  # noqa: E402
from moshi_stt.modules import StreamArray  # noqa: E402


class CountingTokenizer:
    """Emits one frame of codes per 1920 samples."""

    created = 0

    def __init__(self, path, num_codebooks):
        CountingTokenizer.created += 1
        self.num_codebooks = num_codebooks
        self.pending = 0
        self.resets = 0

    def reset(self):
        self.pending = 0
        self.resets += 1

    def encode_step(self, pcm):
        self.pending += pcm.shape[-1]
        frames, self.pending = divmod(self.pending, 1920)
        return np.ones((1, self.num_codebooks, frames), dtype=np.uint32)


@pytest.fixture
def encoder(monkeypatch):
    CountingTokenizer.created = 0
    monkeypatch.setattr(rusty_mimi.rustymimi, "Tokenizer", CountingTokenizer)
    return rusty_mimi.RustyMimiEncoder("mimi.safetensors", num_codebooks=4)


def test_reset_keeps_the_tokenizer(encoder):
    tokenizer = encoder._tokenizer
    encoder.encode_step(StreamArray(mx.zeros((1, 1, 1000))))
    encoder.reset_all()
    encoder.reset_all()
    assert encoder._tokenizer is tokenizer
    assert tokenizer.resets == 2
    assert tokenizer.pending == 0
    assert CountingTokenizer.created == 1


def test_encode_step(encoder):
    assert encoder.encode_step(StreamArray()).is_empty
    assert encoder.encode_step(StreamArray(mx.zeros((1, 1, 1000)))).is_empty
    codes = encoder.encode_step(StreamArray(mx.zeros((1, 1, 3000))))
    assert codes.inner.shape == (1, 4, 2)
    assert codes.inner.dtype == mx.int32
