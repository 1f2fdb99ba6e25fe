# Copyright (c) Kyutai, all rights reserved.
# This source code is licensed under the license found in the
# LICENSE file in the root directory of this source tree.

"""
Streaming Speech-to-Text Session
================================

``ASR`` ties the audio encoder and the language model together:

    PCM chunk -> encoder.encode_step -> codes [1, 32, frames]
              -> one Lm.step_main per frame -> greedy text token
              -> vocabulary lookup -> text fragments

The text token of each step is fed back as the text input of the next one.
Token ids 0 and 3 mean "no text this step" and are never emitted; the
SentencePiece word marker ``"▁"`` is rendered as a space.

The encoder is either ``Mimi`` or ``RustyMimiEncoder``; both provide
``reset_all`` and ``encode_step(StreamArray) -> StreamArray``.

A session owns all the streaming state of its model and encoder: use one
``ASR`` per audio stream, from a single thread.
"""

from typing import Callable, Iterable

import mlx.core as mx
import numpy as np

from ..modules import StreamArray
from ..utils.audio_queue import PcmQueue
from ..utils.perf import Callbacks, EventKind
from ..utils.sampling import Sampler
from .lm import Lm

SAMPLE_RATE = 24000
FRAME_SIZE = 1920
# Token ids that carry no text.
SKIPPED_TOKENS = (0, 3)


class ASR:
    """
    Speech-to-text session.

    Args:
        model: Language model with ``other_codebooks`` input codebooks
        mimi: Audio encoder producing that many codebooks
        vocab: Token id to SentencePiece piece
        cb: Callbacks receiving the events and tokens

    Example:
        >>> asr = ASR(model, mimi, vocab)
        >>> asr.warmup()
        >>> asr.reset()
        >>> for pcm in chunks:
        ...     print("".join(asr.on_pcm_input(pcm)), end="", flush=True)
    """

    def __init__(
        self,
        model: Lm,
        mimi,
        vocab: dict[int, str],
        cb: Callbacks | None = None,
    ):
        self.model = model
        self.mimi = mimi
        self.vocab = vocab
        self.cb = cb or Callbacks()
        self.sampler = Sampler(temp=0.0)
        self.prev_text_token = model.cfg.text_init_token

    def reset(self):
        """
        Start a new stream.

        Clears the encoder and model state, then primes the model with one
        step on the initial text token and padding audio tokens.
        """
        cfg = self.model.cfg
        self.mimi.reset_all()
        self.model.reset_cache()
        text_ids = mx.array([[cfg.text_init_token]])
        audio_ids = [
            mx.array([[cfg.audio_padding_token]]) for _ in range(cfg.audio_codebooks)
        ]
        _, text_logits = self.model.step_main(text_ids, audio_ids)
        text_token, _ = self.sampler(text_logits)
        self.prev_text_token = text_token[0].item()
        self.cb.on_reset()

    def decode_token(self, token: int) -> str | None:
        if token in SKIPPED_TOKENS:
            return None
        piece = self.vocab.get(token)
        if piece is None:
            return None
        return piece.replace("▁", " ")

    def on_pcm_input(self, pcm) -> list[str]:
        """
        Feed a chunk of 24 kHz mono PCM, of any length.

        Returns the text fragments decoded from the frames completed by this
        chunk, possibly none.
        """
        pcm = np.asarray(pcm, dtype=np.float32).reshape(-1)
        xs = StreamArray(mx.array(pcm).reshape(1, 1, -1)) if pcm.size else StreamArray()
        self.cb.on_event(EventKind.BEGIN_ENCODE)
        codes = self.mimi.encode_step(xs)
        codes.eval()
        self.cb.on_event(EventKind.END_ENCODE)
        if codes.is_empty:
            return []
        codes = codes.inner
        self.cb.on_input_audio_tokens(codes)

        tokens = []
        num_codebooks = self.model.cfg.audio_codebooks
        for step in range(codes.shape[-1]):
            text_ids = mx.array([[self.prev_text_token]])
            audio_ids = [codes[:, c, step : step + 1] for c in range(num_codebooks)]
            self.cb.on_event(EventKind.BEGIN_STEP)
            _, text_logits = self.model.step_main(text_ids, audio_ids)
            text_token, _ = self.sampler(text_logits)
            mx.eval(text_token)
            self.cb.on_event(EventKind.END_STEP)
            token = text_token[0].item()
            self.cb.on_output_text_token(token)
            text = self.decode_token(token)
            if text is not None:
                tokens.append(text)
            self.prev_text_token = token
        return tokens

    def warmup(self):
        """
        Run the whole pipeline once on silence, then reset.

        Compiles the kernels before real-time use.
        """
        self.reset()
        self.on_pcm_input(np.zeros(FRAME_SIZE * 2, dtype=np.float32))
        self.reset()

    def transcribe(self, chunks: Iterable) -> Iterable[str]:
        """Yield the fragments of a sequence of PCM chunks, in order."""
        for pcm in chunks:
            yield from self.on_pcm_input(pcm)

    def run(self, pcm_queue: PcmQueue, on_text: Callable[[str], None]):
        """
        Consume ``pcm_queue`` until it is closed, calling ``on_text`` per fragment.
        """
        for text in self.transcribe(pcm_queue):
            on_text(text)
