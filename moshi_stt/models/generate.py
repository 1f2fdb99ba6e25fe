# Copyright (c) Kyutai, all rights reserved.
# This source code is licensed under the license found in the
# LICENSE file in the root directory of this source tree.

"""
Delayed Streams Generation
==========================

``LmGen`` drives an ``Lm`` one step at a time over ``1 + audio_codebooks``
parallel streams: row 0 holds the text tokens, rows ``1..`` the audio
codebooks. Audio codebook ``c`` runs ``d_c`` steps behind the text stream.

At step ``t``:

1. the text input is the text token of step ``t - 1`` (``text_out_vocab_size``
   at ``t = 0``);
2. the externally supplied codebooks are written at column ``t``;
3. codebook ``c`` is read at column ``t - 1 - d_c``, or replaced by the
   padding token when that column is negative;
4. the model samples a text token and, with a depformer, one token per
   generated codebook;
5. the text token is written at column ``t``, generated codebook ``c`` at
   column ``t - d_c`` when non negative.

Every cell of the buffer has a "written" flag; reading a cell that was never
written means the delays and the indexing disagree and raises a
``RuntimeError``.
"""

import mlx.core as mx
import numpy as np

from ..utils import sampling
from ..utils.perf import Callbacks
from .lm import Lm

UNGENERATED_TOKEN = -2


class GenerationSequence:
    """
    Token buffer of shape ``[batch, num_streams, max_steps]``.

    Values live on the host; cells that were never written hold
    ``UNGENERATED_TOKEN`` and are tracked in a separate bitmap.
    """

    def __init__(self, batch_size: int, num_streams: int, max_steps: int):
        self.tokens = np.full(
            (batch_size, num_streams, max_steps), UNGENERATED_TOKEN, dtype=np.int32
        )
        self.written = np.zeros((num_streams, max_steps), dtype=bool)

    @property
    def max_steps(self) -> int:
        return self.tokens.shape[-1]

    def write(self, stream: int, step: int, values):
        self.tokens[:, stream, step] = np.asarray(values, dtype=np.int32).reshape(-1)
        self.written[stream, step] = True

    def read(self, stream: int, step: int) -> np.ndarray:
        """Tokens of ``stream`` at ``step`` as a ``[batch]`` array."""
        if not self.written[stream, step]:
            raise RuntimeError(f"reading ungenerated value, stream {stream}, step {step}")
        return self.tokens[:, stream, step]

    def reset(self):
        self.tokens[...] = UNGENERATED_TOKEN
        self.written[...] = False


class LmGen:
    """
    Step-by-step generation with delayed audio streams.

    Args:
        model: The language model
        max_steps: Number of steps the buffer can hold
        text_sampler: Sampler for the text tokens
        audio_sampler: Sampler for the generated audio tokens
        batch_size: Number of parallel sequences
        cb: Callbacks receiving the events and sampled tokens

    Example:
        >>> gen = LmGen(model, max_steps=1000, text_sampler=Sampler(temp=0.0),
        ...             audio_sampler=Sampler(temp=0.8, top_k=250))
        >>> for codes in encoded_frames:        # [1, other_codebooks]
        ...     text_token = gen.step(codes)    # [1]
        ...     audio = gen.last_audio_tokens() # [1, dep_q] or None
    """

    def __init__(
        self,
        model: Lm,
        max_steps: int,
        text_sampler: sampling.Sampler,
        audio_sampler: sampling.Sampler,
        batch_size: int = 1,
        cb: Callbacks | None = None,
    ):
        self.model: Lm = model
        self.max_steps: int = max_steps
        self.text_sampler = text_sampler
        self.audio_sampler = audio_sampler
        self.batch_size = batch_size
        self.num_codebooks: int = 1 + model.cfg.audio_codebooks
        self.gen_sequence = GenerationSequence(batch_size, self.num_codebooks, max_steps)
        self.step_idx = 0
        self.main_codebooks: int = model.cfg.generated_codebooks
        self.cb = cb or Callbacks()

    @property
    def delays(self) -> list[int]:
        return self.model.cfg.audio_delays

    @property
    def max_delay(self) -> int:
        return max(self.delays, default=0)

    def _constant(self, value: int) -> mx.array:
        return mx.full((self.batch_size, 1), value, dtype=mx.int32)

    def step(self, other_audio_tokens: mx.array | None) -> mx.array:
        """
        Run one generation step.

        Args:
            other_audio_tokens: The externally supplied codebooks for this
                step, ``[batch, other_codebooks]``. None when the model has
                no such codebooks.

        Returns:
            The sampled text token ``[batch]``.

        Raises:
            ValueError: if all ``max_steps`` steps have been run.
            RuntimeError: if an input cell was never written.
        """
        if self.step_idx >= self.max_steps:
            raise ValueError(f"reached max_steps {self.max_steps}")
        cfg = self.model.cfg
        seq = self.gen_sequence

        if self.step_idx == 0:
            text_ids = self._constant(cfg.text_out_vocab_size)
        else:
            text_ids = mx.array(seq.read(0, self.step_idx - 1))[:, None]

        if cfg.other_codebooks > 0:
            if other_audio_tokens is None:
                raise ValueError("the model expects input audio tokens")
            other = np.array(other_audio_tokens).reshape(self.batch_size, -1)
            for cb_idx in range(cfg.other_codebooks):
                seq.write(1 + self.main_codebooks + cb_idx, self.step_idx, other[:, cb_idx])

        audio_ids = []
        for cb_idx, delay in enumerate(self.delays):
            gen_idx = self.step_idx - 1 - delay
            if gen_idx >= 0:
                audio_token = mx.array(seq.read(1 + cb_idx, gen_idx))[:, None]
            else:
                audio_token = self._constant(cfg.audio_padding_token)
            audio_ids.append(audio_token)

        text_token, audio_tokens = self.model.sample(
            text_ids,
            audio_ids,
            step_idx=self.step_idx,
            text_sampler=self.text_sampler,
            audio_sampler=self.audio_sampler,
            cb=self.cb,
        )
        text_values = np.array(text_token)
        seq.write(0, self.step_idx, text_values)
        for value in text_values.tolist():
            self.cb.on_output_text_token(value)
        if audio_tokens is not None:
            audio_values = np.array(audio_tokens)
            for cb_idx in range(self.main_codebooks):
                gen_idx = self.step_idx - self.delays[cb_idx]
                if gen_idx >= 0:
                    seq.write(1 + cb_idx, gen_idx, audio_values[:, cb_idx])

        self.step_idx += 1
        last_audio = self.last_audio_tokens()
        if last_audio is not None:
            self.cb.on_output_audio_tokens(last_audio[:, :, None])
        return text_token

    def last_audio_tokens(self) -> mx.array | None:
        """
        The generated codebooks of the most recent fully resolved frame.

        Returns ``[batch, dep_q]``, or None when the model generates no audio,
        when no frame is resolved yet or when the frame contains padding.
        """
        if self.main_codebooks == 0:
            return None
        gen_idx = self.step_idx - 1 - self.max_delay
        if gen_idx < 0:
            return None
        tokens = np.stack(
            [self.gen_sequence.read(1 + c, gen_idx) for c in range(self.main_codebooks)],
            axis=1,
        )
        if (tokens == self.model.cfg.audio_padding_token).any():
            return None
        return mx.array(tokens)

    def reset(self):
        self.step_idx = 0
        self.model.reset_cache()
        self.gen_sequence.reset()
        self.cb.on_reset()
