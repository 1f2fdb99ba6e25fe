# Most of the code below comes from:
# https://github.com/ml-explore/mlx-examples/blob/main/llms/mlx_lm/sample_utils.py
# Copyright © 2023-2024 Apple Inc.

"""
Token Sampling Utilities
========================

Sampling strategies used to turn the model logits into tokens:

- Greedy: ``argmax`` of the logits, used by the speech-to-text loop
- Top-P (nucleus): samples among the most likely tokens covering ``top_p``
  of the probability mass
- Top-K: samples among the ``top_k`` most likely tokens
- Categorical: samples from the temperature-scaled softmax

The sampling kernels are compiled with ``mx.compile`` and thread the global
MLX random state, so ``mx.random.seed`` makes them reproducible.
"""

from dataclasses import dataclass
from functools import partial

import mlx.core as mx


@partial(mx.compile, inputs=mx.random.state, outputs=mx.random.state)
def top_k_sampling(
    logits: mx.array,
    top_k: int,
    temperature=1.0,
) -> mx.array:
    """
    Sample from the ``top_k`` most likely tokens.

    Args:
        logits: Logits of shape [batch, vocab_size]
        top_k: Number of tokens kept, in ``(0, vocab_size]``
        temperature: Temperature applied before sampling

    Returns:
        Sampled token indices [batch]
    """
    logits = logits * (1 / temperature)
    sorted_indices = mx.argsort(-logits, axis=-1)
    sorted_logits = mx.take_along_axis(logits, sorted_indices, axis=-1)
    rank = mx.arange(logits.shape[-1])
    sorted_logits = mx.where(
        rank < top_k, sorted_logits, mx.array(-float("inf"), logits.dtype)
    )
    sorted_token = mx.random.categorical(sorted_logits, axis=-1)
    token = mx.take_along_axis(sorted_indices, sorted_token[..., None], axis=-1)
    return token.squeeze(-1)


@partial(mx.compile, inputs=mx.random.state, outputs=mx.random.state)
def top_p_sampling(logits: mx.array, top_p: float, temperature: float) -> mx.array:
    """
    Apply top-p (nucleus) sampling to logits.

    Tokens are sorted by increasing probability and the ones whose
    cumulative probability stays below ``1 - top_p`` are dropped; the
    remaining mass is renormalized by the categorical draw.

    Args:
        logits: Logits of shape [batch, vocab_size]
        top_p: Probability mass kept, in ``(0, 1)``
        temperature: Temperature applied before the softmax

    Returns:
        Sampled token indices [batch]
    """
    probs = mx.softmax(logits * (1 / temperature), axis=-1)

    sorted_indices = mx.argsort(probs, axis=-1)
    sorted_probs = mx.take_along_axis(probs, sorted_indices, axis=-1)
    cumulative_probs = mx.cumsum(sorted_probs, axis=-1)

    top_probs = mx.where(
        cumulative_probs > 1 - top_p,
        sorted_probs,
        0,
    )

    sorted_token = mx.random.categorical(mx.log(top_probs), axis=-1)
    token = mx.take_along_axis(sorted_indices, sorted_token[..., None], axis=-1)
    return token.squeeze(-1)


@partial(mx.compile, inputs=mx.random.state, outputs=mx.random.state)
def categorical_sampling(logits, temp):
    return mx.random.categorical(logits * (1 / temp))


@dataclass
class Sampler:
    """
    Token sampler.

    Strategy selection, first match wins:

    1. ``temp <= 0``: greedy decoding (argmax)
    2. ``0 < top_p < 1``: top-p sampling
    3. ``top_k > 0``: top-k sampling
    4. otherwise: categorical sampling at temperature ``temp``

    Attributes:
        temp: Temperature, 0 for greedy decoding
        top_p: Nucleus mass, values outside ``(0, 1)`` disable top-p
        top_k: Number of candidates, None or 0 disables top-k

    Example:
        >>> sampler = Sampler(temp=0.8, top_k=250, top_p=1.0)
        >>> token, logprobs = sampler(logits)
    """

    temp: float = 0.8
    top_p: float = 0.95
    top_k: int | None = None

    def __call__(self, logits: mx.array) -> tuple[mx.array, mx.array]:
        """
        Sample one token per row.

        Args:
            logits: Logits of shape [batch, vocab_size]

        Returns:
            Tuple of (tokens [batch] as int32, log-probabilities [batch, vocab_size])

        Raises:
            ValueError: if ``logits`` is not two-dimensional.
        """
        if logits.ndim != 2:
            raise ValueError(
                f"expected logits of shape [batch, vocab_size], got {logits.shape}"
            )
        logprobs = logits - mx.logsumexp(logits, axis=-1, keepdims=True)

        if self.temp <= 0:
            token = mx.argmax(logits, axis=-1)
        elif 0 < self.top_p < 1.0:
            token = top_p_sampling(logits, self.top_p, self.temp)
        elif self.top_k is not None and self.top_k > 0:
            token = top_k_sampling(logits, self.top_k, self.temp)
        else:
            token = categorical_sampling(logits, self.temp)

        return token.astype(mx.int32), logprobs
