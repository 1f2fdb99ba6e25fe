# Copyright (c) Kyutai, all rights reserved.
# This source code is licensed under the license found in the
# LICENSE file in the root directory of this source tree.

"""
Mimi encoder backed by the ``rustymimi`` extension.

``RustyMimiEncoder`` exposes the streaming interface of ``Mimi`` used by the
speech-to-text session (``reset_all``, ``encode_step``) on top of
``rustymimi.Tokenizer``, which runs the codec in Rust on the CPU. Weights are
the PyTorch Mimi checkpoint.
"""

import mlx.core as mx
import numpy as np
import rustymimi

from ..modules import StreamArray


class RustyMimiEncoder:
    def __init__(self, weights_path: str, num_codebooks: int):
        self.weights_path = weights_path
        self.num_codebooks = num_codebooks
        self._tokenizer = rustymimi.Tokenizer(weights_path, num_codebooks=num_codebooks)  # type: ignore

    def reset_all(self):
        self._tokenizer.reset()

    def encode_step(self, xs: StreamArray) -> StreamArray:
        """``[1, 1, samples]`` PCM to ``[1, num_codebooks, frames]`` codes."""
        if xs.is_empty:
            return StreamArray()
        pcm = np.array(xs.inner, dtype=np.float32).reshape(1, 1, -1)
        codes = self._tokenizer.encode_step(pcm)
        if codes is None or codes.shape[-1] == 0:
            return StreamArray()
        return StreamArray(mx.array(codes.astype(np.int32)))
