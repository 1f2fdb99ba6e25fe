# Copyright (c) Kyutai, all rights reserved.
# This source code is licensed under the license found in the
# LICENSE file in the root directory of this source tree.
# flake8: noqa

"""
moshi_stt - Streaming Speech-to-Text with MLX
=============================================

Real-time transcription with the Kyutai speech-to-text models: 24 kHz audio
is encoded by the Mimi codec into 12.5 Hz frames of discrete codes, and a
language model reading those codes emits one text token per frame.

Main Components:
----------------
- modules: streaming building blocks (convolutions, transformer, caches, RVQ)
- models: Mimi, Lm, LmGen and the ASR session
- utils: sampling, callbacks, audio queue and model loading

Usage Example:
--------------
    from moshi_stt import models
    from moshi_stt.utils import loaders

    cfg, _ = loaders.load_lm_config("config.json")
    model = loaders.load_lm("model.safetensors", cfg)
    mimi = loaders.load_mimi("mimi.safetensors")
    vocab = loaders.load_vocab("tokenizer.model")
    asr = models.ASR(model, mimi, vocab)
    asr.reset()
    text = asr.on_pcm_input(pcm_chunk)
"""

from . import modules, models, utils

__version__ = "0.1.0"
