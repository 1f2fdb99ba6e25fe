# Copyright (c) Kyutai, all rights reserved.
# This source code is licensed under the license found in the
# LICENSE file in the root directory of this source tree.
# flake8: noqa
"""
Models Subpackage
=================

- Mimi: neural audio codec turning 24 kHz audio into discrete codes
- Lm: language model predicting text (and optionally audio) tokens
- LmGen: step-by-step generation with delayed audio streams
- ASR: streaming speech-to-text session

Model Configurations:
--------------------
- mimi_202407(): the Mimi codec
- config_asr_300m(), config_asr_1b(), config_asr_2b(): speech-to-text models
- config_v0_1(), config1b_202412(): Moshi models with a depformer

The Rust Mimi backend lives in ``rusty_mimi`` and is imported explicitly.
"""

from .lm import (
    Lm,
    LmConfig,
    DepFormerConfig,
    config_asr_300m,
    config_asr_1b,
    config_asr_2b,
    config_v0_1,
    config1b_202412,
)
from .generate import GenerationSequence, LmGen
from .mimi import Mimi, MimiConfig, mimi_202407
from .asr import ASR
