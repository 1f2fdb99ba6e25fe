# Copyright (c) Kyutai, all rights reserved.
# This source code is licensed under the license found in the
# LICENSE file in the root directory of this source tree.
# flake8: noqa
"""
Modules Subpackage
==================

Building blocks of the Mimi codec and of the language model, written for
streaming inference with MLX.

Streaming (streaming.py):
------------------------
- StreamArray: a chunk of data that may be empty
- StreamingAdd: sum of two streams that do not line up in time

Convolution Modules (conv.py):
-----------------------------
- Conv1d, ConvTranspose1d: Basic 1D convolution layers
- StreamableConv1d, StreamableConvTranspose1d: Streaming-capable convolutions
- NormConv1d, NormConvTranspose1d: Checkpoint-compatible wrappers
- ConvDownsample1d, ConvTrUpsample1d: Strided convolutions for resampling

Quantization Modules (quantization.py):
--------------------------------------
- EuclideanCodebook: Nearest-centroid codebook
- ResidualVectorQuantizer: Multi-level residual VQ (RVQ)
- SplitResidualVectorQuantizer: Mimi's semantic + acoustic RVQ

SEANet Modules (seanet.py):
--------------------------
- SeanetEncoder, SeanetDecoder: Convolutional audio encoder and decoder

Transformer Modules (transformer.py):
------------------------------------
- Transformer: Causal transformer over a list of per-layer caches
- ProjectedTransformer: Transformer with input/output projections

KV Cache Modules (kv_cache.py):
------------------------------
- KVCache: Growable key-value cache
- RotatingKVCache: Fixed-size circular cache for unbounded streams
"""

from .streaming import StreamArray, StreamingAdd
from .conv import (
    Conv1d,
    ConvTranspose1d,
    StreamableConv1d,
    StreamableConvTranspose1d,
    NormConv1d,
    NormConvTranspose1d,
    ConvDownsample1d,
    ConvTrUpsample1d,
)
from .quantization import (
    EuclideanCodebook,
    ResidualVectorQuantizer,
    SplitResidualVectorQuantizer,
)
from .seanet import SeanetConfig, SeanetEncoder, SeanetDecoder
from .kv_cache import KVCache, RotatingKVCache
from .transformer import Transformer, TransformerConfig, ProjectedTransformer
