# Copyright (c) Kyutai, all rights reserved.
# This source code is licensed under the license found in the
# LICENSE file in the root directory of this source tree.
# flake8: noqa
"""
Utilities Subpackage
====================

- Sampler: Token sampling strategies (greedy, top-k, top-p, temperature)
- Callbacks, PerfStats: inference events and timing statistics
- PcmQueue, close_on_sigint: producer/consumer hand-off of audio chunks
- loaders: checkpoint resolution and model loading, imported explicitly
"""

from .sampling import Sampler
from .perf import Callbacks, EventKind, PerfStats
from .audio_queue import PcmQueue, close_on_sigint
