# Copyright (c) Kyutai, all rights reserved.
# This source code is licensed under the license found in the
# LICENSE file in the root directory of this source tree.

"""
PCM hand-off between an audio producer and the inference loop.

The audio callback runs on its own thread and must never wait, while the
inference loop should sleep until audio arrives. ``PcmQueue`` is an
unbounded FIFO: ``put`` never blocks, ``get`` blocks while the queue is
empty. Chunks are delivered in order and none is dropped, the streaming
convolutions depend on it.
"""

import queue
import signal

import numpy as np

_CLOSED = object()


class PcmQueue:
    """
    Unbounded, blocking FIFO of PCM chunks.

    Example:
        >>> q = PcmQueue()
        >>> q.put(np.zeros(1920, dtype=np.float32))  # producer thread
        >>> for pcm in q:                            # consumer thread
        ...     handle(pcm)
    """

    def __init__(self):
        self._queue = queue.SimpleQueue()
        self._closed = False

    def put(self, pcm: np.ndarray):
        if self._closed:
            raise ValueError("put on a closed PcmQueue")
        self._queue.put(pcm)

    def close(self):
        """Mark the end of the stream, consumers stop after the pending chunks."""
        if not self._closed:
            self._closed = True
            self._queue.put(_CLOSED)

    @property
    def closed(self) -> bool:
        return self._closed

    def qsize(self) -> int:
        return self._queue.qsize()

    def get(self, timeout: float | None = None) -> np.ndarray | None:
        """
        Next chunk, blocking while the queue is empty.

        Returns None once the queue is closed and drained.

        Raises:
            queue.Empty: if ``timeout`` expires first.
        """
        item = self._queue.get(timeout=timeout)
        if item is _CLOSED:
            # Leave the marker for other consumers.
            self._queue.put(_CLOSED)
            return None
        return item

    def __iter__(self):
        while True:
            pcm = self.get()
            if pcm is None:
                return
            yield pcm


def close_on_sigint(pcm_queue: PcmQueue):
    """
    Make Ctrl-C close ``pcm_queue`` instead of raising ``KeyboardInterrupt``.

    The consumer then finishes the chunks already queued and stops at the end
    of the stream, never in the middle of a model step. A second Ctrl-C
    raises ``KeyboardInterrupt`` as usual. Must be called from the main
    thread; returns the previous handler so that it can be restored.
    """

    def handler(signum, frame):
        signal.signal(signal.SIGINT, signal.default_int_handler)
        pcm_queue.close()

    return signal.signal(signal.SIGINT, handler)
