# Copyright (c) Kyutai, all rights reserved.
# This source code is licensed under the license found in the
# LICENSE file in the root directory of this source tree.

"""
Live Microphone Transcription
=============================

Transcribes the default input device in real time.

Two threads share a ``PcmQueue``:

- the sounddevice callback thread (producer) pushes one block of 1920
  samples at 24 kHz, i.e. one Mimi frame, every 80ms
- the main thread (consumer) runs ``ASR.run`` and prints the text fragments

When the consumer falls behind by more than ``LAG_BLOCKS`` blocks a
``[LAG]`` marker is printed. Ctrl-C closes the queue: the capture stops and
the blocks already queued are transcribed before exiting. A second Ctrl-C
aborts.

Usage:
------
    python -m moshi_stt.local
    python -m moshi_stt.local --hf-repo kyutai/stt-1b-en_fr-mlx --trace mlx-trace.json
"""

import argparse
import signal
import sys

import mlx.core as mx
import numpy as np
import sounddevice as sd

from .client_utils import AnyPrinter, Printer, RawPrinter
from .models.asr import FRAME_SIZE, SAMPLE_RATE
from .run_inference import add_model_args, build_asr
from .utils import PcmQueue, PerfStats, close_on_sigint
from .utils.loaders import ModelLoadError

CHANNELS = 1
# 320ms of audio waiting in the queue.
LAG_BLOCKS = 4


def main():
    parser = argparse.ArgumentParser()
    add_model_args(parser)
    args = parser.parse_args()

    printer: AnyPrinter
    if sys.stdout.isatty():
        printer = Printer()
    else:
        printer = RawPrinter()

    mx.random.seed(299792458)
    stats = PerfStats() if args.trace else None
    try:
        asr, _ = build_asr(args, cb=stats)
    except ModelLoadError as e:
        printer.log("error", str(e))
        sys.exit(1)

    printer.log("info", "warming up the model")
    asr.warmup()
    printer.log("info", "done warming up the model")

    pcm_queue = PcmQueue()

    def on_input(in_data, frames, time, status):
        if status:
            printer.log("warning", f"audio input: {status}")
        try:
            pcm_queue.put(in_data[:, 0].astype(np.float32))
        except ValueError:
            # Closed by ctrl-c.
            raise sd.CallbackStop

    lagging = False

    def on_text(text: str):
        nonlocal lagging
        printer.print_token(text)
        behind = pcm_queue.qsize() > LAG_BLOCKS
        if behind and not lagging:
            printer.print_lag()
        lagging = behind

    in_stream = sd.InputStream(
        samplerate=SAMPLE_RATE,
        channels=CHANNELS,
        blocksize=FRAME_SIZE,
        dtype="float32",
        callback=on_input,
    )

    printer.log("info", "listening, press ctrl-c to stop")
    printer.print_header()
    previous_handler = close_on_sigint(pcm_queue)
    try:
        with in_stream:
            asr.run(pcm_queue, on_text)
    finally:
        signal.signal(signal.SIGINT, previous_handler)
    printer.print_footer()

    if stats is not None:
        printer.log("info", f"saving trace to {args.trace}")
        stats.write_json_trace(args.trace)
    printer.log("info", "All done!")


if __name__ == "__main__":
    main()
