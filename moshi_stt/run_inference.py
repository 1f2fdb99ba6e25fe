# Copyright (c) Kyutai, all rights reserved.
# This source code is licensed under the license found in the
# LICENSE file in the root directory of this source tree.

"""
Offline Transcription
=====================

Transcribes a pre-recorded audio file with a speech-to-text model. The file
is decoded and resampled to 24 kHz mono, padded with the silence the model
expects (``stt_config`` of ``config.json``), then fed to an ``ASR`` session in
chunks of one Mimi frame. Text is printed to stdout as soon as it is decoded.

Usage:
------
    python -m moshi_stt.run_inference input.wav
    python -m moshi_stt.run_inference --hf-repo kyutai/stt-1b-en_fr-mlx input.mp3
    python -m moshi_stt.run_inference --mimi-backend rustymimi --trace trace.json input.wav
"""

import argparse
import sys
import time

import mlx.core as mx
import numpy as np
import sphn

from .client_utils import make_log
from .models.asr import ASR, FRAME_SIZE, SAMPLE_RATE
from .utils import PerfStats, Callbacks
from .utils.loaders import (
    ModelLoadError,
    hf_get,
    load_lm,
    load_lm_config,
    load_mimi,
    load_vocab,
)

DEFAULT_MIMI_NAME = "mimi-pytorch-e351c8d8@125.safetensors"


def log(level: str, msg: str):
    print(make_log(level, msg), file=sys.stderr)


def build_asr(args, cb: Callbacks | None = None) -> tuple[ASR, dict]:
    """
    Resolve the files named by the command line and build the session.

    Shared with ``local``. Returns the session and the raw ``config.json``.
    """
    lm_config = args.lm_config
    if lm_config is None:
        lm_config = "config.json"
    lm_config = hf_get(lm_config, args.hf_repo, check_local_file_exists=True)
    log("info", f"loading config from {lm_config}")
    cfg, raw = load_lm_config(lm_config)

    moshi_weight = args.moshi_weight
    if moshi_weight is None:
        moshi_weight = raw.get("moshi_name", "model.safetensors")
    moshi_weight = hf_get(moshi_weight, args.hf_repo)

    mimi_weight = args.mimi_weight
    if mimi_weight is None:
        mimi_weight = raw.get("mimi_name", DEFAULT_MIMI_NAME)
    mimi_weight = hf_get(mimi_weight, args.hf_repo)

    vocab = args.vocab
    if vocab is None:
        vocab = raw["tokenizer_name"]
    vocab = hf_get(vocab, args.hf_repo)

    log("info", f"loading model weights from {moshi_weight}")
    model = load_lm(moshi_weight, cfg)

    log("info", f"loading the vocabulary from {vocab}")
    vocab = load_vocab(vocab)

    log("info", f"loading the audio tokenizer {mimi_weight} ({args.mimi_backend})")
    if args.mimi_backend == "rustymimi":
        from .models.rusty_mimi import RustyMimiEncoder

        mimi = RustyMimiEncoder(str(mimi_weight), num_codebooks=cfg.other_codebooks)
    else:
        mimi = load_mimi(mimi_weight)

    return ASR(model, mimi, vocab, cb=cb), raw


def add_model_args(parser: argparse.ArgumentParser):
    parser.add_argument("--hf-repo", type=str, default="kyutai/stt-1b-en_fr-mlx")
    parser.add_argument("--lm-config", type=str, help="The LM config as a json file.")
    parser.add_argument(
        "--moshi-weight", type=str, help="Path to a local checkpoint file for the LM."
    )
    parser.add_argument(
        "--mimi-weight", type=str, help="Path to a local checkpoint file for Mimi."
    )
    parser.add_argument(
        "--vocab", type=str, help="Vocabulary, a json id to piece map or a .model file."
    )
    parser.add_argument(
        "--mimi-backend", type=str, choices=["mlx", "rustymimi"], default="mlx"
    )
    parser.add_argument(
        "--trace", type=str, help="Write a chrome trace of the run to this file."
    )


def pad_for_stt(in_pcms: np.ndarray, stt_config: dict | None) -> np.ndarray:
    """Add the leading and trailing silence the model was trained with."""
    if stt_config is None:
        return in_pcms
    pad_right = stt_config.get("audio_delay_seconds", 0.0)
    pad_left = stt_config.get("audio_silence_prefix_seconds", 0.0)
    pad_left = int(pad_left * SAMPLE_RATE)
    pad_right = int((pad_right + 1.0) * SAMPLE_RATE)
    return np.pad(in_pcms, pad_width=[(0, 0), (pad_left, pad_right)], mode="constant")


def main():
    parser = argparse.ArgumentParser()
    add_model_args(parser)
    parser.add_argument("infile", type=str, help="Input audio file.")
    args = parser.parse_args()

    mx.random.seed(299792458)
    stats = PerfStats() if args.trace else None

    try:
        asr, raw = build_asr(args, cb=stats)
    except ModelLoadError as e:
        log("error", str(e))
        sys.exit(1)

    log("info", f"loading input file {args.infile}")
    in_pcms, _ = sphn.read(args.infile, sample_rate=SAMPLE_RATE)
    in_pcms = pad_for_stt(in_pcms, raw.get("stt_config"))

    log("info", "warming up the model")
    asr.warmup()
    log("info", "done warming up the model")

    steps = np.shape(in_pcms)[-1] // FRAME_SIZE
    log("info", f"steps to run: {steps}")
    start_time = time.time()
    for idx in range(steps):
        pcm = in_pcms[0, idx * FRAME_SIZE : (idx + 1) * FRAME_SIZE]
        for text in asr.on_pcm_input(pcm):
            print(text, end="", flush=True)
    print()
    token_per_second = steps / (time.time() - start_time)
    log("info", f"steps: {steps}, token per sec: {token_per_second}")

    if stats is not None:
        summary = stats.summary()
        for name in ("encode", "step"):
            stage = getattr(summary, name)
            log(
                "info",
                f"{name}: n={stage.cnt} mean={stage.mean * 1000:.1f}ms"
                f" min={stage.min * 1000:.1f}ms max={stage.max * 1000:.1f}ms",
            )
        stats.write_json_trace(args.trace)
        log("info", f"trace written to {args.trace}")


if __name__ == "__main__":
    main()
