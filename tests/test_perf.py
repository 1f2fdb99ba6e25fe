# Copyright (c) Kyutai, all rights reserved.
# This source code is licensed under the license found in the
# LICENSE file in the root directory of this source tree.

import dataclasses
import json
import types

import mlx.core as mx

from moshi_stt.utils import EventKind, PerfStats, perf
from moshi_stt.utils.perf import StatsSummary


def test_summary_pairs_events():
    stats = PerfStats()
    for _ in range(3):
        stats.on_event(EventKind.BEGIN_STEP)
        stats.on_event(EventKind.END_STEP)
    stats.on_event(EventKind.BEGIN_ENCODE)
    stats.on_event(EventKind.END_ENCODE)
    summary = stats.summary()
    assert summary.step.cnt == 3
    assert summary.encode.cnt == 1
    assert summary.depformer.cnt == 0
    assert 0 <= summary.step.min <= summary.step.mean <= summary.step.max


def test_summary_window():
    stats = PerfStats()
    stats.on_event(EventKind.BEGIN_STEP)
    stats.on_event(EventKind.END_STEP)
    # The begin event falls outside the window.
    assert stats.summary(max_events=1).step.cnt == 0
    assert stats.summary(max_events=2).step.cnt == 1


def test_chrome_trace(tmp_path):
    stats = PerfStats()
    assert stats.chrome_events() == []
    stats.on_event(EventKind.BEGIN_DEPFORMER)
    stats.on_event(EventKind.END_DEPFORMER)
    path = tmp_path / "trace.json"
    stats.write_json_trace(str(path))
    with open(path) as fobj:
        events = json.load(fobj)
    assert [(e["name"], e["ph"]) for e in events] == [("depformer", "B"), ("depformer", "E")]
    assert events[0]["ts"] == 0
    assert all(e["pid"] == 42 for e in events)


def test_reset_clears_everything():
    stats = PerfStats()
    stats.on_event(EventKind.BEGIN_STEP)
    stats.on_output_text_token(4)
    stats.on_input_audio_tokens(mx.zeros((1, 2, 1)))
    stats.on_reset()
    assert stats.events == []
    assert stats.text_tokens == []
    assert stats.input_audio_tokens == []


def test_write_codes(tmp_path):
    stats = PerfStats()
    stats.on_input_audio_tokens(mx.zeros((1, 4, 2), dtype=mx.int32))
    stats.on_input_audio_tokens(mx.ones((1, 4, 1), dtype=mx.int32))
    stats.on_output_text_token(5)
    stats.on_output_text_token(7)
    path = str(tmp_path / "codes.safetensors")
    stats.write_codes(path)
    arrays = mx.load(path)
    assert arrays["input_audio_tokens"].shape == (1, 4, 3)
    assert arrays["text_tokens"].tolist() == [5, 7]
    assert "output_audio_tokens" not in arrays


def test_every_event_has_a_stage():
    stats = PerfStats()
    for kind in EventKind:
        stats.on_event(kind)
    stages = {f.name for f in dataclasses.fields(StatsSummary)}
    assert stages == {"encode", "step", "depformer"}
    assert {e["name"] for e in stats.chrome_events()} == stages


def test_events_use_the_monotonic_clock(monkeypatch):
    ticks = iter([10.0, 10.25, 10.5, 11.0])
    monkeypatch.setattr(perf, "time", types.SimpleNamespace(perf_counter=lambda: next(ticks)))
    stats = PerfStats()
    stats.on_event(EventKind.BEGIN_ENCODE)
    stats.on_event(EventKind.END_ENCODE)
    stats.on_event(EventKind.BEGIN_STEP)
    stats.on_event(EventKind.END_STEP)
    assert [e["ts"] for e in stats.chrome_events()] == [0, 250000, 500000, 1000000]
    summary = stats.summary()
    assert summary.encode.sum == 0.25
    assert summary.step.sum == 0.5
