# Copyright (c) Kyutai, all rights reserved.
# This source code is licensed under the license found in the
# LICENSE file in the root directory of this source tree.

"""
Inference Callbacks and Performance Statistics
==============================================

The engine reports what it is doing through a ``Callbacks`` object:

- ``on_reset``: a new stream starts
- ``on_event``: begin/end of an encode, a main step or a depformer pass
- ``on_input_audio_tokens``: codes produced by the audio encoder
- ``on_output_text_token`` / ``on_output_audio_tokens``: sampled tokens

The base class ignores everything. ``PerfStats`` records the events with
their timestamps, summarises the time spent per stage and writes a trace that
can be opened in ``chrome://tracing`` or Perfetto.
"""

from dataclasses import dataclass, field
import enum
import json
import math
import time

import mlx.core as mx


class EventKind(enum.Enum):
    BEGIN_STEP = enum.auto()
    END_STEP = enum.auto()
    BEGIN_DEPFORMER = enum.auto()
    END_DEPFORMER = enum.auto()
    BEGIN_ENCODE = enum.auto()
    END_ENCODE = enum.auto()


# Stage name and trace phase of each event.
_EVENT_INFO = {
    EventKind.BEGIN_STEP: ("step", "B"),
    EventKind.END_STEP: ("step", "E"),
    EventKind.BEGIN_DEPFORMER: ("depformer", "B"),
    EventKind.END_DEPFORMER: ("depformer", "E"),
    EventKind.BEGIN_ENCODE: ("encode", "B"),
    EventKind.END_ENCODE: ("encode", "E"),
}


class Callbacks:
    """No-op callbacks, subclass and override the hooks of interest."""

    def on_reset(self):
        pass

    def on_event(self, kind: EventKind):
        pass

    def on_input_audio_tokens(self, codes: mx.array):
        pass

    def on_output_text_token(self, token: int):
        pass

    def on_output_audio_tokens(self, codes: mx.array):
        pass


@dataclass
class StageStats:
    """Durations in seconds of the completed runs of one stage."""

    min: float = math.inf
    max: float = 0.0
    sum: float = 0.0
    cnt: int = 0

    def add_value(self, begin: float, end: float):
        v = end - begin
        self.min = min(self.min, v)
        self.max = max(self.max, v)
        self.sum += v
        self.cnt += 1

    @property
    def mean(self) -> float:
        return self.sum / self.cnt if self.cnt else 0.0


@dataclass
class StatsSummary:
    encode: StageStats = field(default_factory=StageStats)
    step: StageStats = field(default_factory=StageStats)
    depformer: StageStats = field(default_factory=StageStats)


class PerfStats(Callbacks):
    """
    Callbacks recording events and tokens.

    Example:
        >>> stats = PerfStats()
        >>> asr = ASR(model, mimi, vocab, cb=stats)
        >>> ...
        >>> print(stats.summary().step.mean)
        >>> stats.write_json_trace("mlx-trace.json")
    """

    def __init__(self):
        self.events: list[tuple[float, EventKind]] = []
        self.input_audio_tokens: list[mx.array] = []
        self.output_audio_tokens: list[mx.array] = []
        self.text_tokens: list[int] = []

    def on_reset(self):
        self.events.clear()
        self.input_audio_tokens.clear()
        self.output_audio_tokens.clear()
        self.text_tokens.clear()

    def on_event(self, kind: EventKind):
        self.events.append((time.perf_counter(), kind))

    def on_input_audio_tokens(self, codes: mx.array):
        mx.eval(codes)
        self.input_audio_tokens.append(codes)

    def on_output_text_token(self, token: int):
        self.text_tokens.append(token)

    def on_output_audio_tokens(self, codes: mx.array):
        mx.eval(codes)
        self.output_audio_tokens.append(codes)

    def summary(self, max_events: int | None = None) -> StatsSummary:
        """
        Per stage statistics over the last ``max_events`` events.

        An end event only counts when the matching begin event is in the
        window.
        """
        events = self.events
        if max_events is not None:
            events = events[max(0, len(events) - max_events) :]
        summary = StatsSummary()
        last_begin: dict[str, float] = {}
        for t, kind in events:
            name, ph = _EVENT_INFO[kind]
            if ph == "B":
                last_begin[name] = t
            elif name in last_begin:
                getattr(summary, name).add_value(last_begin.pop(name), t)
        return summary

    def chrome_events(self) -> list[dict]:
        if not self.events:
            return []
        t0 = self.events[0][0]
        chrome_events = []
        for t, kind in self.events:
            name, ph = _EVENT_INFO[kind]
            chrome_events.append(
                {
                    "name": name,
                    "cat": "",
                    "ph": ph,
                    "ts": int((t - t0) * 1e6),
                    "pid": 42,
                    "tid": 1,
                }
            )
        return chrome_events

    def write_json_trace(self, path: str):
        with open(path, "w") as fobj:
            json.dump(self.chrome_events(), fobj)

    def write_codes(self, path: str):
        """Save the recorded tokens to a safetensors file."""
        arrays = {}
        if self.input_audio_tokens:
            arrays["input_audio_tokens"] = mx.concatenate(self.input_audio_tokens, axis=2)
        if self.output_audio_tokens:
            arrays["output_audio_tokens"] = mx.concatenate(
                self.output_audio_tokens, axis=2
            )
        if self.text_tokens:
            arrays["text_tokens"] = mx.array(self.text_tokens)
        mx.save_safetensors(path, arrays)
