# Copyright (c) Kyutai, all rights reserved.
# This source code is licensed under the license found in the
# LICENSE file in the root directory of this source tree.

"""
Terminal Output for the Transcription Tools
===========================================

Colorized log lines and transcript printers shared by ``run_inference`` and
``local``:

- make_log: ``Info:`` / ``Warning:`` / ``Error:`` prefixed log lines
- RawPrinter: plain transcript on stdout, for pipes and files
- Printer: transcript inside a bordered box, word-wrapped at ``max_cols``,
  with a red ``[LAG]`` marker when transcription falls behind the microphone

Log lines always go to stderr so that stdout only carries the transcript.
"""

import sys

_LEVELS = {
    "info": ("Info:", "1;34"),
    "warning": ("Warning:", "1;31"),
    "error": ("Error:", "1;31"),
}


def colorize(text: str, color: str | None) -> str:
    if color is None:
        return text
    return f"\033[{color}m{text}\033[0m"


def make_log(level: str, msg: str) -> str:
    """
    Format a log line with a colorized severity prefix.

    Raises:
        ValueError: on a level other than "info", "warning" or "error".

    Example:
        >>> make_log("info", "loading mimi")
        '\\033[1;34mInfo:\\033[0m loading mimi'
    """
    if level not in _LEVELS:
        raise ValueError(f"Unknown level {level}")
    prefix, color = _LEVELS[level]
    return f"{colorize(prefix, color)} {msg}"


class RawPrinter:
    """Transcript printer without any decoration."""

    def __init__(self, stream=sys.stdout, err_stream=sys.stderr):
        self.stream = stream
        self.err_stream = err_stream

    def _write(self, stream, text: str):
        stream.write(text)
        stream.flush()

    def print_header(self):
        pass

    def print_footer(self):
        self._write(self.stream, "\n")

    def print_token(self, token: str, color: str | None = None):
        self._write(self.stream, token)

    def print_lag(self):
        self._write(self.err_stream, colorize(" [LAG]", "31"))

    def log(self, level: str, msg: str):
        self._write(self.err_stream, make_log(level, msg) + "\n")


class Row:
    """
    The terminal row being written, as a list of ``(text, color)`` segments.

    Trailing segments can be dropped with ``truncate``: the row is blanked
    after a carriage return and drawn again without them.
    """

    def __init__(self, stream):
        self.stream = stream
        self.segments: list[tuple[str, str | None]] = []
        self._drawn = 0

    def __len__(self):
        return sum(len(text) for text, _ in self.segments)

    def __bool__(self):
        return bool(self.segments)

    def append(self, text: str, color: str | None = None):
        self.segments.append((text, color))
        self.stream.write(colorize(text, color))
        self._drawn = max(self._drawn, len(self))

    def truncate(self, count: int):
        if count > 0:
            del self.segments[-count:]
        rendered = "".join(colorize(text, color) for text, color in self.segments)
        self.stream.write("\r" + " " * self._drawn + "\r" + rendered)
        self._drawn = len(self)

    def end(self):
        self.stream.write("\n")
        self.stream.flush()
        self.segments.clear()
        self._drawn = 0


class Printer:
    """
    Transcript printer drawing a box of ``max_cols`` columns::

         ------------------------------------------------------------
        | bonjour et bienvenue, the transcript wraps on word          |
        | boundaries when a line is full                              |
         ------------------------------------------------------------

    Fragments starting with a space begin a new word. When a fragment does
    not fit, the word it belongs to moves to the next row; a word longer
    than the box is split.
    """

    def __init__(self, max_cols: int = 80, stream=sys.stdout, err_stream=sys.stderr):
        self.max_cols = max_cols
        self.stream = stream
        self.err_stream = err_stream
        self.row = Row(stream)

    @property
    def remaining(self) -> int:
        return self.max_cols - len(self.row)

    def _border(self):
        self.row.append(" " + "-" * self.max_cols + " ")
        self.row.end()

    def _close_row(self):
        self.row.append(" " * max(self.remaining, 0) + " |")
        self.row.end()

    def _open_row(self):
        self.row.append("| ")

    def print_header(self):
        self._border()
        self._open_row()
        self.stream.flush()

    def print_footer(self):
        if self.row:
            self._close_row()
        self._border()

    def _trailing_word(self) -> tuple[int, str] | None:
        """
        Segments making up the word being written and their text.

        None when that word started on a previous row. A colored segment (a
        lag marker) is never part of a word.
        """
        word = ""
        for count, (text, color) in enumerate(reversed(self.row.segments)):
            if color is not None:
                return count, word
            word = text + word
            if text.startswith(" "):
                return count + 1, word
        return None

    def print_token(self, token: str, color: str | None = None):
        if len(token) <= self.remaining:
            self.row.append(token, color)
        elif token.startswith(" ") or color is not None:
            self._close_row()
            self._open_row()
            self.row.append(token.lstrip(), color)
        else:
            word = self._trailing_word()
            if word is not None:
                count, text = word
                self.row.truncate(count)
                self._close_row()
                self._open_row()
                self.row.append(text.lstrip() + token)
            else:
                head = max(self.remaining, 0)
                self.row.append(token[:head])
                self._close_row()
                self._open_row()
                self.row.append(token[head:])
        self.stream.flush()

    def print_lag(self):
        self.print_token(" [LAG]", "31")

    def log(self, level: str, msg: str):
        if self.row:
            self.row.end()
        print(make_log(level, msg), file=self.err_stream)
        self.err_stream.flush()


AnyPrinter = Printer | RawPrinter
