# Copyright (c) Kyutai, all rights reserved.
# This source code is licensed under the license found in the
# LICENSE file in the root directory of this source tree.

import io

import pytest

from moshi_stt.client_utils import Printer, RawPrinter, make_log


def screen(output: str) -> list[str]:
    """What a terminal shows: the last redraw of each line."""
    return [line.split("\r")[-1].rstrip() for line in output.split("\n")]


def test_make_log():
    assert make_log("info", "loading").endswith(" loading")
    assert "Error:" in make_log("error", "boom")
    with pytest.raises(ValueError):
        make_log("debug", "nope")


def test_raw_printer():
    out, err = io.StringIO(), io.StringIO()
    printer = RawPrinter(stream=out, err_stream=err)
    printer.print_header()
    for token in [" hello", " wor", "ld"]:
        printer.print_token(token)
    printer.log("info", "done")
    printer.print_footer()
    assert out.getvalue() == " hello world\n"
    assert "done" in err.getvalue()


def test_printer_wraps_on_words():
    out, err = io.StringIO(), io.StringIO()
    printer = Printer(max_cols=10, stream=out, err_stream=err)
    printer.print_header()
    for token in [" hi", " abc", "de"]:
        printer.print_token(token)
    printer.print_footer()
    lines = screen(out.getvalue())
    assert all(len(line) <= 12 for line in lines)
    assert lines[0] == " " + "-" * 10
    assert lines[1].startswith("|  hi")
    assert lines[2].startswith("| abcde")
    assert lines[2].endswith("|")


def test_printer_splits_long_words():
    out = io.StringIO()
    printer = Printer(max_cols=8, stream=out, err_stream=io.StringIO())
    printer.print_header()
    for token in ["abcd", "efgh", "ij"]:
        printer.print_token(token)
    printer.print_footer()
    lines = screen(out.getvalue())
    assert all(len(line) <= 10 for line in lines)
    text = "".join(line.strip("|- ") for line in lines)
    assert text == "abcdefghij"
