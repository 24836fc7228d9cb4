# This file is part of Kagami, a tool for building Debian and Ubuntu live ISO images.
#
# Copyright 2025 The Kagami Authors
#
# SPDX-License-Identifier: GPL-3.0-only
#
# Kagami is free software: you can redistribute it and/or modify it under
# the terms of the GNU General Public License version 3, as published by the
# Free Software Foundation.
#
# Kagami is distributed in the hope that it will be useful, but WITHOUT
# ANY WARRANTY; without even the implied warranties of MERCHANTABILITY,
# SATISFACTORY QUALITY, or FITNESS FOR A PARTICULAR PURPOSE. See the GNU
# General Public License for more details.
#
# You should have received a copy of the GNU General Public License along with
# Kagami. If not, see <http://www.gnu.org/licenses/>.
"""TTY-aware spinner for long host-side steps.

Uses a Rich spinner when the real terminal is a TTY and a plain activity line
otherwise. Output goes to sys.__stdout__ so it never lands in a run's log
files. Both variants report the elapsed time once the block finishes.
"""

from __future__ import annotations

import contextlib
import sys
import time
from collections.abc import Iterator

from rich.console import Console
from rich.live import Live
from rich.spinner import Spinner


def is_tty() -> bool:
    """Return True if the real stdout is a TTY."""
    try:
        if sys.__stdout__ is None:
            return False  # pragma: no cover
        return sys.__stdout__.isatty()
    except Exception:
        return False


def _emit(line: str) -> None:
    with contextlib.suppress(Exception):
        print(line, file=sys.__stdout__, flush=True)


@contextlib.contextmanager
def activity_spinner(phase: str, description: str, disable: bool = False) -> Iterator[None]:
    """Show a spinner while the wrapped block runs.

    Args:
        phase: Short phase label (e.g., "deps", "clean").
        description: Human-readable description of the current activity.
        disable: Print plain lines even on a TTY.
    """
    text = f"[{phase}] {description}"
    start = time.monotonic()

    if disable or not is_tty():
        _emit(text)
        yield
    else:
        console = Console(file=sys.__stdout__, force_terminal=True)
        with Live(Spinner("dots", text=text), console=console, refresh_per_second=12, transient=True):
            yield

    _emit(f"{text} (done in {time.monotonic() - start:.1f}s)")
