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

"""Live progress display for a build running on a background thread."""

from __future__ import annotations

import queue
import sys

from rich.console import Console
from rich.progress import (
    BarColumn,
    Progress,
    TaskID,
    TaskProgressColumn,
    TextColumn,
    TimeElapsedColumn,
)

from kagami.build.errors import EXIT_PHASE_FAILED
from kagami.build.pipeline import BackgroundBuild, BuildPipeline, run_in_background
from kagami.build.types import BuildOutcome, ProgressEvent
from kagami.core.run import muted_activity

POLL_INTERVAL = 0.1
LINE_WIDTH = 60


def _shorten(line: str) -> str:
    line = line.strip()
    return line if len(line) <= LINE_WIDTH else line[: LINE_WIDTH - 3] + "..."


def monitor_build(pipeline: BuildPipeline, console: Console | None = None) -> BuildOutcome:
    """Run a pipeline in the background while rendering its progress.

    Ctrl+C requests cancellation; the build stops at the next phase
    boundary and the display keeps running until the outcome arrives.
    """
    handle = run_in_background(pipeline)
    count = len(pipeline.phases)
    console = console or Console(file=sys.__stdout__, force_terminal=True)
    outcome: BuildOutcome | None = None

    progress = Progress(
        TextColumn("[progress.description]{task.description}"),
        BarColumn(bar_width=40),
        TaskProgressColumn(),
        TextColumn("{task.completed}/{task.total}"),
        TimeElapsedColumn(),
        TextColumn("[dim]{task.fields[line]}"),
        console=console,
    )

    with muted_activity(), progress:
        task = progress.add_task("Starting", total=count, line="")
        while outcome is None:
            try:
                outcome = _drain_one(handle, progress, task, count)
            except KeyboardInterrupt:
                handle.cancel()
                progress.update(task, line="Cancelling after the current phase...")

    handle.join()
    return outcome


def _drain_one(handle: BackgroundBuild, progress: Progress, task: TaskID, count: int) -> BuildOutcome | None:
    """Apply one queued event to the display; returns the outcome once known."""
    try:
        kind, payload = handle.events.get(timeout=POLL_INTERVAL)
    except queue.Empty:
        if handle.is_alive():
            return None
        return handle.outcome or BuildOutcome.failed(0, "pipeline", "Build thread exited", EXIT_PHASE_FAILED)

    if kind == "progress":
        event: ProgressEvent = payload
        progress.update(
            task,
            completed=event.index - 1,
            description=f"[{event.index}/{event.count}] {event.label}",
        )
    elif kind == "log":
        progress.update(task, line=_shorten(payload))
    elif kind == "outcome":
        if payload.success:
            progress.update(task, completed=count, description="Done", line="")
        return payload
    elif kind == "error":
        return BuildOutcome.failed(0, "pipeline", payload, EXIT_PHASE_FAILED)
    return None
