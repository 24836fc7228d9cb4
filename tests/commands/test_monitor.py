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

"""Tests for kagami.commands.monitor module."""

from __future__ import annotations

import io
import time
from pathlib import Path

import pytest
from rich.console import Console
from rich.progress import Progress

from kagami.build.errors import EXIT_CANCELLED
from kagami.build.pipeline import BuildContext, BuildPipeline
from kagami.build.types import Phase, PhaseResult
from kagami.commands.monitor import _shorten, monitor_build
from kagami.core.models import default_build_config
from kagami.host import HostFacts


def make_pipeline(tmp_path: Path, fake_runner, build_settings, phases: list[Phase]) -> BuildPipeline:
    ctx = BuildContext.create(
        default_build_config("noble"),
        tmp_path / "ws",
        settings=build_settings,
        runner=fake_runner,
        host=HostFacts(is_linux=True, is_apt_based=True, is_root=True, in_container=False),
    )
    ctx.session.mounts_table = fake_runner.mounts_table
    return BuildPipeline(ctx, phases)


def chatty(ctx: BuildContext) -> PhaseResult:
    ctx.bus.log("Get:1 http://archive.ubuntu.com/ubuntu noble InRelease")
    return PhaseResult.ok()


class TestMonitorBuild:
    """The live display returns the pipeline's outcome."""

    def test_success(self, tmp_path: Path, fake_runner, build_settings) -> None:
        phases = [Phase(1, "one", "First", chatty), Phase(2, "two", "Second", lambda c: PhaseResult.ok())]
        outcome = monitor_build(
            make_pipeline(tmp_path, fake_runner, build_settings, phases), Console(file=io.StringIO())
        )

        assert outcome.success
        assert outcome.iso_path is not None

    def test_failure(self, tmp_path: Path, fake_runner, build_settings) -> None:
        phases = [Phase(1, "bad", "Broken", lambda c: PhaseResult.fail(4, "nope"))]

        outcome = monitor_build(
            make_pipeline(tmp_path, fake_runner, build_settings, phases), Console(file=io.StringIO())
        )

        assert outcome.failed_phase == (1, "Broken")
        assert outcome.exit_code == 4


def test_shorten() -> None:
    assert _shorten("  short  ") == "short"
    long = "x" * 100
    assert len(_shorten(long)) == 60
    assert _shorten(long).endswith("...")


class TestInterrupt:
    """Ctrl+C anywhere in the display loop turns into a cancellation."""

    def test_interrupt_during_display_update(
        self, tmp_path: Path, fake_runner, build_settings, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        ran: list[str] = []
        holder: dict[str, BuildPipeline] = {}

        def log_and_wait(ctx: BuildContext) -> PhaseResult:
            ctx.bus.log("Get:1 http://archive.ubuntu.com/ubuntu noble InRelease")
            deadline = time.monotonic() + 5
            while not holder["pipeline"].cancelled and time.monotonic() < deadline:
                time.sleep(0.01)
            return PhaseResult.ok()

        def second(ctx: BuildContext) -> PhaseResult:
            ran.append("second")
            return PhaseResult.ok()

        pipeline = make_pipeline(
            tmp_path,
            fake_runner,
            build_settings,
            [Phase(1, "one", "First", log_and_wait), Phase(2, "two", "Second", second)],
        )
        holder["pipeline"] = pipeline

        original_update = Progress.update
        interrupted: list[bool] = []

        def update(self, task, **kwargs):
            if kwargs.get("line", "").startswith("Get:1") and not interrupted:
                interrupted.append(True)
                raise KeyboardInterrupt
            return original_update(self, task, **kwargs)

        monkeypatch.setattr(Progress, "update", update)
        outcome = monitor_build(pipeline, Console(file=io.StringIO()))

        assert interrupted
        assert outcome.exit_code == EXIT_CANCELLED
        assert outcome.failed_phase == (2, "Second")
        assert ran == []
