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

"""Build pipeline state machine.

A build is a fixed, ordered list of phases run against one BuildContext. The
first failing phase stops the run; if the pipeline holds the workspace lock it
then releases every mount it can. It reports the failing phase's index, label and cause. It never deletes
the workspace: that is left to the caller.

Progress and command output are published on an EventBus; presentation
layers subscribe observers without the pipeline knowing which are attached.
"""

from __future__ import annotations

import logging
import queue
import sys
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any, Protocol

import requests

from kagami.build.chroot import ChrootSession, CommandRunner
from kagami.build.errors import EXIT_CANCELLED, EXIT_PHASE_FAILED, phase_error, phase_warning
from kagami.build.phases import build_phases
from kagami.build.types import BuildOutcome, Phase, PhaseResult, ProgressEvent, StepOutcome
from kagami.build.workspace import Workspace, WorkspaceLock
from kagami.core.exceptions import KagamiError
from kagami.core.models import BuildConfig
from kagami.host import HostFacts
from kagami.settings import load_settings
from kagami.target.profiles import DistroProfile, get_profile

if TYPE_CHECKING:
    from kagami.core.run import RunContext

logger = logging.getLogger(__name__)


class BuildObserver(Protocol):
    def on_progress(self, event: ProgressEvent) -> None: ...

    def on_log(self, line: str) -> None: ...

    def on_outcome(self, outcome: BuildOutcome) -> None: ...


class EventBus:
    """Fan-out of pipeline events to any number of observers."""

    def __init__(self, observers: list[BuildObserver] | None = None) -> None:
        self.observers: list[BuildObserver] = list(observers or [])

    def subscribe(self, observer: BuildObserver) -> None:
        self.observers.append(observer)

    def progress(self, event: ProgressEvent) -> None:
        for observer in self.observers:
            observer.on_progress(event)

    def log(self, line: str) -> None:
        for observer in self.observers:
            observer.on_log(line)

    def outcome(self, outcome: BuildOutcome) -> None:
        for observer in self.observers:
            observer.on_outcome(outcome)


class ConsoleObserver:
    """Prints ``[i/n] label...`` lines and forwards command output to stdout.

    During a build stdout is the run's log file, so command output lands in
    ``stdout.log`` while progress lines reach the terminal.
    """

    def __init__(self, show_progress: bool = True) -> None:
        self.show_progress = show_progress

    def on_progress(self, event: ProgressEvent) -> None:
        if self.show_progress:
            print(f"[{event.index}/{event.count}] {event.label}...", file=sys.__stdout__, flush=True)

    def on_log(self, line: str) -> None:
        sys.stdout.write(line + "\n")

    def on_outcome(self, outcome: BuildOutcome) -> None:
        pass


class QueueObserver:
    """Puts ``(kind, payload)`` tuples on a queue for another thread."""

    def __init__(self, events: queue.Queue[tuple[str, Any]]) -> None:
        self.events = events

    def on_progress(self, event: ProgressEvent) -> None:
        self.events.put(("progress", event))

    def on_log(self, line: str) -> None:
        self.events.put(("log", line))

    def on_outcome(self, outcome: BuildOutcome) -> None:
        self.events.put(("outcome", outcome))


@dataclass
class BuildContext:
    """Everything the phases share during one build.

    Attributes:
        config: Validated build configuration (read-only).
        workspace: Workspace layout.
        profile: Capability profile of the target distribution.
        iso_path: Destination of the final disc image.
        runner: Runner for every external command.
        session: Chroot session over ``workspace.chroot_dir``.
        settings: Merged user settings.
        bus: Event bus for progress and command output.
        run: Optional run context receiving structured events.
        host: Host facts; probed by the prerequisite phase when None.
        http: Session for alias resolution, key and memtest downloads.
        host_root: Host filesystem root searched for boot loader files.
        codename: Resolved release codename (set by phase 1).
        alias: Alias the codename was resolved from, if any.
        display_name: Human-readable distribution name (set by phase 1).
        step_outcomes: Best-effort sub-step outcomes per phase key.
        dangling_mounts: Mounts still present after final cleanup.
    """

    config: BuildConfig
    workspace: Workspace
    profile: DistroProfile
    iso_path: Path
    runner: CommandRunner
    session: ChrootSession
    settings: dict[str, Any]
    bus: EventBus = field(default_factory=EventBus)
    run: RunContext | None = None
    host: HostFacts | None = None
    http: requests.Session = field(default_factory=requests.Session)
    host_root: Path = Path("/")
    codename: str = ""
    alias: str | None = None
    display_name: str = ""
    step_outcomes: dict[str, list[StepOutcome]] = field(default_factory=dict)
    dangling_mounts: list[str] = field(default_factory=list)
    lock: WorkspaceLock | None = None

    def __post_init__(self) -> None:
        if not self.codename:
            self.codename = self.config.release
        if self.lock is None:
            self.lock = WorkspaceLock(self.workspace)

    @classmethod
    def create(
        cls,
        config: BuildConfig,
        work_dir: Path,
        iso_path: Path | None = None,
        *,
        settings: dict[str, Any] | None = None,
        runner: CommandRunner | None = None,
        observers: list[BuildObserver] | None = None,
        run: RunContext | None = None,
        host: HostFacts | None = None,
        in_container: bool = False,
    ) -> BuildContext:
        """Build a context with defaults derived from settings."""
        cfg = settings or load_settings()
        behavior = cfg.get("behavior", {})
        profile = get_profile(config.distro)
        workspace = Workspace(root=Path(work_dir).expanduser().resolve(), live_dir=profile.live_dir)
        bus = EventBus(observers)
        if runner is None:
            runner = CommandRunner(timeout=behavior.get("phase_timeout"), log_sink=bus.log)
        session = ChrootSession(
            chroot_dir=workspace.chroot_dir,
            runner=runner,
            in_container=host.in_container if host else in_container,
            unmount_retries=int(behavior.get("unmount_retries", 3)),
            retry_delay=float(behavior.get("unmount_retry_delay", 0.5)),
        )
        default_iso = workspace.root / f"kagami-{profile.name}-{config.release}.iso"
        return cls(
            config=config,
            workspace=workspace,
            profile=profile,
            iso_path=Path(iso_path).expanduser().resolve() if iso_path else default_iso,
            runner=runner,
            session=session,
            settings=cfg,
            bus=bus,
            run=run,
            host=host,
        )

    @property
    def mirror(self) -> str:
        """Archive mirror: configuration, then user settings, then profile."""
        configured = self.config.repository.mirror
        if configured:
            return configured
        return self.settings.get("mirrors", {}).get(self.profile.name) or self.profile.default_mirror

    @property
    def in_container(self) -> bool:
        return self.session.in_container

    def log_event(self, event: dict[str, Any]) -> None:
        if self.run is not None:
            self.run.log_event(event)
        else:
            logger.debug("event: %s", event)

    def record(self, phase: str, outcomes: list[StepOutcome]) -> list[StepOutcome]:
        """Store best-effort outcomes and warn once per failed step."""
        self.step_outcomes.setdefault(phase, []).extend(outcomes)
        for outcome in outcomes:
            if outcome.ok:
                self.log_event({"event": f"{phase}.step", "step": outcome.name, "ok": True})
            else:
                phase_warning(
                    self,
                    phase,
                    f"{outcome.name}: {outcome.detail}",
                    event_key=f"{phase}.step",
                    step=outcome.name,
                    ok=False,
                )
        return outcomes

    def failed_steps(self, phase: str) -> list[str]:
        return [o.name for o in self.step_outcomes.get(phase, []) if not o.ok]


class BuildPipeline:
    """Runs the phase sequence against one BuildContext.

    Args:
        ctx: Build context.
        phases: Phase list; defaults to the standard sequence.
    """

    def __init__(self, ctx: BuildContext, phases: list[Phase] | None = None) -> None:
        self.ctx = ctx
        self.phases = phases if phases is not None else build_phases()
        self._cancel = threading.Event()

    def cancel(self) -> None:
        """Request cancellation; honoured at the next phase boundary."""
        self._cancel.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    def run(self) -> BuildOutcome:
        ctx = self.ctx
        count = len(self.phases)
        outcome: BuildOutcome | None = None

        try:
            for phase in self.phases:
                if self._cancel.is_set():
                    outcome = self._fail(phase, "Build cancelled before this phase started", EXIT_CANCELLED)
                    break

                ctx.bus.progress(ProgressEvent(phase.index, count, phase.label, phase.key))
                ctx.log_event({"event": "phase.start", "index": phase.index, "phase": phase.key})

                result = self._execute(phase)
                if not result.success:
                    outcome = self._fail(phase, result.message, result.exit_code or EXIT_PHASE_FAILED)
                    break

                ctx.log_event(
                    {"event": "phase.done", "index": phase.index, "phase": phase.key, "message": result.message}
                )
            else:
                outcome = BuildOutcome.succeeded(ctx.iso_path, dangling_mounts=list(ctx.dangling_mounts))
        finally:
            if ctx.lock is not None:
                ctx.lock.release()

        ctx.bus.outcome(outcome)
        return outcome

    def _execute(self, phase: Phase) -> PhaseResult:
        try:
            return phase.step(self.ctx)
        except KagamiError as e:
            return PhaseResult.fail(e.exit_code, e.message)
        except Exception as e:
            logger.exception("Unexpected error in phase %s", phase.key)
            return PhaseResult.fail(EXIT_PHASE_FAILED, f"{type(e).__name__}: {e}")

    def _fail(self, phase: Phase, message: str, exit_code: int) -> BuildOutcome:
        ctx = self.ctx
        # Without the lock the mounts under the chroot may belong to another build.
        remaining = ctx.session.teardown() if ctx.lock is not None and ctx.lock.held else []
        ctx.dangling_mounts = remaining
        phase_error(
            ctx,
            phase.key,
            f"{phase.label} failed: {message}",
            exit_code,
            event_key="phase.failed",
            index=phase.index,
            label=phase.label,
            dangling_mounts=remaining,
        )
        return BuildOutcome.failed(phase.index, phase.label, message, exit_code, remaining)


@dataclass
class BackgroundBuild:
    """A pipeline running on a worker thread.

    Attributes:
        pipeline: The running pipeline.
        thread: Worker thread.
        events: Queue of ``(kind, payload)`` tuples; kinds are "progress",
            "log", "outcome" and "error".
    """

    pipeline: BuildPipeline
    thread: threading.Thread
    events: queue.Queue[tuple[str, Any]]
    outcome: BuildOutcome | None = None

    def cancel(self) -> None:
        self.pipeline.cancel()

    def is_alive(self) -> bool:
        return self.thread.is_alive()

    def join(self, timeout: float | None = None) -> BuildOutcome | None:
        self.thread.join(timeout)
        return self.outcome


def run_in_background(pipeline: BuildPipeline) -> BackgroundBuild:
    """Start a pipeline on a daemon thread and return its handle."""
    events: queue.Queue[tuple[str, Any]] = queue.Queue()
    pipeline.ctx.bus.subscribe(QueueObserver(events))

    def _target() -> None:
        try:
            handle.outcome = pipeline.run()
        except Exception as e:
            logger.exception("Background build crashed")
            events.put(("error", str(e)))

    thread = threading.Thread(target=_target, name="kagami-build", daemon=True)
    handle = BackgroundBuild(pipeline=pipeline, thread=thread, events=events)
    thread.start()
    return handle
