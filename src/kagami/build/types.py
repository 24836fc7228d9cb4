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

"""Type definitions for build pipeline phases.

This module provides dataclasses that structure the data passed between
build phases and out to whatever presentation layer observes a build.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from kagami.build.pipeline import BuildContext


@dataclass
class PhaseResult:
    """Result of a build phase execution.

    Attributes:
        success: Whether the phase completed successfully.
        exit_code: Exit code if phase failed (0 for success).
        message: Human-readable status message.
        data: Optional phase-specific data for subsequent phases.
    """

    success: bool
    exit_code: int = 0
    message: str = ""
    data: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def ok(cls, message: str = "", **data: Any) -> PhaseResult:
        """Create a successful phase result."""
        return cls(success=True, exit_code=0, message=message, data=data)

    @classmethod
    def fail(cls, exit_code: int, message: str, **data: Any) -> PhaseResult:
        """Create a failed phase result."""
        return cls(success=False, exit_code=exit_code, message=message, data=data)


@dataclass
class StepOutcome:
    """Outcome of one best-effort sub-step.

    Best-effort steps never raise; callers collect these so failures can be
    inspected without scraping logs.
    """

    name: str
    ok: bool
    detail: str = ""

    @classmethod
    def passed(cls, name: str, detail: str = "") -> StepOutcome:
        return cls(name=name, ok=True, detail=detail)

    @classmethod
    def failed(cls, name: str, detail: str) -> StepOutcome:
        return cls(name=name, ok=False, detail=detail)


PhaseStep = Callable[["BuildContext"], PhaseResult]


@dataclass(frozen=True)
class Phase:
    """One entry of the fixed phase sequence.

    Attributes:
        index: 1-based position in the sequence.
        key: Short machine name used in activity lines and event keys.
        label: Human-readable label.
        step: Callable executing the phase.
    """

    index: int
    key: str
    label: str
    step: PhaseStep


@dataclass(frozen=True)
class ProgressEvent:
    """Emitted when a phase starts."""

    index: int
    count: int
    label: str
    key: str = ""


@dataclass
class BuildOutcome:
    """Final result of a pipeline run.

    Attributes:
        success: Whether every phase completed.
        iso_path: Path to the disc image on success.
        failed_phase: (index, label) of the failing phase.
        error: Underlying error text on failure.
        exit_code: Exit code reported by the failing phase.
        dangling_mounts: Mount points that teardown could not release.
    """

    success: bool
    iso_path: Path | None = None
    failed_phase: tuple[int, str] | None = None
    error: str = ""
    exit_code: int = 0
    dangling_mounts: list[str] = field(default_factory=list)

    @classmethod
    def succeeded(cls, iso_path: Path, dangling_mounts: list[str] | None = None) -> BuildOutcome:
        return cls(success=True, iso_path=iso_path, dangling_mounts=dangling_mounts or [])

    @classmethod
    def failed(
        cls,
        index: int,
        label: str,
        error: str,
        exit_code: int = 1,
        dangling_mounts: list[str] | None = None,
    ) -> BuildOutcome:
        return cls(
            success=False,
            failed_phase=(index, label),
            error=error,
            exit_code=exit_code,
            dangling_mounts=dangling_mounts or [],
        )

    def describe(self) -> str:
        if self.success:
            return f"Build succeeded: {self.iso_path}"
        index, label = self.failed_phase or (0, "unknown")
        return f"Phase {index} ({label}) failed: {self.error}"
