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

"""Kagami-specific exception types with associated exit codes."""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass
class KagamiError(Exception):
    """Base class for Kagami errors with an exit code."""

    message: str = "An error occurred"
    exit_code: int = field(default=1)

    def __str__(self) -> str:  # pragma: no cover - trivial
        return f"{self.message} (exit {self.exit_code})"


@dataclass
class ConfigError(KagamiError):
    exit_code: int = field(default=1)


@dataclass
class HostError(KagamiError):
    """Raised when the host cannot run a build (wrong OS, not root, ...)."""

    exit_code: int = field(default=2)


@dataclass
class ToolMissingError(KagamiError):
    """Raised when required external tools are not on PATH."""

    exit_code: int = field(default=2)
    missing: list[str] = field(default_factory=list)


@dataclass
class WorkspaceLockedError(KagamiError):
    """Raised when another build holds the workspace lock."""

    exit_code: int = field(default=3)


@dataclass
class CommandError(KagamiError):
    """Raised when an external command exits non-zero."""

    exit_code: int = field(default=4)
    argv: list[str] = field(default_factory=list)
    returncode: int = 0
    stderr: str = ""


@dataclass
class MountError(KagamiError):
    """Raised when a bind mount cannot be established."""

    exit_code: int = field(default=4)
    target: str = ""


@dataclass
class BootComponentMissingError(KagamiError):
    """Raised when a mandatory boot loader component cannot be located."""

    exit_code: int = field(default=5)
    component: str = ""


@dataclass
class PhaseFailedError(KagamiError):
    """Raised by callers that prefer exceptions over a failed BuildOutcome."""

    exit_code: int = field(default=6)
    phase_index: int = 0
    phase_label: str = ""
    cause: str = ""
