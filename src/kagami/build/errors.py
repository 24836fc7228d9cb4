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

"""Error handling utilities for build pipeline phases.

This module provides helpers for consistent error handling and logging
across phases, so every warning or failure produces both an activity line
and a structured event.
"""

from __future__ import annotations

from typing import Any, Protocol

from kagami.core.run import activity


class EventLog(Protocol):
    def log_event(self, event: dict[str, Any]) -> None: ...


def log_phase_event(
    run: EventLog,
    phase: str,
    message: str,
    event_key: str,
    **event_data: Any,
) -> None:
    """Log a phase activity message and structured event together.

    Args:
        run: Anything with ``log_event`` (a RunContext or BuildContext).
        phase: Phase name for activity logging (e.g., "bootstrap", "iso").
        message: Human-readable message for activity output.
        event_key: Event key for structured logging (e.g., "mount.bind").
        **event_data: Additional data to include in the log event.
    """
    activity(phase, message)
    run.log_event({"event": event_key, **event_data})


def phase_error(
    run: EventLog,
    phase: str,
    message: str,
    exit_code: int,
    *,
    event_key: str | None = None,
    **event_data: Any,
) -> int:
    """Log a phase error, returning the exit code.

    Returns:
        The exit_code parameter, for use in ``return phase_error(...)``.
    """
    activity(phase, f"ERROR: {message}")
    run.log_event(
        {
            "event": event_key or f"{phase}.error",
            "message": message,
            "exit_code": exit_code,
            **event_data,
        }
    )
    return exit_code


def phase_warning(
    run: EventLog,
    phase: str,
    message: str,
    *,
    event_key: str | None = None,
    **event_data: Any,
) -> None:
    """Log a phase warning without affecting the outcome.

    Args:
        run: Event sink.
        phase: Phase name for activity logging.
        message: Human-readable warning message.
        event_key: Custom event key (default: "{phase}.warning").
        **event_data: Additional data to include in the log event.
    """
    activity(phase, f"Warning: {message}")
    run.log_event(
        {
            "event": event_key or f"{phase}.warning",
            "message": message,
            **event_data,
        }
    )


# Exit codes reported by failed phases; the CLI itself exits 0 or 1.
EXIT_SUCCESS = 0
EXIT_CONFIG_ERROR = 1
EXIT_TOOL_MISSING = 2
EXIT_HOST_ERROR = 2
EXIT_WORKSPACE_LOCKED = 3
EXIT_COMMAND_FAILED = 4
EXIT_BOOT_COMPONENT_MISSING = 5
EXIT_PHASE_FAILED = 6
EXIT_CANCELLED = 7
