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

"""Implementation of `kagami clean`.

Releases any mounts left under a workspace's chroot and deletes the
workspace directory.
"""

from __future__ import annotations

import sys
from pathlib import Path

import typer

from kagami.build.chroot import TEARDOWN_ORDER, ChrootSession, CommandRunner
from kagami.build.workspace import Workspace, WorkspaceLock, remove_workspace
from kagami.core.exceptions import MountError, WorkspaceLockedError
from kagami.core.run import activity
from kagami.settings import load_settings

EXIT_OK = 0
EXIT_FAILED = 1


def format_size(size_bytes: int) -> str:
    """Format a size in bytes as a human-readable string."""
    if size_bytes >= 1024 * 1024 * 1024:
        return f"{size_bytes / (1024 * 1024 * 1024):.1f} GB"
    elif size_bytes >= 1024 * 1024:
        return f"{size_bytes / (1024 * 1024):.1f} MB"
    elif size_bytes >= 1024:
        return f"{size_bytes / 1024:.1f} KB"
    else:
        return f"{size_bytes} bytes"


def _get_dir_size(path: Path) -> int:
    """Total size of regular files below path; unreadable entries count as 0."""
    total = 0
    for file_path in path.rglob("*"):
        try:
            if file_path.is_file() and not file_path.is_symlink():
                total += file_path.stat().st_size
        except OSError:
            continue
    return total


def clean(
    workdir: Path | None = typer.Option(None, "-w", "--workdir", help="Workspace to remove (default from settings)"),
    dry_run: bool = typer.Option(False, "-n", "--dry-run", help="Show what would be removed without removing"),
    force: bool = typer.Option(False, "-f", "--force", help="Skip confirmation prompts"),
) -> None:
    """Unmount and delete a build workspace.

    Examples:
        kagami clean --dry-run
        kagami clean --workdir /srv/kagami/noble --force
    """
    settings = load_settings()
    root = Path(workdir or settings["paths"]["workspace_root"]).expanduser().resolve()
    workspace = Workspace(root=root)

    if not root.exists():
        activity("clean", f"Nothing to clean at {root}")
        return

    session = ChrootSession(chroot_dir=workspace.chroot_dir, runner=CommandRunner())
    mounted = [rel for rel in TEARDOWN_ORDER if session.is_mounted(session.target(rel))]

    activity("clean", f"Workspace: {root} ({format_size(_get_dir_size(root))})")
    for rel in mounted:
        activity("clean", f"  mounted: {session.target(rel)}")

    if dry_run:
        activity("clean", "(dry-run) No files removed")
        return

    if not force and not typer.confirm(f"Remove {root}?"):
        activity("clean", "Aborted")
        return

    try:
        with WorkspaceLock(workspace) as lock:
            remaining = session.teardown()
            remove_workspace(workspace, remaining, lock=lock)
    except (MountError, WorkspaceLockedError) as e:
        activity("clean", f"ERROR: {e.message}")
        sys.exit(EXIT_FAILED)
    except OSError as e:
        activity("clean", f"ERROR: Could not remove {root}: {e}")
        sys.exit(EXIT_FAILED)

    activity("clean", f"Removed: {root}")
