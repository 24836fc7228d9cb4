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

"""Implementation of `kagami build`.

Loads or creates a build configuration, applies command-line overrides,
runs the build pipeline and offers to remove the workspace afterwards.

Exit codes:
  0 - Success
  1 - Any fatal error (the failing phase's own code is in summary.json)
"""

from __future__ import annotations

import sys
from dataclasses import replace
from pathlib import Path

import typer

from kagami import __version__
from kagami.build.errors import EXIT_CANCELLED, EXIT_WORKSPACE_LOCKED
from kagami.build.pipeline import BuildContext, BuildPipeline, ConsoleObserver
from kagami.build.types import BuildOutcome
from kagami.build.workspace import Workspace, WorkspaceLock, remove_workspace
from kagami.commands.monitor import monitor_build
from kagami.core.exceptions import ConfigError, MountError, WorkspaceLockedError
from kagami.core.models import (
    BuildConfig,
    default_build_config,
    load_build_config,
    validate_build_config,
)
from kagami.core.run import RunContext, activity
from kagami.settings import load_settings
from kagami.target.release import infer_distribution

EXIT_OK = 0
EXIT_FAILED = 1


def resolve_build_config(
    config: Path | None,
    release: str,
    distro: str,
    hostname: str,
    mirror: str,
    block_snapd: bool | None,
) -> BuildConfig:
    """Load or create the configuration and apply command-line overrides.

    Raises:
        ConfigError: If neither a file nor a release is given, or the
            result does not validate.
    """
    if config is not None:
        cfg = load_build_config(config)
        if release:
            cfg = replace(cfg, release=release)
        if distro:
            cfg = replace(cfg, distro=distro)
    elif release:
        cfg = default_build_config(release, distro or infer_distribution(release, mirror))
    else:
        raise ConfigError("Either --config or --release is required")

    if hostname:
        cfg = replace(cfg, system=replace(cfg.system, hostname=hostname))
    if mirror:
        cfg = replace(cfg, repository=replace(cfg.repository, mirror=mirror))
    if block_snapd is not None:
        cfg = replace(
            cfg,
            system=replace(cfg.system, block_snapd=block_snapd),
            security=replace(cfg.security, block_snapd_forever=block_snapd),
        )

    validate_build_config(cfg)
    return cfg


def interrupted_outcome(ctx: BuildContext) -> BuildOutcome:
    """Release mounts after Ctrl+C, unless another build took the workspace.

    The pipeline drops its lock while the interrupt unwinds, so the lock is
    taken again before anything under the chroot is unmounted.
    """
    remaining: list[str] = []
    try:
        with WorkspaceLock(ctx.workspace):
            remaining = ctx.session.teardown()
    except WorkspaceLockedError as e:
        activity("report", f"Skipping unmount: {e.message}")
    return BuildOutcome.failed(0, "interrupted", "Interrupted by user", EXIT_CANCELLED, remaining)


def offer_cleanup(workspace: Workspace, outcome: BuildOutcome, *, yes: bool, keep: bool) -> bool:
    """Ask whether to delete the workspace; returns True if it was removed.

    The default answer is yes after a failure and no after a success.
    Without a terminal nothing is deleted unless --yes was given.
    """
    if keep or not workspace.root.exists():
        activity("report", f"Workspace preserved: {workspace.root}")
        return False
    if outcome.exit_code == EXIT_WORKSPACE_LOCKED:
        activity("report", f"Workspace {workspace.root} belongs to another build; not offering removal")
        return False

    if yes:
        remove = True
    elif sys.stdin.isatty():
        remove = typer.confirm(f"Delete workspace {workspace.root}?", default=not outcome.success)
    else:
        remove = False

    if not remove:
        activity("report", f"Workspace preserved: {workspace.root}")
        return False

    try:
        remove_workspace(workspace, outcome.dangling_mounts)
    except (MountError, WorkspaceLockedError) as e:
        activity("report", f"ERROR: {e.message}")
        return False
    except OSError as e:
        activity("report", f"ERROR: Could not delete {workspace.root}: {e}")
        return False
    activity("report", f"Removed workspace: {workspace.root}")
    return True


def build(
    config: Path | None = typer.Option(None, "-c", "--config", help="Build configuration JSON file"),
    release: str = typer.Option("", "-r", "--release", help="Release codename or alias (overrides the configuration)"),
    distro: str = typer.Option("", "-d", "--distro", help="Distribution: ubuntu or debian (inferred when omitted)"),
    workdir: Path | None = typer.Option(None, "-w", "--workdir", help="Working directory (default from settings)"),
    output: Path | None = typer.Option(None, "-o", "--output", help="Output ISO path"),
    hostname: str = typer.Option("", "--hostname", help="Hostname of the live system"),
    mirror: str = typer.Option("", "-m", "--mirror", help="Archive mirror URL"),
    block_snapd: bool | None = typer.Option(
        None, "--block-snapd/--no-block-snapd", help="Suppress snapd on Ubuntu images"
    ),
    monitor: bool = typer.Option(False, "--monitor", help="Show a live progress display"),
    yes: bool = typer.Option(False, "-y", "--yes", help="Delete the workspace afterwards without asking"),
    keep: bool = typer.Option(False, "-k", "--keep", help="Keep the workspace without asking"),
) -> None:
    """Build a live ISO image.

    Examples:
        kagami build --release jammy
        kagami build --config my-image.json --output /srv/iso/custom.iso
        kagami build --release stable --distro debian --monitor
    """
    try:
        cfg = resolve_build_config(config, release, distro, hostname, mirror, block_snapd)
    except ConfigError as e:
        activity("error", e.message)
        sys.exit(EXIT_FAILED)

    settings = load_settings()
    work_dir = workdir or Path(settings["paths"]["workspace_root"])

    with RunContext("build") as run:
        observers = [ConsoleObserver(show_progress=not monitor)]
        ctx = BuildContext.create(cfg, work_dir, output, settings=settings, observers=observers, run=run)
        run.write_summary(
            kagami_version=__version__,
            distro=cfg.distro,
            release=cfg.release,
            workspace=str(ctx.workspace.root),
            iso_path=str(ctx.iso_path),
        )
        pipeline = BuildPipeline(ctx)

        try:
            outcome = monitor_build(pipeline) if monitor else pipeline.run()
        except KeyboardInterrupt:
            outcome = interrupted_outcome(ctx)

        if outcome.success:
            activity("report", f"ISO created: {outcome.iso_path}")
        else:
            activity("report", outcome.describe())
        if outcome.dangling_mounts:
            activity("report", f"Warning: still mounted: {', '.join(outcome.dangling_mounts)}")

        run.write_summary(
            status="success" if outcome.success else "failed",
            exit_code=outcome.exit_code,
            failed_phase=outcome.failed_phase,
            error=outcome.error or None,
            dangling_mounts=outcome.dangling_mounts,
        )

    offer_cleanup(ctx.workspace, outcome, yes=yes, keep=keep)
    sys.exit(EXIT_OK if outcome.success else EXIT_FAILED)
