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

"""Implementation of `kagami validate` and `kagami new-config`."""

from __future__ import annotations

import sys
from pathlib import Path

import typer

from kagami.core.exceptions import ConfigError
from kagami.core.models import (
    default_build_config,
    load_build_config,
    save_build_config,
    validate_build_config,
)
from kagami.core.run import activity
from kagami.target.profiles import get_profile

EXIT_OK = 0
EXIT_INVALID = 1


def validate(
    config: Path = typer.Argument(..., help="Build configuration JSON file"),
) -> None:
    """Check a build configuration without building anything."""
    try:
        cfg = load_build_config(config)
        validate_build_config(cfg)
    except ConfigError as e:
        activity("validate", f"ERROR: {e.message}")
        sys.exit(EXIT_INVALID)

    profile = get_profile(cfg.distro)
    activity("validate", f"{config}: OK")
    activity("validate", f"  {profile.title} {cfg.release} ({cfg.system.architecture})")
    activity("validate", f"  desktop={cfg.packages.desktop} installer={cfg.installer.type}")
    activity("validate", f"  snapd suppression: {'on' if profile.name == 'ubuntu' and cfg.suppress_snapd else 'off'}")
    for repo in cfg.repository.additional_repos:
        activity("validate", f"  repository: {repo.name} ({repo.uri})")


def new_config(
    release: str = typer.Argument(..., help="Release codename or alias"),
    output: Path = typer.Option(Path("kagami.json"), "-o", "--output", help="Where to write the configuration"),
    distro: str = typer.Option("", "-d", "--distro", help="Distribution (inferred when omitted)"),
    force: bool = typer.Option(False, "-f", "--force", help="Overwrite an existing file"),
) -> None:
    """Write a default build configuration for a release."""
    if output.exists() and not force:
        activity("config", f"ERROR: {output} exists (use --force to overwrite)")
        sys.exit(EXIT_INVALID)
    try:
        cfg = default_build_config(release, distro or None)
        validate_build_config(cfg)
    except ConfigError as e:
        activity("config", f"ERROR: {e.message}")
        sys.exit(EXIT_INVALID)
    save_build_config(cfg, output)
    activity("config", f"Wrote {output}")
