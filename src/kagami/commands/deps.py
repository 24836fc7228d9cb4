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

"""Implementation of `kagami deps`: check or install host packages."""

from __future__ import annotations

import sys

import typer

from kagami.build.errors import EXIT_HOST_ERROR, EXIT_SUCCESS
from kagami.core.exceptions import CommandError
from kagami.core.run import RunContext, activity
from kagami.core.spinner import activity_spinner
from kagami.host import check_dependencies, install_dependencies, is_root


def deps(
    install: bool = typer.Option(False, "-i", "--install", help="Install missing packages with apt-get"),
    no_spinner: bool = typer.Option(False, "-q", "--no-spinner", help="Disable spinner output (quiet)"),
) -> None:
    """Check the host packages a build needs.

    With --install, missing packages are installed (requires root).
    """
    with RunContext("deps") as run:
        status = check_dependencies()
        for package in status.installed:
            activity("deps", f"  [ok]      {package}")
        for package in status.missing:
            activity("deps", f"  [missing] {package}")
        run.log_event({"event": "deps.check", "installed": status.installed, "missing": status.missing})

        exit_code = EXIT_SUCCESS
        if status.complete:
            activity("deps", "All required packages are installed")
        elif not install:
            activity("deps", f"Missing {len(status.missing)} package(s); run 'kagami deps --install'")
            exit_code = EXIT_HOST_ERROR
        elif not is_root():
            activity("deps", "ERROR: Installing packages requires root")
            exit_code = EXIT_HOST_ERROR
        else:
            try:
                with activity_spinner("deps", f"Installing {len(status.missing)} package(s)", disable=no_spinner):
                    status = install_dependencies()
            except CommandError as e:
                activity("deps", f"ERROR: {e.message}")
                run.log_event({"event": "deps.install_failed", "error": e.message})
                exit_code = EXIT_HOST_ERROR
            else:
                activity("deps", "All required packages are installed")
                run.log_event({"event": "deps.installed"})

        run.write_summary(status="success" if exit_code == EXIT_SUCCESS else "failed", exit_code=exit_code)

    sys.exit(exit_code)
