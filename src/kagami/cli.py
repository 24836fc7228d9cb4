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

"""CLI application definition for Kagami."""

from __future__ import annotations

from typer import Typer

from kagami.commands.build import build
from kagami.commands.clean import clean
from kagami.commands.deps import deps
from kagami.commands.validate import new_config, validate

app: Typer = Typer(
    name="kagami",
    help="A tool for building Debian and Ubuntu live ISO images.",
    add_completion=False,
)

# Register commands
app.command(name="build")(build)
app.command(name="deps")(deps)
app.command(name="clean")(clean)
app.command(name="validate")(validate)
app.command(name="new-config")(new_config)
