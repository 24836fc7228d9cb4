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

"""Kagami: a tool for building Debian and Ubuntu live ISO images."""

__version__ = "4.0.0"
