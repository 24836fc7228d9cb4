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

"""User settings for Kagami.

Settings live in ``~/.config/kagami/config.yaml`` and hold host-side
preferences (where workspaces and run logs go, default mirrors, unmount retry
policy). They are distinct from the build configuration record, which
describes the image being built.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml

DEFAULT_SETTINGS: dict[str, Any] = {
    "paths": {
        "workspace_root": "~/kagami/workspace",
        "runs_root": "~/.cache/kagami/runs",
        "calamares_settings_ubuntu": "~/kagami/calamares-settings-ubuntu/lubuntu",
    },
    "mirrors": {
        "ubuntu": "http://archive.ubuntu.com/ubuntu/",
        "debian": "http://deb.debian.org/debian/",
        "debian_security": "http://security.debian.org/debian-security",
    },
    "behavior": {
        "unmount_retries": 3,
        "unmount_retry_delay": 0.5,
        "phase_timeout": None,
        "memtest_url": "https://memtest.org/download/v7.00/mt86plus_7.00.binaries.zip",
    },
}


def get_settings_path() -> Path:
    """Return the path to the settings file."""
    return Path.home() / ".config" / "kagami" / "config.yaml"


def ensure_settings_exist() -> None:
    """Create the settings file with defaults if it does not exist."""
    cfg_path = get_settings_path()
    cfg_path.parent.mkdir(parents=True, exist_ok=True)
    if not cfg_path.exists():
        cfg_path.write_text(yaml.safe_dump(DEFAULT_SETTINGS))


def load_settings() -> dict[str, Any]:
    """Load settings from disk and merge with defaults.

    Top-level sections are merged key by key, so a settings file that only
    overrides ``behavior.unmount_retries`` keeps every other default.
    """
    ensure_settings_exist()
    cfg_path = get_settings_path()
    try:
        raw = yaml.safe_load(cfg_path.read_text()) or {}
    except yaml.YAMLError:
        raw = {}

    merged: dict[str, Any] = {}
    for key, val in DEFAULT_SETTINGS.items():
        if key in raw and isinstance(raw[key], dict):
            merged[key] = {**val, **raw[key]}
        elif isinstance(val, dict):
            merged[key] = dict(val)
        else:
            merged[key] = raw.get(key, val)

    for pkey, pval in merged.get("paths", {}).items():
        merged["paths"][pkey] = str(Path(pval).expanduser())

    return merged


def write_settings(data: dict[str, Any]) -> None:
    """Write the provided data as YAML to the settings path."""
    cfg_path = get_settings_path()
    cfg_path.parent.mkdir(parents=True, exist_ok=True)
    cfg_path.write_text(yaml.safe_dump(data))
