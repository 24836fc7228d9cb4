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

"""External tool validation for image builds.

Validates presence of the binaries the pipeline shells out to.
"""

from __future__ import annotations

import shutil
from dataclasses import dataclass, field
from pathlib import Path


@dataclass
class ToolCheck:
    """Result of checking for required external tools."""

    tools: dict[str, Path | None] = field(default_factory=dict)
    missing: list[str] = field(default_factory=list)

    def is_complete(self) -> bool:
        """Return True if all required tools are available."""
        return len(self.missing) == 0

    def get_path(self, tool: str) -> Path | None:
        return self.tools.get(tool)


REQUIRED_TOOLS = [
    "debootstrap",
    "mksquashfs",
    "xorriso",
    "grub-mkstandalone",
    "mkfs.vfat",
    "mmd",
    "mcopy",
    "gpg",
    "chroot",
    "mount",
    "umount",
]

# Package names for apt install command
TOOL_PACKAGES: dict[str, str] = {
    "debootstrap": "debootstrap",
    "mksquashfs": "squashfs-tools",
    "xorriso": "xorriso",
    "grub-mkstandalone": "grub-common",
    "mkfs.vfat": "dosfstools",
    "mmd": "mtools",
    "mcopy": "mtools",
    "gpg": "gnupg",
    "chroot": "coreutils",
    "mount": "mount",
    "umount": "mount",
}


def find_tool(name: str) -> Path | None:
    """Find an executable tool in PATH.

    Args:
        name: Name of the tool to find.

    Returns:
        Path to the tool if found, None otherwise.
    """
    path = shutil.which(name)
    if path:
        return Path(path)
    return None


def check_required_tools(tools: list[str] | None = None) -> ToolCheck:
    """Check for required external tools.

    Args:
        tools: Tool names to check; defaults to REQUIRED_TOOLS.

    Returns:
        ToolCheck with available tools and list of missing tools.
    """
    result = ToolCheck()
    for tool in tools or REQUIRED_TOOLS:
        path = find_tool(tool)
        result.tools[tool] = path
        if path is None:
            result.missing.append(tool)
    return result


def get_missing_tools_message(missing: list[str]) -> str:
    """Generate a user-friendly message for installing missing tools."""
    if not missing:
        return ""

    lines = ["The following required tools are missing:"]
    for tool in missing:
        lines.append(f"  - {tool} (package {TOOL_PACKAGES.get(tool, tool)})")

    packages = sorted({TOOL_PACKAGES.get(t, t) for t in missing})
    lines.append("")
    lines.append("Quick install:")
    lines.append(f"  sudo apt install {' '.join(packages)}")
    lines.append("  or: sudo kagami deps --install")
    return "\n".join(lines)
