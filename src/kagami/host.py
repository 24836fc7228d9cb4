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

"""Host probe and host dependency management.

Kagami needs a Debian-family Linux host with APT, root privileges and, when
running inside a container, enough capabilities to bind-mount and create
device nodes.
"""

from __future__ import annotations

import logging
import os
import platform
import shutil
from dataclasses import dataclass, field
from pathlib import Path

from kagami.build.chroot import CommandRunner
from kagami.core.exceptions import CommandError

logger = logging.getLogger(__name__)

REQUIRED_HOST_PACKAGES = [
    "debootstrap",
    "squashfs-tools",
    "xorriso",
    "grub-pc-bin",
    "grub-efi-amd64-bin",
    "mtools",
    "dosfstools",
    "isolinux",
    "syslinux",
    "syslinux-common",
]

RELEASE_FILES = ("/etc/debian_version", "/etc/lsb-release", "/etc/os-release")
CONTAINER_MARKERS = ("/.dockerenv", "/run/.containerenv")


@dataclass(frozen=True)
class HostFacts:
    """Booleans consumed by the prerequisite phase."""

    is_linux: bool
    is_apt_based: bool
    is_root: bool
    in_container: bool


def _read_lower(path: Path) -> str:
    try:
        return path.read_text(errors="replace").lower()
    except OSError:
        return ""


def is_apt_based(root: Path = Path("/")) -> bool:
    """Return True on a Debian/Ubuntu family host with apt-get and dpkg.

    APT-RPM systems (ALT Linux) ship apt-get too and are rejected.
    """
    if shutil.which("apt-get") is None or shutil.which("dpkg") is None:
        return False

    os_release = _read_lower(root / "etc/os-release")
    if shutil.which("rpm") is not None and ("altlinux" in os_release or "alt linux" in os_release):
        return False

    if not (root / "etc/apt").is_dir():
        return False

    for name in RELEASE_FILES:
        content = _read_lower(root / name.lstrip("/"))
        if name == "/etc/debian_version" and content:
            return True
        if ("ubuntu" in content or "debian" in content) and "altlinux" not in content:
            return True
    return False


def is_container(root: Path = Path("/")) -> bool:
    """Detect Docker, Podman and Distrobox environments."""
    for marker in CONTAINER_MARKERS:
        if (root / marker.lstrip("/")).exists():
            return True
    return bool(os.environ.get("DISTROBOX_ENTER_PATH"))


def is_root() -> bool:
    return os.geteuid() == 0


def probe_host() -> HostFacts:
    return HostFacts(
        is_linux=platform.system() == "Linux",
        is_apt_based=is_apt_based(),
        is_root=is_root(),
        in_container=is_container(),
    )


@dataclass
class DependencyStatus:
    required: list[str] = field(default_factory=lambda: list(REQUIRED_HOST_PACKAGES))
    installed: list[str] = field(default_factory=list)
    missing: list[str] = field(default_factory=list)

    @property
    def complete(self) -> bool:
        return not self.missing


def is_package_installed(package: str, runner: CommandRunner) -> bool:
    result = runner.run(["dpkg", "-s", package], capture=True)
    return result.ok and "Status: install ok installed" in result.stdout


def check_dependencies(runner: CommandRunner | None = None) -> DependencyStatus:
    """Check which required host packages are installed."""
    runner = runner or CommandRunner()
    status = DependencyStatus()
    for package in status.required:
        if is_package_installed(package, runner):
            status.installed.append(package)
        else:
            status.missing.append(package)
    return status


def install_dependencies(runner: CommandRunner | None = None) -> DependencyStatus:
    """Install missing host packages with apt-get.

    Returns:
        Status after installation.

    Raises:
        CommandError: If apt-get fails or packages are still missing.
    """
    runner = runner or CommandRunner()
    status = check_dependencies(runner)
    if status.complete:
        return status

    logger.info("Installing %d packages: %s", len(status.missing), ", ".join(status.missing))
    env = {"DEBIAN_FRONTEND": "noninteractive"}

    update = runner.run(["apt-get", "update"], env=env)
    if not update.ok:
        raise CommandError(message="Failed to update package lists", argv=update.argv, returncode=update.returncode)

    install = runner.run(["apt-get", "install", "-y", *status.missing], env=env)
    if not install.ok:
        raise CommandError(message="Failed to install packages", argv=install.argv, returncode=install.returncode)

    after = check_dependencies(runner)
    if not after.complete:
        raise CommandError(message=f"Some packages failed to install: {', '.join(after.missing)}")
    return after
