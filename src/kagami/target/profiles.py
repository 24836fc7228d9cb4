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

"""Per-distribution capability table.

Everything that differs between an Ubuntu and a Debian live image is collected
here and resolved once at the start of a build, so the phases never branch on
the distribution name themselves.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from kagami.core.exceptions import ConfigError

SUPPORTED_ARCHITECTURES = ("amd64", "arm64", "i386")
DESKTOPS = ("gnome", "kde", "xfce", "lxde", "lxqt", "mate", "none")
INSTALLERS = ("ubiquity", "calamares", "subiquity")

UBUNTU_DESKTOP_PACKAGES: dict[str, list[str]] = {
    "gnome": [
        "vanilla-gnome-desktop",
        "vanilla-gnome-default-settings",
        "gnome-session",
        "gnome-tweaks",
        "gnome-shell-extension-manager",
        "gnome-backgrounds",
        "fonts-cantarell",
        "adwaita-icon-theme",
        "plymouth-themes",
    ],
    "kde": ["kde-plasma-desktop"],
    "xfce": ["xfce4", "xfce4-goodies"],
    "lxde": ["lxde"],
    "lxqt": ["lxqt"],
    "mate": ["mate-desktop-environment"],
}

DEBIAN_DESKTOP_PACKAGES: dict[str, list[str]] = {
    desktop: [f"task-{desktop}-desktop"] for desktop in ("gnome", "kde", "xfce", "lxde", "lxqt", "mate")
}

_COMMON_ESSENTIAL = [
    "sudo",
    "discover",
    "laptop-detect",
    "os-prober",
    "network-manager",
    "net-tools",
    "wireless-tools",
    "wpagui",
    "locales",
    "grub-common",
    "grub-gfxpayload-lists",
    "grub-pc",
    "grub-pc-bin",
    "grub2-common",
]


@dataclass(frozen=True)
class DistroProfile:
    """Capabilities of one target distribution.

    Attributes:
        name: Distribution key ("ubuntu" or "debian").
        live_dir: Directory under the image root holding the live system.
        boot_param: Value of the ``boot=`` kernel parameter for the live initrd.
        default_mirror: Archive mirror used when neither the build
            configuration nor the user settings name one.
        components: Archive components written into sources.list.
        default_kernel_suffix: Kernel flavour used to pick /boot images.
        desktop_packages: Desktop identifier to package list.
        desktop_no_recommends: Install desktop tasks without recommends.
        calamares_settings_package: Distribution settings package for Calamares.
        manifest_exclude: Name fragments stripped from the desktop manifest.
        installers: Installer types this distribution can ship.
        essential_packages: Default essential package set.
        default_remove_list: Packages purged by default after installation.
        default_disabled_services: Services disabled by default.
    """

    name: str
    live_dir: str
    boot_param: str
    default_mirror: str
    components: str
    default_kernel_suffix: str
    desktop_packages: dict[str, list[str]]
    desktop_no_recommends: bool
    calamares_settings_package: str
    manifest_exclude: tuple[str, ...]
    installers: tuple[str, ...]
    essential_packages: tuple[str, ...]
    default_remove_list: tuple[str, ...] = ()
    default_disabled_services: tuple[str, ...] = ()
    default_hostname: str = field(default="kagami")

    @property
    def title(self) -> str:
        return self.name.capitalize()

    def default_kernel(self, architecture: str) -> str:
        """Return the kernel metapackage for an architecture."""
        if self.name == "ubuntu":
            return "linux-generic"
        if architecture == "i386":
            return "linux-image-686"
        return f"linux-image-{architecture}"

    def essential_for(self, architecture: str) -> list[str]:
        """Return the essential package set with the matching EFI packages."""
        packages = list(self.essential_packages)
        if architecture == "amd64":
            packages.append("grub-efi-amd64-signed" if self.name == "ubuntu" else "grub-efi-amd64")
            packages.append("shim-signed")
        elif architecture == "arm64":
            packages.append("grub-efi-arm64-signed" if self.name == "ubuntu" else "grub-efi-arm64")
            packages.append("shim-signed")
        packages.extend(["mtools", "binutils"])
        return packages


UBUNTU = DistroProfile(
    name="ubuntu",
    live_dir="casper",
    boot_param="casper",
    default_mirror="http://archive.ubuntu.com/ubuntu/",
    components="main restricted universe multiverse",
    default_kernel_suffix="generic",
    desktop_packages=UBUNTU_DESKTOP_PACKAGES,
    desktop_no_recommends=False,
    calamares_settings_package="calamares-settings-ubuntu",
    manifest_exclude=("ubiquity", "calamares", "casper", "discover", "laptop-detect", "os-prober"),
    installers=INSTALLERS,
    essential_packages=("sudo", "ubuntu-standard", "casper", *_COMMON_ESSENTIAL),
    default_remove_list=(
        "ubuntu-advantage-tools",
        "ubuntu-report",
        "whoopsie",
        "apport",
        "popularity-contest",
    ),
    default_disabled_services=("whoopsie", "apport", "ubuntu-report"),
    default_hostname="ubuntu-kagami",
)

DEBIAN = DistroProfile(
    name="debian",
    live_dir="live",
    boot_param="live",
    default_mirror="http://deb.debian.org/debian/",
    components="main contrib non-free non-free-firmware",
    default_kernel_suffix="amd64",
    desktop_packages=DEBIAN_DESKTOP_PACKAGES,
    desktop_no_recommends=True,
    calamares_settings_package="calamares-settings-debian",
    manifest_exclude=(
        "calamares",
        "live-boot",
        "live-config",
        "live-tools",
        "discover",
        "laptop-detect",
        "os-prober",
    ),
    installers=("ubiquity", "calamares"),
    essential_packages=(
        "sudo",
        "live-boot",
        "live-config",
        "live-config-systemd",
        *[pkg for pkg in _COMMON_ESSENTIAL if pkg != "sudo"],
    ),
    default_hostname="debian-kagami",
)

PROFILES: dict[str, DistroProfile] = {"ubuntu": UBUNTU, "debian": DEBIAN}


def get_profile(distribution: str) -> DistroProfile:
    """Look up the profile for a distribution.

    Raises:
        ConfigError: If the distribution is not supported.
    """
    try:
        return PROFILES[distribution.lower()]
    except KeyError:
        raise ConfigError(
            f"Unsupported distribution '{distribution}'. Must be one of: {', '.join(PROFILES)}"
        ) from None
