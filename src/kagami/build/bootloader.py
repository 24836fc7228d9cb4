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

"""Boot loader preparation: kernel images, memtest and the GRUB menu."""

from __future__ import annotations

import io
import logging
import shutil
import warnings
import zipfile
from pathlib import Path

import requests

# Suppress python3-apt warning - it's optional and not installable via pip
with warnings.catch_warnings():
    warnings.filterwarnings("ignore", message=".*python.*-apt.*")
    warnings.filterwarnings("ignore", message=".*apt_pkg.*")
    from debian.debian_support import Version

from kagami.build.types import StepOutcome
from kagami.target.profiles import DistroProfile

logger = logging.getLogger(__name__)

MARKER_NAME = "kagami-live"

# Kernel flavour substrings, checked in order.
KERNEL_FLAVOURS = ("lowlatency", "oem", "amd64", "rt")

MEMTEST_MEMBERS = {
    "memtest64.bin": "memtest86+.bin",
    "memtest64.efi": "memtest86+.efi",
}


def headers_package(kernel: str) -> str | None:
    """Derive the headers package matching a kernel package name.

    ``linux-image-X`` maps to ``linux-headers-X`` and ``linux-X`` to
    ``linux-headers-X``; anything else has no headers package.
    """
    if kernel.startswith("linux-image-"):
        return "linux-headers-" + kernel[len("linux-image-"):]
    if kernel.startswith("linux-"):
        return "linux-headers-" + kernel[len("linux-"):]
    return None


def kernel_suffix(profile: DistroProfile, kernel: str) -> str:
    for flavour in KERNEL_FLAVOURS:
        if flavour in kernel:
            return flavour
    return profile.default_kernel_suffix


def _newest(paths: list[Path], prefix: str) -> Path | None:
    if not paths:
        return None
    def version(path: Path) -> Version:
        try:
            return Version(path.name[len(prefix):])
        except ValueError:
            return Version("0")

    return max(paths, key=version)


def find_boot_images(boot_dir: Path, suffix: str) -> tuple[Path | None, Path | None]:
    """Locate the kernel and initrd for a flavour suffix.

    Falls back to any ``vmlinuz-*``/``initrd.img-*`` when the flavour pattern
    matches no kernel. The highest Debian version wins.
    """
    kernels = list(boot_dir.glob(f"vmlinuz-*{suffix}*"))
    initrd_pattern = f"initrd.img-*{suffix}*"
    if not kernels:
        kernels = list(boot_dir.glob("vmlinuz-*"))
        initrd_pattern = "initrd.img-*"
    initrds = list(boot_dir.glob(initrd_pattern))
    return _newest(kernels, "vmlinuz-"), _newest(initrds, "initrd.img-")


def stage_boot_images(boot_dir: Path, live_path: Path, suffix: str) -> tuple[Path | None, Path | None]:
    """Copy the kernel and initrd into the live directory as vmlinuz/initrd."""
    kernel, initrd = find_boot_images(boot_dir, suffix)
    logger.info("Boot images: kernel=%s initrd=%s", kernel, initrd)
    live_path.mkdir(parents=True, exist_ok=True)
    if kernel is not None:
        shutil.copy2(kernel, live_path / "vmlinuz")
    if initrd is not None:
        shutil.copy2(initrd, live_path / "initrd")
    return kernel, initrd


def fetch_memtest(
    url: str,
    install_dir: Path,
    session: requests.Session | None = None,
    timeout: int = 60,
) -> StepOutcome:
    """Download the memtest86+ archive and extract the BIOS and EFI binaries."""
    sess = session or requests.Session()
    try:
        resp = sess.get(url, timeout=timeout)
        resp.raise_for_status()
    except requests.RequestException as e:
        return StepOutcome.failed("memtest", f"download failed: {e}")

    install_dir.mkdir(parents=True, exist_ok=True)
    try:
        with zipfile.ZipFile(io.BytesIO(resp.content)) as archive:
            names = set(archive.namelist())
            extracted = []
            for member, target in MEMTEST_MEMBERS.items():
                if member in names:
                    (install_dir / target).write_bytes(archive.read(member))
                    extracted.append(target)
    except zipfile.BadZipFile as e:
        return StepOutcome.failed("memtest", f"bad archive: {e}")

    if not extracted:
        return StepOutcome.failed("memtest", "archive contained no memtest binaries")
    return StepOutcome.passed("memtest", ", ".join(extracted))


def write_marker(image_dir: Path) -> Path:
    """Create the root marker file the boot menu searches for."""
    marker = image_dir / MARKER_NAME
    marker.touch()
    return marker


def _entry(title: str, live_dir: str, params: str) -> str:
    return (
        f'menuentry "{title}" {{\n'
        f"   linux /{live_dir}/vmlinuz {params} ---\n"
        f"   initrd /{live_dir}/initrd\n"
        "}\n"
    )


def render_grub_config(dist_name: str, profile: DistroProfile, installer: str) -> str:
    """Render grub.cfg for both the BIOS core image and the EFI partition.

    Args:
        dist_name: Display name used in menu titles.
        profile: Distribution profile (live directory and boot parameter).
        installer: Installer type; selects the install entry.
    """
    live = profile.live_dir
    boot = f"boot={profile.boot_param}"

    install_entry = ""
    if installer == "ubiquity":
        install_entry = _entry(f"Install {dist_name}", live, f"{boot} only-ubiquity quiet splash")
    elif installer in ("calamares", "subiquity"):
        install_entry = _entry(f"Install {dist_name}", live, f"{boot} quiet splash")

    parts = [
        f"search --set=root --file /{MARKER_NAME}\n",
        "insmod all_video\ninsmod part_gpt\ninsmod part_msdos\ninsmod fat\ninsmod iso9660\n",
        'set default="0"\nset timeout=30\n',
        _entry(f"Try {dist_name} without installing", live, f"{boot} nopersistent toram quiet splash"),
    ]
    if install_entry:
        parts.append(install_entry)
    parts.append(_entry("Check disc for defects", live, f"{boot} integrity-check quiet splash"))
    parts.append(
        'if [ "$grub_platform" = "efi" ]; then\n'
        "menuentry 'UEFI Firmware Settings' {\n"
        "   fwsetup\n"
        "}\n"
        "\n"
        'menuentry "Test memory Memtest86+ (UEFI)" {\n'
        "   linux /install/memtest86+.efi\n"
        "}\n"
        "else\n"
        'menuentry "Test memory Memtest86+ (BIOS)" {\n'
        "   linux16 /install/memtest86+.bin\n"
        "}\n"
        "fi\n"
    )
    return "\n".join(parts)
