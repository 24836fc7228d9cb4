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

"""Tests for kagami.build.bootloader module."""

from __future__ import annotations

import io
import zipfile
from pathlib import Path

import pytest
import responses

from kagami.build import bootloader
from kagami.target.profiles import DEBIAN, UBUNTU

MEMTEST_URL = "https://memtest.example/mt86plus.zip"


def memtest_zip(members: dict[str, bytes]) -> bytes:
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w") as archive:
        for name, data in members.items():
            archive.writestr(name, data)
    return buf.getvalue()


class TestHeadersPackage:
    @pytest.mark.parametrize(
        ("kernel", "headers"),
        [
            ("linux-generic", "linux-headers-generic"),
            ("linux-image-amd64", "linux-headers-amd64"),
            ("linux-lowlatency-hwe-24.04", "linux-headers-lowlatency-hwe-24.04"),
            ("custom-kernel", None),
        ],
    )
    def test_mapping(self, kernel: str, headers: str | None) -> None:
        assert bootloader.headers_package(kernel) == headers


class TestKernelSuffix:
    def test_flavour_in_name(self) -> None:
        assert bootloader.kernel_suffix(UBUNTU, "linux-lowlatency") == "lowlatency"
        assert bootloader.kernel_suffix(DEBIAN, "linux-image-amd64") == "amd64"

    def test_profile_default(self) -> None:
        assert bootloader.kernel_suffix(UBUNTU, "linux-generic") == "generic"


class TestFindBootImages:
    """Kernel selection by flavour and Debian version order."""

    def _boot(self, tmp_path: Path, versions: list[str]) -> Path:
        boot = tmp_path / "boot"
        boot.mkdir()
        for version in versions:
            (boot / f"vmlinuz-{version}").write_bytes(b"k")
            (boot / f"initrd.img-{version}").write_bytes(b"i")
        return boot

    def test_highest_version_wins(self, tmp_path: Path) -> None:
        boot = self._boot(tmp_path, ["6.8.0-9-generic", "6.8.0-45-generic", "6.8.0-100-generic"])
        kernel, initrd = bootloader.find_boot_images(boot, "generic")
        assert kernel.name == "vmlinuz-6.8.0-100-generic"
        assert initrd.name == "initrd.img-6.8.0-100-generic"

    def test_flavour_preferred(self, tmp_path: Path) -> None:
        boot = self._boot(tmp_path, ["6.8.0-45-generic", "6.9.0-1-lowlatency"])
        kernel, _ = bootloader.find_boot_images(boot, "generic")
        assert kernel.name == "vmlinuz-6.8.0-45-generic"

    def test_falls_back_to_any_kernel(self, tmp_path: Path) -> None:
        boot = self._boot(tmp_path, ["6.1.0-25-amd64"])
        kernel, initrd = bootloader.find_boot_images(boot, "generic")
        assert kernel.name == "vmlinuz-6.1.0-25-amd64"
        assert initrd is not None

    def test_nothing_found(self, tmp_path: Path) -> None:
        boot = tmp_path / "boot"
        boot.mkdir()
        assert bootloader.find_boot_images(boot, "generic") == (None, None)

    def test_stage_copies_with_fixed_names(self, tmp_path: Path) -> None:
        boot = self._boot(tmp_path, ["6.8.0-45-generic"])
        live = tmp_path / "image" / "casper"
        bootloader.stage_boot_images(boot, live, "generic")
        assert (live / "vmlinuz").read_bytes() == b"k"
        assert (live / "initrd").read_bytes() == b"i"


class TestFetchMemtest:
    """Memtest download is best-effort."""

    def test_extracts_binaries(self, tmp_path: Path, mock_responses: responses.RequestsMock) -> None:
        body = memtest_zip({"memtest64.bin": b"bios", "memtest64.efi": b"efi", "README": b"x"})
        mock_responses.add(responses.GET, MEMTEST_URL, body=body)

        outcome = bootloader.fetch_memtest(MEMTEST_URL, tmp_path / "install")

        assert outcome.ok
        assert (tmp_path / "install" / "memtest86+.bin").read_bytes() == b"bios"
        assert (tmp_path / "install" / "memtest86+.efi").read_bytes() == b"efi"

    def test_download_failure(self, tmp_path: Path, mock_responses: responses.RequestsMock) -> None:
        mock_responses.add(responses.GET, MEMTEST_URL, status=503)
        outcome = bootloader.fetch_memtest(MEMTEST_URL, tmp_path / "install")
        assert not outcome.ok
        assert "download failed" in outcome.detail

    def test_bad_archive(self, tmp_path: Path, mock_responses: responses.RequestsMock) -> None:
        mock_responses.add(responses.GET, MEMTEST_URL, body=b"not a zip")
        assert not bootloader.fetch_memtest(MEMTEST_URL, tmp_path / "install").ok

    def test_archive_without_binaries(self, tmp_path: Path, mock_responses: responses.RequestsMock) -> None:
        mock_responses.add(responses.GET, MEMTEST_URL, body=memtest_zip({"README": b"x"}))
        outcome = bootloader.fetch_memtest(MEMTEST_URL, tmp_path / "install")
        assert not outcome.ok


class TestGrubConfig:
    """Tests for render_grub_config."""

    def test_ubuntu_casper_entries(self) -> None:
        text = bootloader.render_grub_config("Ubuntu LTS", UBUNTU, "calamares")
        assert f"search --set=root --file /{bootloader.MARKER_NAME}" in text
        assert 'menuentry "Try Ubuntu LTS without installing"' in text
        assert "linux /casper/vmlinuz boot=casper nopersistent toram quiet splash ---" in text
        assert 'menuentry "Install Ubuntu LTS"' in text
        assert "integrity-check" in text

    def test_debian_live_entries(self) -> None:
        text = bootloader.render_grub_config("Debian 12.7", DEBIAN, "calamares")
        assert "linux /live/vmlinuz boot=live" in text
        assert "initrd /live/initrd" in text
        assert "casper" not in text

    def test_ubiquity_only_entry(self) -> None:
        text = bootloader.render_grub_config("Ubuntu LTS", UBUNTU, "ubiquity")
        assert "boot=casper only-ubiquity quiet splash" in text

    def test_memtest_and_firmware_entries(self) -> None:
        text = bootloader.render_grub_config("Ubuntu LTS", UBUNTU, "subiquity")
        assert "linux /install/memtest86+.efi" in text
        assert "linux16 /install/memtest86+.bin" in text
        assert "fwsetup" in text


def test_write_marker(tmp_path: Path) -> None:
    marker = bootloader.write_marker(tmp_path)
    assert marker == tmp_path / bootloader.MARKER_NAME
    assert marker.is_file()
