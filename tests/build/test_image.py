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

"""Tests for kagami.build.image module."""

from __future__ import annotations

import hashlib
from pathlib import Path

import pytest

from kagami.build import image
from kagami.core.exceptions import BootComponentMissingError, CommandError
from kagami.target.profiles import DEBIAN, UBUNTU

MANIFEST = """\
base-files 12ubuntu4
calamares 3.3.5-0ubuntu1
casper 1.486
os-prober 1.81ubuntu4
sudo 1.9.15p5-3ubuntu5
"""


class TestManifests:
    """The desktop manifest is a filtered subset of the full one."""

    def test_filter_drops_installer_packages(self) -> None:
        filtered = image.filter_manifest(MANIFEST, UBUNTU.manifest_exclude)
        assert "calamares" not in filtered
        assert "casper" not in filtered
        assert "os-prober" not in filtered
        assert "sudo 1.9.15p5-3ubuntu5\n" in filtered

    def test_desktop_manifest_is_subset(self, tmp_path: Path) -> None:
        full, desktop = image.write_manifests(tmp_path / "casper", MANIFEST, UBUNTU.manifest_exclude)
        full_lines = set(full.read_text().splitlines())
        desktop_lines = set(desktop.read_text().splitlines())
        assert desktop_lines < full_lines

    def test_debian_excludes_live_boot(self) -> None:
        filtered = image.filter_manifest("live-boot 1:20230131\nbash 5.2\n", DEBIAN.manifest_exclude)
        assert filtered == "bash 5.2\n"

    def test_empty_manifest(self) -> None:
        assert image.filter_manifest("", UBUNTU.manifest_exclude) == ""


def test_diskdefines() -> None:
    text = image.render_diskdefines("Ubuntu LTS", "jammy", "amd64")
    assert "#define DISKNAME  Ubuntu LTS jammy\n" in text
    assert "#define ARCHamd64  1\n" in text


class TestSquashfs:
    def test_args(self, tmp_path: Path) -> None:
        args = image.squashfs_args(tmp_path / "chroot", tmp_path / "fs.squashfs")
        assert args[:3] == ["mksquashfs", str(tmp_path / "chroot"), str(tmp_path / "fs.squashfs")]
        assert "-noappend" in args
        assert "-no-xattrs" not in args
        for pattern in image.SQUASHFS_EXCLUDES:
            assert pattern in args

    def test_excludes_live_mount_points(self, tmp_path: Path) -> None:
        args = image.squashfs_args(tmp_path / "chroot", tmp_path / "fs.squashfs")
        excluded = [args[i + 1] for i, arg in enumerate(args) if arg == "-e"]
        for pattern in ("dev/*", "run/*", "proc/*", "sys/*"):
            assert pattern in excluded
        assert "-wildcards" in args

    def test_container_drops_xattrs(self, tmp_path: Path) -> None:
        assert "-no-xattrs" in image.squashfs_args(tmp_path, tmp_path / "x", in_container=True)

    def test_build_records_size(self, tmp_path: Path, fake_runner) -> None:
        live = tmp_path / "casper"
        live.mkdir()
        dest = image.build_squashfs(fake_runner, tmp_path / "chroot", live)
        assert dest.is_file()
        assert (live / "filesystem.size").read_text() == "123456"

    def test_mksquashfs_failure(self, tmp_path: Path, fake_runner) -> None:
        fake_runner.fail_when(lambda argv: argv[0] == "mksquashfs")
        with pytest.raises(CommandError, match="mksquashfs"):
            image.build_squashfs(fake_runner, tmp_path / "chroot", tmp_path)


class TestLoaderSearch:
    """EFI loaders are found on the host first, then in the chroot."""

    def _place(self, root: Path, relative: str, data: bytes = b"x") -> Path:
        path = root / relative.lstrip("/")
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)
        return path

    def test_host_before_chroot(self, tmp_path: Path) -> None:
        host, chroot = tmp_path / "host", tmp_path / "chroot"
        expected = self._place(host, image.GRUB_EFI_PATHS[0], b"host")
        self._place(chroot, image.GRUB_EFI_PATHS[0], b"chroot")
        assert image.LoaderSearch(chroot, host).locate(image.GRUB_EFI_PATHS) == expected

    def test_walk_skips_virtual_filesystems(self, tmp_path: Path) -> None:
        chroot = tmp_path / "chroot"
        self._place(chroot, "proc/1/root/grubx64.efi")
        assert image.LoaderSearch(chroot, tmp_path / "host").search_chroot(image.GRUB_EFI_NAMES) is None

        found = self._place(chroot, "opt/vendor/grubx64.efi")
        assert image.LoaderSearch(chroot, tmp_path / "host").search_chroot(image.GRUB_EFI_NAMES) == found

    def test_stage_copies_loaders(self, tmp_path: Path) -> None:
        host, chroot = tmp_path / "host", tmp_path / "chroot"
        self._place(host, image.SHIM_PATHS[0], b"shim")
        self._place(chroot, image.GRUB_EFI_PATHS[1], b"grub")
        isolinux = tmp_path / "isolinux"

        outcomes = image.stage_efi_loaders(isolinux, image.LoaderSearch(chroot, host))

        assert (isolinux / "bootx64.efi").read_bytes() == b"shim"
        assert (isolinux / "grubx64.efi").read_bytes() == b"grub"
        by_name = {o.name: o.ok for o in outcomes}
        assert by_name == {"bootx64.efi": True, "mmx64.efi": False, "grubx64.efi": True}

    def test_missing_grub_is_fatal(self, tmp_path: Path) -> None:
        (tmp_path / "chroot").mkdir()
        with pytest.raises(BootComponentMissingError) as excinfo:
            image.stage_efi_loaders(tmp_path / "isolinux", image.LoaderSearch(tmp_path / "chroot", tmp_path / "host"))
        assert excinfo.value.exit_code == 5
        assert excinfo.value.component == "grubx64.efi"


class TestBootImages:
    def test_efi_image(self, tmp_path: Path, fake_runner) -> None:
        isolinux = tmp_path / "isolinux"
        isolinux.mkdir()
        (isolinux / "grub.cfg").write_text("menuentry\n")
        (isolinux / "grubx64.efi").write_bytes(b"grub")

        efi = image.build_efi_image(fake_runner, isolinux)

        assert efi == isolinux / "efiboot.img"
        assert fake_runner.called("mkfs.vfat")[0] == ["mkfs.vfat", "-F", "16", str(efi)]
        copied = [argv[-1] for argv in fake_runner.called("mcopy")]
        assert "::efi/boot/grubx64.efi" in copied
        assert "::efi/boot/bootx64.efi" not in copied
        assert {"::efi/boot/grub.cfg", "::efi/ubuntu/grub.cfg", "::efi/debian/grub.cfg"} <= set(copied)

    def test_bios_image_is_cdboot_then_core(self, tmp_path: Path, fake_runner) -> None:
        isolinux = tmp_path / "isolinux"
        isolinux.mkdir()
        (isolinux / "grub.cfg").write_text("menuentry\n")
        cdboot = tmp_path / "cdboot.img"
        cdboot.write_bytes(b"cdboot")

        bios = image.build_bios_image(fake_runner, isolinux, cdboot=cdboot)

        assert bios.read_bytes() == b"cdboot" + b"core"

    def test_bios_image_failure(self, tmp_path: Path, fake_runner) -> None:
        fake_runner.fail_when(lambda argv: argv[0] == "grub-mkstandalone")
        with pytest.raises(CommandError):
            image.build_bios_image(fake_runner, tmp_path, cdboot=tmp_path / "cdboot.img")


class TestChecksums:
    """md5sum.txt covers every file outside isolinux/."""

    def test_excludes_isolinux_and_itself(self, tmp_path: Path) -> None:
        (tmp_path / "casper").mkdir()
        (tmp_path / "casper" / "vmlinuz").write_bytes(b"kernel")
        (tmp_path / "isolinux").mkdir()
        (tmp_path / "isolinux" / "bios.img").write_bytes(b"bios")
        (tmp_path / "kagami-live").touch()

        target = image.write_checksums(tmp_path)
        lines = target.read_text().splitlines()

        paths = [line.split("  ", 1)[1] for line in lines]
        assert paths == ["./casper/vmlinuz", "./kagami-live"]
        assert lines[0].split()[0] == hashlib.md5(b"kernel").hexdigest()

    def test_rewrite_does_not_list_old_sums(self, tmp_path: Path) -> None:
        (tmp_path / "a").write_text("a")
        image.write_checksums(tmp_path)
        lines = image.write_checksums(tmp_path).read_text().splitlines()
        assert len(lines) == 1


class TestMastering:
    def test_volume_id(self) -> None:
        assert image.volume_id("jammy", "amd64") == "KAGAMI_JAMMY_AMD64"

    def test_xorriso_args_with_hybrid(self, tmp_path: Path) -> None:
        mbr = tmp_path / "boot_hybrid.img"
        args = image.xorriso_args(tmp_path, tmp_path / "out.iso", "VOL", mbr)
        assert args[:3] == ["xorriso", "-as", "mkisofs"]
        assert args[args.index("--grub2-mbr") + 1] == str(mbr)
        assert args[args.index("-volid") + 1] == "VOL"
        assert args[-1] == str(tmp_path)

    def test_xorriso_args_without_hybrid(self, tmp_path: Path) -> None:
        assert "--grub2-mbr" not in image.xorriso_args(tmp_path, tmp_path / "out.iso", "VOL", None)

    def test_master_iso(self, tmp_path: Path, fake_runner) -> None:
        mbr = tmp_path / "boot_hybrid.img"
        mbr.write_bytes(b"mbr")
        iso, hybrid = image.master_iso(fake_runner, tmp_path / "image", tmp_path / "out" / "k.iso", "VOL", hybrid_mbr=mbr)
        assert iso.is_file()
        assert hybrid

    def test_master_iso_without_hybrid(self, tmp_path: Path, fake_runner) -> None:
        _, hybrid = image.master_iso(
            fake_runner, tmp_path / "image", tmp_path / "k.iso", "VOL", hybrid_mbr=tmp_path / "absent"
        )
        assert not hybrid
