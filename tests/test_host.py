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

"""Tests for kagami.host module."""

from __future__ import annotations

from pathlib import Path
from unittest import mock

import pytest

from kagami import host
from kagami.build.chroot import CommandResult
from kagami.core.exceptions import CommandError


def make_root(tmp_path: Path, os_release: str, debian_version: str | None = None) -> Path:
    root = tmp_path / "root"
    (root / "etc" / "apt").mkdir(parents=True)
    (root / "etc" / "os-release").write_text(os_release)
    if debian_version is not None:
        (root / "etc" / "debian_version").write_text(debian_version)
    return root


def which_all(name: str) -> str:
    return f"/usr/bin/{name}"


def which_apt(name: str) -> str | None:
    return None if name == "rpm" else f"/usr/bin/{name}"


class TestIsAptBased:
    """Tests for the APT host check."""

    def test_ubuntu(self, tmp_path: Path) -> None:
        root = make_root(tmp_path, 'ID=ubuntu\nNAME="Ubuntu"\n', "trixie/sid\n")
        with mock.patch.object(host.shutil, "which", side_effect=which_apt):
            assert host.is_apt_based(root)

    def test_debian_os_release_only(self, tmp_path: Path) -> None:
        root = make_root(tmp_path, "ID=debian\n")
        with mock.patch.object(host.shutil, "which", side_effect=which_apt):
            assert host.is_apt_based(root)

    def test_missing_apt_get(self, tmp_path: Path) -> None:
        root = make_root(tmp_path, "ID=ubuntu\n")
        with mock.patch.object(host.shutil, "which", return_value=None):
            assert not host.is_apt_based(root)

    def test_alt_linux_rejected(self, tmp_path: Path) -> None:
        root = make_root(tmp_path, 'ID=altlinux\nNAME="ALT Linux"\n')
        with mock.patch.object(host.shutil, "which", side_effect=which_all):
            assert not host.is_apt_based(root)

    def test_no_etc_apt(self, tmp_path: Path) -> None:
        root = tmp_path / "root"
        (root / "etc").mkdir(parents=True)
        (root / "etc" / "os-release").write_text("ID=ubuntu\n")
        with mock.patch.object(host.shutil, "which", side_effect=which_apt):
            assert not host.is_apt_based(root)

    def test_unrelated_distribution(self, tmp_path: Path) -> None:
        root = make_root(tmp_path, "ID=arch\n")
        with mock.patch.object(host.shutil, "which", side_effect=which_apt):
            assert not host.is_apt_based(root)


class TestIsContainer:
    def test_dockerenv(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.delenv("DISTROBOX_ENTER_PATH", raising=False)
        (tmp_path / ".dockerenv").touch()
        assert host.is_container(tmp_path)

    def test_podman(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.delenv("DISTROBOX_ENTER_PATH", raising=False)
        (tmp_path / "run").mkdir()
        (tmp_path / "run" / ".containerenv").touch()
        assert host.is_container(tmp_path)

    def test_distrobox(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("DISTROBOX_ENTER_PATH", "/usr/bin/distrobox-enter")
        assert host.is_container(tmp_path)

    def test_bare_metal(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.delenv("DISTROBOX_ENTER_PATH", raising=False)
        assert not host.is_container(tmp_path)


class FakeDpkg:
    """Answers `dpkg -s` from a set and records apt-get calls."""

    def __init__(self, installed: set[str], install_ok: bool = True, installs: bool = True) -> None:
        self.installed = installed
        self.install_ok = install_ok
        self.installs = installs
        self.calls: list[list[str]] = []

    def run(self, argv, *, capture=False, input_text=None, env=None, cwd=None) -> CommandResult:
        args = [str(a) for a in argv]
        self.calls.append(args)
        if args[:2] == ["dpkg", "-s"]:
            if args[2] in self.installed:
                return CommandResult(args, 0, "Status: install ok installed\n")
            return CommandResult(args, 1, "", "not installed")
        if args[:2] == ["apt-get", "install"]:
            if not self.install_ok:
                return CommandResult(args, 100, "", "E: broken")
            if self.installs:
                self.installed.update(args[3:])
        return CommandResult(args, 0)


class TestDependencies:
    """Tests for check_dependencies and install_dependencies."""

    def test_check_partitions_packages(self) -> None:
        runner = FakeDpkg({"debootstrap", "xorriso"})
        status = host.check_dependencies(runner)
        assert status.installed == ["debootstrap", "xorriso"]
        assert "squashfs-tools" in status.missing
        assert not status.complete

    def test_install_nothing_missing(self) -> None:
        runner = FakeDpkg(set(host.REQUIRED_HOST_PACKAGES))
        assert host.install_dependencies(runner).complete
        assert not any(c[0] == "apt-get" for c in runner.calls)

    def test_install_missing(self) -> None:
        runner = FakeDpkg({"debootstrap"})
        status = host.install_dependencies(runner)
        assert status.complete
        install = next(c for c in runner.calls if c[:2] == ["apt-get", "install"])
        assert "debootstrap" not in install
        assert "xorriso" in install

    def test_install_failure(self) -> None:
        with pytest.raises(CommandError, match="Failed to install"):
            host.install_dependencies(FakeDpkg(set(), install_ok=False))

    def test_still_missing_after_install(self) -> None:
        with pytest.raises(CommandError, match="Some packages failed"):
            host.install_dependencies(FakeDpkg(set(), installs=False))


def test_probe_host_collects_facts() -> None:
    with mock.patch.object(host.platform, "system", return_value="Linux"), mock.patch.object(
        host, "is_apt_based", return_value=True
    ), mock.patch.object(host, "is_root", return_value=False), mock.patch.object(
        host, "is_container", return_value=True
    ):
        facts = host.probe_host()
    assert facts == host.HostFacts(is_linux=True, is_apt_based=True, is_root=False, in_container=True)
