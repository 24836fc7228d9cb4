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

"""Pytest fixtures and configuration for Kagami tests."""

from __future__ import annotations

import copy
import tempfile
from collections.abc import Callable, Generator, Mapping, Sequence
from pathlib import Path
from unittest import mock

import pytest
import responses

from kagami.build.chroot import CommandResult, CommandRunner
from kagami.settings import DEFAULT_SETTINGS

KERNEL_VERSION = "6.8.0-45-generic"

MANIFEST = """\
base-files 12ubuntu4
calamares 3.3.5-0ubuntu1
casper 1.486
linux-generic 6.8.0-45.45
os-prober 1.81ubuntu4
sudo 1.9.15p5-3ubuntu5
"""


class FakeRunner(CommandRunner):
    """Records every command and simulates the side effects builds rely on.

    No process is ever spawned. Mount and umount edit a private mounts
    table; debootstrap, mksquashfs, grub-mkstandalone, dd, gpg and xorriso
    create the files they would produce.

    Attributes:
        calls: argv of every command, in order.
        inputs: stdin text of commands that received any.
        failures: Predicates; a command matching one exits 1.
    """

    def __init__(self, mounts_table: Path) -> None:
        super().__init__()
        self.mounts_table = mounts_table
        self.mounts_table.touch()
        self.calls: list[list[str]] = []
        self.inputs: list[str] = []
        self.failures: list[Callable[[list[str]], bool]] = []

    def fail_when(self, predicate: Callable[[list[str]], bool]) -> None:
        self.failures.append(predicate)

    def fail_chroot_command(self, fragment: str) -> None:
        self.fail_when(lambda argv: argv[0] == "chroot" and fragment in argv[-1])

    def chroot_commands(self) -> list[str]:
        return [argv[-1] for argv in self.calls if argv[0] == "chroot"]

    def called(self, program: str) -> list[list[str]]:
        return [argv for argv in self.calls if argv[0] == program]

    def run(
        self,
        argv: Sequence[str],
        *,
        capture: bool = False,
        input_text: str | None = None,
        env: Mapping[str, str] | None = None,
        cwd: Path | None = None,
    ) -> CommandResult:
        args = [str(a) for a in argv]
        self.calls.append(args)
        if input_text is not None:
            self.inputs.append(input_text)
        for predicate in self.failures:
            if predicate(args):
                return CommandResult(args, 1, "", "injected failure")
        return self._simulate(args)

    def _add_mount(self, target: str) -> None:
        with self.mounts_table.open("a") as f:
            f.write(f"none {target} none rw 0 0\n")

    def _remove_mount(self, target: str) -> None:
        lines = self.mounts_table.read_text().splitlines()
        kept = [line for line in lines if line.split()[1] != target]
        self.mounts_table.write_text("".join(line + "\n" for line in kept))

    def _simulate(self, args: list[str]) -> CommandResult:
        program = args[0]
        stdout = ""

        if program == "debootstrap":
            chroot = Path(args[-2])
            (chroot / "etc").mkdir(parents=True, exist_ok=True)
            (chroot / "etc" / "os-release").write_text("ID=ubuntu\n")
            boot = chroot / "boot"
            boot.mkdir(parents=True, exist_ok=True)
            (boot / f"vmlinuz-{KERNEL_VERSION}").write_bytes(b"kernel")
            (boot / f"initrd.img-{KERNEL_VERSION}").write_bytes(b"initrd")
            grub = chroot / "usr/lib/grub/x86_64-efi-signed/grubx64.efi.signed"
            grub.parent.mkdir(parents=True, exist_ok=True)
            grub.write_bytes(b"grub")
        elif program == "mount":
            self._add_mount(args[-1])
        elif program == "umount":
            self._remove_mount(args[-1])
        elif program == "chroot":
            command = args[-1]
            if command.startswith("mount none -t"):
                self._add_mount(str((Path(args[1]) / command.split()[-1].lstrip("/")).resolve()))
            elif command.startswith("dpkg-query"):
                stdout = MANIFEST
        elif program == "mksquashfs":
            Path(args[2]).write_bytes(b"squashfs")
        elif program == "du":
            stdout = f"123456\t{args[-1]}\n"
        elif program == "grub-mkstandalone":
            output = next(a for a in args if a.startswith("--output="))
            Path(output.split("=", 1)[1]).write_bytes(b"core")
        elif program == "dd":
            output = next(a for a in args if a.startswith("of="))
            Path(output.split("=", 1)[1]).write_bytes(b"\0" * 16)
        elif program == "gpg":
            Path(args[args.index("-o") + 1]).write_bytes(b"dearmored")
        elif program == "xorriso":
            Path(args[args.index("-output") + 1]).write_bytes(b"iso")

        return CommandResult(args, 0, stdout, "")


@pytest.fixture
def temp_home(monkeypatch: pytest.MonkeyPatch) -> Generator[Path, None, None]:
    """Create a temporary home directory and set HOME/XDG paths."""
    with tempfile.TemporaryDirectory() as tmpdir:
        home = Path(tmpdir)
        monkeypatch.setenv("HOME", str(home))
        monkeypatch.setenv("XDG_CONFIG_HOME", str(home / ".config"))
        monkeypatch.setenv("XDG_CACHE_HOME", str(home / ".cache"))
        monkeypatch.setattr(Path, "home", lambda: home)
        yield home


@pytest.fixture
def mock_settings(temp_home: Path) -> Path:
    """Create a minimal settings file in the temp home."""
    config_dir = temp_home / ".config" / "kagami"
    config_dir.mkdir(parents=True, exist_ok=True)
    config_file = config_dir / "config.yaml"
    config_file.write_text("""
paths:
  workspace_root: "~/kagami/workspace"
  runs_root: "~/.cache/kagami/runs"

behavior:
  unmount_retries: 2
  unmount_retry_delay: 0
""")
    return config_file


@pytest.fixture
def build_settings(tmp_path: Path) -> dict:
    """Settings for pipeline tests: no network downloads, no retry delay."""
    settings = copy.deepcopy(DEFAULT_SETTINGS)
    settings["paths"]["calamares_settings_ubuntu"] = ""
    settings["paths"]["runs_root"] = str(tmp_path / "runs")
    settings["behavior"]["memtest_url"] = ""
    settings["behavior"]["unmount_retry_delay"] = 0
    return settings


@pytest.fixture
def fake_runner(tmp_path: Path) -> FakeRunner:
    return FakeRunner(tmp_path / "mounts")


@pytest.fixture
def mock_responses() -> Generator[responses.RequestsMock, None, None]:
    """Activate responses mock for HTTP requests."""
    with responses.RequestsMock() as rsps:
        yield rsps


@pytest.fixture
def non_tty_stdout(monkeypatch: pytest.MonkeyPatch) -> None:
    """Mock sys.__stdout__.isatty() to return False."""
    mock_stdout = mock.MagicMock()
    mock_stdout.isatty.return_value = False
    monkeypatch.setattr("sys.__stdout__", mock_stdout)


@pytest.fixture
def tty_stdout(monkeypatch: pytest.MonkeyPatch) -> None:
    """Mock sys.__stdout__.isatty() to return True."""
    mock_stdout = mock.MagicMock()
    mock_stdout.isatty.return_value = True
    mock_stdout.write = lambda x: None
    mock_stdout.flush = lambda: None
    monkeypatch.setattr("sys.__stdout__", mock_stdout)
