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

"""Tests for kagami.build.sources module."""

from __future__ import annotations

from pathlib import Path

import responses

from kagami.build import sources
from kagami.core.models import AdditionalRepo
from kagami.target.profiles import DEBIAN, UBUNTU

UBUNTU_MIRROR = "http://archive.ubuntu.com/ubuntu/"
DEBIAN_MIRROR = "http://deb.debian.org/debian/"
SECURITY = "http://security.debian.org/debian-security"


def suites(text: str) -> list[str]:
    return [line.split()[2] for line in text.splitlines() if line.startswith("deb ")]


class TestRenderSourcesList:
    """Tests for render_sources_list."""

    def test_ubuntu_pockets(self) -> None:
        text = sources.render_sources_list(UBUNTU, "jammy", UBUNTU_MIRROR)
        assert suites(text) == ["jammy", "jammy-security", "jammy-updates"]
        assert f"deb {UBUNTU_MIRROR} jammy main restricted universe multiverse" in text
        assert text.count("deb-src ") == 3
        assert text.endswith("\n")

    def test_ubuntu_proposed(self) -> None:
        text = sources.render_sources_list(UBUNTU, "noble", UBUNTU_MIRROR, use_proposed=True)
        assert suites(text)[-1] == "noble-proposed"

    def test_debian_uses_security_archive(self) -> None:
        text = sources.render_sources_list(DEBIAN, "bookworm", DEBIAN_MIRROR, security_mirror=SECURITY)
        assert suites(text) == ["bookworm", "bookworm-updates", "bookworm-security"]
        assert f"deb {SECURITY} bookworm-security main contrib non-free non-free-firmware" in text

    def test_sid_has_only_main_suite(self) -> None:
        text = sources.render_sources_list(DEBIAN, "sid", DEBIAN_MIRROR, use_proposed=True)
        assert suites(text) == ["sid"]

    def test_unstable_alias_has_only_main_suite(self) -> None:
        text = sources.render_sources_list(DEBIAN, "unstable", DEBIAN_MIRROR, alias="unstable")
        assert suites(text) == ["unstable"]


class TestRepoLine:
    def test_signed_by(self) -> None:
        repo = AdditionalRepo(name="x", uri="http://r", suite="jammy", components=("main", "extra"))
        assert sources.repo_line(repo, "/etc/apt/keyrings/x.gpg") == (
            "deb [signed-by=/etc/apt/keyrings/x.gpg] http://r jammy main extra"
        )

    def test_without_key(self) -> None:
        repo = AdditionalRepo(name="x", uri="http://r", suite="./")
        assert sources.repo_line(repo, None) == "deb http://r ./"


class TestConfigureAdditionalRepos:
    """Tests for configure_additional_repos."""

    def test_armored_url_key(self, tmp_path: Path, fake_runner, mock_responses: responses.RequestsMock) -> None:
        mock_responses.add(responses.GET, "https://r.example/key.asc", body="-----BEGIN PGP PUBLIC KEY BLOCK-----")
        repo = AdditionalRepo(name="extras", uri="http://r.example", suite="jammy", components=("main",), key="https://r.example/key.asc")

        outcomes = sources.configure_additional_repos((repo,), tmp_path, fake_runner)

        assert all(o.ok for o in outcomes)
        gpg = fake_runner.called("gpg")[0]
        assert gpg[:4] == ["gpg", "--dearmor", "--yes", "-o"]
        assert fake_runner.inputs == ["-----BEGIN PGP PUBLIC KEY BLOCK-----"]
        listing = (tmp_path / "etc/apt/sources.list.d/extras.list").read_text()
        assert "[signed-by=/etc/apt/keyrings/extras.gpg]" in listing

    def test_binary_key_stored_verbatim(self, tmp_path: Path, fake_runner, mock_responses: responses.RequestsMock) -> None:
        mock_responses.add(responses.GET, "https://r.example/key.gpg", body=b"\x99\x01binary")
        repo = AdditionalRepo(name="bin", uri="http://r.example", suite="jammy", key="https://r.example/key.gpg")

        sources.configure_additional_repos((repo,), tmp_path, fake_runner)

        assert (tmp_path / "etc/apt/keyrings/bin.gpg").read_bytes() == b"\x99\x01binary"
        assert fake_runner.called("gpg") == []

    def test_inline_key(self, tmp_path: Path, fake_runner) -> None:
        repo = AdditionalRepo(name="inline", uri="http://r", suite="jammy", key="-----BEGIN PGP-----\nabc")
        sources.configure_additional_repos((repo,), tmp_path, fake_runner)
        assert fake_runner.inputs == ["-----BEGIN PGP-----\nabc"]

    def test_key_download_failure_still_writes_entry(
        self, tmp_path: Path, fake_runner, mock_responses: responses.RequestsMock
    ) -> None:
        mock_responses.add(responses.GET, "https://r.example/key.asc", status=404)
        repo = AdditionalRepo(name="extras", uri="http://r.example", suite="jammy", key="https://r.example/key.asc")

        outcomes = sources.configure_additional_repos((repo,), tmp_path, fake_runner)

        assert [(o.name, o.ok) for o in outcomes] == [("key:extras", False), ("repo:extras", True)]
        listing = (tmp_path / "etc/apt/sources.list.d/extras.list").read_text()
        assert listing == "deb http://r.example jammy\n"

    def test_no_key(self, tmp_path: Path, fake_runner) -> None:
        repo = AdditionalRepo(name="plain", uri="http://r", suite="stable", components=("main",))
        outcomes = sources.configure_additional_repos((repo,), tmp_path, fake_runner)
        assert [o.name for o in outcomes] == ["repo:plain"]
        assert fake_runner.calls == []
