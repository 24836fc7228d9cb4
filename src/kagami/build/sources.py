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

"""APT sources for the target system.

Writes ``/etc/apt/sources.list`` for the base archive and one
``sources.list.d`` entry per additional repository, fetching signing keys
into ``/etc/apt/keyrings``.
"""

from __future__ import annotations

import logging
from pathlib import Path

import requests

from kagami.build.chroot import CommandRunner
from kagami.build.types import StepOutcome
from kagami.core.models import AdditionalRepo
from kagami.target.profiles import DistroProfile

logger = logging.getLogger(__name__)

KEYRINGS_DIR = "etc/apt/keyrings"
SOURCES_LIST_D = "etc/apt/sources.list.d"


def _pair(mirror: str, suite: str, components: str) -> list[str]:
    return [f"deb {mirror} {suite} {components}", f"deb-src {mirror} {suite} {components}"]


def render_sources_list(
    profile: DistroProfile,
    codename: str,
    mirror: str,
    *,
    security_mirror: str = "http://security.debian.org/debian-security",
    use_proposed: bool = False,
    alias: str | None = None,
) -> str:
    """Render sources.list for the base archive.

    Args:
        profile: Target distribution profile.
        codename: Resolved release codename.
        mirror: Archive mirror URL.
        security_mirror: Debian security archive URL.
        use_proposed: Add the -proposed pocket (ignored for sid/unstable).
        alias: Alias the codename was resolved from, if any.

    Returns:
        File content ending in a newline.
    """
    comps = profile.components
    unstable = codename == "sid" or alias == "unstable"
    blocks: list[list[str]] = []

    if profile.name == "debian":
        blocks.append(_pair(mirror, codename, comps))
        if not unstable:
            blocks.append(_pair(mirror, f"{codename}-updates", comps))
            blocks.append(_pair(security_mirror, f"{codename}-security", comps))
    else:
        blocks.append(_pair(mirror, codename, comps))
        blocks.append(_pair(mirror, f"{codename}-security", comps))
        blocks.append(_pair(mirror, f"{codename}-updates", comps))

    if use_proposed and not unstable:
        blocks.append(_pair(mirror, f"{codename}-proposed", comps))

    return "\n\n".join("\n".join(block) for block in blocks) + "\n"


def repo_line(repo: AdditionalRepo, key_path: str | None) -> str:
    parts = ["deb"]
    if key_path:
        parts.append(f"[signed-by={key_path}]")
    parts.extend([repo.uri, repo.suite, *repo.components])
    return " ".join(p for p in parts if p)


def _is_url(key: str) -> bool:
    return key.startswith(("http://", "https://"))


def install_repo_key(
    repo: AdditionalRepo,
    chroot_dir: Path,
    runner: CommandRunner,
    session: requests.Session | None = None,
    timeout: int = 30,
) -> StepOutcome:
    """Place a repository's signing key in the chroot keyring directory.

    Binary keys (URLs ending in ``.gpg``) are stored verbatim; armored keys,
    downloaded or inline, are converted with ``gpg --dearmor``.
    """
    name = f"key:{repo.name}"
    keyrings = chroot_dir / KEYRINGS_DIR
    keyrings.mkdir(parents=True, exist_ok=True)
    key_path = keyrings / f"{repo.name}.gpg"

    armored = repo.key
    if _is_url(repo.key):
        sess = session or requests.Session()
        try:
            resp = sess.get(repo.key, timeout=timeout)
            resp.raise_for_status()
        except requests.RequestException as e:
            return StepOutcome.failed(name, f"download of {repo.key} failed: {e}")
        if repo.key.endswith(".gpg"):
            key_path.write_bytes(resp.content)
            return StepOutcome.passed(name, str(key_path))
        armored = resp.text

    result = runner.run(["gpg", "--dearmor", "--yes", "-o", str(key_path)], input_text=armored)
    if not result.ok:
        return StepOutcome.failed(name, f"gpg --dearmor failed: {result.stderr.strip()}")
    return StepOutcome.passed(name, str(key_path))


def configure_additional_repos(
    repos: tuple[AdditionalRepo, ...],
    chroot_dir: Path,
    runner: CommandRunner,
    session: requests.Session | None = None,
) -> list[StepOutcome]:
    """Write one list file per additional repository.

    Key retrieval failures are reported but the entry is still written,
    without ``signed-by`` when no key file exists.
    """
    outcomes: list[StepOutcome] = []
    list_dir = chroot_dir / SOURCES_LIST_D
    list_dir.mkdir(parents=True, exist_ok=True)

    for repo in repos:
        logger.info("Adding repository %s", repo.name)
        key_ref = None
        if repo.key:
            outcome = install_repo_key(repo, chroot_dir, runner, session=session)
            outcomes.append(outcome)
            if (chroot_dir / KEYRINGS_DIR / f"{repo.name}.gpg").exists():
                key_ref = f"/{KEYRINGS_DIR}/{repo.name}.gpg"

        try:
            (list_dir / f"{repo.name}.list").write_text(repo_line(repo, key_ref) + "\n")
        except OSError as e:
            outcomes.append(StepOutcome.failed(f"repo:{repo.name}", str(e)))
        else:
            outcomes.append(StepOutcome.passed(f"repo:{repo.name}"))
    return outcomes
