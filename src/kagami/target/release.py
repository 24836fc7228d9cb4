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

"""Release codename handling.

Build configurations may name a release by alias ("lts", "rolling", "devel"
for Ubuntu; "stable", "testing", "unstable" for Debian). Aliases are resolved
to concrete codenames at the start of a build: Ubuntu aliases through
``distro-info``, Debian aliases through the mirror's ``Release`` file. A failed
lookup is never fatal; the alias itself is used instead.
"""

from __future__ import annotations

import logging
import subprocess
import warnings
from dataclasses import dataclass

import requests

# Suppress python3-apt warning - it's optional and not installable via pip
with warnings.catch_warnings():
    warnings.filterwarnings("ignore", message=".*python.*-apt.*")
    warnings.filterwarnings("ignore", message=".*apt_pkg.*")
    from debian.deb822 import Release

logger = logging.getLogger(__name__)

UBUNTU_LTS_RELEASES = ("focal", "jammy", "noble", "resolute")
UBUNTU_RELEASES = (*UBUNTU_LTS_RELEASES, "devel")
DEBIAN_RELEASES = ("bookworm", "trixie", "sid")

UBUNTU_ALIASES = ("lts", "rolling", "devel")
DEBIAN_ALIASES = ("stable", "testing", "unstable")

# Suite used by debootstrap when "devel" could not be resolved.
FALLBACK_BOOTSTRAP_SUITE = "noble"
FALLBACK_LTS = "noble"

VALID_RELEASES: dict[str, tuple[str, ...]] = {
    "ubuntu": (*UBUNTU_RELEASES, "lts", "rolling"),
    "debian": (*DEBIAN_RELEASES, *DEBIAN_ALIASES),
}


@dataclass
class ResolvedRelease:
    """Outcome of alias resolution.

    Attributes:
        requested: The release string from the build configuration.
        codename: Concrete codename, or the requested string on failure.
        alias: The alias that was resolved, if the request was an alias.
        label: Archive label from the Release file (Debian only).
        version: Archive version from the Release file (Debian only).
        resolved: Whether a network or distro-info lookup succeeded.
    """

    requested: str
    codename: str
    alias: str | None = None
    label: str = ""
    version: str = ""
    resolved: bool = False


def infer_distribution(release: str, mirror: str = "") -> str:
    """Infer the distribution from a release codename or mirror URL."""
    name = release.lower()
    if name in DEBIAN_RELEASES or name in DEBIAN_ALIASES:
        return "debian"
    if "debian" in mirror.lower():
        return "debian"
    return "ubuntu"


def is_alias(distribution: str, release: str) -> bool:
    name = release.lower()
    if distribution == "debian":
        return name in DEBIAN_ALIASES
    return name in UBUNTU_ALIASES


def _distro_info(flag: str) -> str | None:
    """Query ``distro-info`` with one selector flag, returning None on failure."""
    try:
        result = subprocess.run(
            ["distro-info", flag],
            capture_output=True,
            text=True,
            check=True,
            timeout=5,
        )
    except FileNotFoundError:
        logger.warning("distro-info not found; cannot resolve %s", flag)
        return None
    except subprocess.CalledProcessError as e:
        logger.warning("distro-info %s failed: %s", flag, e)
        return None
    except subprocess.TimeoutExpired:
        logger.warning("distro-info %s timed out", flag)
        return None

    series = result.stdout.strip().splitlines()
    return series[-1].strip() if series else None


def resolve_ubuntu_alias(alias: str) -> ResolvedRelease:
    """Resolve "lts", "rolling" or "devel" to an Ubuntu codename.

    "lts" falls back to the last known LTS when distro-info is unavailable;
    the development aliases fall back to the alias as given.
    """
    name = alias.lower()
    if name == "lts":
        series = _distro_info("--lts")
        if series:
            return ResolvedRelease(requested=alias, codename=series, alias=name, resolved=True)
        return ResolvedRelease(requested=alias, codename=FALLBACK_LTS, alias=name)

    series = _distro_info("--devel")
    if series:
        return ResolvedRelease(requested=alias, codename=series, alias="devel", resolved=True)
    return ResolvedRelease(requested=alias, codename=alias, alias="devel")


def release_file_url(mirror: str, suite: str) -> str:
    return f"{mirror.rstrip('/')}/dists/{suite}/Release"


def resolve_debian_alias(
    alias: str,
    mirror: str,
    session: requests.Session | None = None,
    timeout: int = 30,
) -> ResolvedRelease:
    """Resolve a Debian suite alias by reading the mirror's Release file.

    Args:
        alias: "stable", "testing" or "unstable".
        mirror: Debian mirror base URL.
        session: Optional requests session (tests inject one).
        timeout: Request timeout in seconds.

    Returns:
        ResolvedRelease; ``codename`` equals the alias when the lookup fails.
    """
    name = alias.lower()
    fallback = ResolvedRelease(requested=alias, codename=alias, alias=name)
    url = release_file_url(mirror, name)
    sess = session or requests.Session()

    try:
        resp = sess.get(url, timeout=timeout)
        resp.raise_for_status()
    except requests.RequestException as e:
        logger.warning("Could not resolve Debian %s via %s (%s); using alias", name, url, e)
        return fallback

    release = Release(resp.text)
    codename = (release.get("Codename") or "").strip()
    if not codename:
        logger.warning("Release file at %s has no Codename; using alias", url)
        return fallback

    return ResolvedRelease(
        requested=alias,
        codename=codename,
        alias=name,
        label=(release.get("Label") or "").strip(),
        version=(release.get("Version") or "").strip(),
        resolved=True,
    )


def resolve_release(
    distribution: str,
    release: str,
    mirror: str,
    session: requests.Session | None = None,
) -> ResolvedRelease:
    """Resolve any release string to a codename, passing codenames through."""
    if not is_alias(distribution, release):
        return ResolvedRelease(requested=release, codename=release)
    if distribution == "debian":
        return resolve_debian_alias(release, mirror, session=session)
    return resolve_ubuntu_alias(release)


def bootstrap_suite(codename: str) -> str:
    """Return the archive suite to fetch for a codename.

    Unresolved development aliases map to the fallback suite; other aliases
    are lower-cased to match the archive's dists/ names.
    """
    name = codename.lower()
    if name in ("devel", "rolling"):
        return FALLBACK_BOOTSTRAP_SUITE
    if name in DEBIAN_ALIASES:
        return name
    return codename


def display_name(distribution: str, resolved: ResolvedRelease) -> str:
    """Human-readable distribution name used in boot menus and disk defines."""
    if distribution == "debian":
        if resolved.label and resolved.version:
            return f"{resolved.label} {resolved.version}"
        if resolved.alias:
            if resolved.label:
                return f"{resolved.label} {resolved.alias.title()}"
            return f"Debian {resolved.alias.title()}"
        return f"Debian ({resolved.codename})"

    if resolved.codename in UBUNTU_LTS_RELEASES or resolved.alias == "lts":
        return "Ubuntu LTS"
    if resolved.alias == "devel" or resolved.codename == "devel":
        return "Ubuntu Rolling"
    return "Ubuntu Custom"
