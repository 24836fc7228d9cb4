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

"""Build configuration records.

A build configuration describes the image to produce: distribution, release,
package sets, installer and security policy. It is loaded from the JSON files
Kagami has always used, validated once, and then treated as immutable for the
lifetime of a build. Overrides from the command line produce new records via
``dataclasses.replace``.
"""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field, replace
from pathlib import Path
from typing import Any

from kagami.core.exceptions import ConfigError
from kagami.target.profiles import DESKTOPS, INSTALLERS, SUPPORTED_ARCHITECTURES, get_profile
from kagami.target.release import VALID_RELEASES, infer_distribution


@dataclass(frozen=True)
class AdditionalRepo:
    """An extra APT repository written to sources.list.d.

    ``key`` is a URL to a signing key, an inline ASCII-armored key, or empty.
    """

    name: str
    uri: str
    suite: str
    components: tuple[str, ...] = ()
    key: str = ""


@dataclass(frozen=True)
class SystemConfig:
    hostname: str = "ubuntu-kagami"
    block_snapd: bool = True
    architecture: str = "amd64"
    locale: str = "en_US.UTF-8"
    timezone: str = "UTC"


@dataclass(frozen=True)
class RepositoryConfig:
    mirror: str = ""
    use_proposed: bool = False
    additional_repos: tuple[AdditionalRepo, ...] = ()


@dataclass(frozen=True)
class PackageConfig:
    essential: tuple[str, ...] = ()
    additional: tuple[str, ...] = ()
    desktop: str = "none"
    kernel: str = ""
    remove_list: tuple[str, ...] = ()
    enable_flatpak: bool = False


@dataclass(frozen=True)
class Branding:
    product_name: str = ""
    short_product_name: str = ""
    product_url: str = ""
    support_url: str = ""
    version: str = ""


@dataclass(frozen=True)
class InstallerConfig:
    type: str = "ubiquity"
    slideshow: str = "ubuntu"
    calamares_config: str = ""
    branding: Branding = field(default_factory=Branding)


@dataclass(frozen=True)
class NetworkConfig:
    manager: str = "network-manager"


@dataclass(frozen=True)
class SecurityConfig:
    enable_firewall: bool = False
    disable_services: tuple[str, ...] = ()
    block_snapd_forever: bool = True


@dataclass(frozen=True)
class BuildConfig:
    """The validated description of one image build."""

    distro: str
    release: str
    system: SystemConfig = field(default_factory=SystemConfig)
    repository: RepositoryConfig = field(default_factory=RepositoryConfig)
    packages: PackageConfig = field(default_factory=PackageConfig)
    installer: InstallerConfig = field(default_factory=InstallerConfig)
    network: NetworkConfig = field(default_factory=NetworkConfig)
    security: SecurityConfig = field(default_factory=SecurityConfig)

    @property
    def suppress_snapd(self) -> bool:
        return self.security.block_snapd_forever or self.system.block_snapd

    def with_overrides(self, **sections: Any) -> BuildConfig:
        """Return a copy with top-level fields replaced."""
        return replace(self, **sections)


def default_build_config(release: str, distro: str | None = None) -> BuildConfig:
    """Create a default configuration for a release.

    Args:
        release: Release codename or alias.
        distro: Distribution; inferred from the release when omitted.

    Returns:
        BuildConfig populated with the distribution's default package sets.
    """
    distribution = distro or infer_distribution(release)
    profile = get_profile(distribution)
    is_ubuntu = profile.name == "ubuntu"
    return BuildConfig(
        distro=profile.name,
        release=release,
        system=SystemConfig(hostname=profile.default_hostname, block_snapd=is_ubuntu),
        repository=RepositoryConfig(mirror=profile.default_mirror),
        packages=PackageConfig(
            essential=tuple(profile.essential_for("amd64")),
            additional=("vim", "nano", "curl", "wget", "git", "htop"),
            desktop="none",
            remove_list=profile.default_remove_list,
        ),
        installer=InstallerConfig(type="ubiquity" if is_ubuntu else "calamares", slideshow="ubuntu"),
        security=SecurityConfig(
            block_snapd_forever=is_ubuntu,
            disable_services=profile.default_disabled_services,
        ),
    )


def _section(data: dict[str, Any], key: str) -> dict[str, Any]:
    value = data.get(key) or {}
    if not isinstance(value, dict):
        raise ConfigError(f"Configuration section '{key}' must be an object")
    return value


def _strings(value: Any, key: str) -> tuple[str, ...]:
    if value is None:
        return ()
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise ConfigError(f"Configuration field '{key}' must be a list of strings")
    return tuple(value)


def build_config_from_dict(data: dict[str, Any]) -> BuildConfig:
    """Convert parsed JSON into a BuildConfig.

    Missing sections take their defaults; unknown keys are ignored.

    Raises:
        ConfigError: On missing release or wrongly typed fields.
    """
    if not isinstance(data, dict):
        raise ConfigError("Configuration must be a JSON object")

    release = data.get("release")
    if not release or not isinstance(release, str):
        raise ConfigError("Configuration field 'release' is required")

    system = _section(data, "system")
    repository = _section(data, "repository")
    packages = _section(data, "packages")
    installer = _section(data, "installer")
    branding = _section(installer, "branding")
    network = _section(data, "network")
    security = _section(data, "security")

    mirror = repository.get("mirror", "") or ""
    distro = data.get("distro") or infer_distribution(release, mirror)

    repos = []
    for entry in repository.get("additional_repos") or []:
        if not isinstance(entry, dict) or not entry.get("name") or not entry.get("uri"):
            raise ConfigError("Each additional repository needs at least 'name' and 'uri'")
        repos.append(
            AdditionalRepo(
                name=entry["name"],
                uri=entry["uri"],
                suite=entry.get("suite", ""),
                components=_strings(entry.get("components"), "components"),
                key=entry.get("key", "") or "",
            )
        )

    return BuildConfig(
        distro=distro,
        release=release,
        system=SystemConfig(
            hostname=system.get("hostname") or "kagami",
            block_snapd=bool(system.get("block_snapd", False)),
            architecture=system.get("architecture") or "amd64",
            locale=system.get("locale") or "en_US.UTF-8",
            timezone=system.get("timezone") or "UTC",
        ),
        repository=RepositoryConfig(
            mirror=mirror,
            use_proposed=bool(repository.get("use_proposed", False)),
            additional_repos=tuple(repos),
        ),
        packages=PackageConfig(
            essential=_strings(packages.get("essential"), "essential"),
            additional=_strings(packages.get("additional"), "additional"),
            desktop=packages.get("desktop") or "none",
            kernel=packages.get("kernel") or "",
            remove_list=_strings(packages.get("remove_list"), "remove_list"),
            enable_flatpak=bool(packages.get("enable_flatpak", False)),
        ),
        installer=InstallerConfig(
            type=installer.get("type") or "ubiquity",
            slideshow=installer.get("slideshow") or "",
            calamares_config=installer.get("calamares_config") or "",
            branding=Branding(
                product_name=branding.get("product_name", ""),
                short_product_name=branding.get("short_product_name", ""),
                product_url=branding.get("product_url", ""),
                support_url=branding.get("support_url", ""),
                version=branding.get("version", ""),
            ),
        ),
        network=NetworkConfig(manager=network.get("manager") or "network-manager"),
        security=SecurityConfig(
            enable_firewall=bool(security.get("enable_firewall", False)),
            disable_services=_strings(security.get("disable_services"), "disable_services"),
            block_snapd_forever=bool(security.get("block_snapd_forever", False)),
        ),
    )


def build_config_to_dict(cfg: BuildConfig) -> dict[str, Any]:
    """Serialize a BuildConfig back to the JSON layout."""
    data = asdict(cfg)
    data["repository"]["additional_repos"] = [
        {**repo, "components": list(repo["components"])}
        for repo in data["repository"]["additional_repos"]
    ]
    return data


def load_build_config(path: Path) -> BuildConfig:
    """Load a build configuration from a JSON file.

    Raises:
        ConfigError: If the file cannot be read or parsed.
    """
    try:
        raw = json.loads(Path(path).read_text(encoding="utf-8"))
    except OSError as e:
        raise ConfigError(f"Cannot read configuration {path}: {e}") from e
    except json.JSONDecodeError as e:
        raise ConfigError(f"Invalid JSON in {path}: {e}") from e
    return build_config_from_dict(raw)


def save_build_config(cfg: BuildConfig, path: Path) -> None:
    Path(path).write_text(json.dumps(build_config_to_dict(cfg), indent=2) + "\n", encoding="utf-8")


def validate_build_config(cfg: BuildConfig) -> None:
    """Reject configurations no bootstrap target can satisfy.

    Runs before any filesystem mutation.

    Raises:
        ConfigError: Describing the first invalid field.
    """
    profile = get_profile(cfg.distro)

    valid = VALID_RELEASES[profile.name]
    if cfg.release.lower() not in valid:
        raise ConfigError(
            f"Invalid {profile.title} release '{cfg.release}'. Must be one of: {', '.join(valid)}"
        )

    if cfg.system.architecture not in SUPPORTED_ARCHITECTURES:
        raise ConfigError(
            f"Invalid architecture '{cfg.system.architecture}'. "
            f"Must be one of: {', '.join(SUPPORTED_ARCHITECTURES)}"
        )

    if cfg.packages.desktop not in DESKTOPS:
        raise ConfigError(f"Invalid desktop environment '{cfg.packages.desktop}'")

    if cfg.installer.type not in INSTALLERS:
        raise ConfigError(
            f"Invalid installer type '{cfg.installer.type}'. Must be one of: {', '.join(INSTALLERS)}"
        )

    if cfg.installer.type not in profile.installers:
        raise ConfigError(f"Installer '{cfg.installer.type}' is not available for {profile.title}")

    if not cfg.system.hostname:
        raise ConfigError("Hostname must not be empty")
