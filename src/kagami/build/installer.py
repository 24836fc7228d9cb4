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

"""Desktop environment and installer setup inside the chroot.

Installing the desktop itself is fatal on failure. Everything around it,
installer packages, branding, the minimal live session and cosmetic
refinements, is best-effort and reported as StepOutcome lists.
"""

from __future__ import annotations

import logging
import shutil
from pathlib import Path

from kagami.build.chroot import ChrootSession, Step, run_best_effort, write_chroot_file
from kagami.build.types import StepOutcome
from kagami.core.exceptions import CommandError
from kagami.core.models import Branding, BuildConfig
from kagami.target.profiles import DistroProfile

logger = logging.getLogger(__name__)

APT_INSTALL = "apt-get install -y"

UBIQUITY_PACKAGES = [
    "ubiquity",
    "ubiquity-casper",
    "ubiquity-frontend-gtk",
    "ubiquity-ubuntu-artwork",
]

SLIDESHOW_PACKAGES: dict[str, str] = {
    "ubuntu": "ubiquity-slideshow-ubuntu",
    "kubuntu": "ubiquity-slideshow-kubuntu",
    "xubuntu": "ubiquity-slideshow-xubuntu",
    "lubuntu": "ubiquity-slideshow-lubuntu",
    "ubuntu-mate": "ubiquity-slideshow-ubuntu-mate",
}

UNUSED_SLIDESHOWS = [
    "ubiquity-slideshow-kubuntu",
    "ubiquity-slideshow-xubuntu",
    "ubiquity-slideshow-lubuntu",
    "ubiquity-slideshow-ubuntu-mate",
    "ubiquity-slideshow-ubuntu-budgie",
    "ubiquity-slideshow-ubuntu",
]

BRANDING_CANDIDATES = (
    "etc/calamares/branding/lubuntu/branding.desc",
    "etc/calamares/branding/debian/branding.desc",
    "etc/calamares/branding/default/branding.desc",
)

LIVE_USER = "live"


def desktop_packages(profile: DistroProfile, desktop: str) -> list[str]:
    """Return the package list for a desktop identifier ("none" yields [])."""
    if desktop == "none":
        return []
    try:
        return list(profile.desktop_packages[desktop])
    except KeyError:
        raise CommandError(message=f"Unknown desktop environment: {desktop}") from None


def install_desktop(session: ChrootSession, profile: DistroProfile, desktop: str) -> None:
    """Install the desktop environment packages.

    Raises:
        CommandError: If apt-get fails.
    """
    packages = desktop_packages(profile, desktop)
    if not packages:
        return
    cmd = APT_INSTALL
    if profile.desktop_no_recommends:
        cmd += " --no-install-recommends"
    session.check(f"{cmd} {' '.join(packages)}")


def refine_vanilla_gnome(session: ChrootSession) -> list[StepOutcome]:
    """Strip Ubuntu's GNOME customisations in favour of upstream defaults."""
    commands = {
        "gnome:purge-yaru": (
            "apt-get purge -y ubuntu-session yaru-theme-gnome-shell yaru-theme-gtk "
            "yaru-theme-icon yaru-theme-sound"
        ),
        "gnome:gdm-theme": (
            "update-alternatives --set gdm3-theme.desktop /usr/share/gnome-shell/theme/gnome-shell.css"
        ),
        "gnome:qgnomeplatform": f"{APT_INSTALL} qgnomeplatform-qt5 qgnomeplatform-qt6",
    }
    return run_best_effort(
        session,
        tuple((name, lambda s, c=cmd: s.check(c)) for name, cmd in commands.items()),
    )


def ubiquity_packages(slideshow: str, with_slideshow: bool) -> list[str]:
    packages = list(UBIQUITY_PACKAGES)
    if with_slideshow and slideshow in SLIDESHOW_PACKAGES:
        packages.append(SLIDESHOW_PACKAGES[slideshow])
    return packages


def setup_ubiquity(session: ChrootSession, cfg: BuildConfig) -> list[StepOutcome]:
    """Install Ubiquity.

    Without a desktop the configured slideshow is installed; with a desktop
    the slideshows are purged again since the desktop brings its own.
    """
    with_desktop = cfg.packages.desktop != "none"
    packages = ubiquity_packages(cfg.installer.slideshow, with_slideshow=not with_desktop)
    flags = " --no-install-recommends" if with_desktop else ""
    steps: list[tuple[str, Step]] = [
        ("ubiquity:install", lambda s: s.check(f"{APT_INSTALL}{flags} {' '.join(packages)}")),
    ]
    if with_desktop:
        steps.append(
            ("ubiquity:purge-slideshows", lambda s: s.check(f"apt-get purge -y {' '.join(UNUSED_SLIDESHOWS)} || true"))
        )
    return run_best_effort(session, tuple(steps))


def setup_subiquity(session: ChrootSession) -> list[StepOutcome]:
    return run_best_effort(session, (("subiquity:install", lambda s: s.check(f"{APT_INSTALL} subiquity")),))


def substitute_branding(text: str, branding: Branding) -> str:
    """Replace product fields in a Calamares branding.desc."""
    replacements = {
        "productName:": f"    productName:         {branding.product_name}",
        "shortProductName:": f"    shortProductName:    {branding.short_product_name}",
        "productUrl:": f"    productUrl:          {branding.product_url}",
        "supportUrl:": f"    supportUrl:          {branding.support_url}",
        "version=": f"version={branding.version}",
    }
    lines = text.split("\n")
    for i, line in enumerate(lines):
        stripped = line.strip()
        for prefix, value in replacements.items():
            if stripped.startswith(prefix):
                lines[i] = value
                break
    return "\n".join(lines)


def apply_branding(chroot_dir: Path, branding: Branding) -> None:
    """Rewrite the first branding.desc found in the chroot.

    Raises:
        OSError: If no branding.desc exists or it cannot be rewritten.
    """
    for candidate in BRANDING_CANDIDATES:
        path = chroot_dir / candidate
        if path.is_file():
            path.write_text(substitute_branding(path.read_text(), branding))
            return
    raise FileNotFoundError("could not find branding.desc to modify")


def copy_tree_into(source: Path, dest: Path) -> None:
    """Copy the contents of a directory over an existing directory."""
    if not source.is_dir():
        raise FileNotFoundError(f"{source} is not a directory")
    dest.mkdir(parents=True, exist_ok=True)
    shutil.copytree(source, dest, dirs_exist_ok=True)


LIGHTDM_AUTOLOGIN = f"""[Seat:*]
autologin-user={LIVE_USER}
autologin-user-timeout=0
autologin-session=openbox
user-session=openbox
"""

INSTALLER_DESKTOP_ENTRY = """[Desktop Entry]
Type=Application
Name=Install System
Comment=Launch the system installer
Exec=sudo calamares
Icon=calamares
Terminal=false
Categories=System;
"""

XDG_AUTOSTART_ENTRY = INSTALLER_DESKTOP_ENTRY + "X-GNOME-Autostart-enabled=true\nNoDisplay=false\n"

OPENBOX_AUTOSTART = """#!/bin/bash
# Minimal installer session: panel, wallpaper, helpers, then Calamares.
tint2 &
feh --bg-fill /usr/share/backgrounds/default.png 2>/dev/null || xsetroot -solid "#2d2d2d" &
dunst &
lxpolkit &
nm-applet &
sleep 2
sudo calamares &
"""

POLKIT_RULE = f"""[Allow Calamares]
Identity=unix-user:{LIVE_USER}
Action=*
ResultAny=yes
ResultInactive=yes
ResultActive=yes
"""

DESKTOP_README = """Welcome to the Kagami Minimal Installer!

This is a minimal live environment designed for system installation.
The Calamares installer should start automatically.

If it doesn't start, double-click "Install System" on the desktop
or run: sudo calamares

After installation, remove the USB/CD and reboot.
"""


def _live_user(s: ChrootSession) -> None:
    s.check(f"id -u {LIVE_USER} >/dev/null 2>&1 || useradd -m -G sudo -s /bin/bash {LIVE_USER}")
    s.check(f"echo '{LIVE_USER}:{LIVE_USER}' | chpasswd")
    write_chroot_file(s.chroot_dir, f"/etc/sudoers.d/{LIVE_USER}", f"{LIVE_USER} ALL=(ALL) NOPASSWD: ALL\n", mode=0o440)


def _desktop_shortcut(s: ChrootSession) -> None:
    desktop = f"/home/{LIVE_USER}/Desktop"
    write_chroot_file(s.chroot_dir, f"{desktop}/install-system.desktop", INSTALLER_DESKTOP_ENTRY, mode=0o755)
    write_chroot_file(s.chroot_dir, f"{desktop}/README.txt", DESKTOP_README)
    s.check(f"chown -R {LIVE_USER}:{LIVE_USER} /home/{LIVE_USER}")


LIVE_SESSION_STEPS: tuple[tuple[str, Step], ...] = (
    ("live:user", _live_user),
    ("live:autologin", lambda s: write_chroot_file(s.chroot_dir, "/etc/lightdm/lightdm.conf.d/50-autologin.conf", LIGHTDM_AUTOLOGIN)),
    ("live:xdg-autostart", lambda s: write_chroot_file(s.chroot_dir, "/etc/xdg/autostart/calamares-installer.desktop", XDG_AUTOSTART_ENTRY)),
    ("live:openbox-autostart", lambda s: write_chroot_file(s.chroot_dir, "/etc/xdg/openbox/autostart", OPENBOX_AUTOSTART, mode=0o755)),
    ("live:polkit", lambda s: write_chroot_file(s.chroot_dir, "/etc/polkit-1/localauthority/50-local.d/allow-calamares.pkla", POLKIT_RULE)),
    ("live:shortcut", _desktop_shortcut),
    ("live:lightdm", lambda s: s.check("systemctl enable lightdm || true")),
)


def setup_calamares(
    session: ChrootSession,
    profile: DistroProfile,
    cfg: BuildConfig,
    ubuntu_settings_dir: Path | None = None,
) -> list[StepOutcome]:
    """Install and configure Calamares plus the minimal live session.

    Args:
        session: Chroot session.
        profile: Target distribution profile.
        cfg: Build configuration (branding, custom config directory).
        ubuntu_settings_dir: Checkout of the Lubuntu Calamares settings,
            applied on Ubuntu when present.
    """
    chroot_dir = session.chroot_dir
    dest = chroot_dir / "etc" / "calamares"
    steps: list[tuple[str, Step]] = [
        (
            "calamares:install",
            lambda s: s.check(f"{APT_INSTALL} calamares {profile.calamares_settings_package}"),
        ),
    ]

    if profile.name == "ubuntu" and ubuntu_settings_dir is not None:
        def _lubuntu(s: ChrootSession) -> None:
            if not ubuntu_settings_dir.is_dir():
                raise FileNotFoundError(f"Calamares settings checkout not found at {ubuntu_settings_dir}")
            logger.info("Applying Calamares settings from %s", ubuntu_settings_dir)
            for sub in ("branding", "modules"):
                if (ubuntu_settings_dir / sub).is_dir():
                    copy_tree_into(ubuntu_settings_dir / sub, dest / sub)
            settings = ubuntu_settings_dir / "settings.conf"
            if settings.is_file():
                dest.mkdir(parents=True, exist_ok=True)
                shutil.copy2(settings, dest / "settings.conf")

        steps.append(("calamares:lubuntu-settings", _lubuntu))

    if cfg.installer.branding.product_name:
        steps.append(("calamares:branding", lambda s: apply_branding(chroot_dir, cfg.installer.branding)))

    if cfg.installer.calamares_config:
        source = Path(cfg.installer.calamares_config).expanduser().resolve()
        steps.append(("calamares:custom-config", lambda s: copy_tree_into(source, dest)))

    steps.extend(LIVE_SESSION_STEPS)
    return run_best_effort(session, tuple(steps))


def purge_packages(session: ChrootSession, packages: tuple[str, ...]) -> list[StepOutcome]:
    """Purge the remove-list and autoremove leftovers."""
    steps: list[tuple[str, Step]] = []
    if packages:
        steps.append(("purge:remove-list", lambda s: s.check(f"apt-get purge -y {' '.join(packages)} || true")))
    steps.append(("purge:autoremove", lambda s: s.check("apt-get autoremove -y")))
    return run_best_effort(session, tuple(steps))
