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

"""Permanent snapd suppression for Ubuntu images.

Suppression is layered: each mechanism below blocks snapd on its own, and
they run independently. A failing mechanism is reported in the returned
outcomes but never stops the others.
"""

from __future__ import annotations

from kagami.build.chroot import ChrootSession, Step, run_best_effort, write_chroot_file
from kagami.build.types import StepOutcome

SNAP_PACKAGES = ("snapd", "snap-confine", "ubuntu-core-launcher", "snapd-xdg-open")
PINNED_PACKAGES = ("snapd", "snapd:*", "snapd-unwrapped", *SNAP_PACKAGES[1:])
MARKER_FILE = "/etc/snapd-blocked"

PIN_FILE = "/etc/apt/preferences.d/nosnapd.pref"
SERVICE_OVERRIDE = "/etc/systemd/system/snapd.service.d/override.conf"
SOCKET_OVERRIDE = "/etc/systemd/system/snapd.socket.d/override.conf"
APT_HOOK_CONF = "/etc/apt/apt.conf.d/99-block-snapd"
APT_HOOK_SCRIPT = "/usr/local/bin/block-snapd-hook"
MOTD_FILE = "/etc/update-motd.d/99-snapd-blocked"
PROFILE_FILE = "/etc/profile.d/block-snapd.sh"


def render_pin_file() -> str:
    header = (
        "# Snapd is permanently blocked on this system\n"
        "Explanation: Snapd is permanently blocked on this system to prevent unwanted installation.\n"
    )
    stanzas = [f"Package: {pkg}\nPin: release *\nPin-Priority: -1\n" for pkg in PINNED_PACKAGES]
    return header + "\n".join(stanzas)


SERVICE_OVERRIDE_TEXT = f"""[Unit]
# Snapd is permanently disabled on this system
ConditionPathExists=!{MARKER_FILE}

[Service]
ExecStart=
ExecStart=/bin/false
"""

SOCKET_OVERRIDE_TEXT = f"""[Unit]
ConditionPathExists=!{MARKER_FILE}

[Socket]
ListenStream=
"""

APT_HOOK_CONF_TEXT = f"""// Block snapd package installation
DPkg::Pre-Install-Pkgs {{
  "{APT_HOOK_SCRIPT}";
}};
"""

APT_HOOK_SCRIPT_TEXT = """#!/bin/bash
# Rejects any dpkg transaction that would install snapd.

while read pkg; do
    if [[ "$pkg" == *"snapd"* ]]; then
        echo "==========================================================" >&2
        echo "ERROR: Installation of snapd is BLOCKED on this system!" >&2
        echo "This distribution is configured to never use snapd." >&2
        echo "==========================================================" >&2
        exit 1
    fi
done
"""

MOTD_TEXT = """#!/bin/sh
echo ""
echo "-----------------------------------------------------------"
echo "  WARNING: Snapd is permanently blocked on this system     "
echo "  Snap packages cannot be installed or used                "
echo "-----------------------------------------------------------"
echo ""
"""

PROFILE_TEXT = """# Snapd is blocked on this system
export SNAPD_BLOCKED=1

snap() {
    echo "ERROR: Snapd is permanently blocked on this system" >&2
    return 1
}
"""


def purge_snap_packages(session: ChrootSession) -> None:
    session.check(f"apt-get purge -y {' '.join(SNAP_PACKAGES)} || true")
    session.check("apt-get autoremove -y")
    session.check("rm -rf /var/cache/snapd /var/lib/snapd /var/snap /snap /root/snap")


def write_apt_pin(session: ChrootSession) -> None:
    write_chroot_file(session.chroot_dir, PIN_FILE, render_pin_file())


def write_service_override(session: ChrootSession) -> None:
    write_chroot_file(session.chroot_dir, SERVICE_OVERRIDE, SERVICE_OVERRIDE_TEXT)


def write_socket_override(session: ChrootSession) -> None:
    write_chroot_file(session.chroot_dir, SOCKET_OVERRIDE, SOCKET_OVERRIDE_TEXT)


def write_marker(session: ChrootSession) -> None:
    write_chroot_file(session.chroot_dir, MARKER_FILE, "Snapd is permanently blocked on this system\n")


def install_apt_hook(session: ChrootSession) -> None:
    write_chroot_file(session.chroot_dir, APT_HOOK_SCRIPT, APT_HOOK_SCRIPT_TEXT, mode=0o755)
    write_chroot_file(session.chroot_dir, APT_HOOK_CONF, APT_HOOK_CONF_TEXT)


def write_motd_banner(session: ChrootSession) -> None:
    write_chroot_file(session.chroot_dir, MOTD_FILE, MOTD_TEXT, mode=0o755)


def divert_snap_binary(session: ChrootSession) -> None:
    session.check("dpkg-divert --local --rename --add /usr/bin/snap")
    session.check("ln -sf /bin/false /usr/bin/snap")


def write_profile_warning(session: ChrootSession) -> None:
    write_chroot_file(session.chroot_dir, PROFILE_FILE, PROFILE_TEXT, mode=0o755)


MECHANISMS: tuple[tuple[str, Step], ...] = (
    ("purge", purge_snap_packages),
    ("apt-pin", write_apt_pin),
    ("service-override", write_service_override),
    ("socket-override", write_socket_override),
    ("marker", write_marker),
    ("install-hook", install_apt_hook),
    ("motd", write_motd_banner),
    ("diversion", divert_snap_binary),
    ("profile", write_profile_warning),
)


def suppress_snapd(session: ChrootSession) -> list[StepOutcome]:
    """Apply every snapd suppression mechanism."""
    return run_best_effort(session, MECHANISMS)


def apply_security_extras(
    session: ChrootSession,
    enable_firewall: bool,
    disable_services: tuple[str, ...],
) -> list[StepOutcome]:
    """Optional firewall and service disabling, all best-effort."""
    steps: list[tuple[str, Step]] = []
    if enable_firewall:
        def _firewall(s: ChrootSession) -> None:
            s.check("apt-get install -y ufw")
            s.check("ufw --force enable || systemctl enable ufw")

        steps.append(("firewall", _firewall))

    for service in disable_services:
        def _disable(s: ChrootSession, service: str = service) -> None:
            s.check(f"systemctl disable {service}")

        steps.append((f"disable:{service}", _disable))

    return run_best_effort(session, tuple(steps))
