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

"""The fifteen build phases.

Each phase is a plain function taking the shared BuildContext and returning
a PhaseResult. Fatal failures are returned as failed results or raised as
KagamiError subclasses; the pipeline converts both into a failed outcome.
Best-effort sub-steps are recorded on the context and surface as warnings.
"""

from __future__ import annotations

import platform
import shutil
from pathlib import Path
from typing import TYPE_CHECKING

from kagami.build import bootloader, image, installer, sources, suppression
from kagami.build.chroot import write_chroot_file
from kagami.build.errors import (
    EXIT_BOOT_COMPONENT_MISSING,
    EXIT_COMMAND_FAILED,
    EXIT_HOST_ERROR,
    EXIT_TOOL_MISSING,
    log_phase_event,
    phase_warning,
)
from kagami.build.tools import check_required_tools, get_missing_tools_message
from kagami.build.types import Phase, PhaseResult, PhaseStep
from kagami.core.run import activity
from kagami.host import probe_host
from kagami.target.release import bootstrap_suite, display_name, resolve_release

if TYPE_CHECKING:
    from kagami.build.pipeline import BuildContext

DEBOOTSTRAP_CONTAINER_HINT = (
    "In a container, debootstrap requires '--privileged' or 'CAP_MKNOD' to create device nodes."
)

FLATHUB_REMOTE = "https://flathub.org/repo/flathub.flatpakrepo"
FLATPAK_PLUGINS = {
    "gnome": "gnome-software-plugin-flatpak",
    "kde": "plasma-discover-backend-flatpak",
}


def resolve_phase(ctx: BuildContext) -> PhaseResult:
    """Resolve release aliases to a concrete codename.

    Never fails: an unresolvable alias is carried through unchanged and the
    bootstrap suite falls back accordingly.
    """
    cfg = ctx.config
    resolved = resolve_release(ctx.profile.name, cfg.release, ctx.mirror, session=ctx.http)
    ctx.codename = resolved.codename
    ctx.alias = resolved.alias
    ctx.display_name = display_name(ctx.profile.name, resolved)

    if resolved.alias and not resolved.resolved:
        phase_warning(
            ctx,
            "resolve",
            f"Could not resolve '{cfg.release}'; continuing with '{resolved.codename}'",
            requested=cfg.release,
        )
    log_phase_event(
        ctx,
        "resolve",
        f"{ctx.display_name}: {cfg.release} -> {ctx.codename}",
        "resolve.done",
        requested=cfg.release,
        codename=ctx.codename,
        alias=ctx.alias,
        display_name=ctx.display_name,
    )
    return PhaseResult.ok(ctx.codename)


def prerequisites_phase(ctx: BuildContext) -> PhaseResult:
    """Check the host platform, privileges and required tools.

    Side Effects:
        Probes the host when the context carries no host facts.
    """
    if ctx.host is None:
        ctx.host = probe_host()
        ctx.session.in_container = ctx.host.in_container
    host = ctx.host

    if not host.is_linux:
        return PhaseResult.fail(EXIT_HOST_ERROR, f"Kagami requires Linux (running on {platform.system()})")
    if not host.is_apt_based:
        return PhaseResult.fail(EXIT_HOST_ERROR, "Kagami requires an APT-based host (Debian or Ubuntu)")
    if not host.is_root:
        return PhaseResult.fail(EXIT_HOST_ERROR, "Kagami must be run as root")

    if host.in_container:
        activity("prereq", "Container detected; mounts and debootstrap need a privileged container")

    tool_check = check_required_tools()
    if not tool_check.is_complete():
        for line in get_missing_tools_message(tool_check.missing).splitlines():
            activity("prereq", line)
        return PhaseResult.fail(EXIT_TOOL_MISSING, f"Missing required tools: {', '.join(tool_check.missing)}")

    log_phase_event(
        ctx,
        "prereq",
        "Host checks passed",
        "prereq.done",
        in_container=host.in_container,
    )
    return PhaseResult.ok()


def workspace_phase(ctx: BuildContext) -> PhaseResult:
    """Lock the workspace and create its directory layout.

    Existing directories and their contents are left untouched.
    """
    ctx.lock.acquire()
    created = ctx.workspace.create()
    log_phase_event(
        ctx,
        "workspace",
        f"Workspace ready at {ctx.workspace.root} ({len(created)} directories created)",
        "workspace.ready",
        root=str(ctx.workspace.root),
        created=[str(p) for p in created],
    )
    return PhaseResult.ok()


def bootstrap_phase(ctx: BuildContext) -> PhaseResult:
    """Populate the chroot with debootstrap unless it already holds a system."""
    ws = ctx.workspace
    if ws.is_bootstrapped():
        log_phase_event(ctx, "bootstrap", "Chroot already bootstrapped, skipping", "bootstrap.skipped")
        return PhaseResult.ok("skipped", skipped=True)

    suite = bootstrap_suite(ctx.codename)
    if suite.lower() != ctx.codename.lower():
        phase_warning(ctx, "bootstrap", f"No archive suite for '{ctx.codename}'; bootstrapping {suite}")

    argv = [
        "debootstrap",
        f"--arch={ctx.config.system.architecture}",
        "--variant=minbase",
        suite,
        str(ws.chroot_dir),
        ctx.mirror,
    ]
    activity("bootstrap", f"Bootstrapping {suite} from {ctx.mirror}")
    result = ctx.runner.run(argv)
    if not result.ok:
        message = f"debootstrap exited with {result.returncode}"
        if ctx.in_container:
            message = f"{message}\n[TIP] {DEBOOTSTRAP_CONTAINER_HINT}"
        return PhaseResult.fail(EXIT_COMMAND_FAILED, message)

    log_phase_event(ctx, "bootstrap", f"Bootstrapped {suite}", "bootstrap.done", suite=suite)
    return PhaseResult.ok(suite=suite)


def mount_phase(ctx: BuildContext) -> PhaseResult:
    mounted = ctx.session.mount_binds()
    log_phase_event(ctx, "mount", f"Bind mounts ready ({len(mounted)} new)", "mount.done", mounted=mounted)
    return PhaseResult.ok()


def configure_phase(ctx: BuildContext) -> PhaseResult:
    """Configure identity, package sources and the base system.

    Ordered sub-steps; everything but the internal mounts and the
    additional repositories is fatal.
    """
    cfg = ctx.config
    session = ctx.session
    chroot = ctx.workspace.chroot_dir

    write_chroot_file(chroot, "/etc/hostname", cfg.system.hostname + "\n")
    write_chroot_file(
        chroot,
        "/etc/apt/sources.list",
        sources.render_sources_list(
            ctx.profile,
            bootstrap_suite(ctx.codename),
            ctx.mirror,
            security_mirror=ctx.settings.get("mirrors", {}).get(
                "debian_security", "http://security.debian.org/debian-security"
            ),
            use_proposed=cfg.repository.use_proposed,
            alias=ctx.alias,
        ),
    )

    for point, ok in session.mount_internal():
        if not ok:
            phase_warning(ctx, "configure", f"Could not mount {point} inside the chroot")

    if cfg.repository.additional_repos:
        ctx.record(
            "configure",
            sources.configure_additional_repos(
                cfg.repository.additional_repos, chroot, ctx.runner, session=ctx.http
            ),
        )

    session.check("apt-get update")
    session.check("apt-get install -y libterm-readline-gnu-perl systemd-sysv")

    write_chroot_file(chroot, "/etc/default/locale", f"LANG={cfg.system.locale}\n")
    write_chroot_file(chroot, "/etc/timezone", cfg.system.timezone + "\n")
    session.check(f"ln -fs /usr/share/zoneinfo/{cfg.system.timezone} /etc/localtime")

    session.check("dbus-uuidgen > /etc/machine-id")
    session.check("mkdir -p /var/lib/dbus && ln -fs /etc/machine-id /var/lib/dbus/machine-id")

    # Keep package scripts from talking to the host's init.
    session.check("dpkg-divert --local --rename --add /sbin/initctl")
    session.check("ln -sf /bin/true /sbin/initctl")

    log_phase_event(ctx, "configure", "System configured", "configure.done", codename=ctx.codename)
    return PhaseResult.ok()


def suppression_phase(ctx: BuildContext) -> PhaseResult:
    """Suppress snapd on Ubuntu and apply optional security extras."""
    cfg = ctx.config
    if ctx.profile.name == "ubuntu" and cfg.suppress_snapd:
        activity("suppress", "Suppressing snapd")
        ctx.record("suppress", suppression.suppress_snapd(ctx.session))
    else:
        activity("suppress", "Snapd suppression not requested")

    ctx.record(
        "suppress",
        suppression.apply_security_extras(
            ctx.session,
            cfg.security.enable_firewall,
            cfg.security.disable_services,
        ),
    )
    failed = ctx.failed_steps("suppress")
    log_phase_event(ctx, "suppress", "Suppression applied", "suppress.done", failed=failed)
    return PhaseResult.ok(failed=failed)


def packages_phase(ctx: BuildContext) -> PhaseResult:
    """Upgrade, then install essential, kernel and additional packages."""
    cfg = ctx.config
    session = ctx.session
    arch = cfg.system.architecture

    session.check("apt-get -y upgrade")
    session.check("apt-get -y dist-upgrade")

    essential = list(cfg.packages.essential) or ctx.profile.essential_for(arch)
    activity("packages", f"Installing {len(essential)} essential packages")
    session.check(f"{installer.APT_INSTALL} {' '.join(essential)}")

    kernel = cfg.packages.kernel or ctx.profile.default_kernel(arch)
    kernel_packages = [kernel]
    headers = bootloader.headers_package(kernel)
    if headers:
        kernel_packages.append(headers)
    activity("packages", f"Installing kernel {kernel}")
    session.check(f"{installer.APT_INSTALL} --no-install-recommends {' '.join(kernel_packages)}")

    if cfg.packages.additional:
        additional = " ".join(cfg.packages.additional)
        if not session.execute(f"{installer.APT_INSTALL} {additional}"):
            phase_warning(ctx, "packages", f"Some additional packages failed to install: {additional}")

    log_phase_event(ctx, "packages", "Packages installed", "packages.done", kernel=kernel)
    return PhaseResult.ok(kernel=kernel)


def desktop_phase(ctx: BuildContext) -> PhaseResult:
    """Install the desktop and installer, then purge the remove-list."""
    cfg = ctx.config
    session = ctx.session
    desktop = cfg.packages.desktop

    if desktop != "none":
        activity("desktop", f"Installing {desktop} desktop")
    installer.install_desktop(session, ctx.profile, desktop)

    kind = cfg.installer.type
    activity("desktop", f"Setting up {kind} installer")
    if kind == "ubiquity":
        ctx.record("desktop", installer.setup_ubiquity(session, cfg))
    elif kind == "calamares":
        settings_dir = ctx.settings.get("paths", {}).get("calamares_settings_ubuntu")
        ctx.record(
            "desktop",
            installer.setup_calamares(
                session,
                ctx.profile,
                cfg,
                ubuntu_settings_dir=Path(settings_dir) if settings_dir else None,
            ),
        )
    elif kind == "subiquity":
        ctx.record("desktop", installer.setup_subiquity(session))

    ctx.record("desktop", installer.purge_packages(session, cfg.packages.remove_list))

    if ctx.profile.name == "ubuntu" and desktop == "gnome":
        ctx.record("desktop", installer.refine_vanilla_gnome(session))

    log_phase_event(
        ctx,
        "desktop",
        "Desktop and installer ready",
        "desktop.done",
        desktop=desktop,
        installer=kind,
        failed=ctx.failed_steps("desktop"),
    )
    return PhaseResult.ok()


def flatpak_phase(ctx: BuildContext) -> PhaseResult:
    if not ctx.config.packages.enable_flatpak:
        activity("flatpak", "Flatpak not requested")
        return PhaseResult.ok("skipped", skipped=True)

    session = ctx.session
    plugin = FLATPAK_PLUGINS.get(ctx.config.packages.desktop, "")
    session.check(f"{installer.APT_INSTALL} flatpak {plugin}".rstrip())
    if not session.execute(f"flatpak remote-add --if-not-exists flathub {FLATHUB_REMOTE}"):
        phase_warning(ctx, "flatpak", "Could not add the Flathub remote")

    log_phase_event(ctx, "flatpak", "Flatpak installed", "flatpak.done")
    return PhaseResult.ok()


def bootloader_phase(ctx: BuildContext) -> PhaseResult:
    """Stage kernel, initrd and memtest, and write the boot menu."""
    cfg = ctx.config
    ws = ctx.workspace
    kernel = cfg.packages.kernel or ctx.profile.default_kernel(cfg.system.architecture)
    suffix = bootloader.kernel_suffix(ctx.profile, kernel)

    vmlinuz, initrd = bootloader.stage_boot_images(ws.chroot_dir / "boot", ws.live_path, suffix)
    if vmlinuz is None or initrd is None:
        missing = "kernel" if vmlinuz is None else "initrd"
        return PhaseResult.fail(EXIT_BOOT_COMPONENT_MISSING, f"No {missing} image found in {ws.chroot_dir / 'boot'}")

    memtest_url = ctx.settings.get("behavior", {}).get("memtest_url")
    if memtest_url:
        ctx.record("bootloader", [bootloader.fetch_memtest(memtest_url, ws.install_dir, session=ctx.http)])

    bootloader.write_marker(ws.image_dir)
    ws.isolinux_dir.mkdir(parents=True, exist_ok=True)
    (ws.isolinux_dir / "grub.cfg").write_text(
        bootloader.render_grub_config(ctx.display_name or ctx.profile.title, ctx.profile, cfg.installer.type)
    )

    log_phase_event(
        ctx,
        "bootloader",
        f"Boot files staged ({vmlinuz.name})",
        "bootloader.done",
        kernel=str(vmlinuz),
        initrd=str(initrd),
    )
    return PhaseResult.ok()


def seal_phase(ctx: BuildContext) -> PhaseResult:
    """Strip per-machine state and release the chroot-internal mounts.

    Every step is best-effort.
    """
    commands = (
        ("machine-id", "truncate -s 0 /etc/machine-id"),
        ("initctl", "rm -f /sbin/initctl && dpkg-divert --rename --remove /sbin/initctl"),
        ("apt-clean", "apt-get clean"),
        ("tmp", "rm -rf /tmp/* ~/.bash_history"),
    )
    for name, command in commands:
        if not ctx.session.execute(command):
            phase_warning(ctx, "seal", f"Cleanup step '{name}' failed")

    remaining = ctx.session.unmount_internal()
    if remaining:
        phase_warning(ctx, "seal", f"Still mounted: {', '.join(remaining)}")

    log_phase_event(ctx, "seal", "Chroot sealed", "seal.done")
    return PhaseResult.ok()


def squashfs_phase(ctx: BuildContext) -> PhaseResult:
    """Write manifests and disk defines, then compress the chroot."""
    ws = ctx.workspace
    manifest, ok = ctx.session.execute_capturing("dpkg-query -W --showformat='${Package} ${Version}\\n'")
    if not ok:
        return PhaseResult.fail(EXIT_COMMAND_FAILED, "Could not list installed packages")
    image.write_manifests(ws.live_path, manifest, ctx.profile.manifest_exclude)

    (ws.image_dir / "README.diskdefines").write_text(
        image.render_diskdefines(
            ctx.display_name or ctx.profile.title,
            ctx.codename,
            ctx.config.system.architecture,
        )
    )

    stray = ws.chroot_dir / "image"
    if stray.is_dir():
        shutil.rmtree(stray)

    activity("squashfs", "Compressing the root filesystem")
    dest = image.build_squashfs(ctx.runner, ws.chroot_dir, ws.live_path, in_container=ctx.in_container)
    log_phase_event(ctx, "squashfs", f"Created {dest.name}", "squashfs.done", path=str(dest))
    return PhaseResult.ok()


def iso_phase(ctx: BuildContext) -> PhaseResult:
    """Assemble EFI and BIOS boot images, checksums and the final ISO."""
    ws = ctx.workspace
    if ctx.iso_path.exists():
        ctx.iso_path.unlink()

    search = image.LoaderSearch(chroot_dir=ws.chroot_dir, host_root=ctx.host_root)
    ctx.record("iso", image.stage_efi_loaders(ws.isolinux_dir, search))

    image.build_efi_image(ctx.runner, ws.isolinux_dir)
    image.build_bios_image(ctx.runner, ws.isolinux_dir, cdboot=ctx.host_root / image.CDBOOT_IMG.relative_to("/"))
    image.write_checksums(ws.image_dir)

    volid = image.volume_id(ctx.codename, ctx.config.system.architecture)
    iso_path, hybrid = image.master_iso(
        ctx.runner,
        ws.image_dir,
        ctx.iso_path,
        volid,
        hybrid_mbr=ctx.host_root / image.HYBRID_MBR_IMG.relative_to("/"),
    )
    if not hybrid:
        phase_warning(ctx, "iso", "BIOS hybrid MBR image not found; USB BIOS boot may not work")

    log_phase_event(ctx, "iso", f"ISO written to {iso_path}", "iso.done", path=str(iso_path), volid=volid)
    return PhaseResult.ok(str(iso_path))


def cleanup_phase(ctx: BuildContext) -> PhaseResult:
    """Release every mount; dangling mounts are reported, not fatal."""
    remaining = ctx.session.teardown()
    ctx.dangling_mounts = remaining
    if remaining:
        phase_warning(
            ctx,
            "cleanup",
            f"Could not unmount: {', '.join(remaining)}",
            dangling_mounts=remaining,
        )
    log_phase_event(ctx, "cleanup", "Mounts released", "cleanup.done", dangling_mounts=remaining)
    return PhaseResult.ok()


PHASE_TABLE: tuple[tuple[str, str, PhaseStep], ...] = (
    ("resolve", "Resolving release", resolve_phase),
    ("prereq", "Checking prerequisites", prerequisites_phase),
    ("workspace", "Creating workspace", workspace_phase),
    ("bootstrap", "Bootstrapping base system", bootstrap_phase),
    ("mount", "Mounting filesystems", mount_phase),
    ("configure", "Configuring system", configure_phase),
    ("suppress", "Applying snapd suppression and security settings", suppression_phase),
    ("packages", "Installing packages", packages_phase),
    ("desktop", "Installing desktop and installer", desktop_phase),
    ("flatpak", "Setting up Flatpak", flatpak_phase),
    ("bootloader", "Preparing boot loader", bootloader_phase),
    ("seal", "Cleaning chroot", seal_phase),
    ("squashfs", "Creating squashfs", squashfs_phase),
    ("iso", "Creating ISO image", iso_phase),
    ("cleanup", "Final cleanup", cleanup_phase),
)


def build_phases() -> list[Phase]:
    """Return the standard phase sequence, indexed from 1."""
    return [
        Phase(index=i, key=key, label=label, step=step)
        for i, (key, label, step) in enumerate(PHASE_TABLE, start=1)
    ]
