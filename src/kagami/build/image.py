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

"""Image assembly: squashfs, manifests, EFI/BIOS boot images and the ISO.

The resulting disc boots from BIOS through El Torito (GRUB core image behind
``cdboot.img``) and from UEFI through an appended GPT partition holding a FAT
image with shim, MokManager and GRUB.
"""

from __future__ import annotations

import hashlib
import logging
import os
import shutil
from dataclasses import dataclass
from pathlib import Path

from kagami.build.chroot import CommandResult, CommandRunner
from kagami.build.types import StepOutcome
from kagami.core.exceptions import BootComponentMissingError, CommandError

logger = logging.getLogger(__name__)

SHIM_PATHS = (
    "/usr/lib/shim/shimx64.efi.signed",
    "/usr/lib/shim/shimx64.efi.signed.previous",
    "/usr/lib/shim/shimx64.efi",
    "/boot/efi/EFI/ubuntu/shimx64.efi",
    "/usr/lib/shim/shim.efi",
)

MOKMANAGER_PATHS = (
    "/usr/lib/shim/mmx64.efi",
    "/usr/lib/shim/mmx64.efi.signed",
    "/boot/efi/EFI/ubuntu/mmx64.efi",
)

GRUB_EFI_PATHS = (
    "/usr/lib/grub/x86_64-efi-signed/grubx64.efi.signed",
    "/usr/lib/grub/x86_64-efi/monolithic/grubx64.efi",
    "/boot/efi/EFI/ubuntu/grubx64.efi",
    "/usr/lib/grub/x86_64-efi/grub.efi",
)

GRUB_EFI_NAMES = ("grubx64.efi", "grubx64.efi.signed")

CDBOOT_IMG = Path("/usr/lib/grub/i386-pc/cdboot.img")
HYBRID_MBR_IMG = Path("/usr/lib/grub/i386-pc/boot_hybrid.img")

EFI_IMAGE_SIZE_MB = 10
EFI_PARTITION_GUID = "28732ac11ff8d211ba4b00a0c93ec93b"
ISO_MBR_PART_TYPE = "a2a0d0ebe5b9334487c068b6b72699c7"

GRUB_INSTALL_MODULES = "linux16 linux normal iso9660 biosdisk memdisk search tar ls"
GRUB_CORE_MODULES = "linux16 linux normal iso9660 biosdisk search"

SQUASHFS_EXCLUDES = (
    # Host bind mounts are still live when the tree is packed.
    "dev/*",
    "run/*",
    "proc/*",
    "sys/*",
    "var/cache/apt/archives/*",
    "root/*",
    "root/.*",
    "tmp/*",
    "tmp/.*",
    "swapfile",
    "image",
)

# Virtual filesystems skipped when searching the chroot.
SEARCH_PRUNE = {"dev", "proc", "sys", "run"}


def _check(result: CommandResult, what: str) -> CommandResult:
    if not result.ok:
        detail = result.stderr.strip() or f"exit {result.returncode}"
        raise CommandError(
            message=f"{what} failed: {detail}",
            argv=result.argv,
            returncode=result.returncode,
            stderr=result.stderr,
        )
    return result


# Manifests


def filter_manifest(manifest: str, exclude: tuple[str, ...]) -> str:
    """Drop every manifest line containing any excluded name fragment."""
    kept = [line for line in manifest.splitlines() if line and not any(p in line for p in exclude)]
    return "\n".join(kept) + ("\n" if kept else "")


def write_manifests(live_path: Path, manifest: str, exclude: tuple[str, ...]) -> tuple[Path, Path]:
    """Write filesystem.manifest and the installer-stripped manifest-desktop."""
    live_path.mkdir(parents=True, exist_ok=True)
    full = live_path / "filesystem.manifest"
    desktop = live_path / "filesystem.manifest-desktop"
    full.write_text(manifest)
    desktop.write_text(filter_manifest(manifest, exclude))
    return full, desktop


def render_diskdefines(dist_name: str, release: str, architecture: str) -> str:
    return (
        f"#define DISKNAME  {dist_name} {release}\n"
        "#define TYPE  binary\n"
        "#define TYPEbinary  1\n"
        f"#define ARCH  {architecture}\n"
        f"#define ARCH{architecture}  1\n"
        "#define DISKNUM  1\n"
        "#define DISKNUM1  1\n"
        "#define TOTALNUM  0\n"
        "#define TOTALNUM0  1\n"
    )


# Squashfs


def squashfs_args(chroot_dir: Path, dest: Path, in_container: bool = False) -> list[str]:
    args = [
        "mksquashfs",
        str(chroot_dir),
        str(dest),
        "-noappend",
        "-no-duplicates",
        "-no-recovery",
        "-wildcards",
        "-comp",
        "xz",
        "-b",
        "1M",
        "-Xdict-size",
        "100%",
    ]
    for pattern in SQUASHFS_EXCLUDES:
        args.extend(["-e", pattern])
    # POSIX ACL xattrs are rejected by mksquashfs on container overlays.
    if in_container:
        args.append("-no-xattrs")
    return args


def build_squashfs(runner: CommandRunner, chroot_dir: Path, live_path: Path, in_container: bool = False) -> Path:
    """Compress the chroot into filesystem.squashfs and record its size.

    Raises:
        CommandError: If mksquashfs or du fails.
    """
    dest = live_path / "filesystem.squashfs"
    _check(runner.run(squashfs_args(chroot_dir, dest, in_container)), "mksquashfs")

    du = _check(runner.run(["du", "-sx", "--block-size=1", str(chroot_dir)], capture=True), "du")
    size = du.stdout.split()[0] if du.stdout.split() else "0"
    (live_path / "filesystem.size").write_text(size)
    return dest


# Boot loaders


@dataclass
class LoaderSearch:
    """Where to look for EFI loader binaries.

    Attributes:
        chroot_dir: Target tree, searched after the host.
        host_root: Root of the host filesystem.
    """

    chroot_dir: Path
    host_root: Path = Path("/")

    def locate(self, candidates: tuple[str, ...]) -> Path | None:
        """Return the first existing candidate on the host, then in the chroot."""
        for candidate in candidates:
            for root in (self.host_root, self.chroot_dir):
                path = root / candidate.lstrip("/")
                if path.is_file():
                    return path
        return None

    def search_chroot(self, names: tuple[str, ...]) -> Path | None:
        """Walk the chroot for any file with one of the given names."""
        for dirpath, dirnames, filenames in os.walk(self.chroot_dir):
            if Path(dirpath) == self.chroot_dir:
                dirnames[:] = [d for d in dirnames if d not in SEARCH_PRUNE]
            for name in names:
                if name in filenames:
                    return Path(dirpath) / name
        return None


def stage_efi_loaders(isolinux_dir: Path, search: LoaderSearch) -> list[StepOutcome]:
    """Copy shim, MokManager and GRUB EFI binaries into the staging dir.

    Shim and MokManager are optional. GRUB is mandatory.

    Raises:
        BootComponentMissingError: If grubx64.efi cannot be found anywhere.
    """
    isolinux_dir.mkdir(parents=True, exist_ok=True)
    outcomes = []

    for name, candidates in (("bootx64.efi", SHIM_PATHS), ("mmx64.efi", MOKMANAGER_PATHS)):
        source = search.locate(candidates)
        if source is None:
            outcomes.append(StepOutcome.failed(name, "not found; UEFI Secure Boot might not work"))
            continue
        try:
            shutil.copy2(source, isolinux_dir / name)
        except OSError as e:
            outcomes.append(StepOutcome.failed(name, str(e)))
        else:
            outcomes.append(StepOutcome.passed(name, str(source)))

    grub = search.locate(GRUB_EFI_PATHS)
    if grub is None:
        logger.warning("grubx64.efi not in known locations, searching chroot")
        grub = search.search_chroot(GRUB_EFI_NAMES)
    if grub is None:
        raise BootComponentMissingError(
            message="Mandatory boot loader grubx64.efi not found on host or in chroot",
            component="grubx64.efi",
        )
    shutil.copy2(grub, isolinux_dir / "grubx64.efi")
    outcomes.append(StepOutcome.passed("grubx64.efi", str(grub)))
    return outcomes


def build_efi_image(runner: CommandRunner, isolinux_dir: Path) -> Path:
    """Create the FAT16 EFI boot image with mtools.

    Raises:
        CommandError: If the image cannot be created or populated.
    """
    image = isolinux_dir / "efiboot.img"
    grub_cfg = isolinux_dir / "grub.cfg"

    _check(
        runner.run(["dd", "if=/dev/zero", f"of={image}", "bs=1M", f"count={EFI_IMAGE_SIZE_MB}"], capture=True),
        "dd",
    )
    _check(runner.run(["mkfs.vfat", "-F", "16", str(image)], capture=True), "mkfs.vfat")
    _check(
        runner.run(["mmd", "-i", str(image), "efi", "efi/ubuntu", "efi/debian", "efi/boot"], capture=True),
        "mmd",
    )

    copies = []
    for loader in ("bootx64.efi", "mmx64.efi", "grubx64.efi"):
        if (isolinux_dir / loader).is_file():
            copies.append((isolinux_dir / loader, f"::efi/boot/{loader}"))
    for sub in ("boot", "ubuntu", "debian"):
        copies.append((grub_cfg, f"::efi/{sub}/grub.cfg"))

    for source, dest in copies:
        _check(runner.run(["mcopy", "-i", str(image), str(source), dest], capture=True), f"mcopy {dest}")
    return image


def build_bios_image(runner: CommandRunner, isolinux_dir: Path, cdboot: Path = CDBOOT_IMG) -> Path:
    """Build the GRUB core image and prepend the cdboot stub.

    Raises:
        CommandError: If grub-mkstandalone fails.
        OSError: If the cdboot stub cannot be read.
    """
    core = isolinux_dir / "core.img"
    bios = isolinux_dir / "bios.img"
    grub_cfg = isolinux_dir / "grub.cfg"

    _check(
        runner.run(
            [
                "grub-mkstandalone",
                "--format=i386-pc",
                f"--output={core}",
                f"--install-modules={GRUB_INSTALL_MODULES}",
                f"--modules={GRUB_CORE_MODULES}",
                "--locales=",
                "--fonts=",
                f"boot/grub/grub.cfg={grub_cfg}",
            ],
            capture=True,
        ),
        "grub-mkstandalone",
    )

    with bios.open("wb") as out:
        for part in (cdboot, core):
            with part.open("rb") as f:
                shutil.copyfileobj(f, out)
    return bios


# Checksums


def _md5(path: Path) -> str:
    h = hashlib.md5()
    with path.open("rb") as f:
        for chunk in iter(lambda: f.read(1024 * 1024), b""):
            h.update(chunk)
    return h.hexdigest()


def write_checksums(image_dir: Path) -> Path:
    """Write md5sum.txt covering every file outside isolinux/.

    Raises:
        OSError: If a file cannot be read or the list cannot be written.
    """
    target = image_dir / "md5sum.txt"
    lines = []
    for path in sorted(image_dir.rglob("*")):
        if not path.is_file() or path == target:
            continue
        rel = path.relative_to(image_dir)
        if rel.parts[0] == "isolinux":
            continue
        lines.append(f"{_md5(path)}  ./{rel.as_posix()}")
    target.write_text("\n".join(lines) + "\n")
    return target


# Mastering


def volume_id(release: str, architecture: str) -> str:
    return f"KAGAMI_{release.upper()}_{architecture.upper()}"


def xorriso_args(
    image_dir: Path,
    iso_path: Path,
    volid: str,
    hybrid_mbr: Path | None,
) -> list[str]:
    """Assemble the xorriso mkisofs-emulation argument list."""
    isolinux = image_dir / "isolinux"
    grub_cfg = isolinux / "grub.cfg"
    efiboot = isolinux / "efiboot.img"

    args = [
        "xorriso",
        "-as",
        "mkisofs",
        "-iso-level",
        "3",
        "-full-iso9660-filenames",
        "-J",
        "-J",
        "-joliet-long",
        "-volid",
        volid,
        "-output",
        str(iso_path),
        "-eltorito-boot",
        "isolinux/bios.img",
        "-no-emul-boot",
        "-boot-load-size",
        "4",
        "-boot-info-table",
        "--eltorito-catalog",
        "boot.catalog",
        "--grub2-boot-info",
    ]
    if hybrid_mbr is not None:
        args.extend(["--grub2-mbr", str(hybrid_mbr)])
    args.extend(
        [
            "-partition_offset",
            "16",
            "--mbr-force-bootable",
            "-eltorito-alt-boot",
            "-no-emul-boot",
            "-e",
            "isolinux/efiboot.img",
            "-append_partition",
            "2",
            EFI_PARTITION_GUID,
            str(efiboot),
            "-appended_part_as_gpt",
            "-iso_mbr_part_type",
            ISO_MBR_PART_TYPE,
            "-m",
            "isolinux/efiboot.img",
            "-m",
            "isolinux/bios.img",
            "-e",
            "--interval:appended_partition_2:::",
            "-exclude",
            "isolinux",
            "-graft-points",
        ]
    )
    for loader in ("bootx64.efi", "mmx64.efi", "grubx64.efi"):
        if (isolinux / loader).is_file():
            args.append(f"/EFI/boot/{loader}={isolinux / loader}")
    args.extend(
        [
            f"/boot/grub/grub.cfg={grub_cfg}",
            f"/EFI/boot/grub.cfg={grub_cfg}",
            f"/EFI/ubuntu/grub.cfg={grub_cfg}",
            f"/EFI/debian/grub.cfg={grub_cfg}",
            f"/isolinux/bios.img={isolinux / 'bios.img'}",
            f"/isolinux/efiboot.img={efiboot}",
            str(image_dir),
        ]
    )
    return args


def master_iso(
    runner: CommandRunner,
    image_dir: Path,
    iso_path: Path,
    volid: str,
    hybrid_mbr: Path = HYBRID_MBR_IMG,
) -> tuple[Path, bool]:
    """Run xorriso to produce the hybrid ISO.

    Returns:
        (iso_path, whether the hybrid MBR was included).

    Raises:
        CommandError: If xorriso fails.
    """
    mbr = hybrid_mbr if hybrid_mbr.is_file() else None
    if mbr is None:
        logger.warning("BIOS hybrid image not found at %s, skipping --grub2-mbr", hybrid_mbr)
    iso_path.parent.mkdir(parents=True, exist_ok=True)
    _check(runner.run(xorriso_args(image_dir, iso_path, volid, mbr)), "xorriso")
    return iso_path, mbr is not None
