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

"""Workspace layout, locking and removal.

A workspace is derived from one base directory::

    <root>/chroot/            target root filesystem
    <root>/image/             disc image staging tree
    <root>/image/<live_dir>/  squashfs, manifests, kernel and initrd
    <root>/image/isolinux/    boot loader staging
    <root>/image/install/     memtest binaries
    <root>/.kagami.lock       advisory lock held for the duration of a build
"""

from __future__ import annotations

import fcntl
import logging
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import IO

from kagami.build.chroot import PROC_MOUNTS, mount_points
from kagami.core.exceptions import MountError, WorkspaceLockedError

logger = logging.getLogger(__name__)

LOCK_NAME = ".kagami.lock"


@dataclass(frozen=True)
class Workspace:
    """Paths of one build workspace.

    Attributes:
        root: Base working directory.
        live_dir: Name of the live-system subdirectory (distribution specific).
    """

    root: Path
    live_dir: str = "casper"

    @property
    def chroot_dir(self) -> Path:
        return self.root / "chroot"

    @property
    def image_dir(self) -> Path:
        return self.root / "image"

    @property
    def live_path(self) -> Path:
        return self.image_dir / self.live_dir

    @property
    def isolinux_dir(self) -> Path:
        return self.image_dir / "isolinux"

    @property
    def install_dir(self) -> Path:
        return self.image_dir / "install"

    @property
    def lock_path(self) -> Path:
        return self.root / LOCK_NAME

    def directories(self) -> list[Path]:
        return [
            self.root,
            self.chroot_dir,
            self.image_dir,
            self.live_path,
            self.isolinux_dir,
            self.install_dir,
        ]

    def create(self) -> list[Path]:
        """Create all directories; existing ones are left untouched.

        Returns:
            Directories that did not exist before.
        """
        created = []
        for path in self.directories():
            if not path.is_dir():
                created.append(path)
            path.mkdir(parents=True, exist_ok=True)
        return created

    def is_bootstrapped(self) -> bool:
        """Return True if the chroot already holds a populated /etc."""
        etc = self.chroot_dir / "etc"
        return etc.is_dir() and any(etc.iterdir())


class WorkspaceLock:
    """Non-blocking advisory lock on a workspace.

    Two builds against the same chroot would corrupt its package database,
    so the second one fails immediately instead of waiting.
    """

    def __init__(self, workspace: Workspace) -> None:
        self.path = workspace.lock_path
        self._fd: IO[str] | None = None

    @property
    def held(self) -> bool:
        return self._fd is not None

    def acquire(self) -> None:
        """Take the lock.

        Raises:
            WorkspaceLockedError: If another process holds it.
        """
        if self._fd is not None:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd = self.path.open("w")
        try:
            fcntl.flock(fd.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            fd.close()
            raise WorkspaceLockedError(
                message=f"Workspace {self.path.parent} is in use by another build"
            ) from None
        self._fd = fd

    def release(self) -> None:
        if self._fd is None:
            return
        try:
            fcntl.flock(self._fd.fileno(), fcntl.LOCK_UN)
        finally:
            self._fd.close()
            self._fd = None

    def __enter__(self) -> WorkspaceLock:
        self.acquire()
        return self

    def __exit__(self, *exc: object) -> None:
        self.release()


def remove_workspace(
    workspace: Workspace,
    remaining_mounts: list[str],
    mounts_table: Path = PROC_MOUNTS,
    lock: WorkspaceLock | None = None,
) -> None:
    """Delete a workspace after its mounts have been released.

    Args:
        workspace: Workspace to delete.
        remaining_mounts: Mount points teardown could not release.
        mounts_table: Kernel mount table consulted for leftover mounts.
        lock: Lock already taken by the caller; a fresh one is taken and
            released when None.

    Raises:
        WorkspaceLockedError: If another build holds the workspace.
        MountError: If anything is still mounted under the chroot; deleting
            through a live bind mount would wipe host files.
    """
    if not workspace.root.exists():
        return

    owned = lock is None
    if lock is None:
        lock = WorkspaceLock(workspace)
    lock.acquire()
    try:
        prefix = str(workspace.root.resolve()) + "/"
        remaining_mounts = sorted(
            set(remaining_mounts) | {p for p in mount_points(mounts_table) if p.startswith(prefix)}
        )
        if remaining_mounts:
            raise MountError(
                message=f"Refusing to delete {workspace.root}: still mounted: {', '.join(remaining_mounts)}",
                target=remaining_mounts[0],
            )
        logger.info("Removing workspace %s", workspace.root)
        shutil.rmtree(workspace.root)
    finally:
        if owned:
            lock.release()
