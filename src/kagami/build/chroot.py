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

"""Chroot session: command execution inside the target tree and bind mounts.

All external commands issued by a build go through a ``CommandRunner`` so a
test can substitute a recorder and no privileged command ever runs.
"""

from __future__ import annotations

import logging
import os
import subprocess
import sys
import time
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path

from kagami.build.types import StepOutcome
from kagami.core.exceptions import CommandError, MountError

logger = logging.getLogger(__name__)

LogSink = Callable[[str], None]

PROC_MOUNTS = Path("/proc/mounts")

# Host path and chroot-relative target for the bind mounts set up before
# configuring the system.
BIND_MOUNTS: tuple[tuple[str, str], ...] = (
    ("/dev", "dev"),
    ("/run", "run"),
)

# Innermost first; proc, sys and dev/pts are mounted from inside the chroot.
TEARDOWN_ORDER: tuple[str, ...] = ("dev/pts", "dev", "proc", "sys", "run")
INTERNAL_MOUNTS: tuple[str, ...] = ("dev/pts", "proc", "sys")

CHROOT_ENV = {"HOME": "/root", "LC_ALL": "C", "DEBIAN_FRONTEND": "noninteractive"}

CONTAINER_MOUNT_HINT = (
    "In a container, this usually requires '--privileged' or 'CAP_SYS_ADMIN'."
)


@dataclass
class CommandResult:
    """Outcome of one external command."""

    argv: list[str]
    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0


class CommandRunner:
    """Runs external commands, streaming or capturing their output.

    Args:
        timeout: Optional per-command timeout in seconds; expiry is reported
            as a failed command.
        log_sink: Receives each output line of streamed commands. When None,
            lines go to ``sys.stdout`` (the run's log file during a build).
    """

    def __init__(self, timeout: float | None = None, log_sink: LogSink | None = None) -> None:
        self.timeout = timeout
        self.log_sink = log_sink

    def _emit(self, line: str) -> None:
        if self.log_sink is not None:
            self.log_sink(line.rstrip("\n"))
        else:
            sys.stdout.write(line)

    def run(
        self,
        argv: Sequence[str],
        *,
        capture: bool = False,
        input_text: str | None = None,
        env: Mapping[str, str] | None = None,
        cwd: Path | None = None,
    ) -> CommandResult:
        """Run a command to completion.

        Args:
            argv: Command and arguments.
            capture: Capture stdout/stderr instead of streaming them.
            input_text: Text fed to the command's stdin.
            env: Extra environment variables layered over ``os.environ``.
            cwd: Working directory.

        Returns:
            CommandResult; missing executables yield return code 127.
        """
        args = [str(a) for a in argv]
        full_env = {**os.environ, **env} if env else None
        logger.debug("exec: %s", " ".join(args))

        try:
            if capture or input_text is not None:
                proc = subprocess.run(
                    args,
                    input=input_text,
                    capture_output=True,
                    text=True,
                    env=full_env,
                    cwd=cwd,
                    timeout=self.timeout,
                )
                if not capture and proc.stdout:
                    self._emit(proc.stdout)
                result = CommandResult(args, proc.returncode, proc.stdout, proc.stderr)
            else:
                result = self._stream(args, full_env, cwd)
        except FileNotFoundError as e:
            result = CommandResult(args, 127, "", str(e))
        except subprocess.TimeoutExpired:
            result = CommandResult(args, -1, "", f"timed out after {self.timeout}s")

        if not result.ok:
            logger.debug("exit %s: %s", result.returncode, result.stderr.strip())
        return result

    def _stream(self, args: list[str], env: Mapping[str, str] | None, cwd: Path | None) -> CommandResult:
        deadline = time.monotonic() + self.timeout if self.timeout else None
        tail: list[str] = []
        with subprocess.Popen(
            args,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            env=env,
            cwd=cwd,
        ) as proc:
            assert proc.stdout is not None
            for line in proc.stdout:
                self._emit(line)
                tail = (tail + [line])[-20:]
                if deadline is not None and time.monotonic() > deadline:
                    proc.kill()
                    raise subprocess.TimeoutExpired(args, self.timeout or 0)
            remaining = deadline - time.monotonic() if deadline is not None else None
            returncode = proc.wait(timeout=remaining)
        return CommandResult(args, returncode, "", "".join(tail) if returncode else "")


def _decode_mount_field(value: str) -> str:
    """Undo the octal escaping the kernel applies in /proc/mounts."""
    return (
        value.replace("\\040", " ")
        .replace("\\011", "\t")
        .replace("\\012", "\n")
        .replace("\\134", "\\")
    )


def mount_points(mounts_table: Path = PROC_MOUNTS) -> set[str]:
    """Return the set of mount point paths listed in a mounts table."""
    try:
        text = mounts_table.read_text()
    except OSError:
        return set()
    points = set()
    for line in text.splitlines():
        fields = line.split()
        if len(fields) >= 2:
            points.add(_decode_mount_field(fields[1]))
    return points


@dataclass
class ChrootSession:
    """A bootstrapped root filesystem plus the mounts that make it usable.

    Attributes:
        chroot_dir: Root of the target tree.
        runner: Command runner used for every external command.
        in_container: Whether Kagami runs inside a container; adds hints to
            mount and bootstrap failures.
        mounts_table: Kernel mount table consulted for idempotent mounts.
        unmount_retries: Lazy unmount attempts per mount point.
        retry_delay: Seconds between unmount attempts.
    """

    chroot_dir: Path
    runner: CommandRunner
    in_container: bool = False
    mounts_table: Path = PROC_MOUNTS
    unmount_retries: int = 3
    retry_delay: float = 0.5
    sleep: Callable[[float], None] = time.sleep
    established: list[str] = field(default_factory=list)

    def _argv(self, command: str) -> list[str]:
        return ["chroot", str(self.chroot_dir), "/bin/bash", "-c", command]

    def execute(self, command: str) -> bool:
        """Run a shell command inside the chroot, streaming its output."""
        return self.run(command).ok

    def run(self, command: str) -> CommandResult:
        """Like execute, returning the full CommandResult."""
        return self.runner.run(self._argv(command), env=CHROOT_ENV)

    def check(self, command: str) -> CommandResult:
        """Run a command inside the chroot, raising if it fails.

        Raises:
            CommandError: On a non-zero exit status.
        """
        result = self.run(command)
        if not result.ok:
            raise CommandError(
                message=f"'{command}' exited with {result.returncode}",
                argv=result.argv,
                returncode=result.returncode,
                stderr=result.stderr,
            )
        return result

    def execute_capturing(self, command: str) -> tuple[str, bool]:
        """Run a shell command inside the chroot and capture its stdout."""
        result = self.runner.run(self._argv(command), capture=True, env=CHROOT_ENV)
        return result.stdout, result.ok

    def target(self, relative: str) -> Path:
        return (self.chroot_dir / relative).resolve()

    def is_mounted(self, target: Path) -> bool:
        """Return True if the exact resolved path is a mount point."""
        return str(Path(target).resolve()) in mount_points(self.mounts_table)

    def mount_binds(self) -> list[str]:
        """Bind-mount host paths into the chroot.

        Already-mounted targets are skipped.

        Returns:
            Targets newly mounted by this call.

        Raises:
            MountError: If a mount fails.
        """
        mounted = []
        for source, relative in BIND_MOUNTS:
            target = self.target(relative)
            if self.is_mounted(target):
                logger.info("%s already mounted, skipping", target)
                continue

            target.mkdir(parents=True, exist_ok=True)
            result = self.runner.run(["mount", "--bind", source, str(target)], capture=True)
            if not result.ok:
                message = f"Failed to mount {target}: {result.stderr.strip() or result.returncode}"
                if self.in_container:
                    message = f"{message}\n[TIP] {CONTAINER_MOUNT_HINT}"
                raise MountError(message=message, target=str(target))

            self.established.append(str(target))
            mounted.append(str(target))
        return mounted

    def mount_internal(self) -> list[tuple[str, bool]]:
        """Mount proc, sysfs and devpts from inside the chroot."""
        results = []
        for fstype, point in (("proc", "/proc"), ("sysfs", "/sys"), ("devpts", "/dev/pts")):
            if self.is_mounted(self.target(point.lstrip("/"))):
                results.append((point, True))
                continue
            ok = self.execute(f"mount none -t {fstype} {point}")
            if ok:
                self.established.append(str(self.target(point.lstrip("/"))))
            results.append((point, ok))
        return results

    def unmount(self, target: Path) -> bool:
        """Lazily unmount one target with bounded retries."""
        for attempt in range(1, self.unmount_retries + 1):
            result = self.runner.run(["umount", "-l", str(target)], capture=True)
            if result.ok or not self.is_mounted(target):
                return True
            logger.warning(
                "umount %s failed (attempt %d/%d): %s",
                target,
                attempt,
                self.unmount_retries,
                result.stderr.strip(),
            )
            if attempt < self.unmount_retries:
                self.sleep(self.retry_delay)
        return False

    def _release(self, relatives: Sequence[str]) -> list[str]:
        remaining = []
        for relative in relatives:
            target = self.target(relative)
            key = str(target)
            if key not in self.established and not self.is_mounted(target):
                continue
            if self.unmount(target):
                if key in self.established:
                    self.established.remove(key)
            else:
                remaining.append(key)
        return remaining

    def unmount_internal(self) -> list[str]:
        """Release proc, sysfs and devpts before the tree is compressed.

        Returns:
            Targets that are still mounted afterwards.
        """
        return self._release(INTERNAL_MOUNTS)

    def teardown(self) -> list[str]:
        """Unmount everything under the chroot, innermost first.

        Every mount recorded as established is attempted even when the mount
        table no longer lists it.

        Returns:
            Targets that are still mounted afterwards.
        """
        return self._release(TEARDOWN_ORDER)


def write_chroot_file(
    chroot_dir: Path,
    relative: str,
    content: str,
    mode: int = 0o644,
    append: bool = False,
) -> Path:
    """Write a file inside the chroot, creating parent directories.

    Args:
        chroot_dir: Root of the target tree.
        relative: Path inside the chroot (leading "/" allowed).
        content: Text to write.
        mode: Permission bits applied after writing.
        append: Append instead of replacing.

    Returns:
        Host path of the written file.
    """
    path = chroot_dir / relative.lstrip("/")
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("a" if append else "w", encoding="utf-8") as f:
        f.write(content)
    path.chmod(mode)
    return path


Step = Callable[[ChrootSession], None]


def run_best_effort(session: ChrootSession, steps: Sequence[tuple[str, Step]]) -> list[StepOutcome]:
    """Run named steps independently, collecting one outcome per step.

    A step signals failure by raising OSError or CommandError; the failure is
    logged and recorded and the remaining steps still run.
    """
    outcomes = []
    for name, step in steps:
        try:
            step(session)
        except (OSError, CommandError) as e:
            logger.warning("step %s failed: %s", name, e)
            outcomes.append(StepOutcome.failed(name, str(e)))
        else:
            outcomes.append(StepOutcome.passed(name))
    return outcomes
