# -*- Mode:Python; indent-tabs-mode:nil; tab-width:4 -*-
#
# Copyright 2026 Canonical Ltd.
#
# This program is free software; you can redistribute it and/or
# modify it under the terms of the GNU Lesser General Public
# License version 3 as published by the Free Software Foundation.
#
# This program is distributed in the hope that it will be useful,
# but WITHOUT ANY WARRANTY; without even the implied warranty of
# MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.  See the GNU
# Lesser General Public License for more details.
#
# You should have received a copy of the GNU Lesser General Public License
# along with this program.  If not, see <http://www.gnu.org/licenses/>.

"""Utilities related to the operating system."""

import logging
import subprocess

from craft_overlayfs import errors

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 10.0

MOUNT_OVERLAYFS_COMMAND = "fuse-overlayfs"
UMOUNT_COMMAND = "umount"

# commands we stopped waiting for, reaped once they finish
_stalled: list[subprocess.Popen] = []


def reap_stalled() -> list[int]:
    """Collect commands that timed out and have finished since.

    :returns: The pids of the commands that are still running.
    """
    _stalled[:] = [proc for proc in _stalled if proc.poll() is None]
    return [proc.pid for proc in _stalled]


def run_with_timeout(command: list[str], *, timeout: float) -> str:
    """Run a command, wait for it to finish and log its output.

    Standard output and standard error are merged and logged line by line.
    If the command doesn't finish in time we stop waiting for it, but the
    process is not killed and may still be running.

    :param command: The command to run.
    :param timeout: How long to wait for the command, in seconds.

    :return: The command's merged output.

    :raises CommandTimeoutError: If the command didn't finish in time.
    :raises subprocess.CalledProcessError: If the command exited with a
        non-zero status.
    :raises OSError: If the command could not be started.
    """
    reap_stalled()
    logger.debug("run command: %s", " ".join(command))
    proc = subprocess.Popen(
        command,
        stdout=subprocess.PIPE,
        stderr=subprocess.STDOUT,
        text=True,
        errors="replace",
    )
    try:
        output, _ = proc.communicate(timeout=timeout)
    except subprocess.TimeoutExpired as err:
        logger.warning(
            "%r (pid %d) still running after %ss", command[0], proc.pid, timeout
        )
        # nobody reads the output anymore
        if proc.stdout:
            proc.stdout.close()
        _stalled.append(proc)
        raise errors.CommandTimeoutError(command, timeout) from err

    output = output or ""
    for line in output.splitlines():
        if line.strip():
            logger.info(":: %s", line.rstrip())

    if proc.returncode:
        raise subprocess.CalledProcessError(proc.returncode, command, output=output)

    return output


def mount_overlayfs(
    mountpoint: str, *args: str, timeout: float = DEFAULT_TIMEOUT
) -> None:
    """Mount an overlay filesystem using fuse-overlayfs.

    :param mountpoint: Where the overlay will be mounted.
    :param *args: Additional arguments to ``fuse-overlayfs``.
    :param timeout: How long to wait for the mount to complete.

    :raises subprocess.CalledProcessError: on error.
    :raises CommandTimeoutError: on timeout.
    """
    logger.debug("fuse-overlayfs mountpoint=%r, args=%r", mountpoint, args)
    run_with_timeout([MOUNT_OVERLAYFS_COMMAND, *args, mountpoint], timeout=timeout)


def umount(mountpoint: str, *, timeout: float = DEFAULT_TIMEOUT) -> None:
    """Unmount a filesystem.

    :param mountpoint: The mount point to unmount.
    :param timeout: How long to wait for the unmount to complete.

    :raises subprocess.CalledProcessError: on error.
    :raises CommandTimeoutError: on timeout.
    """
    logger.debug("umount mountpoint=%r", mountpoint)
    run_with_timeout([UMOUNT_COMMAND, mountpoint], timeout=timeout)
