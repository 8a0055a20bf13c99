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

"""Low level interface to OS overlayfs."""

import logging
from pathlib import Path
from subprocess import CalledProcessError

from craft_overlayfs import errors as overlayfs_errors
from craft_overlayfs.utils import os_utils

from . import errors

logger = logging.getLogger(__name__)


class OverlayFS:
    """Linux overlayfs operations.

    :param lower_dirs: The lower layers, highest precedence first.
    :param upper_dir: The writable layer, or None for a read-only overlay.
    :param work_dir: The overlay work directory, on the same filesystem as
        the upper layer.
    :param timeout: How long to wait for mount and unmount commands.
    """

    def __init__(
        self,
        *,
        lower_dirs: list[Path],
        upper_dir: Path | None,
        work_dir: Path | None,
        timeout: float = os_utils.DEFAULT_TIMEOUT,
    ):
        self._lower_dirs = lower_dirs
        self._upper_dir = upper_dir
        self._work_dir = work_dir
        self._timeout = timeout
        self._mountpoint: Path | None = None

    @property
    def mountpoint(self) -> Path | None:
        """Return the current mount point, if mounted."""
        return self._mountpoint

    def mount_args(self) -> list[str]:
        """Return the overlay options to pass to ``fuse-overlayfs``."""
        args: list[str] = []
        # the upper dir can be empty for read-only overlays
        if self._upper_dir:
            args += ["-o", f"upperdir={self._upper_dir!s}"]
            if self._work_dir:
                args += ["-o", f"workdir={self._work_dir!s}"]

        lower_dir = ":".join([str(p) for p in self._lower_dirs])
        args += ["-o", f"lowerdir={lower_dir}"]
        return args

    def mount(self, mountpoint: Path) -> None:
        """Mount an overlayfs.

        :param mountpoint: The filesystem mount point.

        :raises OverlayMountError: on mount error.
        """
        logger.debug("mount overlayfs on %s", mountpoint)

        try:
            os_utils.mount_overlayfs(
                str(mountpoint), *self.mount_args(), timeout=self._timeout
            )
        except CalledProcessError as err:
            raise errors.OverlayMountError(
                str(mountpoint), message=_command_error(err)
            ) from err
        except overlayfs_errors.CommandTimeoutError as err:
            raise errors.OverlayMountError(str(mountpoint), message=err.brief) from err
        except OSError as err:
            raise errors.OverlayMountError(
                str(mountpoint), message=f"cannot run fuse-overlayfs: {err}"
            ) from err

        self._mountpoint = mountpoint

    def unmount(self) -> None:
        """Umount an overlayfs.

        :raises OverlayUnmountError: on unmount error.
        """
        if not self._mountpoint:
            return

        logger.debug("unmount overlayfs from %s", self._mountpoint)
        try:
            os_utils.umount(str(self._mountpoint), timeout=self._timeout)
        except CalledProcessError as err:
            raise errors.OverlayUnmountError(
                str(self._mountpoint), message=_command_error(err)
            ) from err
        except overlayfs_errors.CommandTimeoutError as err:
            raise errors.OverlayUnmountError(
                str(self._mountpoint), message=err.brief
            ) from err
        except OSError as err:
            raise errors.OverlayUnmountError(
                str(self._mountpoint), message=f"cannot run umount: {err}"
            ) from err

        self._mountpoint = None


def _command_error(err: CalledProcessError) -> str:
    # include the utility output, if any
    output = (err.output or "").strip()
    if not output:
        return str(err)
    return f"{err}\n{output}"
