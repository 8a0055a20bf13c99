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

"""Overlay mount groups.

A mount group is one overlay filesystem mounted on a destination
directory: either a stack of mapped directories, or a synthetic layer
holding symbolic links to mapped files.
"""

import logging
import shutil
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path

from overrides import override

from craft_overlayfs.utils import os_utils

from .ledger import CleanupLedger
from .overlay_fs import OverlayFS
from .whiteouts import create_whiteout

logger = logging.getLogger(__name__)


def make_temporary_dir(parent: Path, prefix: str) -> Path:
    """Create a uniquely named directory inside ``parent``."""
    path = Path(tempfile.mkdtemp(prefix=prefix, dir=parent))
    logger.debug("created temporary directory %s", path)
    return path


def remove_temporary_dir(path: Path) -> None:
    """Remove a temporary directory and its contents, logging failures."""
    try:
        shutil.rmtree(path)
    except FileNotFoundError:
        pass
    except OSError as err:
        logger.error("could not remove temporary directory %s: %s", path, err)
    else:
        logger.debug("removed temporary directory %s", path)


class MountGroup(ABC):
    """An overlay filesystem mounted on a destination directory.

    :param target: The destination directory, used as mount point.
    :param upper_dir: The writable layer, or None for a read-only overlay.
    :param work_dir: The overlay work directory.
    """

    def __init__(
        self, target: Path, *, upper_dir: Path | None, work_dir: Path | None
    ):
        self.target = target
        self.upper_dir = upper_dir
        self.work_dir = work_dir
        self.mounted = False
        self._overlay_fs: OverlayFS | None = None

    @abstractmethod
    def lower_stack(self) -> list[Path]:
        """Return the lower layers passed to the mount, highest precedence first."""

    @abstractmethod
    def temporary_dirs(self) -> list[Path]:
        """Return the temporary directories owned by this group."""

    def mount(self, *, timeout: float = os_utils.DEFAULT_TIMEOUT) -> None:
        """Mount the overlay on the target directory.

        :raises OverlayMountError: on mount error.
        """
        overlay_fs = OverlayFS(
            lower_dirs=self.lower_stack(),
            upper_dir=self.upper_dir,
            work_dir=self.work_dir,
            timeout=timeout,
        )
        overlay_fs.mount(self.target)
        self._overlay_fs = overlay_fs
        self.mounted = True

    def unmount(self) -> None:
        """Unmount the overlay from the target directory.

        :raises OverlayUnmountError: on unmount error.
        """
        if not self.mounted or not self._overlay_fs:
            return

        self._overlay_fs.unmount()
        self._overlay_fs = None
        self.mounted = False

    def release(self) -> None:
        """Remove the temporary directories owned by this group."""
        if self.mounted:
            raise RuntimeError(f"cannot release mounted overlay on {self.target}")

        for path in self.temporary_dirs():
            remove_temporary_dir(path)


class LayerGroup(MountGroup):
    """The layer stack of directories mapped to a destination.

    :param target: The destination directory.
    :param lower_dirs: The source directories, highest precedence first.
    :param upper_dir: The writable layer, or None for a read-only overlay.
    :param whiteouts: Paths relative to the layer root to hide.
    """

    def __init__(
        self,
        target: Path,
        *,
        lower_dirs: list[Path],
        upper_dir: Path | None,
        whiteouts: list[Path] | None = None,
    ):
        super().__init__(target, upper_dir=upper_dir, work_dir=None)
        self.lower_dirs = lower_dirs
        self.whiteouts = whiteouts or []

    def __repr__(self) -> str:
        return (
            f"LayerGroup(target={str(self.target)!r}, "
            f"lower_dirs={[str(p) for p in self.lower_dirs]!r}, "
            f"upper_dir={self.upper_dir and str(self.upper_dir)!r}, "
            f"whiteouts={[str(p) for p in self.whiteouts]!r})"
        )

    @override
    def lower_stack(self) -> list[Path]:
        # existing destination content stays visible below all sources
        return [*self.lower_dirs, self.target]

    @override
    def temporary_dirs(self) -> list[Path]:
        return [self.work_dir] if self.work_dir else []

    def allocate_work_dir(self, parent: Path | None = None) -> None:
        """Create a fresh work directory for this overlay.

        The work directory must be on the same filesystem as the upper
        directory, it's created next to it unless ``parent`` is given.

        :param parent: The directory to create the work directory in.
        """
        if not self.upper_dir or self.work_dir:
            return

        if parent is None:
            parent = self.upper_dir.parent
        self.work_dir = make_temporary_dir(parent, f".{self.upper_dir.name}_work_")

    def create_whiteouts(self, ledger: CleanupLedger) -> None:
        """Create the whiteout files for this overlay in its upper layer.

        :raises WhiteoutCreationError: If a whiteout file can't be created.
        """
        if not self.whiteouts:
            return

        if not self.upper_dir:
            logger.warning(
                "cannot create whiteout files for %s without upper dir", self.target
            )
            return

        for whiteout in self.whiteouts:
            create_whiteout(self.upper_dir, whiteout, target=self.target, ledger=ledger)


class FileInjectionGroup(MountGroup):
    """A synthetic layer of symbolic links to files mapped to a destination.

    The temporary upper and work directories are created next to the
    destination directory.

    :param target: The destination directory.
    """

    upper_dir: Path
    work_dir: Path

    def __init__(self, target: Path):
        upper_dir = make_temporary_dir(target.parent, f"{target.name}_tmp_")
        try:
            work_dir = make_temporary_dir(target.parent, f"{target.name}_tmp_")
        except OSError:
            remove_temporary_dir(upper_dir)
            raise

        super().__init__(target, upper_dir=upper_dir, work_dir=work_dir)

    def __repr__(self) -> str:
        return (
            f"FileInjectionGroup(target={str(self.target)!r}, "
            f"upper_dir={str(self.upper_dir)!r})"
        )

    @override
    def lower_stack(self) -> list[Path]:
        return [self.target]

    @override
    def temporary_dirs(self) -> list[Path]:
        return [self.upper_dir, self.work_dir]
