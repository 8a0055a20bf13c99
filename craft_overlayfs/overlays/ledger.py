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

"""Bookkeeping of filesystem changes made to set up overlay mounts."""

import dataclasses
import errno
import logging
import os
from pathlib import Path
from typing import NamedTuple

logger = logging.getLogger(__name__)


class WhiteoutEntry(NamedTuple):
    """A whiteout file created for the overlay mounted on ``target``."""

    target: Path
    path: Path


class RenamedFile(NamedTuple):
    """A destination file moved aside to make room for a mapped file."""

    original: Path
    renamed: Path


@dataclasses.dataclass
class CleanupLedger:
    """Record of files and directories created while mounting.

    :ivar whiteout_files: Whiteout files, in creation order.
    :ivar created_directories: Directories created to hold whiteout files,
        in creation order (parents before children).
    :ivar symlinks: Symbolic links created for file mappings.
    :ivar renamed_files: Files moved aside, indexed by the symbolic link
        that replaced them.
    """

    whiteout_files: list[WhiteoutEntry] = dataclasses.field(default_factory=list)
    created_directories: list[Path] = dataclasses.field(default_factory=list)
    symlinks: list[Path] = dataclasses.field(default_factory=list)
    renamed_files: dict[Path, RenamedFile] = dataclasses.field(default_factory=dict)

    def is_empty(self) -> bool:
        """Whether there is nothing left to clean up."""
        return not (
            self.whiteout_files
            or self.created_directories
            or self.symlinks
            or self.renamed_files
        )

    def makedirs(self, path: Path) -> None:
        """Create a directory and its missing parents, recording each one.

        :param path: The directory to create.

        :raises OSError: If a directory can't be created.
        """
        missing: list[Path] = []
        current = path
        while not current.exists() and current != current.parent:
            missing.append(current)
            current = current.parent

        for directory in reversed(missing):
            directory.mkdir()
            logger.debug("created directory %s", directory)
            self.created_directories.append(directory)

    def remove_created_directories(self) -> None:
        """Remove recorded directories that are empty, deepest first."""
        for directory in reversed(self.created_directories):
            try:
                directory.rmdir()
                logger.debug("removed directory %s", directory)
            except FileNotFoundError:
                pass
            except OSError as err:
                if err.errno != errno.ENOTEMPTY:
                    logger.error("could not remove directory %s: %s", directory, err)
                else:
                    logger.debug("directory %s not empty, keeping it", directory)

        self.created_directories.clear()

    def remove_symlinks(self) -> None:
        """Remove recorded symbolic links and restore the files they replaced."""
        for symlink in self.symlinks:
            try:
                if symlink.is_symlink():
                    symlink.unlink()
                    logger.debug("removed symlink %s", symlink)
            except OSError as err:
                logger.error("could not remove symlink %s: %s", symlink, err)

            renamed = self.renamed_files.pop(symlink, None)
            if renamed:
                self._restore(renamed)

        # files moved aside before their symlink could be created
        for renamed in self.renamed_files.values():
            self._restore(renamed)

        self.symlinks.clear()
        self.renamed_files.clear()

    def clear(self) -> None:
        """Forget all recorded entries."""
        self.whiteout_files.clear()
        self.created_directories.clear()
        self.symlinks.clear()
        self.renamed_files.clear()

    @staticmethod
    def _restore(renamed: RenamedFile) -> None:
        if os.path.lexists(renamed.original):
            logger.error(
                "cannot restore %s: %s already exists",
                renamed.renamed,
                renamed.original,
            )
            return

        try:
            os.rename(renamed.renamed, renamed.original)
        except FileNotFoundError:
            logger.error("renamed file %s is missing", renamed.renamed)
        except OSError as err:
            logger.error("could not restore %s: %s", renamed.original, err)
        else:
            logger.debug("restored %s", renamed.original)
