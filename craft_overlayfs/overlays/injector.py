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

"""Map individual files using a synthetic overlay layer.

Overlays compose whole directories. To map single files, a temporary
upper layer is populated with symbolic links to the mapped files and
mounted on the destination directory.
"""

import logging
import os
from pathlib import Path

from craft_overlayfs.mappings import Mapping

from . import errors
from .groups import FileInjectionGroup
from .ledger import CleanupLedger, RenamedFile

logger = logging.getLogger(__name__)

RENAMED_SUFFIX = ".ofs-renamed"


def group_file_mappings(files: list[Mapping]) -> dict[Path, list[Mapping]]:
    """Group file mappings by destination directory, in mapping order."""
    groups: dict[Path, list[Mapping]] = {}
    for mapping in files:
        groups.setdefault(mapping.destination.parent, []).append(mapping)

    return groups


def renamed_path(path: Path) -> Path:
    """Return the name an existing destination file is moved to."""
    return path.with_name(path.name + RENAMED_SUFFIX)


class FileInjector:
    """Create the synthetic layers for file mappings.

    Injection groups are kept in ``groups`` as soon as they're created, so
    the caller can release them if injection fails.

    :param ledger: The cleanup ledger to record changes in.
    """

    def __init__(self, ledger: CleanupLedger):
        self._ledger = ledger
        self.groups: list[FileInjectionGroup] = []

    def inject(self, files: list[Mapping]) -> list[FileInjectionGroup]:
        """Create one synthetic layer for each file destination directory.

        :param files: The file mappings.

        :returns: The injection groups, ready to be mounted.

        :raises InjectionError: If a layer can't be populated.
        """
        for destination, mappings in group_file_mappings(files).items():
            logger.debug("processing file destination %s", destination)
            try:
                group = FileInjectionGroup(destination)
            except OSError as err:
                raise errors.InjectionError(
                    destination, f"cannot create temporary layer: {err}"
                ) from err

            self.groups.append(group)
            logger.debug("created upper dir %s", group.upper_dir)
            logger.debug("created work dir %s", group.work_dir)

            for mapping in mappings:
                self._link(group, mapping)

        return self.groups

    def _link(self, group: FileInjectionGroup, mapping: Mapping) -> None:
        destination = mapping.destination
        symlink = group.upper_dir / destination.name

        if os.path.lexists(destination):
            renamed = renamed_path(destination)
            if os.path.lexists(renamed):
                raise errors.InjectionError(
                    destination, f"{str(renamed)!r} already exists"
                )
            try:
                os.rename(destination, renamed)
            except OSError as err:
                raise errors.InjectionError(
                    destination, f"cannot rename: {err.strerror or err}"
                ) from err

            self._ledger.renamed_files[symlink] = RenamedFile(destination, renamed)
            logger.debug("renamed %s to %s", destination, renamed)

        try:
            symlink.symlink_to(mapping.source)
        except OSError as err:
            raise errors.InjectionError(
                destination, f"cannot create symlink: {err.strerror or err}"
            ) from err

        self._ledger.symlinks.append(symlink)
        logger.debug("created symlink %s to %s", symlink, mapping.source)
