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

"""Overlayfs whiteout files.

Overlayfs hides an entry of the lower layers when a character device with
major and minor numbers set to 0 exists at the same relative path in the
upper layer.
"""

import logging
import os
import stat
from pathlib import Path

from . import errors
from .ledger import CleanupLedger, WhiteoutEntry

logger = logging.getLogger(__name__)


def create_whiteout(
    upper_dir: Path, relpath: Path, *, target: Path, ledger: CleanupLedger
) -> Path:
    """Create a whiteout file in the upper layer.

    Missing parent directories are created. The whiteout file and the
    created directories are recorded in the cleanup ledger.

    Overlays sharing an upper layer share its whiteout files, so a file
    already created for another overlay is only recorded for this one.

    :param upper_dir: The overlay upper layer.
    :param relpath: The path to hide, relative to the layer root.
    :param target: The mount point of the overlay using this layer.
    :param ledger: The cleanup ledger to record changes in.

    :returns: The path of the created whiteout file.

    :raises WhiteoutCreationError: If the whiteout file can't be created.
    """
    path = upper_dir / relpath
    if any(entry.path == path for entry in ledger.whiteout_files):
        logger.debug("whiteout file %s already created", path)
        ledger.whiteout_files.append(WhiteoutEntry(target, path))
        return path

    try:
        ledger.makedirs(path.parent)
        os.mknod(path, stat.S_IFCHR, os.makedev(0, 0))
    except OSError as err:
        raise errors.WhiteoutCreationError(path, err.strerror or str(err)) from err

    logger.debug("created whiteout file %s", path)
    ledger.whiteout_files.append(WhiteoutEntry(target, path))
    return path


def remove_whiteouts(ledger: CleanupLedger, *, target: Path) -> list[Path]:
    """Remove the whiteout files created for the overlay mounted on ``target``.

    A whiteout file is only removed if its size is zero, otherwise it was
    replaced by something else after it was created and it's left in place.
    Whiteout files still used by another overlay are kept.

    :param ledger: The cleanup ledger containing the whiteout files.
    :param target: The mount point of the overlay.

    :returns: The list of whiteout files that were not removed.
    """
    kept: list[Path] = []
    remaining = [e for e in ledger.whiteout_files if e.target != target]
    shared = {e.path for e in remaining}

    for entry in ledger.whiteout_files:
        if entry.target != target:
            continue
        if entry.path in shared:
            logger.debug("whiteout file %s still in use", entry.path)
            continue

        try:
            size = os.lstat(entry.path).st_size
        except FileNotFoundError:
            logger.debug("whiteout file %s already removed", entry.path)
            continue
        except OSError as err:
            logger.error("cannot verify whiteout file %s: %s", entry.path, err)
            kept.append(entry.path)
            continue

        if size != 0:
            logger.error(
                "whiteout file %s size should be 0, but is %d", entry.path, size
            )
            kept.append(entry.path)
            continue

        try:
            entry.path.unlink()
        except OSError as err:
            logger.error("could not remove whiteout file %s: %s", entry.path, err)
            kept.append(entry.path)
        else:
            logger.debug("removed whiteout file %s", entry.path)

    ledger.whiteout_files[:] = remaining
    return kept


def is_whiteout_file(path: Path) -> bool:
    """Verify if the given path corresponds to a whiteout file.

    :param path: The path of the file to verify.

    :returns: Whether the given path is an overlayfs whiteout.
    """
    if not path.is_char_device() or path.is_symlink():
        return False

    rdev = os.stat(path).st_rdev

    return os.major(rdev) == 0 and os.minor(rdev) == 0
