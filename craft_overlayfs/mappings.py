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

"""Directory and file mappings, exclusion lists and layer directories."""

import logging
import os
from pathlib import Path
from typing import NamedTuple

from pydantic import BaseModel, ConfigDict

from craft_overlayfs import errors

logger = logging.getLogger(__name__)


class Mapping(BaseModel):
    """Map a source path into a destination in the composed namespace."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    source: Path
    destination: Path

    def __str__(self) -> str:
        return f"{self.source} -> {self.destination}"


class LibraryForceLoad(NamedTuple):
    """A library to load when the given process is started."""

    process_name: str
    library_path: Path


def normalize_path(path: Path | str) -> Path:
    """Return the absolute, normalized form of the given path."""
    return Path(os.path.abspath(os.path.expanduser(path)))


def ensure_directory(path: Path, *, create: bool) -> list[Path]:
    """Make sure a directory exists, optionally creating it.

    :param path: The directory to verify.
    :param create: Whether the directory can be created if missing.

    :returns: The directories that were created, parents first.

    :raises DirectoryNotFoundError: If the directory doesn't exist and
        can't be created.
    :raises OSError: If directory creation failed.
    """
    if path.is_dir():
        return []

    if not create or path.exists():
        raise errors.DirectoryNotFoundError(path)

    missing = [p for p in [path, *path.parents] if not p.exists()]
    logger.debug("create directory %s", path)
    path.mkdir(parents=True, exist_ok=True)
    return list(reversed(missing))


class MappingStore:
    """The mapping state used to plan overlay mounts.

    The store is not thread safe, callers must serialize access to it.
    """

    def __init__(self) -> None:
        self.directories: list[Mapping] = []
        self.files: list[Mapping] = []
        self.skip_directories: list[str] = []
        self.skip_file_suffixes: list[str] = []
        self.library_force_loads: list[LibraryForceLoad] = []
        self.upper_dir: Path | None = None
        self.work_dir: Path | None = None

    def set_upper_dir(self, directory: Path | str, *, create: bool = False) -> None:
        """Set the default upper layer for destinations without an override.

        :param directory: The upper directory. It must be on the same
            filesystem as the work directory.
        :param create: Create the directory if it does not exist.
        """
        path = normalize_path(directory)
        ensure_directory(path, create=create)
        self.upper_dir = path

    def set_work_dir(self, directory: Path | str, *, create: bool = False) -> None:
        """Set the directory where work directories are allocated.

        :param directory: The work directory. It must be on the same
            filesystem as the upper directory.
        :param create: Create the directory if it does not exist.
        """
        path = normalize_path(directory)
        ensure_directory(path, create=create)
        self.work_dir = path

    def add_directory(
        self, source: Path | str, destination: Path | str, *, create: bool = False
    ) -> bool:
        """Map a source directory onto a destination directory.

        :param source: The directory providing content.
        :param destination: The directory where content is made visible.
        :param create: Create source and destination if they don't exist.

        :return: Whether a new mapping was added.

        :raises InvalidMappingError: If source or destination are not
            directories.
        :raises DirectoryNotFoundError: If a directory is missing and
            ``create`` is not set.
        """
        src = normalize_path(source)
        dst = normalize_path(destination)

        if src.exists() and not src.is_dir():
            raise errors.InvalidMappingError(src, dst, "source must be a directory")
        if dst.exists() and not dst.is_dir():
            raise errors.InvalidMappingError(
                src, dst, "destination must be a directory"
            )

        created = ensure_directory(src, create=create)
        try:
            ensure_directory(dst, create=create)
        except (OSError, errors.OverlayfsError):
            # don't leave a new source behind
            for directory in reversed(created):
                try:
                    directory.rmdir()
                except OSError as err:
                    logger.debug("cannot remove %s: %s", directory, err)
            raise

        mapping = Mapping(source=src, destination=dst)
        if mapping in self.directories:
            logger.debug("directory mapping %s already exists", mapping)
            return False

        self.directories.append(mapping)
        return True

    def remove_directory(self, source: Path | str, destination: Path | str) -> bool:
        """Remove a directory mapping.

        :return: Whether the mapping existed.
        """
        mapping = Mapping(
            source=normalize_path(source), destination=normalize_path(destination)
        )
        if mapping not in self.directories:
            return False

        self.directories.remove(mapping)
        return True

    def add_file(self, source: Path | str, destination: Path | str) -> bool:
        """Map a single file into a destination.

        If the destination is an existing directory, the file keeps its
        name inside that directory.

        :param source: The file to map.
        :param destination: The destination path or directory.

        :return: Whether a new mapping was added.

        :raises InvalidMappingError: If the source is a directory or is
            missing, or if the destination parent directory doesn't exist.
        """
        mapping = self._file_mapping(source, destination)

        if mapping.source.is_dir():
            raise errors.InvalidMappingError(
                mapping.source, mapping.destination, "source must not be a directory"
            )
        if not mapping.source.exists():
            raise errors.InvalidMappingError(
                mapping.source, mapping.destination, "source does not exist"
            )
        if not mapping.destination.parent.is_dir():
            raise errors.InvalidMappingError(
                mapping.source,
                mapping.destination,
                "destination directory does not exist",
            )

        if mapping in self.files:
            logger.debug("file mapping %s already exists", mapping)
            return False

        self.files.append(mapping)
        return True

    def remove_file(self, source: Path | str, destination: Path | str) -> bool:
        """Remove a file mapping.

        :return: Whether the mapping existed.
        """
        mapping = self._file_mapping(source, destination)
        if mapping not in self.files:
            return False

        self.files.remove(mapping)
        return True

    def add_skip_directory(self, name: str) -> None:
        """Exclude directories with the given name, at any depth."""
        if name not in self.skip_directories:
            self.skip_directories.append(name)

    def clear_skip_directories(self) -> None:
        """Clear the list of excluded directory names."""
        self.skip_directories.clear()

    def add_skip_file_suffix(self, suffix: str) -> None:
        """Exclude files whose name ends with the given suffix.

        Both ``.txt`` and ``some_file.txt`` are valid suffixes.
        """
        if suffix not in self.skip_file_suffixes:
            self.skip_file_suffixes.append(suffix)

    def clear_skip_file_suffixes(self) -> None:
        """Clear the list of excluded file suffixes."""
        self.skip_file_suffixes.clear()

    def force_load_library(self, process_name: str, library_path: Path | str) -> None:
        """Request a library to be loaded when the given process is started."""
        entry = LibraryForceLoad(process_name, Path(library_path))
        if entry not in self.library_force_loads:
            self.library_force_loads.append(entry)

    def libraries_for(self, process_name: str) -> list[Path]:
        """Return the libraries requested for the given process."""
        return [
            entry.library_path
            for entry in self.library_force_loads
            if entry.process_name == process_name
        ]

    def clear_library_force_loads(self) -> None:
        """Clear all library load requests."""
        self.library_force_loads.clear()

    def clear_mappings(self) -> None:
        """Remove all directory and file mappings."""
        self.directories.clear()
        self.files.clear()

    @staticmethod
    def _file_mapping(source: Path | str, destination: Path | str) -> Mapping:
        src = normalize_path(source)
        dst = normalize_path(destination)
        if dst.is_dir():
            dst = dst / src.name

        return Mapping(source=src, destination=dst)
