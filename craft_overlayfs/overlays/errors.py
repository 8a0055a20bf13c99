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

"""Overlay error definitions."""

from pathlib import Path

from craft_overlayfs import errors


class OverlayError(errors.OverlayfsError):
    """Base class for overlay handler errors."""


class MappingConflictError(OverlayError):
    """A path is used both as a mapping source and a mapping destination.

    :param path: The conflicting path.
    """

    def __init__(self, path: Path):
        self.path = path
        brief = f"Source {str(path)!r} cannot simultaneously be a destination."
        resolution = "Review the directory mappings to remove the overlap."

        super().__init__(brief=brief, resolution=resolution)


class FileDestinationConflictError(OverlayError):
    """A file mapping destination is also a directory mapping destination.

    :param destination: The conflicting destination directory.
    """

    def __init__(self, destination: Path):
        self.destination = destination
        brief = (
            f"File destination {str(destination)!r} must not be a "
            "directory mapping destination."
        )
        resolution = "Map the files to a different directory."

        super().__init__(brief=brief, resolution=resolution)


class MultipleOverrideDirsError(OverlayError):
    """More than one override directory maps to the same destination.

    :param destination: The destination directory.
    :param sources: The override directories mapped to it.
    """

    def __init__(self, destination: Path, sources: list[Path]):
        self.destination = destination
        self.sources = sources
        brief = (
            f"Destination {str(destination)!r} has more than one "
            "override directory."
        )
        details = "Override directories: " + ", ".join(str(s) for s in sources)
        resolution = "Map a single override directory to each destination."

        super().__init__(brief=brief, details=details, resolution=resolution)


class LayerScanError(OverlayError):
    """Failed to scan a layer source for excluded entries.

    :param source: The source directory being scanned.
    :param message: The error message.
    """

    def __init__(self, source: Path, message: str):
        self.source = source
        self.message = message
        brief = f"Failed to scan {str(source)!r}: {message}"

        super().__init__(brief=brief)


class OverlayMountError(OverlayError):
    """Failed to mount an overlay filesystem.

    :param mountpoint: The filesystem mount point.
    :param message: The error message.
    """

    def __init__(self, mountpoint: str, message: str):
        self.mountpoint = mountpoint
        self.message = message
        brief = f"Failed to mount overlay on {mountpoint}: {message}"

        super().__init__(brief=brief)


class OverlayUnmountError(OverlayError):
    """Failed to unmount an overlay filesystem.

    :param mountpoint: The filesystem mount point.
    :param message: The error message.
    """

    def __init__(self, mountpoint: str, message: str):
        self.mountpoint = mountpoint
        self.message = message
        brief = f"Failed to unmount {mountpoint}: {message}"

        super().__init__(brief=brief)


class PartialMountError(OverlayError):
    """Overlays from a previous mount attempt are still mounted.

    :param mountpoints: The mount points left mounted.
    """

    def __init__(self, mountpoints: list[str]):
        self.mountpoints = mountpoints
        brief = "A previous mount attempt is partially mounted."
        details = "Mounted: " + ", ".join(mountpoints)
        resolution = "Unmount the overlays before mounting again."

        super().__init__(brief=brief, details=details, resolution=resolution)


class WhiteoutCreationError(OverlayError):
    """Failed to create a whiteout file.

    :param path: The whiteout file path.
    :param message: The error message.
    """

    def __init__(self, path: Path, message: str):
        self.path = path
        self.message = message
        brief = f"Could not create whiteout file {str(path)!r}: {message}"

        super().__init__(brief=brief)


class InjectionError(OverlayError):
    """Failed to prepare the synthetic layer for file mappings.

    :param path: The path being processed.
    :param message: The error message.
    """

    def __init__(self, path: Path, message: str):
        self.path = path
        self.message = message
        brief = f"Could not inject file {str(path)!r}: {message}"

        super().__init__(brief=brief)
