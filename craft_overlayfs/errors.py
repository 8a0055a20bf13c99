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

"""Craft overlayfs errors."""

import dataclasses
from pathlib import Path


@dataclasses.dataclass(repr=True)
class OverlayfsError(Exception):
    """Unexpected error.

    :param brief: Brief description of error.
    :param details: Detailed information.
    :param resolution: Recommendation, if any.
    """

    brief: str
    details: str | None = None
    resolution: str | None = None

    def __str__(self) -> str:
        components = [self.brief]

        if self.details:
            components.append(self.details)

        if self.resolution:
            components.append(self.resolution)

        return "\n".join(components)


class InvalidMappingError(OverlayfsError):
    """A mapping source or destination has the wrong file type.

    :param source: The mapping source.
    :param destination: The mapping destination.
    :param message: The error message.
    """

    def __init__(self, source: Path, destination: Path, message: str):
        self.source = source
        self.destination = destination
        self.message = message
        brief = f"Cannot map {str(source)!r} to {str(destination)!r}: {message}."
        resolution = "Review the mapping and make sure it's correct."

        super().__init__(brief=brief, resolution=resolution)


class DirectoryNotFoundError(OverlayfsError):
    """A required directory does not exist and was not allowed to be created.

    :param path: The missing directory.
    """

    def __init__(self, path: Path):
        self.path = path
        brief = f"Directory {str(path)!r} does not exist."
        resolution = "Create the directory or request it to be created."

        super().__init__(brief=brief, resolution=resolution)


class CommandTimeoutError(OverlayfsError):
    """An external command did not finish in the allowed time.

    The command may still be running when this error is raised.

    :param command: The command that timed out.
    :param timeout: The time waited, in seconds.
    """

    def __init__(self, command: list[str], timeout: float):
        self.command = command
        self.timeout = timeout
        brief = f"Command {' '.join(command)!r} did not finish after {timeout}s."
        details = "The command may still be running."

        super().__init__(brief=brief, details=details)


class ProcessStartError(OverlayfsError):
    """Failed to start a supervised process.

    :param application: The application that failed to start.
    :param message: The error message.
    """

    def __init__(self, application: str, message: str):
        self.application = application
        self.message = message
        brief = f"Failed to start {application!r}: {message}"

        super().__init__(brief=brief)


class ConfigFileError(OverlayfsError):
    """The overlay configuration file is not valid.

    :param filename: The configuration file name.
    :param message: The error message.
    """

    def __init__(self, filename: str, message: str):
        self.filename = filename
        self.message = message
        brief = f"Invalid configuration file {filename!r}."
        details = message
        resolution = "Review the configuration file and make sure it's correct."

        super().__init__(brief=brief, details=details, resolution=resolution)
