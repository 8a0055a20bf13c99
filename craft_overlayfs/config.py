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

"""Overlay configuration file definition and loading."""

import logging
from pathlib import Path
from typing import TYPE_CHECKING, Any

import pydantic
import yaml
from pydantic import BaseModel, ConfigDict

from craft_overlayfs import errors

if TYPE_CHECKING:
    from pydantic_core import ErrorDetails

    from craft_overlayfs.overlay_manager import OverlayFsManager

logger = logging.getLogger(__name__)


class ConfigModel(BaseModel):
    """Base model for configuration file entries."""

    model_config = ConfigDict(
        extra="forbid",
        frozen=True,
        alias_generator=lambda s: s.replace("_", "-"),
        populate_by_name=True,
    )


class MappingSpec(ConfigModel):
    """A directory or file mapping."""

    source: Path
    destination: Path


class LibraryForceLoad(ConfigModel):
    """A library to load when a process is started."""

    process_name: str
    library_path: Path


class OverlayConfig(ConfigModel):
    """The overlay configuration.

    Relative paths are resolved against the current working directory
    when the configuration is applied.
    """

    upper_dir: Path | None = None
    work_dir: Path | None = None
    create_dirs: bool = False
    log_file: Path | None = None
    log_level: str | None = None
    debug: bool = False
    skip_directories: list[str] = []
    skip_file_suffixes: list[str] = []
    directories: list[MappingSpec] = []
    files: list[MappingSpec] = []
    force_load_libraries: list[LibraryForceLoad] = []

    @classmethod
    def unmarshal(cls, data: dict[str, Any]) -> "OverlayConfig":
        """Create and populate a new ``OverlayConfig`` from dictionary data.

        :param data: The dictionary data to unmarshal.

        :return: The newly created object.

        :raise TypeError: If data is not a dictionary.
        """
        if not isinstance(data, dict):
            raise TypeError("overlay configuration is not a dictionary")

        return cls.model_validate(data)

    def marshal(self) -> dict[str, Any]:
        """Create a dictionary containing the overlay configuration data.

        :return: The newly created dictionary.
        """
        return self.model_dump(mode="json", by_alias=True, exclude_defaults=True)

    def apply(self, manager: "OverlayFsManager") -> bool:
        """Configure an overlay manager.

        :param manager: The overlay manager to configure.

        :returns: Whether all settings were accepted. Configuration stops
            at the first rejected setting.
        """
        if self.log_file and not manager.set_log_file(self.log_file):
            return False

        if self.log_level and not manager.set_log_level(self.log_level):
            return False

        if self.debug:
            manager.set_debug_mode(True)

        if self.upper_dir and not manager.set_upper_dir(
            self.upper_dir, create=self.create_dirs
        ):
            return False

        if self.work_dir and not manager.set_work_dir(
            self.work_dir, create=self.create_dirs
        ):
            return False

        for directory in self.skip_directories:
            manager.add_skip_directory(directory)

        for suffix in self.skip_file_suffixes:
            manager.add_skip_file_suffix(suffix)

        for mapping in self.directories:
            if not manager.add_directory(
                mapping.source, mapping.destination, create=self.create_dirs
            ):
                return False

        for mapping in self.files:
            if not manager.add_file(mapping.source, mapping.destination):
                return False

        for library in self.force_load_libraries:
            manager.force_load_library(library.process_name, library.library_path)

        return True


def load_config(filename: Path | str) -> OverlayConfig:
    """Load and validate an overlay configuration file.

    :param filename: The YAML configuration file.

    :returns: The validated configuration.

    :raises ConfigFileError: If the file can't be read or is not valid.
    """
    logger.debug("loading configuration from %s", filename)
    try:
        with open(filename, encoding="utf-8") as config_file:
            data = yaml.safe_load(config_file)
    except OSError as err:
        raise errors.ConfigFileError(str(filename), err.strerror or str(err)) from err
    except yaml.YAMLError as err:
        raise errors.ConfigFileError(str(filename), str(err)) from err

    # an empty file is an empty configuration
    if data is None:
        data = {}

    try:
        return OverlayConfig.unmarshal(data)
    except TypeError as err:
        raise errors.ConfigFileError(str(filename), str(err)) from err
    except pydantic.ValidationError as err:
        raise errors.ConfigFileError(
            str(filename), _format_validation_errors(err.errors())
        ) from err


def _format_validation_errors(error_list: list["ErrorDetails"]) -> str:
    formatted_errors: list[str] = []

    for error in error_list:
        field = _format_loc(error["loc"])
        if error["type"] == "missing":
            formatted_errors.append(f"- field {field!r} is required")
        elif error["type"] == "extra_forbidden":
            formatted_errors.append(f"- extra field {field!r} not permitted")
        else:
            formatted_errors.append(f"- {error['msg']} in field {field!r}")

    return "\n".join(formatted_errors)


def _format_loc(loc: tuple[int | str, ...]) -> str:
    loc_parts: list[str] = []
    for loc_part in loc:
        if isinstance(loc_part, int) and loc_parts:
            # an index refers to the previous part
            loc_parts[-1] += f"[{loc_part}]"
        else:
            loc_parts.append(str(loc_part))

    return ".".join(loc_parts)
