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

"""Plan overlay layer stacks from directory mappings."""

import dataclasses
import logging
import os
from pathlib import Path

from craft_overlayfs.mappings import Mapping, MappingStore

from . import errors
from .groups import LayerGroup

logger = logging.getLogger(__name__)

OVERRIDE_DIR_NAME = "overwrite"


@dataclasses.dataclass
class MountPlan:
    """The overlays that would be mounted for the current mappings.

    :ivar layer_groups: The directory layer stacks, one per destination.
    :ivar file_groups: The file mappings, grouped by destination directory.
    """

    layer_groups: list[LayerGroup]
    file_groups: dict[Path, list[Mapping]]


def check_conflicts(store: MappingStore) -> None:
    """Verify that the mappings can be combined.

    :param store: The mappings to verify.

    :raises MappingConflictError: If a source is also a destination.
    :raises FileDestinationConflictError: If a file mapping destination
        directory is also a directory mapping destination.
    """
    sources = dict.fromkeys(m.source for m in store.directories)
    destinations = dict.fromkeys(m.destination for m in store.directories)

    logger.debug(
        "plan overlays: %d sources, %d destinations", len(sources), len(destinations)
    )

    for source in sources:
        if source in destinations:
            raise errors.MappingConflictError(source)

    for mapping in store.files:
        if mapping.destination.parent in destinations:
            raise errors.FileDestinationConflictError(mapping.destination.parent)


def find_whiteouts(
    source: Path, *, skip_directories: list[str], skip_file_suffixes: list[str]
) -> list[Path]:
    """List the entries of a layer source that must be hidden.

    Directories with a name in ``skip_directories`` are hidden as a whole
    and not scanned further. Files with a name ending in one of
    ``skip_file_suffixes`` are hidden.

    :param source: The layer source directory.
    :param skip_directories: Names of directories to hide.
    :param skip_file_suffixes: Suffixes of files to hide.

    :returns: The paths to hide, relative to the source directory.

    :raises LayerScanError: If the source directory can't be scanned.
    """
    whiteouts: list[Path] = []
    if not skip_directories and not skip_file_suffixes:
        return whiteouts

    def _raise(err: OSError) -> None:
        raise errors.LayerScanError(source, err.strerror or str(err)) from err

    suffixes = tuple(skip_file_suffixes)
    for root, directories, files in os.walk(source, topdown=True, onerror=_raise):
        # directories are traversed in place, drop the hidden ones
        for directory in list(directories):
            if directory in skip_directories:
                whiteouts.append(Path(root, directory).relative_to(source))
                directories.remove(directory)

        for file_name in files:
            if file_name.endswith(suffixes):
                whiteouts.append(Path(root, file_name).relative_to(source))

    logger.debug("whiteouts for %s: %r", source, [str(p) for p in whiteouts])
    return whiteouts


def plan_layer_groups(
    store: MappingStore,
    *,
    allocate_work_dirs: bool = True,
    fallback_to_destination: bool = True,
) -> list[LayerGroup]:
    """Create the layer stacks for the directory mappings.

    One layer group is created for each destination. Sources named
    ``overwrite`` become the writable upper layer of their destination,
    all other sources become lower layers. The last mapped source has the
    highest precedence.

    :param store: The mappings to plan.
    :param allocate_work_dirs: Whether to create the overlay work directories.
    :param fallback_to_destination: Whether to use the destination as upper
        layer when there's no override directory and no default upper
        directory. If not set, the overlay is read-only.

    :returns: The list of layer groups, in mapping order.

    :raises OverlayError: If the mappings can't be planned.
    """
    check_conflicts(store)

    destinations = dict.fromkeys(m.destination for m in store.directories)
    groups: list[LayerGroup] = []

    try:
        for destination in destinations:
            group = _plan_destination(
                store, destination, fallback_to_destination=fallback_to_destination
            )
            groups.append(group)

            if allocate_work_dirs:
                if store.work_dir and group.upper_dir == store.upper_dir:
                    group.allocate_work_dir(store.work_dir)
                else:
                    group.allocate_work_dir()
    except (errors.OverlayError, OSError):
        for group in groups:
            group.release()
        raise

    return groups


def _plan_destination(
    store: MappingStore, destination: Path, *, fallback_to_destination: bool
) -> LayerGroup:
    overrides: list[Path] = []
    lower_dirs: list[Path] = []
    whiteouts: dict[Path, None] = {}

    for mapping in store.directories:
        if mapping.destination != destination:
            continue

        if mapping.source.name == OVERRIDE_DIR_NAME:
            overrides.append(mapping.source)
            continue

        lower_dirs.append(mapping.source)
        for whiteout in find_whiteouts(
            mapping.source,
            skip_directories=store.skip_directories,
            skip_file_suffixes=store.skip_file_suffixes,
        ):
            whiteouts[whiteout] = None

    if len(overrides) > 1:
        raise errors.MultipleOverrideDirsError(destination, overrides)

    # lower dirs are stacked from right to left
    lower_dirs.reverse()

    upper_dir: Path | None
    if overrides:
        upper_dir = overrides[0]
    elif store.upper_dir:
        upper_dir = store.upper_dir
    elif fallback_to_destination:
        upper_dir = destination
    else:
        upper_dir = None

    group = LayerGroup(
        destination,
        lower_dirs=lower_dirs,
        upper_dir=upper_dir,
        whiteouts=list(whiteouts),
    )
    logger.debug("planned %r", group)
    return group
