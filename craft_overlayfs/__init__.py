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

"""Compose directory trees and files using overlay mounts."""

from . import overlays
from .config import LibraryForceLoad, MappingSpec, OverlayConfig, load_config
from .errors import OverlayfsError
from .mappings import Mapping, MappingStore
from .overlay_manager import OverlayFsManager
from .overlays import MountPlan

try:
    from ._version import __version__
except ImportError:  # pragma: no cover
    from importlib.metadata import PackageNotFoundError, version

    try:
        __version__ = version("craft_overlayfs")
    except PackageNotFoundError:
        __version__ = "dev"


__all__ = [
    "__version__",
    "LibraryForceLoad",
    "Mapping",
    "MappingSpec",
    "MappingStore",
    "MountPlan",
    "OverlayConfig",
    "OverlayFsManager",
    "OverlayfsError",
    "load_config",
    "overlays",
]
