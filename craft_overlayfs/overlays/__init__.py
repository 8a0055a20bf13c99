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

"""Overlay filesystem planning, mounting and cleanup."""

from .groups import FileInjectionGroup, LayerGroup, MountGroup
from .injector import RENAMED_SUFFIX, FileInjector, group_file_mappings
from .ledger import CleanupLedger, RenamedFile, WhiteoutEntry
from .overlay_fs import OverlayFS
from .planner import (
    OVERRIDE_DIR_NAME,
    MountPlan,
    check_conflicts,
    find_whiteouts,
    plan_layer_groups,
)
from .whiteouts import create_whiteout, is_whiteout_file, remove_whiteouts
