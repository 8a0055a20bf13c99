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

import copy
import logging
import os
import shlex
import subprocess
import threading
from pathlib import Path

from craft_overlayfs import errors
from craft_overlayfs.logs import LogSink
from craft_overlayfs.mappings import MappingStore
from craft_overlayfs.overlays import (
    CleanupLedger,
    FileInjectionGroup,
    FileInjector,
    LayerGroup,
    MountPlan,
    group_file_mappings,
    plan_layer_groups,
    remove_whiteouts,
)
from craft_overlayfs.overlays import errors as overlay_errors
from craft_overlayfs.supervisor import ProcessSupervisor
from craft_overlayfs.utils import os_utils

logger = logging.getLogger(__name__)

OFS_VERSION = "1.0.0"


class OverlayFsManager:
    """Mount a virtual namespace composed of mapped directories and files.

    Directory mappings are stacked as overlay layers on their destination,
    file mappings are exposed through a synthetic layer of symbolic links.
    The manager keeps track of every change it makes to the filesystem so
    it can be reverted when unmounting.

    Public methods don't raise. Errors are logged and reported with the
    return value.

    Two locks protect the manager state: the mount lock serializes mount
    operations, and the data lock protects the mappings. Operations that
    need both always acquire the mount lock first.

    :param log_file: The log file, or None to use the default log file.
    :param timeout: How long to wait for mount and unmount commands, in
        seconds. The commands may still be running after a timeout.
    :param fallback_to_destination: Use the destination directory as upper
        layer if there's no override directory and no upper directory set.
        If not set, such overlays are mounted read-only.
    """

    def __init__(
        self,
        log_file: Path | str | None = None,
        *,
        timeout: float = os_utils.DEFAULT_TIMEOUT,
        fallback_to_destination: bool = True,
    ):
        self._log_sink = LogSink(log_file)
        self._timeout = timeout
        self._fallback_to_destination = fallback_to_destination

        self._mount_lock = threading.Lock()
        self._data_lock = threading.Lock()

        self._store = MappingStore()
        self._ledger = CleanupLedger()
        self._layer_groups: list[LayerGroup] = []
        self._file_groups: list[FileInjectionGroup] = []
        self._mounted = False
        self._debug_mode = False

        self._supervisor = ProcessSupervisor(on_exit=self._on_process_exit)

    def __enter__(self) -> "OverlayFsManager":
        return self

    def __exit__(self, *exc) -> bool:
        self.close()
        return False

    @staticmethod
    def ofs_version_string() -> str:
        """Return the overlay manager version."""
        return OFS_VERSION

    # Configuration

    def set_log_level(self, level: int | str) -> bool:
        """Set the log level, as a number or a level name."""
        with self._data_lock, self._log_sink.active():
            try:
                self._log_sink.set_level(level)
            except ValueError as err:
                logger.error("%s", err)
                return False

            logger.debug(
                "set log level to %s", logging.getLevelName(self._log_sink.level)
            )
        return True

    def set_log_file(self, log_file: Path | str) -> bool:
        """Write log messages to the given file."""
        with self._data_lock, self._log_sink.active():
            logger.debug("setting log file to %r", str(log_file))
            try:
                self._log_sink.set_log_file(log_file)
            except OSError as err:
                logger.error("cannot open log file %s: %s", log_file, err)
                return False

        return True

    def log_file(self) -> Path | None:
        """Return the current log file."""
        with self._data_lock, self._log_sink.active():
            return self._log_sink.log_file

    def set_debug_mode(self, value: bool) -> None:
        """Enable debugging mode. It can be very noisy."""
        with self._data_lock, self._log_sink.active():
            self._debug_mode = value
            self._log_sink.set_debug(value)

    def set_work_dir(self, directory: Path | str, create: bool = False) -> bool:
        """Set the directory where overlay work directories are created.

        :param directory: The work directory. It must be on the same
            filesystem as the upper directory.
        :param create: Create the directory if it does not exist.
        """
        with self._data_lock, self._log_sink.active():
            logger.debug("setting work dir to %r", str(directory))
            try:
                self._store.set_work_dir(directory, create=create)
            except (errors.OverlayfsError, OSError) as err:
                logger.error("%s", err)
                return False

        return True

    def set_upper_dir(self, directory: Path | str, create: bool = False) -> bool:
        """Set the upper directory used when a destination has no override.

        :param directory: The upper directory. It must be on the same
            filesystem as the work directory.
        :param create: Create the directory if it does not exist.
        """
        with self._data_lock, self._log_sink.active():
            logger.debug("setting upper dir to %r", str(directory))
            try:
                self._store.set_upper_dir(directory, create=create)
            except (errors.OverlayfsError, OSError) as err:
                logger.error("%s", err)
                return False

        return True

    def add_directory(
        self, source: Path | str, destination: Path | str, create: bool = False
    ) -> bool:
        """Map the contents of a directory onto a destination directory.

        Sources named ``overwrite`` become the writable layer of their
        destination.

        :param source: The directory providing content.
        :param destination: The directory where content is made visible.
        :param create: Create source and destination if they don't exist.
        """
        with self._data_lock, self._log_sink.active():
            logger.debug(
                "adding directory %r with destination %r", str(source), str(destination)
            )
            try:
                self._store.add_directory(source, destination, create=create)
            except (errors.OverlayfsError, OSError) as err:
                logger.error("%s", err)
                return False

        return True

    def remove_directory(self, source: Path | str, destination: Path | str) -> bool:
        """Remove a directory mapping.

        :returns: Whether the mapping existed.
        """
        with self._data_lock, self._log_sink.active():
            logger.debug(
                "removing directory %r with destination %r",
                str(source),
                str(destination),
            )
            return self._store.remove_directory(source, destination)

    def add_file(self, source: Path | str, destination: Path | str) -> bool:
        """Map a file into the destination.

        :param source: The file to map.
        :param destination: The destination path. If it's an existing
            directory, the file keeps its name inside that directory.
        """
        with self._data_lock, self._log_sink.active():
            logger.debug(
                "adding file %r with destination %r", str(source), str(destination)
            )
            try:
                self._store.add_file(source, destination)
            except errors.OverlayfsError as err:
                logger.error("%s", err)
                return False

        return True

    def remove_file(self, source: Path | str, destination: Path | str) -> bool:
        """Remove a file mapping.

        :returns: Whether the mapping existed.
        """
        with self._data_lock, self._log_sink.active():
            logger.debug(
                "removing file %r with destination %r", str(source), str(destination)
            )
            return self._store.remove_file(source, destination)

    def add_skip_file_suffix(self, file_suffix: str) -> None:
        """Hide files ending with the given suffix.

        Both ``.txt`` and ``some_file.txt`` are valid file suffixes, not to
        be confused with file extensions.
        """
        with self._data_lock, self._log_sink.active():
            logger.debug("added skip file suffix %r", file_suffix)
            self._store.add_skip_file_suffix(file_suffix)

    def clear_skip_file_suffixes(self) -> None:
        """Clear the file suffix skip list."""
        with self._data_lock, self._log_sink.active():
            logger.debug("clearing skip file suffixes")
            self._store.clear_skip_file_suffixes()

    def add_skip_directory(self, directory: str) -> None:
        """Hide directories with the given name.

        This is a name, not a path: if ``.git`` is added, any ``.git``
        directory in the mapped sources is hidden, at any depth.
        """
        with self._data_lock, self._log_sink.active():
            logger.debug("added skip directory %r", directory)
            self._store.add_skip_directory(directory)

    def clear_skip_directories(self) -> None:
        """Clear the directory skip list."""
        with self._data_lock, self._log_sink.active():
            logger.debug("clearing skip directories")
            self._store.clear_skip_directories()

    def force_load_library(self, process_name: str, library_path: Path | str) -> None:
        """Add a library to be loaded when the given process is started.

        Library loading is not enforced yet, requests are recorded and
        reported when a matching process is started.
        """
        with self._data_lock, self._log_sink.active():
            logger.debug(
                "adding forced library %r for process %r",
                str(library_path),
                process_name,
            )
            self._store.force_load_library(process_name, library_path)

    def clear_library_force_loads(self) -> None:
        """Clear all previous library load requests."""
        with self._data_lock, self._log_sink.active():
            logger.debug("clearing forced libraries")
            self._store.clear_library_force_loads()

    def clear_mappings(self) -> None:
        """Remove all directory and file mappings."""
        with self._data_lock, self._log_sink.active():
            logger.debug("clearing mappings")
            self._store.clear_mappings()

    # Mount lifecycle

    def is_mounted(self) -> bool:
        """Whether all overlays are mounted."""
        # wait for pending mount operations
        with self._mount_lock, self._log_sink.active():
            return self._mounted

    def cleanup_ledger(self) -> CleanupLedger:
        """Return a copy of the record of pending filesystem changes."""
        with self._mount_lock, self._log_sink.active():
            return copy.deepcopy(self._ledger)

    def dryrun(self) -> MountPlan | None:
        """Plan the overlays and log what would be mounted.

        Nothing is created or mounted.

        :returns: The mount plan, or None if the mappings can't be planned.
        """
        with self._mount_lock, self._data_lock, self._log_sink.active():
            logger.info("would mount")

            if not self._store.directories and not self._store.files:
                logger.info("nothing")
                return MountPlan(layer_groups=[], file_groups={})

            try:
                layer_groups = plan_layer_groups(
                    self._store,
                    allocate_work_dirs=False,
                    fallback_to_destination=self._fallback_to_destination,
                )
            except errors.OverlayfsError as err:
                logger.error("error creating mounts: %s", err)
                return None

            file_groups = group_file_mappings(self._store.files)

        plan = MountPlan(layer_groups=layer_groups, file_groups=file_groups)
        with self._log_sink.active():
            _log_plan(plan)

        return plan

    def mount(self) -> bool:
        """Mount all overlays.

        :returns: Whether all overlays were mounted.
        """
        with self._mount_lock, self._data_lock, self._log_sink.active():
            return self._mount()

    def umount(self) -> bool:
        """Unmount all overlays and revert filesystem changes.

        :returns: Whether all overlays were unmounted.
        """
        with self._mount_lock, self._data_lock, self._log_sink.active():
            return self._umount()

    def create_overlayfs_dump(self) -> list[Path]:
        """List all entries in the composed namespace.

        The overlays are mounted if needed, and unmounted afterwards if they
        weren't mounted before.

        :returns: The paths of all entries, or an empty list on error.
        """
        with self._mount_lock, self._data_lock, self._log_sink.active():
            logger.debug("creating overlayfs dump")
            was_mounted = self._mounted

            if not self._mount():
                return []

            result: list[Path] = []
            for group in [*self._layer_groups, *self._file_groups]:
                for root, directories, files in os.walk(group.target):
                    result.extend(Path(root, name) for name in directories)
                    result.extend(Path(root, name) for name in files)

            if not was_mounted:
                self._umount()

        return result

    # Processes

    def create_process(self, application_name: str, command_line: str = "") -> bool:
        """Start an application on top of the mounted overlays.

        The overlays are mounted if needed, and unmounted when the
        application terminates.

        :param application_name: The program to run.
        :param command_line: The program arguments, split using shell rules.

        :returns: Whether the application was started.
        """
        with self._mount_lock, self._data_lock, self._log_sink.active():
            logger.debug(
                "creating process %r with command line %r",
                application_name,
                command_line,
            )
            if not self._mounted and not self._mount():
                logger.error("not starting process because mount failed")
                return False

            libraries = self._store.libraries_for(Path(application_name).name)
            if libraries:
                logger.warning(
                    "forced library loading is not supported, ignoring %s",
                    ", ".join(str(lib) for lib in libraries),
                )

            try:
                args = shlex.split(command_line)
            except ValueError as err:
                logger.error("invalid command line %r: %s", command_line, err)
                return False

            try:
                self._supervisor.start([application_name, *args])
            except errors.ProcessStartError as err:
                logger.error("error creating process: %s", err)
                return False

        return True

    def get_overlayfs_process_list(self) -> list[int]:
        """Return the process identifiers of all started processes."""
        return self._supervisor.pids()

    def wait_processes(self, timeout: float | None = None) -> bool:
        """Wait until all started processes terminate and are cleaned up.

        :param timeout: How long to wait, in seconds. Wait forever if None.

        :returns: Whether all processes terminated in time.
        """
        return self._supervisor.wait(timeout)

    def close(self) -> None:
        """Unmount the overlays and stop supervising processes."""
        self._supervisor.shutdown()

        with self._mount_lock, self._data_lock, self._log_sink.active():
            if self._mounted or self._layer_groups or self._file_groups:
                if not self._umount():
                    logger.error("could not unmount overlays on close")

        self._log_sink.close()

    def _on_process_exit(self, proc: subprocess.Popen) -> None:
        with self._log_sink.active():
            logger.debug("process %d finished, unmounting", proc.pid)
            if not self.umount():
                logger.error("could not unmount after process %d finished", proc.pid)

    # Internal operations, called with both locks held

    def _mount(self) -> bool:
        logger.debug("mounting")
        if self._mounted:
            logger.debug("already mounted")
            return True

        mounted = [str(g.target) for g in self._groups() if g.mounted]
        if mounted:
            logger.error("%s", overlay_errors.PartialMountError(mounted))
            return False

        # leftovers from a failed attempt
        self._rollback()

        try:
            self._layer_groups = plan_layer_groups(
                self._store, fallback_to_destination=self._fallback_to_destination
            )

            injector = FileInjector(self._ledger)
            try:
                injector.inject(self._store.files)
            finally:
                self._file_groups = injector.groups

            for layer_group in self._layer_groups:
                layer_group.create_whiteouts(self._ledger)
                layer_group.mount(timeout=self._timeout)

            for file_group in self._file_groups:
                file_group.mount(timeout=self._timeout)
        except (errors.OverlayfsError, OSError) as err:
            logger.error("mount failed: %s", err)
            if any(g.mounted for g in self._groups()):
                logger.error("overlays are partially mounted, unmount to recover")
            else:
                self._rollback()
            return False

        self._mounted = True
        return True

    def _umount(self) -> bool:
        logger.debug("unmounting")
        if not self._groups() and self._ledger.is_empty():
            logger.debug("not mounted")
            self._mounted = False
            return True

        try:
            for file_group in reversed(self._file_groups):
                file_group.unmount()

            for layer_group in reversed(self._layer_groups):
                layer_group.unmount()
                remove_whiteouts(self._ledger, target=layer_group.target)
        except overlay_errors.OverlayError as err:
            logger.error("unmount failed: %s", err)
            return False

        self._rollback()
        self._mounted = False
        return True

    def _rollback(self) -> None:
        """Revert recorded filesystem changes of unmounted overlays."""
        for target in dict.fromkeys(e.target for e in self._ledger.whiteout_files):
            remove_whiteouts(self._ledger, target=target)

        self._ledger.remove_symlinks()
        self._ledger.remove_created_directories()

        for group in self._groups():
            group.release()

        self._ledger.clear()
        self._layer_groups = []
        self._file_groups = []

    def _groups(self) -> list[LayerGroup | FileInjectionGroup]:
        return [*self._layer_groups, *self._file_groups]


def _log_plan(plan: MountPlan) -> None:
    logger.info("directories:")
    for index, group in enumerate(plan.layer_groups):
        logger.info(" . %d", index)
        for lower_dir in group.lower_dirs:
            logger.info("   . %s -> %s", lower_dir, group.target)
        logger.info("   upper dir: %s", group.upper_dir or "(read-only)")
        if group.whiteouts:
            logger.info("ignored files/directories:")
            for whiteout in group.whiteouts:
                logger.info("   . %s", whiteout)

    logger.info("files:")
    for mappings in plan.file_groups.values():
        for mapping in mappings:
            logger.info(" . %s", mapping)
