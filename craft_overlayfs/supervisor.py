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

"""Supervise processes running on top of the overlay mounts."""

import contextvars
import logging
import queue
import subprocess
import threading
from collections.abc import Callable
from concurrent import futures

from craft_overlayfs import errors

logger = logging.getLogger(__name__)

ExitCallback = Callable[[subprocess.Popen], None]

_Completion = tuple[subprocess.Popen, futures.Future]


class ProcessSupervisor:
    """Start processes and act when they terminate.

    Each started process has a waiter thread that posts its termination to
    a completion queue. A single reaper thread consumes the queue and calls
    ``on_exit`` for each terminated process, so the callback never runs on
    the thread that started the process.

    :param on_exit: The function to call when a process terminates.
    """

    def __init__(self, on_exit: ExitCallback):
        self._on_exit = on_exit
        self._lock = threading.Lock()
        self._processes: list[subprocess.Popen] = []
        self._done: list[futures.Future] = []
        self._completions: "queue.Queue[_Completion | None]" = queue.Queue()
        self._reaper: threading.Thread | None = None

    def start(self, command: list[str]) -> subprocess.Popen:
        """Start a process and watch for its termination.

        :param command: The command to run.

        :returns: The started process.

        :raises ProcessStartError: If the process can't be started.
        """
        try:
            proc = subprocess.Popen(command)
        except (OSError, ValueError) as err:
            raise errors.ProcessStartError(command[0], str(err)) from err

        logger.debug("created process with pid %d", proc.pid)
        done: futures.Future = futures.Future()

        with self._lock:
            self._processes.append(proc)
            self._done.append(done)
            if not self._reaper:
                # threads log in the context of the caller
                self._reaper = threading.Thread(
                    target=contextvars.copy_context().run,
                    args=(self._reap,),
                    name="overlayfs-reaper",
                    daemon=True,
                )
                self._reaper.start()

        threading.Thread(
            target=contextvars.copy_context().run,
            args=(self._wait, proc, done),
            name=f"wait-{proc.pid}",
            daemon=True,
        ).start()
        return proc

    def pids(self) -> list[int]:
        """Return the process identifiers of all started processes."""
        with self._lock:
            return [proc.pid for proc in self._processes]

    def wait(self, timeout: float | None = None) -> bool:
        """Wait until all started processes terminated and were handled.

        :param timeout: How long to wait, in seconds. Wait forever if None.

        :returns: Whether all processes were handled in time.
        """
        with self._lock:
            pending = list(self._done)

        _, not_done = futures.wait(pending, timeout=timeout)
        return not not_done

    def shutdown(self) -> None:
        """Stop the reaper thread.

        Processes terminating afterwards are not handled anymore.
        """
        with self._lock:
            reaper = self._reaper
            self._reaper = None

        if not reaper:
            return

        self._completions.put(None)
        if reaper is not threading.current_thread():
            reaper.join()

    def _wait(self, proc: subprocess.Popen, done: futures.Future) -> None:
        proc.wait()
        self._completions.put((proc, done))

    def _reap(self) -> None:
        while True:
            completion = self._completions.get()
            if completion is None:
                return

            proc, done = completion
            logger.debug(
                "process %d finished with status %d", proc.pid, proc.returncode
            )
            try:
                self._on_exit(proc)
            except Exception as err:  # noqa: BLE001
                logger.error(
                    "error handling termination of process %d: %s", proc.pid, err
                )
                done.set_exception(err)
            else:
                done.set_result(proc.returncode)
