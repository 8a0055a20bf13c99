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

"""Log file handling for overlay managers."""

import contextlib
import contextvars
import logging
import sys
from collections.abc import Iterator
from pathlib import Path

from xdg import BaseDirectory  # type: ignore

from craft_overlayfs.utils import package_name

LOG_FORMAT = "%(asctime)s.%(msecs)03d [%(levelname).1s] %(message)s"
DATE_FORMAT = "%H:%M:%S"

DEFAULT_LOG_FILE_NAME = "overlayfs.log"

_active_sink: "contextvars.ContextVar[LogSink | None]" = contextvars.ContextVar(
    "active_sink", default=None
)


def default_log_file() -> Path:
    """Return the default log file in the user's cache directory."""
    cache_dir = BaseDirectory.save_cache_path("craft-overlayfs")
    return Path(cache_dir, DEFAULT_LOG_FILE_NAME)


def parse_level(level: int | str) -> int:
    """Convert a level name or number to a logging level.

    :raises ValueError: If the level name is not valid.
    """
    if isinstance(level, int):
        return level

    value = logging.getLevelName(level.upper())
    if not isinstance(value, int):
        raise ValueError(f"invalid log level {level!r}")

    return value


class _SinkFilter(logging.Filter):
    """Drop messages logged while another sink is active."""

    def __init__(self, sink: "LogSink"):
        super().__init__()
        self._sink = sink

    def filter(self, record: logging.LogRecord) -> bool:
        active = _active_sink.get()
        return active is None or active is self._sink


class LogSink:
    """Send the package log messages to a file.

    The sink configures the top level package logger, so every module
    logger in the package writes to it. In debug mode, messages are also
    written to standard error.

    Several sinks can be attached at the same time. Messages logged while
    a sink is active only go to that sink, other messages go to all sinks.

    :param log_file: The log file, or None to use the default log file.
    :param level: The initial log level.
    """

    def __init__(
        self, log_file: Path | str | None = None, *, level: int = logging.WARNING
    ):
        self._logger = logging.getLogger(package_name())
        self._formatter = logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT)
        self._filter = _SinkFilter(self)
        self._level = level
        self._debug = False
        self._file_handler: logging.FileHandler | None = None
        self._stream_handler: logging.StreamHandler | None = None

        self.set_log_file(log_file or default_log_file())
        self._apply_level()

    @property
    def log_file(self) -> Path | None:
        """Return the current log file."""
        if not self._file_handler:
            return None
        return Path(self._file_handler.baseFilename)

    @property
    def level(self) -> int:
        """Return the current log level."""
        return self._level

    def set_log_file(self, log_file: Path | str) -> None:
        """Write log messages to the given file.

        :raises OSError: If the log file can't be opened.
        """
        path = Path(log_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        handler = logging.FileHandler(path, encoding="utf-8")
        handler.setFormatter(self._formatter)
        handler.setLevel(self._level)
        handler.addFilter(self._filter)

        self._remove_handler(self._file_handler)
        self._file_handler = handler
        self._logger.addHandler(handler)

    def set_level(self, level: int | str) -> None:
        """Set the log level of the log file.

        :raises ValueError: If the level name is not valid.
        """
        self._level = parse_level(level)
        if self._file_handler:
            self._file_handler.setLevel(self._level)
        self._apply_level()

    def set_debug(self, enabled: bool) -> None:
        """Enable or disable debug messages on standard error."""
        self._debug = enabled
        if enabled and not self._stream_handler:
            self._stream_handler = logging.StreamHandler(sys.stderr)
            self._stream_handler.setFormatter(self._formatter)
            self._stream_handler.setLevel(logging.DEBUG)
            self._stream_handler.addFilter(self._filter)
            self._logger.addHandler(self._stream_handler)
        elif not enabled:
            self._remove_handler(self._stream_handler)
            self._stream_handler = None
        self._apply_level()

    @contextlib.contextmanager
    def active(self) -> Iterator[None]:
        """Send messages logged in this context to this sink only."""
        token = _active_sink.set(self)
        try:
            yield
        finally:
            _active_sink.reset(token)

    def close(self) -> None:
        """Detach and close all handlers."""
        self._remove_handler(self._file_handler)
        self._remove_handler(self._stream_handler)
        self._file_handler = None
        self._stream_handler = None

    def _apply_level(self) -> None:
        self._logger.setLevel(logging.DEBUG if self._debug else self._level)

    def _remove_handler(self, handler: logging.Handler | None) -> None:
        if handler:
            self._logger.removeHandler(handler)
            handler.close()
