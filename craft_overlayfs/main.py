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

"""Overlay composition command line tool.

This is the main entry point for the craft_overlayfs package, invoked
when running `python -mcraft_overlayfs`. It loads an overlay configuration
file and displays the planned overlays (using `dry-run`), lists the
composed namespace, or runs an application on top of it.
"""

import argparse
import shlex
import sys
from functools import partial

import craft_overlayfs
import craft_overlayfs.errors
from craft_overlayfs import OverlayFsManager, load_config


def main(argv: list[str] | None = None) -> None:
    """Run the command-line interface."""
    options = _parse_arguments(argv)

    if options.version:
        print(f"craft-overlayfs {craft_overlayfs.__version__}")
        sys.exit()

    try:
        _process_overlays(options)
    except OSError as err:
        msg = err.strerror
        if err.filename:
            msg = f"{err.filename}: {msg}"
        print(f"Error: {msg}.", file=sys.stderr)
        sys.exit(1)
    except craft_overlayfs.errors.ConfigFileError as err:
        print(f"Error: {err}", file=sys.stderr)
        sys.exit(2)
    except craft_overlayfs.errors.OverlayfsError as err:
        print(f"Error: {err}", file=sys.stderr)
        sys.exit(3)


def _process_overlays(options: argparse.Namespace) -> None:
    config = load_config(options.file)

    with OverlayFsManager(options.log_file) as manager:
        if options.trace:
            manager.set_debug_mode(True)

        if not config.apply(manager):
            _fail("cannot apply overlay configuration", manager)

        command = options.command if options.command else "dry-run"
        if command == "dry-run":
            _do_dry_run(manager)
        elif command == "dump":
            _do_dump(manager)
        else:
            _do_run(manager, options)


def _do_dry_run(manager: OverlayFsManager) -> None:
    plan = manager.dryrun()
    if plan is None:
        _fail("cannot plan overlays", manager)

    if not plan.layer_groups and not plan.file_groups:
        print("No overlays to mount.")
        return

    for group in plan.layer_groups:
        print(f"Mount on {group.target}:")
        for lower_dir in group.lower_dirs:
            print(f"  lower: {lower_dir}")
        print(f"  upper: {group.upper_dir or '(read-only)'}")
        for whiteout in group.whiteouts:
            print(f"  hide: {whiteout}")

    for destination, mappings in plan.file_groups.items():
        print(f"Inject files in {destination}:")
        for mapping in mappings:
            print(f"  {mapping}")


def _do_dump(manager: OverlayFsManager) -> None:
    if not manager.mount():
        _fail("cannot mount overlays", manager)

    for path in manager.create_overlayfs_dump():
        print(path)


def _do_run(manager: OverlayFsManager, options: argparse.Namespace) -> None:
    command_line = shlex.join(options.args)
    if not manager.create_process(options.application, command_line):
        _fail(f"cannot run {options.application!r}", manager)

    manager.wait_processes()


def _fail(message: str, manager: OverlayFsManager) -> None:
    log_file = manager.log_file()
    raise craft_overlayfs.errors.OverlayfsError(
        brief=f"Failed: {message}.",
        resolution=f"Check the log file {str(log_file)!r} for details.",
    )


def _parse_arguments(argv: list[str] | None) -> argparse.Namespace:
    prog = "python -m craft_overlayfs"
    description = (
        "A command line interface for the craft_overlayfs module to compose "
        "directory trees using overlay mounts."
    )

    parser = argparse.ArgumentParser(prog=prog, description=description, add_help=False)
    parser.add_argument(
        "-h",
        "--help",
        action="help",
        default=argparse.SUPPRESS,
        help="Show this help message and exit.",
    )
    parser.add_argument(
        "-f",
        "--file",
        metavar="filename",
        default="overlayfs.yaml",
        help="The overlay configuration file. Default is 'overlayfs.yaml'.",
    )
    parser.add_argument(
        "--log-file",
        metavar="filename",
        default=None,
        help="Write log messages to the specified file.",
    )
    parser.add_argument(
        "--trace",
        action="store_true",
        help="Enable debug messages.",
    )
    parser.add_argument(
        "--version",
        action="store_true",
        help="Display the craft-overlayfs version and exit.",
    )

    help_parser = argparse.ArgumentParser(add_help=False)
    help_parser.add_argument(
        "-h",
        "--help",
        action="help",
        default=argparse.SUPPRESS,
        help="Show this help message and exit.",
    )

    subparsers = parser.add_subparsers(dest="command")

    add_subparser = partial(
        subparsers.add_parser, add_help=False, parents=[help_parser]
    )

    add_subparser("dry-run", help="Show the overlays to mount and exit.")
    add_subparser("dump", help="List all entries of the composed namespace.")

    run_parser = add_subparser(
        "run", help="Run an application on top of the mounted overlays."
    )
    run_parser.add_argument("application", help="The application to run.")
    run_parser.add_argument(
        "args",
        nargs=argparse.REMAINDER,
        help="The application arguments.",
    )

    return parser.parse_args(argv)
