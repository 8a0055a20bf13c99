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

import logging
import os
from pathlib import Path

import pytest
import xdg  # type: ignore[import]


def pytest_runtest_setup(item: pytest.Item):
    """Configuration for tests."""
    with_sudo = item.get_closest_marker("with_sudo")
    if (
        with_sudo
        and not os.environ.get("CI")
        and not os.environ.get("CRAFT_OVERLAYFS_TESTS_ENABLE_SUDO")
    ):
        pytest.skip("Not running in CI and CRAFT_OVERLAYFS_TESTS_ENABLE_SUDO not set.")


def pytest_collection_modifyitems(items: list[pytest.Item]) -> None:
    """Use collection hook to mark all integration tests as slow"""
    for item in items:
        if "tests/integration" in str(item.path):
            item.add_marker(pytest.mark.slow)


def pytest_configure(config):
    config.addinivalue_line("markers", "with_sudo: test requires root privileges")
    config.addinivalue_line("markers", "slow: slow test")


@pytest.fixture
def new_dir(monkeypatch, tmpdir):
    """Change to a new temporary directory."""
    monkeypatch.chdir(tmpdir)
    return tmpdir


@pytest.fixture
def new_path(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    return tmp_path


@pytest.fixture(autouse=True)
def temp_xdg(tmpdir, mocker):
    """Use a temporary locaction for XDG directories."""

    mocker.patch(
        "xdg.BaseDirectory.xdg_config_home",
        new=os.path.join(tmpdir, ".config"),  # noqa: PTH118
    )
    mocker.patch("xdg.BaseDirectory.xdg_data_home", new=os.path.join(tmpdir, ".local"))  # noqa: PTH118
    mocker.patch("xdg.BaseDirectory.xdg_cache_home", new=os.path.join(tmpdir, ".cache"))  # noqa: PTH118
    mocker.patch(
        "xdg.BaseDirectory.xdg_config_dirs",
        new=[
            xdg.BaseDirectory.xdg_config_home  # pyright: ignore[reportGeneralTypeIssues]
        ],
    )
    mocker.patch(
        "xdg.BaseDirectory.xdg_data_dirs",
        new=[
            xdg.BaseDirectory.xdg_data_home  # pyright: ignore[reportGeneralTypeIssues]
        ],
    )
    mocker.patch.dict(os.environ, {"XDG_CONFIG_HOME": os.path.join(tmpdir, ".config")})  # noqa: PTH118


@pytest.fixture(autouse=True)
def reset_package_logger():
    """Detach handlers left behind by log sinks that were not closed."""
    yield

    package_logger = logging.getLogger("craft_overlayfs")
    for handler in list(package_logger.handlers):
        package_logger.removeHandler(handler)
        handler.close()
    package_logger.setLevel(logging.NOTSET)


@pytest.fixture
def fake_mknod(mocker):
    """Create regular files instead of device nodes, as tests don't run as root."""

    def _mknod(path, mode=0o600, device=0):  # noqa: ARG001
        Path(path).touch(exist_ok=False)

    return mocker.patch("os.mknod", side_effect=_mknod)
