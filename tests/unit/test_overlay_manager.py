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
import threading
from pathlib import Path
from subprocess import CalledProcessError
from unittest.mock import ANY, call

import pytest
from craft_overlayfs import OverlayFsManager
from craft_overlayfs.overlays import is_whiteout_file


@pytest.fixture
def mock_mount(mocker):
    return mocker.patch("craft_overlayfs.utils.os_utils.mount_overlayfs")


@pytest.fixture
def mock_umount(mocker):
    return mocker.patch("craft_overlayfs.utils.os_utils.umount")


@pytest.fixture
def manager(new_dir, mock_mount, mock_umount):
    mgr = OverlayFsManager("test.log")
    yield mgr
    mgr.close()


def _mkdirs(*names: str) -> None:
    for name in names:
        Path(name).mkdir(parents=True, exist_ok=True)


def _hidden_entries(path: Path) -> list[str]:
    return sorted(
        p.name for p in path.iterdir() if p.name.startswith(".") and "_work_" in p.name
    )


def test_version_string():
    assert OverlayFsManager.ofs_version_string() == "1.0.0"


class TestConfiguration:
    """Configure mappings and layer directories."""

    def test_set_upper_dir(self, manager):
        assert manager.set_upper_dir("upper") is False
        assert manager.set_upper_dir("upper", create=True) is True
        assert Path("upper").is_dir()

    def test_set_work_dir(self, manager):
        assert manager.set_work_dir("work") is False
        assert manager.set_work_dir("work", create=True) is True
        assert Path("work").is_dir()

    def test_add_directory_missing(self, manager, caplog):
        _mkdirs("dst")
        assert manager.add_directory("src", "dst") is False
        assert "does not exist" in caplog.text

    def test_add_directory_duplicate(self, manager):
        _mkdirs("src", "dst")
        assert manager.add_directory("src", "dst") is True
        assert manager.add_directory("src", "dst") is True

    def test_remove_directory(self, manager):
        _mkdirs("src", "dst")
        manager.add_directory("src", "dst")
        assert manager.remove_directory("src", "dst") is True
        assert manager.remove_directory("src", "dst") is False

    def test_add_file_invalid(self, manager, caplog):
        _mkdirs("src", "dst")
        assert manager.add_file("src", "dst") is False
        assert "source must not be a directory" in caplog.text

    def test_remove_file(self, manager):
        _mkdirs("dst")
        Path("file").touch()
        manager.add_file("file", "dst")
        assert manager.remove_file("file", "dst") is True
        assert manager.remove_file("file", "dst") is False

    def test_set_log_level(self, manager):
        assert manager.set_log_level("info") is True
        assert manager.set_log_level(logging.DEBUG) is True
        assert manager.set_log_level("loud") is False

    def test_set_log_file(self, manager):
        assert manager.set_log_file("logs/other.log") is True
        assert manager.log_file() == Path("logs/other.log").absolute()

        logging.getLogger("craft_overlayfs").warning("hello")
        assert "hello" in Path("logs/other.log").read_text()

    def test_separate_log_files(self, new_dir, mock_mount, mock_umount):
        _mkdirs("dst")
        first = OverlayFsManager("first.log")
        second = OverlayFsManager("second.log")

        assert first.add_directory("missing", "dst") is False
        assert second.add_file("dst", "dst") is False
        first.close()
        second.close()

        first_log = Path("first.log").read_text()
        second_log = Path("second.log").read_text()
        assert "does not exist" in first_log
        assert "source must not be a directory" not in first_log
        assert "source must not be a directory" in second_log
        assert "does not exist" not in second_log


class TestMount:
    """Mount and unmount directory layers."""

    def test_mount_lower_dir_order(self, new_dir, manager, mock_mount):
        _mkdirs("A", "B", "C", "dst")
        manager.add_directory("A", "dst")
        manager.add_directory("B", "dst")
        manager.add_directory("C", "dst")

        assert manager.mount() is True
        assert manager.is_mounted() is True

        dst = Path(new_dir, "dst")
        mock_mount.assert_called_once_with(
            str(dst),
            "-o",
            f"upperdir={dst}",
            "-o",
            ANY,
            "-o",
            f"lowerdir={new_dir}/C:{new_dir}/B:{new_dir}/A:{dst}",
            timeout=10.0,
        )
        work_arg = mock_mount.call_args.args[4]
        assert work_arg.startswith(f"workdir={new_dir}/.dst_work_")

    def test_mount_is_idempotent(self, manager, mock_mount):
        _mkdirs("a", "dst")
        manager.add_directory("a", "dst")

        assert manager.mount() is True
        assert manager.mount() is True
        assert mock_mount.call_count == 1

    def test_mount_nothing(self, manager, mock_mount):
        assert manager.mount() is True
        assert manager.is_mounted() is True
        mock_mount.assert_not_called()

        assert manager.umount() is True
        assert manager.is_mounted() is False

    def test_mount_read_only(self, new_dir, mock_mount, mock_umount):
        _mkdirs("a", "dst")
        with OverlayFsManager("test.log", fallback_to_destination=False) as manager:
            manager.add_directory("a", "dst")
            assert manager.mount() is True

        mock_mount.assert_called_once_with(
            f"{new_dir}/dst", "-o", f"lowerdir={new_dir}/a:{new_dir}/dst", timeout=10.0
        )
        mock_umount.assert_called_once_with(f"{new_dir}/dst", timeout=10.0)

    def test_mount_timeout_setting(self, new_dir, mock_mount, mock_umount):
        _mkdirs("a", "dst")
        with OverlayFsManager("test.log", timeout=2.5) as manager:
            manager.add_directory("a", "dst")
            assert manager.mount() is True
            assert manager.umount() is True

        assert mock_mount.call_args.kwargs["timeout"] == 2.5
        mock_umount.assert_called_once_with(f"{new_dir}/dst", timeout=2.5)

    def test_umount(self, new_dir, manager, mock_umount):
        _mkdirs("a", "upper", "dst")
        manager.set_upper_dir("upper")
        manager.add_directory("a", "dst")
        manager.mount()
        assert _hidden_entries(Path(new_dir)) != []

        assert manager.umount() is True
        assert manager.is_mounted() is False
        mock_umount.assert_called_once_with(f"{new_dir}/dst", timeout=10.0)
        # work directories are removed
        assert _hidden_entries(Path(new_dir)) == []
        assert manager.cleanup_ledger().is_empty()

    def test_umount_not_mounted(self, manager, mock_umount):
        assert manager.umount() is True
        mock_umount.assert_not_called()

    def test_umount_order(self, new_dir, manager, mock_umount):
        _mkdirs("a", "b", "dst1", "dst2", "dst3")
        Path("file").touch()
        manager.add_directory("a", "dst1")
        manager.add_directory("b", "dst2")
        manager.add_file("file", "dst3")

        manager.mount()
        manager.umount()

        assert mock_umount.mock_calls == [
            call(f"{new_dir}/dst3", timeout=10.0),
            call(f"{new_dir}/dst2", timeout=10.0),
            call(f"{new_dir}/dst1", timeout=10.0),
        ]

    def test_umount_error(self, manager, mock_umount, caplog):
        _mkdirs("a", "dst")
        manager.add_directory("a", "dst")
        manager.mount()

        mock_umount.side_effect = CalledProcessError(cmd=["umount"], returncode=32)
        assert manager.umount() is False
        assert manager.is_mounted() is True
        assert "unmount failed" in caplog.text

        mock_umount.side_effect = None
        assert manager.umount() is True
        assert manager.is_mounted() is False

    def test_mapping_conflict(self, manager, mock_mount, caplog):
        _mkdirs("a", "b", "c")
        manager.add_directory("a", "b")
        manager.add_directory("b", "c")

        assert manager.mount() is False
        assert manager.is_mounted() is False
        mock_mount.assert_not_called()
        assert "cannot simultaneously be a destination" in caplog.text

    def test_file_destination_conflict(self, manager, mock_mount):
        _mkdirs("a", "dst")
        Path("file").touch()
        manager.add_directory("a", "dst")
        manager.add_file("file", "dst")

        assert manager.mount() is False
        mock_mount.assert_not_called()

    def test_clear_mappings(self, manager, mock_mount):
        _mkdirs("a", "dst")
        manager.add_directory("a", "dst")
        manager.clear_mappings()

        assert manager.mount() is True
        mock_mount.assert_not_called()

    def test_concurrent_mount(self, manager, mock_mount):
        _mkdirs("a", "dst")
        manager.add_directory("a", "dst")

        results = []
        threads = [
            threading.Thread(target=lambda: results.append(manager.mount()))
            for _ in range(8)
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert results == [True] * 8
        assert mock_mount.call_count == 1

    def test_context_manager_unmounts(self, new_dir, mock_mount, mock_umount):
        _mkdirs("a", "dst")
        with OverlayFsManager("test.log") as manager:
            manager.add_directory("a", "dst")
            manager.mount()

        mock_umount.assert_called_once_with(f"{new_dir}/dst", timeout=10.0)


@pytest.mark.usefixtures("fake_mknod")
class TestWhiteouts:
    """Hide skipped entries using whiteout files."""

    def test_whiteouts_created_and_removed(self, new_dir, manager):
        _mkdirs("a/.git", "a/sub", "upper", "dst")
        Path("a/sub/module.pyc").touch()
        manager.set_upper_dir("upper")
        manager.add_skip_directory(".git")
        manager.add_skip_file_suffix(".pyc")
        manager.add_directory("a", "dst")

        assert manager.mount() is True
        assert Path("upper/.git").is_file()
        assert Path("upper/sub/module.pyc").is_file()

        assert manager.umount() is True
        assert list(Path("upper").iterdir()) == []

    def test_whiteouts_shared_upper_dir(self, new_dir, manager, mock_mount):
        _mkdirs("a/.git", "b/.git", "upper", "dst1", "dst2")
        manager.set_upper_dir("upper")
        manager.add_skip_directory(".git")
        manager.add_directory("a", "dst1")
        manager.add_directory("b", "dst2")

        assert manager.mount() is True
        assert mock_mount.call_count == 2
        assert Path("upper/.git").is_file()

        assert manager.umount() is True
        assert list(Path("upper").iterdir()) == []
        assert manager.cleanup_ledger().is_empty()

    def test_whiteout_parent_directories_kept_if_not_empty(self, new_dir, manager):
        _mkdirs("a/sub", "upper", "dst")
        Path("a/sub/module.pyc").touch()
        manager.set_upper_dir("upper")
        manager.add_skip_file_suffix(".pyc")
        manager.add_directory("a", "dst")

        manager.mount()
        Path("upper/sub/user_file").write_text("data")

        assert manager.umount() is True
        assert not Path("upper/sub/module.pyc").exists()
        assert Path("upper/sub/user_file").read_text() == "data"

    def test_modified_whiteout_is_kept(self, new_dir, manager, caplog):
        _mkdirs("a/.git", "upper", "dst")
        manager.set_upper_dir("upper")
        manager.add_skip_directory(".git")
        manager.add_directory("a", "dst")

        manager.mount()
        Path("upper/.git").write_text("replaced")

        assert manager.umount() is True
        assert Path("upper/.git").read_text() == "replaced"
        assert "size should be 0, but is 8" in caplog.text

    def test_whiteout_creation_error(self, new_dir, manager, mocker, mock_mount):
        mocker.patch("os.mknod", side_effect=PermissionError(1, "Not permitted"))
        _mkdirs("a/sub/.git", "upper", "dst")
        manager.set_upper_dir("upper")
        manager.add_skip_directory(".git")
        manager.add_directory("a", "dst")

        assert manager.mount() is False
        mock_mount.assert_not_called()
        # directories created for the whiteout are removed
        assert list(Path("upper").iterdir()) == []
        assert manager.cleanup_ledger().is_empty()

    def test_whiteouts_not_real_devices(self, new_dir, manager):
        _mkdirs("a/.git", "upper", "dst")
        manager.set_upper_dir("upper")
        manager.add_skip_directory(".git")
        manager.add_directory("a", "dst")

        manager.mount()
        # files created by the fake mknod are not whiteouts
        assert is_whiteout_file(Path("upper/.git")) is False
        manager.umount()


class TestFileInjection:
    """Map single files into destination directories."""

    def test_inject_files(self, new_dir, manager, mock_mount):
        _mkdirs("src", "dst")
        Path("src/file").write_text("new")
        manager.add_file("src/file", "dst")

        assert manager.mount() is True

        dst = Path(new_dir, "dst")
        mock_mount.assert_called_once_with(
            str(dst), "-o", ANY, "-o", ANY, "-o", f"lowerdir={dst}", timeout=10.0
        )
        upper_arg = mock_mount.call_args.args[2]
        assert upper_arg.startswith(f"upperdir={new_dir}/dst_tmp_")
        upper_dir = Path(upper_arg.split("=", 1)[1])
        assert (upper_dir / "file").readlink() == Path(new_dir, "src/file")

        assert manager.umount() is True
        assert not upper_dir.exists()
        assert [p.name for p in Path(new_dir).iterdir() if "_tmp_" in p.name] == []

    def test_inject_existing_file(self, new_dir, manager):
        _mkdirs("src", "dst")
        Path("src/file").write_text("new")
        Path("dst/file").write_text("original")
        manager.add_file("src/file", "dst/file")

        assert manager.mount() is True
        assert not Path("dst/file").exists()
        assert Path("dst/file.ofs-renamed").read_text() == "original"

        assert manager.umount() is True
        assert Path("dst/file").read_text() == "original"
        assert not Path("dst/file.ofs-renamed").exists()

    def test_files_mounted_after_directories(self, new_dir, manager, mock_mount):
        _mkdirs("a", "dst1", "dst2")
        Path("file").touch()
        manager.add_file("file", "dst2")
        manager.add_directory("a", "dst1")

        manager.mount()
        assert [c.args[0] for c in mock_mount.mock_calls] == [
            f"{new_dir}/dst1",
            f"{new_dir}/dst2",
        ]


class TestFailedMount:
    """Recover from mount failures."""

    def test_rollback_when_nothing_mounted(self, new_dir, manager, mock_mount):
        _mkdirs("a", "upper", "dst")
        Path("src").write_text("new")
        Path("dst/src").write_text("original")
        manager.set_upper_dir("upper")
        manager.add_directory("a", "dst2", create=True)
        manager.add_file("src", "dst")
        mock_mount.side_effect = CalledProcessError(cmd=["fuse-overlayfs"], returncode=1)

        assert manager.mount() is False
        assert manager.is_mounted() is False
        assert Path("dst/src").read_text() == "original"
        assert not Path("dst/src.ofs-renamed").exists()
        assert _hidden_entries(Path(new_dir)) == []
        assert [p.name for p in Path(new_dir).iterdir() if "_tmp_" in p.name] == []
        assert manager.cleanup_ledger().is_empty()

        # the mount can be retried
        mock_mount.side_effect = None
        assert manager.mount() is True

    def test_mount_error_undecodable_output(self, new_dir, mocker, caplog):
        tool = Path("fake-overlayfs")
        tool.write_text("#!/bin/sh\nprintf 'bad \\377 path'\nexit 1\n")
        tool.chmod(0o755)
        mocker.patch(
            "craft_overlayfs.utils.os_utils.MOUNT_OVERLAYFS_COMMAND",
            str(tool.absolute()),
        )
        _mkdirs("a", "dst")

        with OverlayFsManager("test.log") as mgr:
            mgr.add_directory("a", "dst")

            assert mgr.mount() is False
            assert mgr.is_mounted() is False
            assert "bad \ufffd path" in caplog.text
            assert mgr.cleanup_ledger().is_empty()
            assert _hidden_entries(Path(new_dir)) == []

    def test_partial_mount_guard(self, new_dir, manager, mock_mount, mock_umount, caplog):
        _mkdirs("a", "b", "dst1", "dst2")
        manager.add_directory("a", "dst1")
        manager.add_directory("b", "dst2")
        mock_mount.side_effect = [
            None,
            CalledProcessError(cmd=["fuse-overlayfs"], returncode=1),
        ]

        assert manager.mount() is False
        assert manager.is_mounted() is False
        assert "partially mounted" in caplog.text

        # refuse to mount on top of the partial state
        caplog.clear()
        assert manager.mount() is False
        assert mock_mount.call_count == 2
        assert "A previous mount attempt is partially mounted." in caplog.text
        assert f"Mounted: {new_dir}/dst1" in caplog.text

        # unmount what was mounted, then mount again
        assert manager.umount() is True
        mock_umount.assert_called_once_with(f"{new_dir}/dst1", timeout=10.0)
        assert manager.cleanup_ledger().is_empty()

        mock_mount.side_effect = None
        assert manager.mount() is True
        assert mock_mount.call_count == 4


class TestDryRun:
    """Plan overlays without mounting."""

    def test_dryrun(self, new_dir, manager, mock_mount, caplog):
        _mkdirs("a/.git", "b", "dst")
        manager.add_skip_directory(".git")
        manager.add_directory("a", "dst")
        manager.add_directory("b", "dst")
        manager.set_log_level("info")

        plan = manager.dryrun()

        assert plan is not None
        (group,) = plan.layer_groups
        assert group.lower_dirs == [Path(new_dir, "b"), Path(new_dir, "a")]
        assert group.whiteouts == [Path(".git")]
        assert group.work_dir is None
        mock_mount.assert_not_called()
        assert _hidden_entries(Path(new_dir)) == []
        assert "would mount" in caplog.text
        assert f"   . {new_dir}/b -> {new_dir}/dst" in caplog.text

    def test_dryrun_files(self, new_dir, manager):
        _mkdirs("dst")
        Path("file").touch()
        manager.add_file("file", "dst")

        plan = manager.dryrun()

        assert plan is not None
        assert plan.layer_groups == []
        assert list(plan.file_groups) == [Path(new_dir, "dst")]
        assert [p.name for p in Path(new_dir).iterdir() if "_tmp_" in p.name] == []

    def test_dryrun_nothing(self, manager):
        plan = manager.dryrun()
        assert plan is not None
        assert plan.layer_groups == []
        assert plan.file_groups == {}

    def test_dryrun_conflict(self, manager, caplog):
        _mkdirs("a", "b")
        manager.add_directory("a", "b")
        manager.add_directory("b", "a")

        assert manager.dryrun() is None
        assert "error creating mounts" in caplog.text


class TestDump:
    """List the composed namespace."""

    def test_dump(self, new_dir, manager, mock_mount, mock_umount):
        _mkdirs("a", "dst/sub")
        Path("dst/sub/file").touch()
        manager.add_directory("a", "dst")

        entries = manager.create_overlayfs_dump()

        assert sorted(entries) == [
            Path(new_dir, "dst/sub"),
            Path(new_dir, "dst/sub/file"),
        ]
        assert mock_mount.call_count == 1
        assert mock_umount.call_count == 1
        assert manager.is_mounted() is False

    def test_dump_keeps_mount(self, manager, mock_umount):
        _mkdirs("a", "dst")
        manager.add_directory("a", "dst")
        manager.mount()

        manager.create_overlayfs_dump()
        assert manager.is_mounted() is True
        mock_umount.assert_not_called()

    def test_dump_mount_error(self, manager, mock_mount):
        _mkdirs("a", "dst")
        manager.add_directory("a", "dst")
        mock_mount.side_effect = CalledProcessError(cmd=["fuse-overlayfs"], returncode=1)

        assert manager.create_overlayfs_dump() == []


class TestProcesses:
    """Run applications on top of the overlays."""

    def test_create_process(self, manager, fake_process, mock_mount, mock_umount):
        _mkdirs("a", "dst")
        manager.add_directory("a", "dst")
        fake_process.register(["app", "--name", "some value"])

        assert manager.create_process("app", "--name 'some value'") is True
        assert len(manager.get_overlayfs_process_list()) == 1

        assert manager.wait_processes(timeout=5) is True
        assert manager.is_mounted() is False
        assert mock_mount.call_count == 1
        assert mock_umount.call_count == 1

    def test_create_process_mount_error(self, manager, mock_mount, caplog):
        _mkdirs("a", "dst")
        manager.add_directory("a", "dst")
        mock_mount.side_effect = CalledProcessError(cmd=["fuse-overlayfs"], returncode=1)

        assert manager.create_process("app") is False
        assert "not starting process because mount failed" in caplog.text
        assert manager.get_overlayfs_process_list() == []

    def test_create_process_start_error(self, manager, mocker, caplog):
        mocker.patch("subprocess.Popen", side_effect=FileNotFoundError(2, "not found"))

        assert manager.create_process("missing-app") is False
        assert "error creating process" in caplog.text
        assert manager.get_overlayfs_process_list() == []

    def test_create_process_invalid_command_line(self, manager, caplog):
        assert manager.create_process("app", "'unterminated") is False
        assert "invalid command line" in caplog.text

    def test_forced_library_warning(self, manager, fake_process, caplog):
        fake_process.register(["/usr/bin/app"])
        manager.force_load_library("app", "/lib/libfoo.so")

        assert manager.create_process("/usr/bin/app") is True
        assert manager.wait_processes(timeout=5) is True
        assert "forced library loading is not supported" in caplog.text

    def test_clear_forced_libraries(self, manager, fake_process, caplog):
        fake_process.register(["app"])
        manager.force_load_library("app", "/lib/libfoo.so")
        manager.clear_library_force_loads()

        assert manager.create_process("app") is True
        assert manager.wait_processes(timeout=5) is True
        assert "forced library loading" not in caplog.text
