import io
from unittest import mock

import pytest

from cgroupkit.errors import CgroupError, InvalidFormatError, InvalidGroupPathError
from cgroupkit.v2.paths import (
    nested_group_path,
    parse_cgroup_file,
    parse_cgroup_from_reader,
    pid_group_path,
    verify_group_path,
)


@pytest.mark.parametrize("group", ["/", "/foo", "/foo/bar"])
def test_verify_group_path_valid(group):
    assert verify_group_path(group) is None


@pytest.mark.parametrize(
    "group",
    ["", "/sys/fs/cgroup/foo", "/sys/fs/cgroup/unified/foo", "foo", "/foo/../bar", "//foo"],
)
def test_verify_group_path_invalid(group):
    with pytest.raises(InvalidGroupPathError):
        verify_group_path(group)


@pytest.mark.parametrize(
    "content, expected",
    [
        (
            "0::/user.slice/user-1001.slice/session-1.scope\n",
            "/user.slice/user-1001.slice/session-1.scope",
        ),
        (
            "2:cpuset:/foo\n1:name=systemd:/\n0::/user.slice/user-1001.slice/session-1.scope\n",
            "/user.slice/user-1001.slice/session-1.scope",
        ),
    ],
)
def test_parse_cgroup_from_reader(content, expected):
    assert parse_cgroup_from_reader(io.StringIO(content)) == expected
    assert parse_cgroup_from_reader(content) == expected


def test_parse_cgroup_from_reader_not_found():
    with pytest.raises(CgroupError):
        parse_cgroup_from_reader(io.StringIO("2:cpuset:/foo\n1:name=systemd:/\n"))


def test_parse_cgroup_from_reader_bad_entry():
    with pytest.raises(InvalidFormatError):
        parse_cgroup_from_reader(io.StringIO("garbage\n"))


def test_parse_cgroup_file(tmp_path):
    path = tmp_path / "cgroup"
    path.write_text("1:name=systemd:/\n0::/a/b\n")
    assert parse_cgroup_file(str(path)) == "/a/b"


def test_parse_cgroup_file_missing(tmp_path):
    with pytest.raises(FileNotFoundError):
        parse_cgroup_file(str(tmp_path / "missing"))


def test_nested_group_path():
    with mock.patch("builtins.open", mock.mock_open(read_data="0::/user.slice\n")) as m:
        assert nested_group_path("child") == "/user.slice/child"
    assert m.call_args[0][0] == "/proc/self/cgroup"


def test_pid_group_path():
    with mock.patch("builtins.open", mock.mock_open(read_data="0::/system.slice/x.scope\n")) as m:
        assert pid_group_path(1234) == "/system.slice/x.scope"
    assert m.call_args[0][0] == "/proc/1234/cgroup"