from dataclasses import dataclass

import pytest

from cgroupkit import host
from cgroupkit.errors import CgroupError, InvalidFormatError

CGROUP_V1_MOUNTINFO = [
    "22 1 8:1 / / rw,relatime - ext4 /dev/sda1 rw",
    "24 22 0:20 / /sys/fs/cgroup ro,nosuid shared:8 - tmpfs tmpfs ro,mode=755",
    "25 24 0:22 /docker/abc /sys/fs/cgroup/cpu,cpuacct rw,nosuid shared:9 - cgroup cgroup rw,cpu,cpuacct",
    "26 24 0:23 / /sys/fs/cgroup/memory rw,nosuid shared:10 - cgroup cgroup rw,memory",
]


@dataclass
class _Sub:
    name: str


def test_state_and_names():
    assert host.State.FREEZING.value == "freezing"
    assert host.State("") is host.State.UNKNOWN
    assert host.Name.NET_CLS == "net_cls"
    assert host.CGMode.UNIFIED > host.CGMode.HYBRID > host.CGMode.LEGACY > host.CGMode.UNAVAILABLE


def test_subsystems_order_and_contents():
    names = host.subsystems()
    assert names[:11] == [
        host.Name.FREEZER,
        host.Name.PIDS,
        host.Name.NET_CLS,
        host.Name.NET_PRIO,
        host.Name.PERF_EVENT,
        host.Name.CPUSET,
        host.Name.CPU,
        host.Name.CPUACCT,
        host.Name.MEMORY,
        host.Name.BLKIO,
        host.Name.RDMA,
    ]
    assert set(names[11:]) <= {host.Name.DEVICES, host.Name.HUGETLB}


def test_clock_ticks():
    assert host.clock_ticks() == 100


@pytest.mark.parametrize(
    "path, expected",
    [
        ("/system.slice/foo.scope", ("/system.slice", "foo.scope")),
        ("foo.scope", ("", "foo.scope")),
        ("/foo.scope", ("", "foo.scope")),
        ("a/b/c", ("a/b", "c")),
    ],
)
def test_split_name(path, expected):
    assert host.split_name(path) == expected


def test_slice_path_default_and_custom():
    assert host.slice_path("", "foo.scope")("cpu") == "system.slice/foo.scope"
    assert host.slice_path("user.slice", "bar")("memory") == "user.slice/bar"
    assert host.slice_path("user.slice/", "/bar")("memory") == "user.slice/bar"


def test_single_subsystem_finds_one():
    base = lambda: [_Sub("cpu"), _Sub("memory"), _Sub("pids")]
    found = host.single_subsystem(base, host.Name.MEMORY)()
    assert [s.name for s in found] == ["memory"]


def test_single_subsystem_missing():
    base = lambda: [_Sub("cpu")]
    with pytest.raises(CgroupError, match="unable to find subsystem memory"):
        host.single_subsystem(base, "memory")()


def test_single_subsystem_propagates_base_error():
    def base():
        raise CgroupError("boom")

    with pytest.raises(CgroupError, match="boom"):
        host.single_subsystem(base, "cpu")()


def test_parse_uint():
    assert host.parse_uint("42") == 42
    assert host.parse_uint("-1") == 0
    assert host.parse_uint("-99999999999999999999") == 0
    assert host.parse_uint("18446744073709551615") == 2**64 - 1
    with pytest.raises(InvalidFormatError):
        host.parse_uint("18446744073709551616")
    with pytest.raises(InvalidFormatError):
        host.parse_uint("abc")


def test_parse_kv():
    assert host.parse_kv("cache 1024") == ("cache", 1024)
    assert host.parse_kv("rss   -5") == ("rss", 0)
    with pytest.raises(InvalidFormatError):
        host.parse_kv("only")
    with pytest.raises(InvalidFormatError):
        host.parse_kv("a 1 2")
    with pytest.raises(InvalidFormatError):
        host.parse_kv("key max")


def test_read_uint(tmp_path):
    f = tmp_path / "value"
    f.write_text("123\n")
    assert host.read_uint(f) == 123
    with pytest.raises(FileNotFoundError):
        host.read_uint(tmp_path / "missing")


def test_parse_cgroup_from_reader_v1_and_unified():
    content = (
        "12:cpu,cpuacct:/user.slice\n"
        "11:name=systemd:/user.slice/user-1000.slice\n"
        "0::/user.slice/user-1000.slice/session-1.scope\n"
    )
    assert host.parse_cgroup_from_reader(content) == {
        "cpu": "/user.slice",
        "cpuacct": "/user.slice",
        "name=systemd": "/user.slice/user-1000.slice",
    }


def test_parse_cgroup_from_reader_unified_only_key_empty_excluded():
    assert host.parse_cgroup_from_reader("0::/foo\n") == {}


def test_parse_cgroup_from_reader_invalid():
    with pytest.raises(InvalidFormatError, match="invalid cgroup entry"):
        host.parse_cgroup_from_reader("broken line\n")


def test_parse_cgroup_file(tmp_path):
    f = tmp_path / "cgroup"
    f.write_text("4:memory:/docker/abc\n3:pids:/docker/abc\n")
    assert host.parse_cgroup_file(f) == {"memory": "/docker/abc", "pids": "/docker/abc"}


@pytest.mark.parametrize(
    "path, expected",
    [
        ("", ""),
        ("../foo", "foo"),
        ("/a/../b", "/b"),
        ("a/./b/", "a/b"),
        (".", "."),
        ("../../x/../y", "y"),
    ],
)
def test_clean_path(path, expected):
    assert host.clean_path(path) == expected


def test_cgroup_destination_from_mountinfo():
    assert host._cgroup_destination_from(CGROUP_V1_MOUNTINFO, "cpuacct") == "/docker/abc"
    assert host._cgroup_destination_from(CGROUP_V1_MOUNTINFO, "memory") == "/"
    with pytest.raises(host.NoCgroupMountDestinationError):
        host._cgroup_destination_from(CGROUP_V1_MOUNTINFO, "pids")


def test_cgroup_destination_skips_short_lines():
    lines = ["short line", *CGROUP_V1_MOUNTINFO]
    assert host._cgroup_destination_from(lines, "cpu") == "/docker/abc"


def test_v1_mount_point_from_mountinfo():
    assert host._v1_mount_point_from(CGROUP_V1_MOUNTINFO) == "/sys/fs/cgroup"


def test_v1_mount_point_missing():
    with pytest.raises(host.MountPointNotExistError):
        host._v1_mount_point_from(CGROUP_V1_MOUNTINFO[:2])


def test_v1_mount_point_bad_entry():
    with pytest.raises(CgroupError, match="mountinfo: bad entry"):
        host._v1_mount_point_from(["1 2 3 / / rw - ext4"])


@pytest.mark.parametrize(
    "entry, expected",
    [
        ("hugepages-2048kB", "2MB"),
        ("hugepages-1048576kB", "1GB"),
        ("hugepages-64kB", "64KB"),
    ],
)
def test_huge_page_size(entry, expected):
    assert host._huge_page_size(entry) == expected


def test_huge_page_size_invalid():
    with pytest.raises(InvalidFormatError):
        host._huge_page_size("hugepages")
    with pytest.raises(InvalidFormatError):
        host._huge_page_size("hugepages-lots")


@pytest.mark.parametrize(
    "line, expected",
    [
        (None, False),
        ("         0          0 4294967295", False),
        ("         0       1000          1", True),
        ("", True),
    ],
)
def test_in_user_ns(line, expected):
    assert host._in_user_ns(line) is expected


def test_detect_mode_unified():
    lines = ["30 22 0:26 / /sys/fs/cgroup rw,nosuid shared:4 - cgroup2 cgroup2 rw"]
    assert host._detect_mode(lines, lambda p: True) is host.CGMode.UNIFIED


def test_detect_mode_hybrid():
    lines = [
        CGROUP_V1_MOUNTINFO[1],
        "27 24 0:26 / /sys/fs/cgroup/unified rw,nosuid shared:5 - cgroup2 cgroup2 rw",
    ]
    assert host._detect_mode(lines, lambda p: True) is host.CGMode.HYBRID


def test_detect_mode_legacy():
    assert host._detect_mode(CGROUP_V1_MOUNTINFO, lambda p: True) is host.CGMode.LEGACY


def test_detect_mode_unavailable():
    assert host._detect_mode(CGROUP_V1_MOUNTINFO, lambda p: False) is host.CGMode.UNAVAILABLE


def test_mode_is_stable():
    first = host.mode()
    assert first in set(host.CGMode)
    assert host.mode() is first


def test_retrying_write_file(tmp_path):
    target = tmp_path / "cgroup.procs"
    host.retrying_write_file(target, b"1234", 0o644)
    assert target.read_bytes() == b"1234"
    host.retrying_write_file(target, "56", 0o644)
    assert target.read_text() == "56"


def test_remove(tmp_path):
    group = tmp_path / "group"
    (group / "child").mkdir(parents=True)
    host.remove(group)
    assert not group.exists()
    host.remove(tmp_path / "missing")
    assert not (tmp_path / "missing").exists()