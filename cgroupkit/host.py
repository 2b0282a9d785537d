"""Host-level cgroup helpers: hierarchy mode, subsystem names and mount lookup."""

from __future__ import annotations

import enum
import functools
import os
import posixpath
import re
from collections.abc import Callable, Iterable, Sequence
from typing import Any

from cgroupkit.errors import CgroupError, InvalidFormatError
from cgroupkit.v2 import statfiles

UNIFIED_MOUNTPOINT = "/sys/fs/cgroup"
DEFAULT_SLICE = "system.slice"
_HUGEPAGES_DIR = "/sys/kernel/mm/hugepages"
_UID_MAP = "/proc/self/uid_map"
_MOUNTINFO = "/proc/self/mountinfo"
_FULL_UID_RANGE = 4294967295
_SIZE_UNITS = ("B", "KB", "MB", "GB", "TB", "PB")
_RAM_SIZE = re.compile(r"^(\d+(\.\d+)*) ?([kKmMgGtTpP])?[iI]?[bB]?$")
_RAM_MULTIPLIERS = {"k": 1024, "m": 1024**2, "g": 1024**3, "t": 1024**4, "p": 1024**5}


class MountPointNotExistError(CgroupError):
    """No cgroup mountpoint could be found."""

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or "cgroups: cgroup mountpoint does not exist")


class NoCgroupMountDestinationError(CgroupError):
    """No mount destination exists for a cgroup subsystem."""

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or "cgroups: cannot find cgroup mount destination")


class State(str, enum.Enum):
    """State of a cgroup."""

    UNKNOWN = ""
    THAWED = "thawed"
    FROZEN = "frozen"
    FREEZING = "freezing"
    DELETED = "deleted"


class Name(str, enum.Enum):
    """Name of a cgroup subsystem."""

    DEVICES = "devices"
    HUGETLB = "hugetlb"
    FREEZER = "freezer"
    PIDS = "pids"
    NET_CLS = "net_cls"
    NET_PRIO = "net_prio"
    PERF_EVENT = "perf_event"
    CPUSET = "cpuset"
    CPU = "cpu"
    CPUACCT = "cpuacct"
    MEMORY = "memory"
    BLKIO = "blkio"
    RDMA = "rdma"
    SYSTEMD = "systemd"


class CGMode(enum.IntEnum):
    """Cgroup mode of the host."""

    UNAVAILABLE = 0
    LEGACY = 1
    HYBRID = 2
    UNIFIED = 3


def _lines(reader: str | Iterable[str]) -> Iterable[str]:
    if isinstance(reader, str):
        lines = reader.split("\n")
        if lines and lines[-1] == "":
            lines.pop()
        return lines
    return (line.rstrip("\n").removesuffix("\r") for line in reader)


def _read_lines(path: str) -> list[str]:
    with open(path, encoding="utf-8") as fh:
        return list(_lines(fh))


def _clean(path: str) -> str:
    if not path:
        return "."
    cleaned = posixpath.normpath(path)
    if cleaned.startswith("//"):
        cleaned = "/" + cleaned.lstrip("/")
    return cleaned


def _mount_fs_type(path: str, mountinfo: Iterable[str]) -> str | None:
    """Return the filesystem type of the mount that holds ``path``."""
    best: tuple[int, str] | None = None
    for line in mountinfo:
        fields = line.split(" ")
        if len(fields) < 5 or "-" not in fields[5:]:
            continue
        sep = fields.index("-", 5)
        if sep + 1 >= len(fields):
            continue
        mount_point = fields[4]
        base = mount_point.rstrip("/")
        if mount_point != path and not path.startswith(base + "/"):
            continue
        if best is None or len(mount_point) >= best[0]:
            best = (len(mount_point), fields[sep + 1])
    return None if best is None else best[1]


def _detect_mode(mountinfo: Sequence[str], exists: Callable[[str], bool]) -> CGMode:
    if not exists(UNIFIED_MOUNTPOINT):
        return CGMode.UNAVAILABLE
    if _mount_fs_type(UNIFIED_MOUNTPOINT, mountinfo) == "cgroup2":
        return CGMode.UNIFIED
    hybrid = posixpath.join(UNIFIED_MOUNTPOINT, "unified")
    if exists(hybrid) and _mount_fs_type(hybrid, mountinfo) == "cgroup2":
        return CGMode.HYBRID
    return CGMode.LEGACY


@functools.lru_cache(maxsize=None)
def mode() -> CGMode:
    """Return the cgroup mode of the host; the answer is computed once."""
    try:
        mountinfo = _read_lines(_MOUNTINFO)
    except OSError:
        mountinfo = []
    return _detect_mode(mountinfo, os.path.exists)


def _in_user_ns(first_line: str | None) -> bool:
    if first_line is None:
        return False
    numbers = [0, 0, 0]
    for index, text in enumerate(first_line.split()[:3]):
        try:
            numbers[index] = int(text, 10)
        except ValueError:
            break
    # A full range of uids starting at 0 means the initial user namespace.
    return numbers != [0, 0, _FULL_UID_RANGE]


@functools.lru_cache(maxsize=None)
def running_in_user_ns() -> bool:
    """Tell whether the process runs inside a user namespace."""
    try:
        with open(_UID_MAP, encoding="utf-8") as fh:
            line = fh.readline()
    except OSError:
        return False
    if not line:
        return False
    return _in_user_ns(line.rstrip("\n"))


def subsystems() -> list[Name]:
    """Return the default cgroup subsystems available on most Linux hosts."""
    names = [
        Name.FREEZER,
        Name.PIDS,
        Name.NET_CLS,
        Name.NET_PRIO,
        Name.PERF_EVENT,
        Name.CPUSET,
        Name.CPU,
        Name.CPUACCT,
        Name.MEMORY,
        Name.BLKIO,
        Name.RDMA,
    ]
    if not running_in_user_ns():
        names.append(Name.DEVICES)
    if os.path.exists(_HUGEPAGES_DIR):
        names.append(Name.HUGETLB)
    return names


def single_subsystem(
    base_hierarchy: Callable[[], Iterable[Any]], subsystem: str
) -> Callable[[], list[Any]]:
    """Return a hierarchy that holds only ``subsystem`` out of ``base_hierarchy``."""

    def hierarchy() -> list[Any]:
        for candidate in base_hierarchy():
            if candidate.name == subsystem:
                return [candidate]
        raise CgroupError(f"unable to find subsystem {str(subsystem)}")

    return hierarchy


def slice_path(slice: str, name: str) -> Callable[[str], str]:
    """Return a path function placing every subsystem at ``slice/name``."""
    slice = slice or DEFAULT_SLICE
    joined = "/".join(p for p in (slice, name) if p)
    result = _clean(joined)

    def path(subsystem: str) -> str:
        return result

    return path


def split_name(path: str) -> tuple[str, str]:
    """Split a path into its slice and unit name."""
    head, _, unit = path.rpartition("/")
    return head, unit


def clock_ticks() -> int:
    """Return the kernel clock ticks per second, fixed at 100 on Linux."""
    return 100


def remove(path: str | os.PathLike[str]) -> None:
    """Remove a cgroup path, retrying with exponential back-off."""
    statfiles.remove(path)


def parse_uint(s: str) -> int:
    """Parse an unsigned 64-bit integer; negative values are read as 0."""
    return statfiles.parse_uint(s, 64)


def read_uint(path: str | os.PathLike[str]) -> int:
    """Read a file holding a single unsigned integer."""
    with open(path, encoding="utf-8") as fh:
        return parse_uint(fh.read().strip())


def parse_kv(raw: str) -> tuple[str, int]:
    """Parse a "key value" line whose value is an unsigned integer."""
    parts = raw.split()
    if len(parts) != 2:
        raise InvalidFormatError()
    return parts[0], parse_uint(parts[1])


def parse_cgroup_from_reader(reader: str | Iterable[str]) -> dict[str, str]:
    """Map each subsystem in /proc/PID/cgroup content to its group path.

    The unified hierarchy appears under the empty key.
    """
    groups: dict[str, str] = {}
    for text in _lines(reader):
        parts = text.split(":", 2)
        if len(parts) < 3:
            raise InvalidFormatError(f"invalid cgroup entry: {text!r}")
        for sub in parts[1].split(","):
            if sub:
                groups[sub] = parts[2]
    return groups


def parse_cgroup_file(path: str | os.PathLike[str]) -> dict[str, str]:
    """Read a /proc/PID/cgroup file into a subsystem-to-path mapping."""
    with open(path, encoding="utf-8") as fh:
        return parse_cgroup_from_reader(fh)


def _cgroup_destination_from(mountinfo: Iterable[str], subsystem: str) -> str:
    for line in mountinfo:
        fields = line.split(" ")
        if len(fields) < 10:
            continue
        if fields[-3] != "cgroup":
            continue
        if subsystem in fields[-1].split(","):
            return fields[3]
    raise NoCgroupMountDestinationError()


def cgroup_destination(subsystem: str) -> str:
    """Return the mount root of the cgroup v1 mount carrying ``subsystem``."""
    return _cgroup_destination_from(_read_lines(_MOUNTINFO), subsystem)


def clean_path(path: str) -> str:
    """Clean a path; relative paths may not climb above their start."""
    if not path:
        return ""
    path = _clean(path)
    if not path.startswith("/"):
        rooted = _clean("/" + path)
        path = rooted[1:] or "."
    return path


def _ram_in_bytes(text: str) -> int:
    match = _RAM_SIZE.match(text)
    if match is None:
        raise InvalidFormatError(f"invalid size: {text!r}")
    size = float(match.group(1))
    suffix = (match.group(3) or "").lower()
    return int(size * _RAM_MULTIPLIERS.get(suffix, 1))


def _format_size(size: float) -> str:
    index = 0
    while size >= 1024.0 and index < len(_SIZE_UNITS) - 1:
        size /= 1024.0
        index += 1
    number = str(int(size)) if size == int(size) else repr(size)
    return number + _SIZE_UNITS[index]


def _huge_page_size(entry_name: str) -> str:
    pieces = entry_name.split("-")
    if len(pieces) < 2:
        raise InvalidFormatError(f"invalid hugepages entry {entry_name!r}")
    return _format_size(float(_ram_in_bytes(pieces[1])))


def huge_page_sizes() -> list[str]:
    """Return the huge page sizes the kernel offers, such as "2MB"."""
    return [_huge_page_size(name) for name in sorted(os.listdir(_HUGEPAGES_DIR))]


def _v1_mount_point_from(mountinfo: Iterable[str]) -> str:
    for text in mountinfo:
        fields = text.split(" ")
        if len(fields) < 10:
            raise CgroupError(f"mountinfo: bad entry {text!r}")
        if fields[-3] == "cgroup":
            return posixpath.dirname(fields[4]) or "."
    raise MountPointNotExistError()


def v1_mount_point() -> str:
    """Return the directory under which the v1 hierarchies are mounted."""
    return _v1_mount_point_from(_read_lines(_MOUNTINFO))


def retrying_write_file(
    path: str | os.PathLike[str], data: bytes | str, mode: int
) -> None:
    """Write ``data`` to ``path``, retrying when interrupted by a signal."""
    payload = data.encode() if isinstance(data, str) else bytes(data)
    while True:
        try:
            fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, mode)
            try:
                os.write(fd, payload)
            finally:
                os.close(fd)
            return
        except InterruptedError:
            continue