"""Readers for cgroup v2 statistics files and the metrics they produce."""

from __future__ import annotations

import logging
import os
import re
import shutil
import time
from collections.abc import Iterable
from dataclasses import dataclass, field

from cgroupkit.errors import CgroupError, InvalidFormatError

_log = logging.getLogger(__name__)

_U32 = 2**32 - 1
_U64 = 2**64 - 1
_DIGITS = re.compile(r"[0-9]+")
_NEGATIVE = re.compile(r"-[0-9]+")


@dataclass
class PidsStat:
    current: int = 0
    limit: int = 0


@dataclass
class CPUStat:
    usage_usec: int = 0
    user_usec: int = 0
    system_usec: int = 0
    nr_periods: int = 0
    nr_throttled: int = 0
    throttled_usec: int = 0


@dataclass
class MemoryStat:
    anon: int = 0
    file: int = 0
    kernel_stack: int = 0
    slab: int = 0
    sock: int = 0
    shmem: int = 0
    file_mapped: int = 0
    file_dirty: int = 0
    file_writeback: int = 0
    anon_thp: int = 0
    inactive_anon: int = 0
    active_anon: int = 0
    inactive_file: int = 0
    active_file: int = 0
    unevictable: int = 0
    slab_reclaimable: int = 0
    slab_unreclaimable: int = 0
    pgfault: int = 0
    pgmajfault: int = 0
    workingset_refault: int = 0
    workingset_activate: int = 0
    workingset_nodereclaim: int = 0
    pgrefill: int = 0
    pgscan: int = 0
    pgsteal: int = 0
    pgactivate: int = 0
    pgdeactivate: int = 0
    pglazyfree: int = 0
    pglazyfreed: int = 0
    thp_fault_alloc: int = 0
    thp_collapse_alloc: int = 0
    usage: int = 0
    usage_limit: int = 0
    swap_usage: int = 0
    swap_limit: int = 0


@dataclass
class MemoryEvents:
    low: int = 0
    high: int = 0
    max: int = 0
    oom: int = 0
    oom_kill: int = 0


@dataclass
class IOUsage:
    major: int = 0
    minor: int = 0
    rbytes: int = 0
    wbytes: int = 0
    rios: int = 0
    wios: int = 0


@dataclass
class IOStat:
    usage: list[IOUsage] = field(default_factory=list)


@dataclass
class RdmaEntry:
    device: str = ""
    hca_handles: int = 0
    hca_objects: int = 0


@dataclass
class RdmaStat:
    current: list[RdmaEntry] = field(default_factory=list)
    limit: list[RdmaEntry] = field(default_factory=list)


@dataclass
class HugeTlbStat:
    max: int = 0
    current: int = 0
    pagesize: str = ""


@dataclass
class Metrics:
    pids: PidsStat | None = None
    cpu: CPUStat | None = None
    memory: MemoryStat | None = None
    memory_events: MemoryEvents | None = None
    io: IOStat | None = None
    rdma: RdmaStat | None = None
    hugetlb: list[HugeTlbStat] = field(default_factory=list)


def _parse_unsigned(text: str, bits: int = 64) -> int:
    if not _DIGITS.fullmatch(text):
        raise InvalidFormatError(f"invalid unsigned integer {text!r}")
    value = int(text)
    if value > 2**bits - 1:
        raise InvalidFormatError(f"value {text!r} out of range")
    return value


def parse_uint(s: str, bits: int = 64) -> int:
    """Parse an unsigned integer; negative values are read as 0."""
    try:
        return _parse_unsigned(s, bits)
    except InvalidFormatError:
        m = _NEGATIVE.fullmatch(s)
        if m and int(s) < 0:
            return 0
        raise


def parse_kv(raw: str) -> tuple[str, int | str]:
    """Parse a "key value" line; values that are not integers stay strings."""
    parts = raw.split()
    if len(parts) != 2:
        raise InvalidFormatError()
    key, text = parts
    try:
        return key, parse_uint(text)
    except InvalidFormatError:
        return key, text


def _strip_line(line: str) -> str:
    return line.rstrip("\n").removesuffix("\r")


def parse_cgroup_procs_file(path: str | os.PathLike[str]) -> list[int]:
    """Read the process ids listed in a cgroup.procs file."""
    with open(path, encoding="utf-8") as fh:
        return [_parse_unsigned(t) for t in map(_strip_line, fh) if t]


def read_kv_stats_file(path: str | os.PathLike[str], file: str) -> dict[str, int | str]:
    """Read a flat keyed file such as cpu.stat into a dict."""
    full = os.path.join(path, file)
    out: dict[str, int | str] = {}
    with open(full, encoding="utf-8") as fh:
        for line in map(_strip_line, fh):
            try:
                key, value = parse_kv(line)
            except InvalidFormatError as err:
                raise InvalidFormatError(
                    f"error while parsing {full} (line={line!r})"
                ) from err
            out[key] = value
    return out


def read_single_file(path: str | os.PathLike[str], file: str) -> int | str:
    """Read a single-value file; non-integer content is returned as a string."""
    with open(os.path.join(path, file), encoding="utf-8") as fh:
        text = fh.read().strip()
    try:
        return parse_uint(text)
    except InvalidFormatError:
        return text


def stat_file_uint64(path: str | os.PathLike[str]) -> int:
    """Read a single integer stat file; "max" is the largest uint64, errors give 0."""
    try:
        with open(path, encoding="utf-8") as fh:
            contents = fh.read()
    except OSError:
        return 0
    trimmed = contents.strip()
    if trimmed == "max":
        return _U64
    try:
        return parse_uint(trimmed)
    except InvalidFormatError:
        _log.error("unable to parse %r as a uint from Cgroup file %r", contents, str(path))
        return 0


def read_io_stats(path: str | os.PathLike[str]) -> list[IOUsage]:
    """Parse io.stat below ``path``; a missing file yields no entries."""
    usage: list[IOUsage] = []
    try:
        with open(os.path.join(path, "io.stat"), encoding="utf-8") as fh:
            data = fh.read()
    except OSError:
        return usage
    for entry in data.split("\n"):
        parts = entry.split(" ")
        if len(parts) < 2:
            continue
        majmin = parts[0].split(":")
        if len(majmin) != 2:
            continue
        try:
            major = _parse_unsigned(majmin[0])
            minor = _parse_unsigned(majmin[1])
        except InvalidFormatError:
            return usage
        item = IOUsage(major=major, minor=minor)
        for pair in parts[1:]:
            kv = pair.split("=")
            if len(kv) != 2:
                continue
            try:
                value = _parse_unsigned(kv[1])
            except InvalidFormatError:
                continue
            if kv[0] in ("rbytes", "wbytes", "rios", "wios"):
                setattr(item, kv[0], value)
        usage.append(item)
    return usage


def _apply_rdma_kv(raw: str, entry: RdmaEntry) -> None:
    parts = raw.split("=")
    if len(parts) != 2:
        return
    key, text = parts
    if text == "max":
        value = _U32
    else:
        try:
            value = parse_uint(text, 32)
        except InvalidFormatError:
            return
    if key == "hca_handle":
        entry.hca_handles = value
    elif key == "hca_object":
        entry.hca_objects = value


def parse_rdma_entries(lines: Iterable[str]) -> list[RdmaEntry]:
    """Parse rdma.current / rdma.max lines of the form "dev k=v k=v"."""
    entries: list[RdmaEntry] = []
    for line in lines:
        parts = line.split()
        if len(parts) != 3:
            continue
        entry = RdmaEntry(device=parts[0])
        _apply_rdma_kv(parts[1], entry)
        _apply_rdma_kv(parts[2], entry)
        entries.append(entry)
    return entries


def rdma_stats(path: str | os.PathLike[str]) -> list[RdmaEntry]:
    """Read an rdma stat file; a missing file yields no entries."""
    try:
        with open(path, encoding="utf-8") as fh:
            data = fh.read()
    except OSError:
        return []
    return parse_rdma_entries(data.split("\n"))


def read_hugetlb_stats(path: str | os.PathLike[str]) -> list[HugeTlbStat]:
    """Collect hugetlb.<size>.max and .current values per page size."""
    try:
        names = sorted(e.name for e in os.scandir(path))
    except OSError:
        return []
    by_size: dict[str, HugeTlbStat] = {}
    for name in names:
        if "hugetlb" not in name or not name.endswith(("max", "current")):
            continue
        pieces = name.split(".")
        if len(pieces) < 3:
            continue
        page_size = pieces[1]
        stat = by_size.get(page_size) or HugeTlbStat()
        stat.pagesize = page_size
        try:
            with open(os.path.join(path, name), encoding="utf-8") as fh:
                text = fh.read().strip()
        except OSError:
            continue
        if text == "max":
            value = _U64
        else:
            try:
                value = _parse_unsigned(text)
            except InvalidFormatError:
                continue
        if pieces[2] == "max":
            stat.max = value
        elif pieces[2] == "current":
            stat.current = value
        by_size[page_size] = stat
    return list(by_size.values())


def _remove_all(path: str) -> None:
    try:
        if os.path.isdir(path) and not os.path.islink(path):
            try:
                os.rmdir(path)
            except OSError:
                shutil.rmtree(path)
        else:
            os.remove(path)
    except FileNotFoundError:
        pass


def remove(path: str | os.PathLike[str]) -> None:
    """Remove a cgroup path, retrying with exponential back-off on failure."""
    path = os.fspath(path)
    delay = 0.01
    last: OSError | None = None
    for attempt in range(5):
        if attempt:
            time.sleep(delay)
            delay *= 2
        try:
            _remove_all(path)
            return
        except OSError as err:
            last = err
    raise CgroupError(f"cgroups: unable to remove path {path!r}") from last