"""Group path helpers for the cgroup v2 unified hierarchy."""

from __future__ import annotations

import posixpath
from collections.abc import Iterable

from cgroupkit.errors import CgroupError, InvalidFormatError, InvalidGroupPathError


def _clean(path: str) -> str:
    if not path:
        return "."
    cleaned = posixpath.normpath(path)
    if cleaned.startswith("//"):
        cleaned = "/" + cleaned.lstrip("/")
    return cleaned


def _join(*parts: str) -> str:
    joined = "/".join(p for p in parts if p)
    return _clean(joined) if joined else ""


def verify_group_path(g: str) -> None:
    """Check that ``g`` is a clean absolute group path outside /sys/fs/cgroup.

    Whether the group exists is not checked.
    """
    if not g.startswith("/"):
        raise InvalidGroupPathError()
    if _clean(g) != g:
        raise InvalidGroupPathError()
    if g.startswith("/sys/fs/cgroup"):
        raise InvalidGroupPathError()


def _lines(reader: str | Iterable[str]) -> Iterable[str]:
    if isinstance(reader, str):
        lines = reader.split("\n")
        if lines and lines[-1] == "":
            lines.pop()
        return lines
    return (line.rstrip("\n").removesuffix("\r") for line in reader)


def parse_cgroup_from_reader(reader: str | Iterable[str]) -> str:
    """Return the unified-hierarchy path from /proc/PID/cgroup content."""
    for text in _lines(reader):
        parts = text.split(":", 2)
        if len(parts) < 3:
            raise InvalidFormatError(f"invalid cgroup entry: {text!r}")
        # A unified entry looks like "0::/user.slice/session-1.scope".
        if parts[0] == "0" and parts[1] == "":
            return parts[2]
    raise CgroupError("cgroup path not found")


def parse_cgroup_file(path: str) -> str:
    """Read a /proc/PID/cgroup file and return its unified-hierarchy path."""
    with open(path, encoding="utf-8") as fh:
        return parse_cgroup_from_reader(fh)


def nested_group_path(suffix: str) -> str:
    """Return a group path nested below the calling process's own group."""
    return _join(parse_cgroup_file("/proc/self/cgroup"), suffix)


def pid_group_path(pid: int) -> str:
    """Return the group path of a running process."""
    return parse_cgroup_file(f"/proc/{pid}/cgroup")