"""Management of groups in a cgroup v2 unified hierarchy."""

from __future__ import annotations

import enum
import os
import posixpath
import time
from collections.abc import Iterable, Iterator
from dataclasses import dataclass

from cgroupkit.errors import CgroupError, InvalidFormatError
from cgroupkit.v2.devicefilter import DeviceRule, can_skip_ebpf_error, device_filter
from cgroupkit.v2.paths import verify_group_path
from cgroupkit.v2.resources import Resources, State, Value
from cgroupkit.v2.statfiles import (
    CPUStat,
    IOStat,
    MemoryEvents,
    MemoryStat,
    Metrics,
    PidsStat,
    RdmaStat,
    parse_cgroup_procs_file,
    rdma_stats,
    read_hugetlb_stats,
    read_io_stats,
    read_kv_stats_file,
    read_single_file,
    remove,
    stat_file_uint64,
)

SUBTREE_CONTROL = "cgroup.subtree_control"
CONTROLLERS_FILE = "cgroup.controllers"
CGROUP_PROCS = "cgroup.procs"
CGROUP_FREEZE = "cgroup.freeze"
DEFAULT_CGROUP2_PATH = "/sys/fs/cgroup"
_DIR_MODE = 0o755
_U64 = 2**64 - 1
_SINGLE_VALUE_FILES = ("pids.current", "pids.max")
_MEMORY_STAT_KEYS = (
    "anon", "file", "kernel_stack", "slab", "sock", "shmem", "file_mapped",
    "file_dirty", "file_writeback", "anon_thp", "inactive_anon", "active_anon",
    "inactive_file", "active_file", "unevictable", "slab_reclaimable",
    "slab_unreclaimable", "pgfault", "pgmajfault", "workingset_refault",
    "workingset_activate", "workingset_nodereclaim", "pgrefill", "pgscan",
    "pgsteal", "pgactivate", "pgdeactivate", "pglazyfree", "pglazyfreed",
    "thp_fault_alloc", "thp_collapse_alloc",
)
_CPU_STAT_KEYS = (
    "usage_usec", "user_usec", "system_usec", "nr_periods", "nr_throttled",
    "throttled_usec",
)
_EVENT_KEYS = ("low", "high", "max", "oom", "oom_kill")


class ControllerToggle(enum.IntEnum):
    ENABLE = 1
    DISABLE = 2


@dataclass
class Event:
    """Counters read from memory.events."""

    low: int = 0
    high: int = 0
    max: int = 0
    oom: int = 0
    oom_kill: int = 0


def _join(base: str, *parts: str) -> str:
    joined = posixpath.normpath("/".join([os.fspath(base), *parts]))
    if joined.startswith("//"):
        joined = "/" + joined.lstrip("/")
    return joined


def _write_values(path: str, values: Iterable[Value]) -> None:
    for value in values:
        value.write(path)


def _set_devices(path: str, devices: list[DeviceRule]) -> None:
    if not devices:
        return
    device_filter(devices)
    if not os.path.isdir(path):
        raise CgroupError(f"cannot get dir FD for {path}")
    if not can_skip_ebpf_error(devices):
        raise CgroupError(
            "failed to call BPF_PROG_ATTACH (BPF_CGROUP_DEVICE, BPF_F_ALLOW_MULTI): "
            "attaching eBPF programs is not available"
        )


def _set_resources(path: str, resources: Resources | None) -> None:
    if resources is None:
        return
    _write_values(path, resources.values())
    _set_devices(path, resources.devices)


def _discard_dir(path: str) -> None:
    try:
        os.rmdir(path)
    except OSError:
        pass


def _fetch_state(path: str) -> State:
    with open(os.path.join(path, CGROUP_FREEZE), encoding="utf-8") as fh:
        text = fh.read().strip()
    if text == "1":
        return State.FROZEN
    if text == "0":
        return State.THAWED
    return State.UNKNOWN


def _uint_value(key: str, out: dict) -> int:
    value = out.get(key)
    return value if isinstance(value, int) else 0


def _pid_value(key: str, out: dict) -> int:
    value = out.get(key)
    if isinstance(value, int):
        return value
    if value == "max":
        return _U64
    return 0


def _read_optional_kv(path: str, file: str) -> dict:
    try:
        return read_kv_stats_file(path, file)
    except FileNotFoundError:
        return {}


@dataclass
class Manager:
    """A group in the unified hierarchy, addressed by its absolute path."""

    mountpoint: str
    path: str

    def root_controllers(self) -> list[str]:
        """Return the controllers available at the hierarchy root."""
        with open(os.path.join(self.mountpoint, CONTROLLERS_FILE), encoding="utf-8") as fh:
            return fh.read().split()

    def controllers(self) -> list[str]:
        """Return the controllers available to this group."""
        with open(os.path.join(self.path, CONTROLLERS_FILE), encoding="utf-8") as fh:
            return fh.read().split()

    def toggle_controllers(self, controllers: Iterable[str], toggle: ControllerToggle) -> None:
        """Enable or disable controllers in every ancestor below the mountpoint.

        Only a failure on the innermost ancestor is reported.
        """
        controllers = list(controllers)
        split = self.path.split("/")
        last_error: Exception | None = None
        for i in range(len(split)):
            prefix = "/".join(split[:i])
            if not prefix.startswith(self.mountpoint) or prefix == self.path:
                continue
            file_path = _join(prefix, SUBTREE_CONTROL)
            try:
                self._write_subtree_control(file_path, controllers, toggle)
            except OSError as err:
                last_error = CgroupError(
                    f"failed to write subtree controllers {controllers} to {file_path!r}: {err}"
                )
                last_error.__cause__ = err
            else:
                last_error = None
        if last_error is not None:
            raise last_error

    @staticmethod
    def _write_subtree_control(
        file_path: str, controllers: list[str], toggle: ControllerToggle
    ) -> None:
        if toggle == ControllerToggle.ENABLE:
            controllers = ["+" + c for c in controllers]
        elif toggle == ControllerToggle.DISABLE:
            controllers = ["-" + c for c in controllers]
        fd = os.open(file_path, os.O_WRONLY)
        try:
            os.write(fd, " ".join(controllers).encode())
        finally:
            os.close(fd)

    def new_child(self, name: str, resources: Resources | None) -> Manager:
        """Create a child group below this one."""
        if name.startswith("/"):
            raise CgroupError("name must be relative")
        path = _join(self.path, name)
        os.makedirs(path, _DIR_MODE, exist_ok=True)
        child = Manager(self.mountpoint, path)
        try:
            if resources is not None:
                child.toggle_controllers(resources.enabled_controllers(), ControllerToggle.ENABLE)
            _set_resources(path, resources)
        except Exception:
            _discard_dir(path)
            raise
        return child

    def add_proc(self, pid: int) -> None:
        """Move a process into this group."""
        Value(CGROUP_PROCS, pid).write(self.path)

    def delete(self) -> None:
        """Remove the group directory."""
        remove(self.path)

    def procs(self, recursive: bool) -> list[int]:
        """Return the process ids in this group, optionally with its descendants."""
        return list(self._walk_procs(self.path, recursive))

    def _walk_procs(self, directory: str, recursive: bool) -> Iterator[int]:
        with os.scandir(directory) as it:
            entries = sorted(it, key=lambda e: e.name)
        for entry in entries:
            if entry.is_dir(follow_symlinks=False):
                if recursive:
                    yield from self._walk_procs(entry.path, recursive)
            elif entry.name == CGROUP_PROCS:
                yield from parse_cgroup_procs_file(entry.path)

    def stat(self) -> Metrics:
        """Collect the statistics of this group."""
        out: dict = {}
        for controller in self.controllers():
            if controller in ("cpu", "memory"):
                out.update(_read_optional_kv(self.path, controller + ".stat"))
        for name in _SINGLE_VALUE_FILES:
            try:
                out[name] = read_single_file(self.path, name)
            except FileNotFoundError:
                continue
        memory_events = _read_optional_kv(self.path, "memory.events")

        memory = MemoryStat(
            **{key: _uint_value(key, out) for key in _MEMORY_STAT_KEYS},
            usage=stat_file_uint64(os.path.join(self.path, "memory.current")),
            usage_limit=stat_file_uint64(os.path.join(self.path, "memory.max")),
            swap_usage=stat_file_uint64(os.path.join(self.path, "memory.swap.current")),
            swap_limit=stat_file_uint64(os.path.join(self.path, "memory.swap.max")),
        )
        metrics = Metrics(
            pids=PidsStat(
                current=_pid_value("pids.current", out),
                limit=_pid_value("pids.max", out),
            ),
            cpu=CPUStat(**{key: _uint_value(key, out) for key in _CPU_STAT_KEYS}),
            memory=memory,
            io=IOStat(usage=read_io_stats(self.path)),
            rdma=RdmaStat(
                current=rdma_stats(os.path.join(self.path, "rdma.current")),
                limit=rdma_stats(os.path.join(self.path, "rdma.max")),
            ),
            hugetlb=read_hugetlb_stats(self.path),
        )
        if memory_events:
            metrics.memory_events = MemoryEvents(
                **{key: _uint_value(key, memory_events) for key in _EVENT_KEYS}
            )
        return metrics

    def freeze(self) -> None:
        """Freeze the group and wait until the kernel reports it frozen."""
        self._set_state(State.FROZEN)

    def thaw(self) -> None:
        """Thaw the group and wait until the kernel reports it thawed."""
        self._set_state(State.THAWED)

    def _set_state(self, state: State) -> None:
        values = state.values()
        while True:
            _write_values(self.path, values)
            if _fetch_state(self.path) is state:
                return
            time.sleep(0.001)

    def events(self, poll_interval: float = 0.1) -> Iterator[Event]:
        """Yield the memory.events counters each time the file changes."""
        file_path = os.path.join(self.path, "memory.events")

        def snapshot() -> tuple[int, int, bytes]:
            st = os.stat(file_path)
            with open(file_path, "rb") as fh:
                return st.st_mtime_ns, st.st_size, fh.read()

        try:
            last = snapshot()
        except OSError as err:
            raise CgroupError(f"Failed to add inotify watch for {file_path!r}") from err
        while True:
            time.sleep(poll_interval)
            current = snapshot()
            if current == last:
                continue
            last = current
            out = read_kv_stats_file(self.path, "memory.events")
            event = Event()
            for key in _EVENT_KEYS:
                if key not in out:
                    continue
                value = out[key]
                if not isinstance(value, int):
                    raise InvalidFormatError(f"cannot convert {key} to uint64: {value!r}")
                setattr(event, key, value)
            yield event


def new_manager(mountpoint: str, group: str, resources: Resources | None) -> Manager:
    """Create a group below ``mountpoint`` and apply ``resources`` to it."""
    if resources is None:
        raise CgroupError("resources reference is nil")
    verify_group_path(group)
    path = _join(mountpoint, group)
    os.makedirs(path, _DIR_MODE, exist_ok=True)
    manager = Manager(os.fspath(mountpoint), path)
    try:
        manager.toggle_controllers(resources.enabled_controllers(), ControllerToggle.ENABLE)
        _set_resources(path, resources)
    except Exception:
        _discard_dir(path)
        raise
    return manager


def load_manager(mountpoint: str, group: str) -> Manager:
    """Return a manager for an existing group without touching the filesystem."""
    verify_group_path(group)
    return Manager(os.fspath(mountpoint), _join(mountpoint, group))