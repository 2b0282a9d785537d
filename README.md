# cgroupkit

Tools for working with Linux control groups from Python.

- `cgroupkit.v2` works with the unified (cgroup v2) hierarchy: describe
  resource limits, create and load groups, move processes, freeze and thaw,
  read statistics and build device-filter programs.
- `cgroupkit.host` inspects the host: which cgroup mode is active, which v1
  subsystem names apply, where cgroup v1 hierarchies are mounted, and parses
  `/proc/<pid>/cgroup`.

Only the standard library is needed. Most operations need a Linux host and
write access to `/sys/fs/cgroup`.

## Installing

```
pip install cgroupkit
```

## Describing resources

```python
from cgroupkit.v2.resources import CPU, Memory, Pids, Resources, new_cpu_max

res = Resources(
    cpu=CPU(weight=100, max=new_cpu_max(10000, 8000), cpus="0", mems="0"),
    memory=Memory(max=629145600, swap=314572800),
    pids=Pids(max=1000),
)

for value in res.values():
    print(value.filename, value.data())

print(res.enabled_controllers())   # ['cpu', 'cpuset', 'memory', 'pids']
```

`CPUMax.quota_and_period()` splits a `cpu.max` value back into its quota and
period; a quota of `max` is returned as the largest signed 64-bit integer.
`Pids(max=-1)` writes `max`, `Pids(max=0)` writes nothing. `IO`, `RDMA` and
`HugeTlb` describe `io.max`/`io.bfq.weight`, `rdma.max` and
`hugetlb.<size>.max` settings.

An OCI-style `linux.resources` mapping (keys such as `cpu`, `memory`,
`pids`, `blockIO`, `hugepageLimits`, `rdma`) is converted with
`to_resources(spec)`; CPU shares become a weight and the block-IO weight a BFQ
weight.

## Managing a group

```python
from cgroupkit.v2.manager import new_manager, load_manager

manager = new_manager("/sys/fs/cgroup", "/my-group", res)
manager.add_proc(1234)
print(manager.procs(recursive=False))

stats = manager.stat()
print(stats.memory.usage_limit, stats.pids.limit)

manager.freeze()
manager.thaw()
manager.delete()

existing = load_manager("/sys/fs/cgroup", "/my-group")
child = existing.new_child("worker", None)
```

`new_manager` creates the directory, enables the needed controllers in
`cgroup.subtree_control` of every ancestor below the mountpoint and writes the
settings; on failure it removes the directory again. `toggle_controllers`
with `ControllerToggle.ENABLE` or `ControllerToggle.DISABLE` does the
enabling step on its own.

`Manager.events(poll_interval)` is a generator that checks `memory.events`
every `poll_interval` seconds and yields an `Event` (`low`, `high`, `max`,
`oom`, `oom_kill`) each time the file changes.

Group paths must be clean, absolute and must not start with
`/sys/fs/cgroup`; `verify_group_path` in `cgroupkit.v2.paths` checks this and
raises `InvalidGroupPathError` otherwise. `pid_group_path(pid)` and
`nested_group_path(suffix)` read the unified-hierarchy path of a process.

The statistics readers in `cgroupkit.v2.statfiles` (`read_kv_stats_file`,
`read_io_stats`, `rdma_stats`, `read_hugetlb_stats`, ...) can be used
directly on any directory laid out like a cgroup.

## Device filters

```python
from cgroupkit.v2.devicefilter import DeviceRule, device_filter

program, license_name = device_filter([
    DeviceRule(type="a", major=-1, minor=-1, access="rwm", allow=True),
    DeviceRule(type="b", major=8, minor=0, access="rwm", allow=False),
])
print(program)
```

The result is an `Instructions` listing of the cgroup device eBPF program,
with `block-N` labels and jump targets.

## Inspecting the host

```python
from cgroupkit import host

print(host.mode())                  # CGMode.UNIFIED, CGMode.HYBRID, ...
print(host.subsystems())
print(host.parse_cgroup_file("/proc/self/cgroup"))
print(host.v1_mount_point())
```

`mode()` and `running_in_user_ns()` are computed once per process.
`cgroup_destination(subsystem)` returns the mount root of the v1 hierarchy
that carries a subsystem, and `huge_page_sizes()` lists the kernel's huge page
sizes as strings such as `2MB`.

## What it does not do

- Device filter programs are built but never loaded into the kernel. When
  `Resources.devices` is set, creating a group raises `CgroupError` unless
  every rule denies `rwm` access, in which case the rules are accepted
  without a filter.
- There is no systemd integration: groups are not created as transient units.
- `cgroupkit.host` only inspects cgroup v1; it does not create, update or
  delete v1 groups.
- There is no command-line tool; the package is a library.

## Errors

All errors raised by the package derive from `cgroupkit.errors.CgroupError`.
`InvalidFormatError` is raised for malformed cgroup files and values,
`InvalidGroupPathError` for bad group paths, and `cgroupkit.host` adds
`MountPointNotExistError` and `NoCgroupMountDestinationError`. Missing files
surface as the usual `OSError` subclasses.

## Running the tests

```
pip install cgroupkit[test]
pytest
```