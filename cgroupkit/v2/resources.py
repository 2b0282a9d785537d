"""Resource settings for a cgroup v2 unified hierarchy."""

from __future__ import annotations

import enum
import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from cgroupkit.errors import InvalidFormatError

_MAX_INT64 = 2**63 - 1
_U64 = 2**64 - 1
_U16 = 2**16 - 1
_FILE_MODE = 0o644
CGROUP_FREEZE = "cgroup.freeze"


@dataclass(frozen=True)
class Value:
    """A single setting: the file it lives in and the value to write."""

    filename: str
    value: Any

    def data(self) -> bytes:
        """Return the bytes that are written for this value."""
        v = self.value
        if isinstance(v, bool):
            raise InvalidFormatError()
        if isinstance(v, int):
            return str(v).encode()
        if isinstance(v, (bytes, bytearray)):
            return bytes(v)
        if isinstance(v, str):
            return v.encode()
        raise InvalidFormatError()

    def write(self, directory: str | os.PathLike[str]) -> None:
        """Write the value into its file below ``directory``."""
        payload = self.data()
        path = os.path.join(directory, self.filename)
        while True:
            try:
                with open(path, "wb") as fh:
                    fh.write(payload)
                return
            except InterruptedError:
                continue


def _parse_int(text: str) -> int:
    try:
        return int(text, 10)
    except ValueError:
        return 0


class CPUMax(str):
    """The contents of ``cpu.max``: "<quota|max> <period>"."""

    def quota_and_period(self) -> tuple[int, int]:
        """Return (quota, period); a quota of "max" becomes the largest int64."""
        values = self.split(" ")
        if len(values) < 2:
            raise InvalidFormatError(f"invalid cpu.max value {str(self)!r}")
        quota = _MAX_INT64 if values[0] == "max" else _parse_int(values[0])
        period = _parse_int(values[1])
        if period < 0:
            period = 0
        return quota, period


def new_cpu_max(quota: int | None, period: int) -> CPUMax:
    """Build a cpu.max value; a missing quota means no limit."""
    if period is None:
        raise ValueError("period is required")
    head = "max" if quota is None else str(quota)
    return CPUMax(f"{head} {period}")


@dataclass
class CPU:
    weight: int | None = None
    max: str = ""
    cpus: str = ""
    mems: str = ""

    def values(self) -> list[Value]:
        out: list[Value] = []
        if self.weight is not None:
            out.append(Value("cpu.weight", self.weight))
        if self.max:
            out.append(Value("cpu.max", CPUMax(self.max)))
        if self.cpus:
            out.append(Value("cpuset.cpus", self.cpus))
        if self.mems:
            out.append(Value("cpuset.mems", self.mems))
        return out


@dataclass
class Memory:
    swap: int | None = None
    max: int | None = None
    low: int | None = None
    high: int | None = None

    def values(self) -> list[Value]:
        settings = (
            ("memory.swap.max", self.swap),
            ("memory.max", self.max),
            ("memory.low", self.low),
            ("memory.high", self.high),
        )
        return [Value(name, v) for name, v in settings if v is not None]


@dataclass
class Pids:
    max: int = 0

    def values(self) -> list[Value]:
        if self.max == 0:
            return []
        limit = str(self.max) if self.max > 0 else "max"
        return [Value("pids.max", limit)]


class IOType(str, enum.Enum):
    READ_BPS = "rbps"
    WRITE_BPS = "wbps"
    READ_IOPS = "riops"
    WRITE_IOPS = "wiops"


@dataclass
class BFQ:
    weight: int = 0


@dataclass
class IOEntry:
    type: IOType
    major: int
    minor: int
    rate: int

    def __str__(self) -> str:
        return f"{self.major}:{self.minor} {IOType(self.type).value}={self.rate}"


@dataclass
class IO:
    bfq: BFQ = field(default_factory=BFQ)
    max: list[IOEntry] = field(default_factory=list)

    def values(self) -> list[Value]:
        out: list[Value] = []
        if self.bfq.weight != 0:
            out.append(Value("io.bfq.weight", self.bfq.weight))
        out.extend(Value("io.max", str(e)) for e in self.max)
        return out


@dataclass
class RDMAEntry:
    device: str
    hca_handles: int
    hca_objects: int

    def __str__(self) -> str:
        return f"{self.device} hca_handle={self.hca_handles} hca_object={self.hca_objects}"


@dataclass
class RDMA:
    limit: list[RDMAEntry] = field(default_factory=list)

    def values(self) -> list[Value]:
        return [Value("rdma.max", str(e)) for e in self.limit]


@dataclass
class HugeTlbEntry:
    huge_page_size: str
    limit: int


class HugeTlb(list):
    """A list of hugetlb limits, one per page size."""

    def values(self) -> list[Value]:
        return [
            Value(f"hugetlb.{e.huge_page_size}.max", e.limit) for e in self
        ]


class State(str, enum.Enum):
    UNKNOWN = ""
    THAWED = "thawed"
    FROZEN = "frozen"
    DELETED = "deleted"

    def values(self) -> list[Value]:
        """Return the cgroup.freeze setting that requests this state."""
        if self is State.FROZEN:
            return [Value(CGROUP_FREEZE, "1")]
        if self is State.THAWED:
            return [Value(CGROUP_FREEZE, "0")]
        return [Value(CGROUP_FREEZE, None)]


@dataclass
class Resources:
    cpu: CPU | None = None
    memory: Memory | None = None
    pids: Pids | None = None
    io: IO | None = None
    rdma: RDMA | None = None
    hugetlb: HugeTlb | None = None
    # An empty list means devices are not controlled.
    devices: list = field(default_factory=list)

    def _controllers(self):
        return (
            (self.cpu, ("cpu", "cpuset")),
            (self.memory, ("memory",)),
            (self.pids, ("pids",)),
            (self.io, ("io",)),
            (self.rdma, ("rdma",)),
            (self.hugetlb, ("hugetlb",)),
        )

    def values(self) -> list[Value]:
        """Return every file/value pair to write to the unified hierarchy."""
        out: list[Value] = []
        for controller, _ in self._controllers():
            if controller is not None:
                out.extend(controller.values())
        return out

    def enabled_controllers(self) -> list[str]:
        """Return the names of the controllers that have settings."""
        return [
            name
            for controller, names in self._controllers()
            if controller is not None
            for name in names
        ]


def _bfq_weight(weight: int) -> int:
    # The conversion is carried out in unsigned 16-bit arithmetic.
    t = (weight - 10) & _U16
    t = (t * 9999) & _U16
    return (1 + t // 990) & _U16


_THROTTLE_KEYS = (
    (IOType.READ_BPS, "throttleReadBpsDevice"),
    (IOType.WRITE_BPS, "throttleWriteBpsDevice"),
    (IOType.READ_IOPS, "throttleReadIOPSDevice"),
    (IOType.WRITE_IOPS, "throttleWriteIOPSDevice"),
)


def to_resources(spec: Mapping[str, Any]) -> Resources:
    """Convert OCI ``linux.resources`` settings into unified-hierarchy resources."""
    resources = Resources()

    cpu = spec.get("cpu")
    if cpu is not None:
        resources.cpu = CPU(cpus=cpu.get("cpus") or "", mems=cpu.get("mems") or "")
        shares = cpu.get("shares")
        if shares is not None:
            resources.cpu.weight = 1 + (((shares - 2) * 9999) & _U64) // 262142
        period = cpu.get("period")
        if period is not None:
            resources.cpu.max = new_cpu_max(cpu.get("quota"), period)

    mem = spec.get("memory")
    if mem is not None:
        resources.memory = Memory(
            swap=mem.get("swap"),
            max=mem.get("limit"),
            low=mem.get("reservation"),
        )

    hugepages = spec.get("hugepageLimits")
    if hugepages is not None:
        resources.hugetlb = HugeTlb(
            HugeTlbEntry(huge_page_size=h["pageSize"], limit=h["limit"]) for h in hugepages
        )

    pids = spec.get("pids")
    if pids is not None:
        resources.pids = Pids(max=pids.get("limit", 0))

    block_io = spec.get("blockIO")
    if block_io is not None:
        io = IO()
        weight = block_io.get("weight")
        if weight is not None:
            io.bfq.weight = _bfq_weight(weight)
        for io_type, key in _THROTTLE_KEYS:
            for dev in block_io.get(key) or ():
                io.max.append(
                    IOEntry(type=io_type, major=dev["major"], minor=dev["minor"], rate=dev["rate"])
                )
        resources.io = io

    rdma = spec.get("rdma")
    if rdma is not None:
        resources.rdma = RDMA()
        for device, limits in rdma.items():
            handles = limits.get("hcaHandles")
            objects = limits.get("hcaObjects")
            if not device or (handles is None and objects is None):
                continue
            if handles is None or objects is None:
                raise InvalidFormatError(
                    f"rdma limit for {device!r} needs both hcaHandles and hcaObjects"
                )
            resources.rdma.limit.append(
                RDMAEntry(device=device, hca_handles=handles, hca_objects=objects)
            )

    return resources