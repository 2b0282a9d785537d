"""eBPF device filter programs for cgroup v2 device control."""

from __future__ import annotations

import enum
from collections.abc import Iterable
from dataclasses import dataclass, replace

from cgroupkit.errors import InvalidFormatError

# License string in the same form as the kernel MODULE_LICENSE macro.
LICENSE = "Apache"

_MAX_U32 = 2**32 - 1

# Constants of struct bpf_cgroup_dev_ctx from linux/bpf.h.
_DEV_BLOCK = 1
_DEV_CHAR = 2
_ACC_MKNOD = 1
_ACC_READ = 2
_ACC_WRITE = 4
_ACC_ALL = _ACC_READ | _ACC_WRITE | _ACC_MKNOD

_ACCESS_BITS = {"r": _ACC_READ, "w": _ACC_WRITE, "m": _ACC_MKNOD}

_R0, _R1, _R2, _R3, _R4, _R5 = range(6)


class _Kind(enum.Enum):
    LOAD_MEM = enum.auto()
    ALU_IMM = enum.auto()
    ALU_REG = enum.auto()
    JUMP_IMM = enum.auto()
    EXIT = enum.auto()


@dataclass(frozen=True)
class DeviceRule:
    """One entry of OCI ``linux.resources.devices``; -1 means any major/minor."""

    type: str = "a"
    major: int = -1
    minor: int = -1
    access: str = "rwm"
    allow: bool = False


@dataclass(frozen=True)
class Instruction:
    """A single eBPF instruction, optionally labelled and jumping to a label."""

    kind: _Kind
    op: str
    dst: int = 0
    src: int = 0
    offset: int = 0
    constant: int = 0
    reference: str = ""
    symbol: str = ""

    def with_symbol(self, symbol: str) -> Instruction:
        """Return a copy of this instruction carrying the given label."""
        return replace(self, symbol=symbol)

    def __str__(self) -> str:
        if self.kind is _Kind.EXIT:
            return self.op
        if self.kind is _Kind.LOAD_MEM:
            return (
                f"{self.op} dst: r{self.dst} src: r{self.src} "
                f"off: {self.offset} imm: {self.constant}"
            )
        if self.kind is _Kind.ALU_IMM:
            return f"{self.op} dst: r{self.dst} imm: {self.constant}"
        if self.kind is _Kind.ALU_REG:
            return f"{self.op} dst: r{self.dst} src: r{self.src}"
        text = f"{self.op} dst: r{self.dst} off: {self.offset} imm: {self.constant}"
        if self.reference:
            text += f" <{self.reference}>"
        return text


class Instructions(list):
    """A list of instructions that prints as an annotated listing."""

    def __str__(self) -> str:
        width = len(str(max(len(self) - 1, 0)))
        lines: list[str] = []
        for index, ins in enumerate(self):
            if ins.symbol:
                lines.append(f"{ins.symbol}:")
            lines.append(f"\t{index:>{width}}: {ins}")
        return "".join(line + "\n" for line in lines)


def _int32(value: int) -> int:
    value &= _MAX_U32
    return value - 2**32 if value >= 2**31 else value


def _load_mem(dst: int, src: int, offset: int, size: str) -> Instruction:
    return Instruction(_Kind.LOAD_MEM, f"LdXMem{size}", dst=dst, src=src, offset=offset)


def _alu_imm32(name: str, dst: int, imm: int) -> Instruction:
    return Instruction(_Kind.ALU_IMM, f"{name}32Imm", dst=dst, constant=_int32(imm))


def _alu_reg32(name: str, dst: int, src: int) -> Instruction:
    return Instruction(_Kind.ALU_REG, f"{name}32Reg", dst=dst, src=src)


def _jump_imm(name: str, dst: int, imm: int, reference: str) -> Instruction:
    return Instruction(
        _Kind.JUMP_IMM,
        f"{name}Imm",
        dst=dst,
        offset=-1,
        constant=_int32(imm),
        reference=reference,
    )


def _exit() -> Instruction:
    return Instruction(_Kind.EXIT, "Exit")


def _accept_block(accept: bool) -> list[Instruction]:
    return [_alu_imm32("Mov", _R0, 1 if accept else 0), _exit()]


class _Program:
    def __init__(self) -> None:
        self.insts = Instructions(
            [
                # R2 <- type (lower 16 bits of access_type)
                _load_mem(_R2, _R1, 0, "H"),
                # R3 <- access (upper 16 bits of access_type)
                _load_mem(_R3, _R1, 0, "W"),
                _alu_imm32("RSh", _R3, 16),
                # R4 <- major, R5 <- minor
                _load_mem(_R4, _R1, 4, "W"),
                _load_mem(_R5, _R1, 8, "W"),
            ]
        )
        self.has_wildcard = False
        self.block_id = 0

    def append_device(self, dev: DeviceRule) -> None:
        """Add a rule; rules must be added from the last one to the first."""
        if self.block_id < 0:
            raise InvalidFormatError("the program is finalized")
        if self.has_wildcard:
            # Entries after a wildcard entry are ignored.
            return

        if dev.type == "c":
            bpf_type, has_type = _DEV_CHAR, True
        elif dev.type == "b":
            bpf_type, has_type = _DEV_BLOCK, True
        elif dev.type == "a":
            bpf_type, has_type = -1, False
        else:
            raise InvalidFormatError(f"invalid DeviceType {dev.type!r}")
        if dev.major > _MAX_U32:
            raise InvalidFormatError(f"invalid major {dev.major}")
        if dev.minor > _MAX_U32:
            raise InvalidFormatError(f"invalid minor {dev.minor}")
        has_major = dev.major >= 0
        has_minor = dev.minor >= 0

        bpf_access = 0
        for ch in dev.access:
            try:
                bpf_access |= _ACCESS_BITS[ch]
            except KeyError:
                raise InvalidFormatError(f"unknown device access {ch!r}") from None
        has_access = bpf_access != _ACC_ALL

        block_sym = f"block-{self.block_id}"
        next_sym = f"block-{self.block_id + 1}"
        first = len(self.insts)
        if has_type:
            self.insts.append(_jump_imm("JNE", _R2, bpf_type, next_sym))
        if has_access:
            self.insts.extend(
                [
                    _alu_reg32("Mov", _R1, _R3),
                    _alu_imm32("And", _R1, bpf_access),
                    _jump_imm("JEq", _R1, 0, next_sym),
                ]
            )
        if has_major:
            self.insts.append(_jump_imm("JNE", _R4, dev.major, next_sym))
        if has_minor:
            self.insts.append(_jump_imm("JNE", _R5, dev.minor, next_sym))
        if not (has_type or has_access or has_major or has_minor):
            self.has_wildcard = True
        self.insts.extend(_accept_block(dev.allow))
        self.insts[first] = self.insts[first].with_symbol(block_sym)
        self.block_id += 1

    def finalize(self) -> Instructions:
        if self.has_wildcard:
            # The wildcard block already ends with a return.
            return self.insts
        self.insts.append(
            _alu_imm32("Mov", _R0, 0).with_symbol(f"block-{self.block_id}")
        )
        self.insts.append(_exit())
        self.block_id = -1
        return self.insts


def device_filter(devices: Iterable[DeviceRule] | None) -> tuple[Instructions, str]:
    """Build the eBPF device filter program and return it with its license."""
    program = _Program()
    for dev in reversed(list(devices or ())):
        program.append_device(dev)
    return program.finalize(), LICENSE


def is_rwm(permissions: str) -> bool:
    """Tell whether the permission string grants read, write and mknod."""
    return {"r", "w", "m"} <= set(permissions)


def can_skip_ebpf_error(devices: Iterable[DeviceRule]) -> bool:
    """Tell whether a failure to load the filter may be ignored."""
    return all(not dev.allow and is_rwm(dev.access) for dev in devices)