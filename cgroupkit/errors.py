"""Exceptions raised by cgroupkit."""


class CgroupError(Exception):
    """Base class for every cgroup-related error raised by this package."""


class InvalidFormatError(CgroupError, ValueError):
    """A cgroup file or value could not be parsed or rendered."""

    default_message = "cgroups: parsing file with invalid format failed"

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.default_message)


class InvalidGroupPathError(CgroupError, ValueError):
    """A group path is not a clean absolute path below the mountpoint."""

    default_message = "cgroups: invalid group path"

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.default_message)