"""Resources, group managers, statistics readers and device filters for cgroup v2."""

__all__ = ["devicefilter", "manager", "paths", "resources", "statfiles"]