"""A small Linux container runtime with cgroup limits, fair-share scheduling and monitoring."""

__version__ = "0.1.0"
__all__ = ["container", "monitoring", "scheduler", "storage"]