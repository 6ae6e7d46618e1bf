"""CPU cgroups and a user-space weighted fair scheduler over container CPU usage."""

from __future__ import annotations

import logging
import os
import time
from dataclasses import dataclass, field
from pathlib import Path

from minicontainer.container import CONTAINER_ID_LEN
from minicontainer.storage import StorageError

logger = logging.getLogger(__name__)

CGROUP_BASE = "/sys/fs/cgroup"
MAX_SCHED_CONTAINERS = 16
DEFAULT_SHARES = 1024
DEFAULT_PERIOD = 100000

_MIN_WEIGHT = 1
_MAX_WEIGHT = 10000
_WINDOW_US = 1_000_000
_FAIRNESS_TOLERANCE_PCT = 5.0
_NO_CANDIDATE = -1e18


class SchedulerFullError(Exception):
    """Raised when the run queue cannot take another container."""


def _now_us():
    return time.monotonic_ns() // 1000


def cpu_weight(shares):
    """Convert CPU shares (1024 = default) to a cgroups v2 cpu.weight in 1..10000."""
    weight = int(shares * 100 / DEFAULT_SHARES)
    return max(_MIN_WEIGHT, min(_MAX_WEIGHT, weight))


def cpu_max_value(quota_us, period_us):
    """Return the cpu.max value: "quota period", or "max period" when unlimited."""
    if quota_us > 0 and period_us > 0:
        return f"{quota_us} {period_us}"
    return f"max {period_us if period_us > 0 else DEFAULT_PERIOD}"


def _cg_write(path, value):
    fd = os.open(path, os.O_WRONLY | os.O_TRUNC)
    try:
        os.write(fd, value.encode())
    finally:
        os.close(fd)


def setup_cpu_cgroup(container_id, shares, quota_us, period_us, cgroup_base=CGROUP_BASE):
    """Create the container's cgroup and set cpu.weight and cpu.max; return its directory.

    Only failure to create the directory is fatal; failed control writes are logged.
    """
    base = Path(cgroup_base)
    cgroup_path = base / f"container-{container_id}"
    logger.info("configuring CPU for container %s", container_id)

    try:
        os.mkdir(cgroup_path, 0o755)
    except FileExistsError:
        pass
    except OSError as exc:
        raise StorageError(f"cannot create cgroup {cgroup_path}: {exc.strerror or exc}") from exc

    try:
        _cg_write(base / "cgroup.subtree_control", "+cpu")
    except OSError as exc:
        logger.warning("could not enable cpu controller: %s", exc)

    weight = cpu_weight(shares)
    try:
        _cg_write(cgroup_path / "cpu.weight", str(weight))
    except OSError as exc:
        logger.warning("could not set cpu.weight (need root + cgroups v2): %s", exc)
    else:
        logger.info("cpu.weight = %d (from %d shares)", weight, shares)

    value = cpu_max_value(quota_us, period_us)
    if quota_us > 0 and period_us > 0:
        logger.info(
            "cpu.max = %d/%d us = %.1f%% of 1 core",
            quota_us,
            period_us,
            quota_us / period_us * 100.0,
        )
    else:
        logger.info("cpu.max = unlimited")
    try:
        _cg_write(cgroup_path / "cpu.max", value)
    except OSError as exc:
        logger.warning("could not set cpu.max: %s", exc)

    return cgroup_path


def parse_cpu_stat(text):
    """Return usage_usec from cpu.stat text, or None when it is absent.

    Reading stops at the first pair whose value is not an unsigned integer.
    """
    tokens = text.split()
    for key, value in zip(tokens[::2], tokens[1::2]):
        if not value.isdigit():
            return None
        if key == "usage_usec":
            return int(value)
    return None


def read_cpu_usage(container_id, cgroup_base=CGROUP_BASE):
    """Return the container's total CPU time in microseconds, or None if unavailable."""
    path = Path(cgroup_base) / f"container-{container_id}" / "cpu.stat"
    try:
        text = path.read_text(encoding="utf-8")
    except OSError:
        return None
    return parse_cpu_stat(text)


def enforce_resource_limits(container, cgroup_base=CGROUP_BASE):
    """Report the container's CPU usage; the kernel itself enforces the limits."""
    usage = read_cpu_usage(container.id, cgroup_base)
    if usage is not None:
        logger.info("container %s CPU used: %d us", container.id, usage)
    return usage


@dataclass
class SchedEntry:
    """One container in the run queue."""

    id: str
    shares: int = DEFAULT_SHARES
    cpu_used_us: int = 0
    last_read_us: int = 0
    active: bool = True


@dataclass(frozen=True)
class FairnessRow:
    """Expected versus actual CPU share of one active container."""

    id: str
    shares: int
    expected_pct: float
    actual_pct: float

    @property
    def deviation(self):
        return abs(self.expected_pct - self.actual_pct)

    @property
    def fair(self):
        return self.deviation < _FAIRNESS_TOLERANCE_PCT


@dataclass
class Scheduler:
    """Weighted fair scheduler: the container furthest behind its entitlement runs next."""

    cgroup_base: str | os.PathLike = CGROUP_BASE
    capacity: int = MAX_SCHED_CONTAINERS
    entries: list[SchedEntry] = field(default_factory=list)

    def add(self, container_id, shares=DEFAULT_SHARES):
        """Append a container to the run queue and return its entry."""
        if len(self.entries) >= self.capacity:
            raise SchedulerFullError("run queue full")
        entry = SchedEntry(
            id=container_id[: CONTAINER_ID_LEN - 1],
            shares=shares if shares > 0 else DEFAULT_SHARES,
            last_read_us=_now_us(),
        )
        self.entries.append(entry)
        logger.info("added container %s with %d shares", container_id, shares)
        return entry

    def remove(self, container_id):
        """Take a container out of the run queue; KeyError if it was never added."""
        for entry in self.entries:
            if entry.id == container_id:
                entry.active = False
                logger.info("removed container %s", container_id)
                return
        raise KeyError(container_id)

    def _active(self):
        return [entry for entry in self.entries if entry.active]

    def _refresh(self, entry):
        usage = read_cpu_usage(entry.id, self.cgroup_base)
        if usage is not None:
            entry.cpu_used_us = usage

    def next(self):
        """Return the id of the active container with the largest deficit, or None."""
        active = self._active()
        total_shares = sum(entry.shares for entry in active)
        if total_shares == 0:
            return None

        best_id = None
        best_deficit = _NO_CANDIDATE
        for entry in active:
            self._refresh(entry)
            entitled_us = entry.shares / total_shares * _WINDOW_US
            deficit = entitled_us - entry.cpu_used_us
            logger.debug(
                "%s: shares=%d entitled=%.0fus used=%dus deficit=%.0fus",
                entry.id,
                entry.shares,
                entitled_us,
                entry.cpu_used_us,
                deficit,
            )
            if deficit > best_deficit:
                best_deficit = deficit
                best_id = entry.id
        return best_id

    def fairness_report(self):
        """Return a FairnessRow for each active container, after refreshing usage."""
        active = self._active()
        for entry in active:
            self._refresh(entry)
        total_shares = sum(entry.shares for entry in active)
        total_used = sum(entry.cpu_used_us for entry in active)
        return [
            FairnessRow(
                id=entry.id,
                shares=entry.shares,
                expected_pct=entry.shares / total_shares * 100.0 if total_shares > 0 else 0.0,
                actual_pct=entry.cpu_used_us / total_used * 100.0 if total_used > 0 else 0.0,
            )
            for entry in active
        ]

    def format_fairness(self):
        """Render the fairness report as a box-drawn table."""
        lines = [
            "┌────────────────┬────────┬────────────┬──────────┬─────────┐",
            "│ Container      │ Shares │ Expected% │ Actual%  │ Status  │",
            "├────────────────┼────────┼────────────┼──────────┼─────────┤",
        ]
        for row in self.fairness_report():
            status = "FAIR ✓" if row.fair else "SKEWED"
            lines.append(
                f"│ {row.id:<14} │ {row.shares:6d} │ {row.expected_pct:9.1f}% │ "
                f"{row.actual_pct:7.1f}% │ {status:<7} │"
            )
        lines.append("└────────────────┴────────┴────────────┴──────────┴─────────┘")
        lines.append("Fairness target: deviation < 5% (project requirement ±5%)")
        return "\n".join(lines) + "\n"