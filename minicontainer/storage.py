"""Memory cgroups and filesystem isolation: overlay root, /proc, /tmp and /dev mounts."""

from __future__ import annotations

import contextlib
import errno
import logging
import os
import subprocess
from pathlib import Path

from minicontainer.container import ROOTFS_PATH_LEN

logger = logging.getLogger(__name__)

CGROUP_BASE = "/sys/fs/cgroup"
CONTAINERS_DIR = "/tmp/containers"
OVERLAY_LOWER = "/"

_MIB = 1024 * 1024
_SOFT_LIMIT_FRACTION = 0.8
_TMPFS_SIZE = "size=64m"


class StorageError(Exception):
    """Raised when a cgroup or filesystem step fails."""


def memory_limits(limit_mb, reserve_mb):
    """Return (memory.max, memory.high) in bytes.

    memory.high is the reservation when one is given, else 80% of the hard limit.
    """
    limit_bytes = limit_mb * _MIB
    if reserve_mb > 0:
        high_bytes = reserve_mb * _MIB
    else:
        high_bytes = int(limit_bytes * _SOFT_LIMIT_FRACTION)
    return limit_bytes, high_bytes


def _mkdir(path):
    """Create one directory level; an existing directory is fine."""
    try:
        os.mkdir(path, 0o755)
    except FileExistsError:
        pass
    except OSError as exc:
        logger.warning("mkdir %s: %s", path, exc.strerror or exc)
        raise


def _try_mkdir(path):
    with contextlib.suppress(OSError):
        _mkdir(path)


def _cgroup_write(path, value):
    """Write a value to an existing cgroup control file."""
    fd = os.open(path, os.O_WRONLY | os.O_TRUNC)
    try:
        os.write(fd, value.encode())
    finally:
        os.close(fd)


def _cgroup_read(path):
    """Return the first line of a cgroup control file."""
    with open(path, encoding="utf-8") as handle:
        return handle.read(63).split("\n", 1)[0]


def setup_memory_cgroup(container_id, limit_mb, reserve_mb, cgroup_base=CGROUP_BASE):
    """Create the container's cgroup and set its hard and soft memory limits.

    Returns the cgroup directory. Only failure to create the directory is fatal;
    failed control writes are logged, as they need root and cgroups v2.
    """
    base = Path(cgroup_base)
    cgroup_path = base / f"container-{container_id}"
    logger.info("creating cgroup %s", cgroup_path)

    try:
        _mkdir(cgroup_path)
    except OSError as exc:
        raise StorageError(f"cannot create cgroup {cgroup_path}: {exc.strerror or exc}") from exc

    try:
        _cgroup_write(base / "cgroup.subtree_control", "+memory")
    except OSError as exc:
        logger.warning("could not enable memory controller (need root + cgroups v2): %s", exc)

    limit_bytes, high_bytes = memory_limits(limit_mb, reserve_mb)

    try:
        _cgroup_write(cgroup_path / "memory.max", str(limit_bytes))
    except OSError as exc:
        logger.warning("could not set memory.max (try running as root): %s", exc)
    else:
        logger.info("memory.max = %d MB (%d bytes)", limit_mb, limit_bytes)

    try:
        _cgroup_write(cgroup_path / "memory.high", str(high_bytes))
    except OSError as exc:
        logger.warning("could not set memory.high: %s", exc)
    else:
        logger.info("memory.high = %d bytes", high_bytes)

    # Kill the whole container on OOM rather than a single process.
    with contextlib.suppress(OSError):
        _cgroup_write(cgroup_path / "memory.oom.group", "1")

    with contextlib.suppress(OSError):
        logger.info("verified memory.max = %s bytes", _cgroup_read(cgroup_path / "memory.max"))

    return cgroup_path


def _run(args):
    """Run a mount-family command, raising StorageError when it fails."""
    command = [str(arg) for arg in args]
    try:
        result = subprocess.run(command, capture_output=True, text=True, check=False)
    except OSError as exc:
        raise StorageError(f"{' '.join(command)}: {exc}") from exc
    if result.returncode != 0:
        detail = (result.stderr or "").strip() or f"exit status {result.returncode}"
        raise StorageError(f"{' '.join(command)}: {detail}")


def _mount(source, target, fstype, options=""):
    args = ["mount", "-t", fstype]
    if options:
        args += ["-o", options]
    args += [source, target]
    _run(args)


def overlay_options(lower, upper, work):
    """Return the overlay mount option string for the given layer directories."""
    return f"lowerdir={lower},upperdir={upper},workdir={work}"


def setup_overlay_fs(container_id, lower, upper, work, merged):
    """Mount a copy-on-write overlay of lower and upper at merged."""
    logger.info("setting up overlay for container %s", container_id)
    for directory in (upper, work, merged):
        _try_mkdir(directory)

    options = overlay_options(lower, upper, work)
    logger.info("overlay options: %s", options)
    try:
        _mount("overlay", merged, "overlay", options)
    except StorageError as exc:
        raise StorageError(
            f"mount overlay failed (needs root and kernel overlay support): {exc}"
        ) from exc
    logger.info("overlay mounted at %s", merged)


def mount_proc_and_dev(rootfs):
    """Mount a private /proc, a 64 MB tmpfs /tmp and a devtmpfs /dev under rootfs.

    Every mount is attempted; StorageError is raised afterwards if /proc failed.
    """
    try:
        _run(["mount", "--make-rprivate", "/"])
    except StorageError as exc:
        logger.warning("making root private: %s", exc)

    root = Path(rootfs)
    proc_error = None

    proc = root / "proc"
    _try_mkdir(proc)
    try:
        _mount("proc", proc, "proc", "nosuid,nodev,noexec")
    except StorageError as exc:
        logger.warning("mount /proc: %s", exc)
        proc_error = exc
    else:
        logger.info("/proc mounted (container-only view)")

    tmp = root / "tmp"
    _try_mkdir(tmp)
    try:
        _mount("tmpfs", tmp, "tmpfs", f"nosuid,nodev,{_TMPFS_SIZE}")
    except StorageError as exc:
        logger.warning("mount /tmp: %s", exc)
    else:
        logger.info("/tmp mounted as tmpfs (64 MB, RAM-backed)")

    dev = root / "dev"
    _try_mkdir(dev)
    try:
        _mount("devtmpfs", dev, "devtmpfs", "nosuid,noexec")
    except StorageError as exc:
        logger.warning("mount /dev: %s", exc)
    else:
        logger.info("/dev mounted as devtmpfs")

    if proc_error is not None:
        raise StorageError(f"mount /proc under {rootfs} failed") from proc_error


def setup_rootfs(container, base_dir=CONTAINERS_DIR, cgroup_base=CGROUP_BASE):
    """Prepare the container's root filesystem and memory cgroup; return the rootfs path.

    Falls back to the host root when the overlay cannot be mounted.
    """
    base = os.path.join(str(base_dir), container.id)
    upper = os.path.join(base, "upper")
    work = os.path.join(base, "work")
    merged = os.path.join(base, "merged")

    logger.info("preparing rootfs for container %s", container.id)
    _try_mkdir(base)

    container.rootfs = merged[: ROOTFS_PATH_LEN - 1]
    try:
        setup_overlay_fs(container.id, OVERLAY_LOWER, upper, work, merged)
    except StorageError as exc:
        logger.warning("overlay failed, using host root: %s", exc)
        container.rootfs = "/"

    with contextlib.suppress(StorageError):
        mount_proc_and_dev(container.rootfs)

    with contextlib.suppress(StorageError):
        setup_memory_cgroup(
            container.id,
            container.resources.mem_limit_mb,
            container.resources.mem_reserve_mb,
            cgroup_base,
        )

    logger.info("rootfs ready at %s", container.rootfs)
    return container.rootfs


def teardown_rootfs(container, cgroup_base=CGROUP_BASE):
    """Lazily unmount the container's filesystems and remove its cgroup directory."""
    logger.info("cleaning up container %s", container.id)
    root = Path(container.rootfs)
    for target in (root / "dev", root / "tmp", root / "proc", root):
        with contextlib.suppress(StorageError):
            _run(["umount", "-l", target])

    cgroup_path = Path(cgroup_base) / f"container-{container.id}"
    try:
        os.rmdir(cgroup_path)
    except OSError as exc:
        if exc.errno != errno.ENOENT:
            logger.info("could not remove %s: %s", cgroup_path, exc.strerror or exc)
    logger.info("cleanup complete for %s", container.id)