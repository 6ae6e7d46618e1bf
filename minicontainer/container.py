"""Container descriptors and process lifecycle: create, stop, destroy, reap."""

from __future__ import annotations

import contextlib
import logging
import os
import secrets
import signal
import socket
import subprocess
import sys
import time
from dataclasses import dataclass, field
from enum import IntEnum

logger = logging.getLogger(__name__)

MAX_CONTAINERS = 64
CONTAINER_ID_LEN = 16
ROOTFS_PATH_LEN = 256

ID_CHARSET = "abcdefghijklmnopqrstuvwxyz0123456789"
DEFAULT_ARGV = ("/bin/sh",)

_GRACE_POLLS = 50
_POLL_INTERVAL = 0.1
_FORWARDED_SIGNALS = (signal.SIGTERM, signal.SIGINT, signal.SIGHUP, signal.SIGQUIT)


class ContainerError(Exception):
    """Raised when a container cannot be created, stopped or waited for."""


class ContainerState(IntEnum):
    """Lifecycle states of a container."""

    PENDING = 0
    CREATING = 1
    RUNNING = 2
    STOPPING = 3
    STOPPED = 4
    TERMINATED = 5


@dataclass
class ResourceConfig:
    """CPU, memory and storage limits for one container."""

    cpu_shares: int = 1024
    cpu_quota_us: int = 0
    cpu_period_us: int = 100000
    mem_limit_mb: int = 0
    mem_reserve_mb: int = 0
    storage_limit_mb: int = 0


def state_name(state):
    """Return the upper-case name of a state, or "UNKNOWN" for anything else."""
    try:
        return ContainerState(state).name
    except ValueError:
        return "UNKNOWN"


def generate_id(length=CONTAINER_ID_LEN - 1):
    """Return a random identifier of lower-case letters and digits."""
    return "".join(secrets.choice(ID_CHARSET) for _ in range(length))


@dataclass
class Container:
    """One container: its host process, state, limits and file descriptors."""

    id: str
    resources: ResourceConfig = field(default_factory=ResourceConfig)
    state: ContainerState = ContainerState.PENDING
    pid: int = -1
    init_pid: int = -1
    rootfs: str = ""
    ns_pid_fd: int = 0
    ns_mnt_fd: int = 0
    cgroup_fd: int = 0
    created_at: int = 0
    exit_code: int | None = None

    def stop(self, force=False):
        """Stop the container: SIGTERM with a five second grace, then SIGKILL."""
        if self.pid <= 0:
            raise ContainerError(f"container {self.id!r} has no process")
        if self.state != ContainerState.RUNNING:
            logger.info("%s not running (state=%s)", self.id, state_name(self.state))
            return

        self.state = ContainerState.STOPPING
        logger.info("stopping id=%s pid=%d force=%s", self.id, self.pid, force)

        if not force:
            try:
                os.kill(self.pid, signal.SIGTERM)
            except OSError as exc:
                logger.warning("kill SIGTERM %d: %s", self.pid, exc)
            else:
                if self._wait_gracefully():
                    logger.info("%s exited gracefully", self.id)
                    return
                logger.info("%s did not exit after SIGTERM, sending SIGKILL", self.id)

        if self.init_pid > 0:
            with contextlib.suppress(ProcessLookupError, PermissionError):
                os.kill(self.init_pid, signal.SIGKILL)
        try:
            os.kill(self.pid, signal.SIGKILL)
        except OSError as exc:
            raise ContainerError(f"kill SIGKILL {self.pid}: {exc}") from exc
        try:
            _, status = os.waitpid(self.pid, 0)
        except ChildProcessError as exc:
            raise ContainerError(f"waitpid {self.pid}: {exc}") from exc

        self.exit_code = os.waitstatus_to_exitcode(status)
        self.state = ContainerState.STOPPED
        logger.info("id=%s killed, exit code %d", self.id, self.exit_code)

    def _wait_gracefully(self):
        for _ in range(_GRACE_POLLS):
            try:
                pid, status = os.waitpid(self.pid, os.WNOHANG)
            except ChildProcessError:
                # Already reaped elsewhere, e.g. by the SIGCHLD reaper.
                self.state = ContainerState.STOPPED
                return True
            if pid == self.pid:
                self.exit_code = os.waitstatus_to_exitcode(status)
                self.state = ContainerState.STOPPED
                return True
            time.sleep(_POLL_INTERVAL)
        return False

    def destroy(self):
        """Stop the container if running, close its descriptors and mark it terminated."""
        logger.info("destroying id=%s", self.id)
        if self.state == ContainerState.RUNNING:
            with contextlib.suppress(ContainerError):
                self.stop(False)

        for fd in (self.ns_pid_fd, self.ns_mnt_fd, self.cgroup_fd):
            if fd > 0:
                with contextlib.suppress(OSError):
                    os.close(fd)
        self.ns_pid_fd = 0
        self.ns_mnt_fd = 0
        self.cgroup_fd = 0

        self.state = ContainerState.TERMINATED
        self.pid = -1
        logger.info("id=%s state=TERMINATED", self.id)


def _namespace_flags():
    return (
        os.CLONE_NEWPID
        | os.CLONE_NEWNS
        | os.CLONE_NEWNET
        | os.CLONE_NEWUTS
        | os.CLONE_NEWIPC
    )


def _run_mount(args):
    try:
        result = subprocess.run(["mount", *args], check=False)
    except OSError as exc:
        print(f"[container_init] mount {' '.join(args)}: {exc}", file=sys.stderr)
        return
    if result.returncode != 0:
        print(f"[container_init] mount {' '.join(args)} failed", file=sys.stderr)


def _container_init(container_id, argv):
    """Body of the namespace's first process; never returns."""
    try:
        logger.info("[container:%s] PID inside namespace = %d", container_id, os.getpid())
        _run_mount(["--make-rprivate", "/proc"])
        _run_mount(["-t", "proc", "-o", "nosuid,nodev,noexec", "proc", "/proc"])
        try:
            socket.sethostname(container_id)
        except OSError as exc:
            print(f"[container_init] sethostname: {exc}", file=sys.stderr)
        logger.info("[container:%s] execve -> %s", container_id, argv[0])
        os.execvp(argv[0], list(argv))
    except BaseException as exc:  # noqa: BLE001 - the child must never unwind into the caller
        print(f"[container_init] execvp failed: {exc}", file=sys.stderr)
    finally:
        os._exit(1)


def _supervise(init_pid):
    """Forward termination signals to the namespace init and mirror its exit status."""

    def forward(signum, _frame):
        with contextlib.suppress(ProcessLookupError):
            os.kill(init_pid, signum)

    for sig in _FORWARDED_SIGNALS:
        signal.signal(sig, forward)
    _, status = os.waitpid(init_pid, 0)
    code = os.waitstatus_to_exitcode(status)
    return 128 - code if code < 0 else code


def _spawn_child(container_id, argv, write_fd):
    """Runs in the forked child: enter new namespaces and start the init process."""
    code = 1
    try:
        signal.signal(signal.SIGCHLD, signal.SIG_DFL)
        try:
            os.unshare(_namespace_flags())
            init_pid = os.fork()
        except OSError as exc:
            os.write(write_fd, f"E{exc.errno or 0}:unshare".encode())
            return
        if init_pid == 0:
            _container_init(container_id, argv)
        os.write(write_fd, f"P{init_pid}".encode())
        os.close(write_fd)
        code = _supervise(init_pid)
    except BaseException:  # noqa: BLE001
        code = 1
    finally:
        os._exit(code)


def _read_all(fd):
    chunks = []
    while chunk := os.read(fd, 256):
        chunks.append(chunk)
    return b"".join(chunks).decode()


def create_container(container_id=None, resources=None, argv=None):
    """Spawn an isolated container process and return its running descriptor."""
    if not hasattr(os, "unshare"):
        raise ContainerError("namespaces are not supported on this platform")

    cid = container_id[: CONTAINER_ID_LEN - 1] if container_id else generate_id()
    container = Container(
        id=cid,
        resources=resources if resources is not None else ResourceConfig(),
        state=ContainerState.CREATING,
        created_at=int(time.time()),
        rootfs=f"/tmp/containers/{cid}/rootfs"[: ROOTFS_PATH_LEN - 1],
    )
    logger.info("id=%s state=CREATING", cid)

    workload = tuple(argv) if argv else DEFAULT_ARGV
    read_fd, write_fd = os.pipe()
    try:
        pid = os.fork()
    except OSError as exc:
        os.close(read_fd)
        os.close(write_fd)
        container.state = ContainerState.TERMINATED
        raise ContainerError(f"fork: {exc}") from exc

    if pid == 0:
        os.close(read_fd)
        _spawn_child(cid, workload, write_fd)

    os.close(write_fd)
    try:
        message = _read_all(read_fd)
    finally:
        os.close(read_fd)

    if not message.startswith("P"):
        with contextlib.suppress(ChildProcessError):
            os.waitpid(pid, 0)
        container.state = ContainerState.TERMINATED
        if message.startswith("E"):
            err, _, step = message[1:].partition(":")
            raise ContainerError(f"{step}: {os.strerror(int(err))}")
        raise ContainerError("container process exited before starting")

    container.pid = pid
    container.init_pid = int(message[1:])
    container.state = ContainerState.RUNNING
    logger.info("id=%s pid=%d state=RUNNING", cid, pid)
    return container


def reap_children():
    """Reap every exited child without blocking; return (pid, exit code) pairs."""
    reaped = []
    while True:
        try:
            pid, status = os.waitpid(-1, os.WNOHANG)
        except ChildProcessError:
            break
        if pid == 0:
            break
        reaped.append((pid, os.waitstatus_to_exitcode(status)))
    return reaped


def _on_sigchld(_signum, _frame):
    for pid, code in reap_children():
        logger.info("reaped zombie pid=%d exit=%d", pid, code)


def install_reaper():
    """Install a SIGCHLD handler that reaps exited children; return the previous handler."""
    return signal.signal(signal.SIGCHLD, _on_sigchld)