# minicontainer

A small container runtime library for Linux that shows the operating-system
pieces containers are built from.

- **Processes and namespaces** (`minicontainer.container`): `create_container`
  starts a workload (by default `/bin/sh`) in new PID, mount, network, UTS and
  IPC namespaces and returns a `Container`. `Container.stop()` sends SIGTERM,
  waits up to five seconds, then sends SIGKILL; `Container.stop(True)` kills at
  once. `Container.destroy()` stops a running container, closes its
  descriptors and marks it `ContainerState.TERMINATED`. `reap_children()` and
  `install_reaper()` reap exited children so none linger as zombies.
- **Memory and storage** (`minicontainer.storage`): `setup_memory_cgroup` sets
  `memory.max`, `memory.high` and `memory.oom.group` in a cgroup v2 directory;
  `setup_overlay_fs` mounts a copy-on-write overlay; `mount_proc_and_dev`
  mounts `/proc`, a 64 MB tmpfs `/tmp` and a devtmpfs `/dev`;
  `setup_rootfs` and `teardown_rootfs` combine these steps.
- **CPU scheduling** (`minicontainer.scheduler`): `cpu_weight` and
  `cpu_max_value` turn shares and quotas into `cpu.weight` and `cpu.max`;
  `setup_cpu_cgroup` writes them; `read_cpu_usage` reads `usage_usec` from
  `cpu.stat`. `Scheduler` picks the active container with the largest
  weighted deficit and reports fairness against a ±5% target.
- **Monitoring** (`minicontainer.monitoring`): `MetricsCollector` reads CPU
  and memory figures per container from cgroup files, and
  `format_metrics_table` renders them as a terminal table.
  `check_startup_latency` and `run_all_checks` run the system check suite.

## Installation

```
pip install .
```

Anything that touches namespaces, mounts or `/sys/fs/cgroup` needs root and
cgroups v2. The cgroup functions take a `cgroup_base` argument, so they can
be pointed at any directory. The scheduler's arithmetic and the table
rendering work as a plain user.

## Library use

```python
from minicontainer.scheduler import Scheduler, cpu_weight, cpu_max_value

print(cpu_weight(2048))            # 200
print(cpu_max_value(50000, 100000))  # "50000 100000"
print(cpu_max_value(0, 0))           # "max 100000"

sched = Scheduler()
sched.add("sched-A", 2048)
sched.add("sched-B", 1024)
print(sched.next())
print(sched.format_fairness())
```

```python
from minicontainer.storage import memory_limits, overlay_options

print(memory_limits(256, 0))   # (268435456, 214748364)
print(overlay_options("/", "/tmp/c/upper", "/tmp/c/work"))
```

```python
from minicontainer.monitoring import MetricsEntry, format_metrics_table

print(format_metrics_table([MetricsEntry("cont-00", cpu_pct=25.0, mem_used_mb=64, mem_limit_mb=256)]))
```

```python
# As root:
from minicontainer.container import ResourceConfig, create_container

c = create_container("demo01", ResourceConfig(cpu_shares=512, mem_limit_mb=256))
c.stop()
c.destroy()
```

## What this package does not do

- It installs no command-line program; everything is used from Python.
- It has no resource allocator for deadlock avoidance and no shared
  semaphore between containers.
- It keeps no registry of containers on disk; a `Container` lives only as
  long as the Python object holding it.

## Running the tests

```
pip install ".[test]"
pytest
```