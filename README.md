# hami

A node-side monitor for GPUs shared between containers.

Each container that uses a shared GPU keeps a memory-mapped cache file (the
*shared region*) in its own directory under `$HOOK_PATH/containers`. The
directory is named `<pod-uid>_<container-name>`. The region records, per
device, the memory each process has allocated, its utilization, the configured
memory limits, and two control fields that the monitor writes back: a
utilization switch and a kernel-activity counter that doubles as a blocking
flag.

`hami` works with those files in three ways:

- **Scanning** (`hami.pathmonitor.PathMonitor.scan`): for each container
  directory whose name contains the UID of a known pod, the first `*.cache`
  file in it is memory-mapped and kept as a `PodUsage`. A directory holding
  more than two entries is rejected with `ValueError`. Directories that match
  no known pod are deleted once their modification time is more than 300
  seconds old.
- **Exporting** (`hami.metrics`): per-container samples in the Prometheus text
  format: `vGPU_device_memory_usage_in_bytes`,
  `vGPU_device_memory_limit_in_bytes`, `Device_memory_desc_of_container` (a
  counter whose labels also carry context, module, data and offset sizes) and
  `Device_utilization_desc_of_container`. They carry the labels
  `podnamespace`, `podname`, `ctrname`, `vdeviceid` and `deviceuuid`, the last
  cut to 40 characters.
- **Feedback** (`hami.feedback.observe`): each region's kernel-activity
  counter is decremented. Tasks that are still active are counted per device
  and per priority, where a lower number means a higher priority. A task is
  blocked (its counter is set to -1) when a task of higher priority is active
  on its device. Its utilization switch is turned on when a higher-priority
  task or another task of the same priority is active there.

## Installation

```
pip install .
```

Python 3.10 or later is required. The package has no third-party
dependencies. Shared regions are read through `mmap`, so the monitor is meant
for Linux nodes.

## Running the monitor

```
HOOK_PATH=/usr/local/vgpu hami-vgpu-monitor --pods-file pods.json
```

Options:

- `--pods-file` (required): a JSON file listing the pods on this node. It is
  read again on every scan. It may be either `{"items": [...]}` or a bare list.
  Each entry needs `metadata.uid` and may have `metadata.name`,
  `metadata.namespace`, `metadata.labels` and `spec.containers[].name`.
- `--metrics-address` (default `:9394`): where `/metrics` is served. All other
  paths answer 404.
- `--interval` (default `5`): seconds between feedback rounds.

The command exits with status 1 when `HOOK_PATH` is not set.
`hami.validation.validate_env_vars` raises `MissingEnvironmentError` in that
case. Every scrape rescans the container directories. Every sample gets an
extra `zone="vGPU"` label. In between, `hami.cli.feedback_loop` rescans and
runs `observe` every interval until it is stopped.

An example `pods.json`:

```json
{"items": [{"metadata": {"uid": "1234", "name": "train", "namespace": "default"},
            "spec": {"containers": [{"name": "worker"}]}}]}
```

## Trying the exporter

`hami-testcollector` serves fixed sample metrics
(`clustermanager_oom_crashes_total` and `clustermanager_ram_usage_bytes` for
two made-up hosts, in the zones `db` and `ca`). It is useful for checking a
scrape configuration:

```
hami-testcollector --listen :8080
```

## Using the library

Reading a shared region directly:

```python
from hami.shared_region import open_shared_region

with open_shared_region("/usr/local/vgpu/containers/1234_worker/x.cache") as region:
    print(region.uuid(0))
    print(region.device_used_memory(0))
    print(region.total_usage(0))
    print(region.total_utilization(0))
```

`SharedRegion` also wraps any writable buffer of at least
`SHARED_REGION_SIZE` bytes, such as a `bytearray`. Its process slots are
available through `proc_slot(index)` and `procs()`. `read_proc_slot` decodes a
slot and raises each device's total to the monitored usage when that is
higher.

Scanning and exporting:

```python
from hami.metrics import container_samples, render_samples
from hami.pathmonitor import PathMonitor, PodInfo

monitor = PathMonitor("/usr/local/vgpu/containers")
pods = [PodInfo(uid="1234", name="train", namespace="default", containers=("worker",))]
monitor.scan(pods)
print(render_samples(container_samples(pods, monitor.usages)))
```

`hami.metrics.serve_metrics(address, collect)` starts a background HTTP server
that renders `collect()` on `/metrics`.

`hami.feedback` also has helpers for mapping container processes to host
pids: `detect_cgroup_driver`, `cgroup_tasks_path`, `read_host_pids` and
`assign_host_pids`.

## What the package does not do

- It does not query the GPU driver. There are no host-level GPU memory or
  utilization metrics, and no list of the pids that are using the GPU. Pass
  that list to `assign_host_pids` yourself. The monitor command does not call
  it.
- It does not talk to a Kubernetes API server. Pods come from the JSON file,
  or from `PodInfo` values you build.
- It has no RPC service for node vGPU information, and no scheduler or device
  plugin.

## Tests

```
pip install .[test]
pytest
```