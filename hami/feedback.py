"""Host pid assignment and priority-based utilization feedback."""

from __future__ import annotations

import enum
import logging
import os
from dataclasses import dataclass
from typing import Iterable, Mapping

from hami.pathmonitor import PodUsage
from hami.shared_region import SharedRegion

log = logging.getLogger(__name__)

KUBELET_CONFIG_PATH = "/hostvar/lib/kubelet/config.yaml"


class CgroupDriver(enum.IntEnum):
    """The cgroup driver the kubelet runs with."""

    UNKNOWN = 0
    CGROUPFS = 1
    SYSTEMD = 2


@dataclass(frozen=True)
class HostGpuPid:
    """A host process id with the modification time of its /proc entry."""

    pid: int
    mtime: int


def detect_cgroup_driver(config_path=KUBELET_CONFIG_PATH) -> CgroupDriver:
    """Read the kubelet configuration to find its cgroup driver."""
    try:
        with open(config_path, encoding="utf-8", errors="replace") as handle:
            content = handle.read()
    except OSError:
        return CgroupDriver.UNKNOWN
    if "cgroupDriver:" not in content:
        return CgroupDriver.UNKNOWN
    if "systemd" in content:
        return CgroupDriver.SYSTEMD
    if "cgroupfs" in content:
        return CgroupDriver.CGROUPFS
    return CgroupDriver.UNKNOWN


def cgroup_tasks_path(driver: CgroupDriver, qos: str, pod_uid: str, container_id: str) -> str:
    """The tasks file listing the host pids of a container."""
    qos = qos.lower()
    ctr = container_id.removeprefix("docker://")
    if driver == CgroupDriver.CGROUPFS:
        return f"/sysinfo/fs/cgroup/memory/kubepods/{qos}/pod{pod_uid}/{ctr}/tasks"
    if driver == CgroupDriver.SYSTEMD:
        uid = pod_uid.replace("-", "_")
        return (
            f"/sysinfo/fs/cgroup/systemd/kubepods.slice/kubepods-{qos}.slice/"
            f"kubepods-{qos}-pod{uid}.slice/docker-{ctr}.scope/tasks"
        )
    raise ValueError("can not identify cgroup driver")


def read_host_pids(tasks_path, proc_root="/proc") -> list[HostGpuPid]:
    """Read the pids of a tasks file with the mtime of each one's /proc entry."""
    with open(tasks_path, encoding="utf-8") as handle:
        lines = handle.read().split("\n")
    result = []
    for line in lines:
        try:
            pid = int(line)
        except ValueError:
            continue
        if pid == 0:
            continue
        stat = os.lstat(os.path.join(proc_root, str(pid)))
        result.append(HostGpuPid(pid=pid, mtime=int(stat.st_mtime)))
    return result


def assign_host_pids(
    region: SharedRegion | None,
    used_gpu_pids: Iterable[int],
    host_pids: Iterable[HostGpuPid],
) -> list[int]:
    """Write host pids of GPU processes into the region's slots, newest first.

    Returns the indices of the slots that were updated.
    """
    host_pids = list(host_pids)
    matched = [host for used in used_gpu_pids for host in host_pids if host.pid == used]
    matched.sort(key=lambda host: host.mtime, reverse=True)
    if region is None:
        return []
    updated = []
    for index, slot in enumerate(region.procs()):
        if slot.pid == 0 or index >= len(matched):
            break
        target = matched[index].pid
        if slot.hostpid == 0 or slot.hostpid != target:
            log.info("Assign host pid %d to pid %d instead of %d", target, slot.pid, slot.hostpid)
            region.set_host_pid(index, target)
            updated.append(index)
    return updated


def _device_counts(ut_switch_on: Mapping[str, list[int]], usage: PodUsage):
    for uuid in usage.region.uuids:
        counts = ut_switch_on.get(uuid)
        if counts is not None:
            yield counts


def check_blocking(ut_switch_on: Mapping[str, list[int]], priority: int, usage: PodUsage) -> bool:
    """Whether a task of higher priority is active on the first shared device."""
    for counts in _device_counts(ut_switch_on, usage):
        return any(count > 0 for count in counts[:priority])
    return False


def check_priority(ut_switch_on: Mapping[str, list[int]], priority: int, usage: PodUsage) -> bool:
    """Whether a higher-priority task or another task of the same priority uses a device."""
    for counts in _device_counts(ut_switch_on, usage):
        if any(count > 0 for count in counts[:priority]):
            return True
        if priority < len(counts) and counts[priority] > 1:
            return True
    return False


def _active_devices(usages: Mapping[str, PodUsage]) -> dict[str, list[int]]:
    ut_switch_on: dict[str, list[int]] = {}
    for usage in usages.values():
        region = usage.region
        if region is None or region.recent_kernel <= 0:
            continue
        region.recent_kernel -= 1
        if region.recent_kernel <= 0:
            continue
        priority = region.priority
        if priority < 0:
            raise ValueError(f"negative task priority {priority}")
        for uuid in region.uuids:
            if not uuid:
                continue
            counts = ut_switch_on.setdefault(uuid, [0, 0])
            if priority >= len(counts):
                counts.extend([0] * (priority + 1 - len(counts)))
            counts[priority] += 1
    return ut_switch_on


def observe(usages: Mapping[str, PodUsage]) -> dict[str, list[int]]:
    """Age kernel activity and set blocking and utilization switches of every region.

    Returns the per-device count of active tasks by priority.
    """
    ut_switch_on = _active_devices(usages)
    for key, usage in usages.items():
        region = usage.region
        if region is None:
            continue
        priority = region.priority
        if check_blocking(ut_switch_on, priority, usage):
            if region.recent_kernel >= 0:
                log.info("utSwitchOn=%s; setting blocking on for %s", ut_switch_on, key)
                region.recent_kernel = -1
        elif region.recent_kernel < 0:
            log.info("utSwitchOn=%s; setting blocking off for %s", ut_switch_on, key)
            region.recent_kernel = 0
        if check_priority(ut_switch_on, priority, usage):
            if region.utilization_switch != 1:
                log.info("utSwitchOn=%s; setting utilization switch on for %s", ut_switch_on, key)
                region.utilization_switch = 1
        elif region.utilization_switch != 0:
            log.info("utSwitchOn=%s; setting utilization switch off for %s", ut_switch_on, key)
            region.utilization_switch = 0
    return ut_switch_on