import os

import pytest

from hami.feedback import (
    CgroupDriver,
    HostGpuPid,
    assign_host_pids,
    cgroup_tasks_path,
    check_blocking,
    check_priority,
    detect_cgroup_driver,
    observe,
    read_host_pids,
)
from hami.pathmonitor import PodUsage
from hami.shared_region import SHARED_REGION_SIZE, ProcSlot, SharedRegion


def _usage(uuids=("GPU-a",), priority=1, recent_kernel=0, switch=0):
    region = SharedRegion(bytearray(SHARED_REGION_SIZE))
    for index, uuid in enumerate(uuids):
        region.set_uuid(index, uuid)
    region.priority = priority
    region.recent_kernel = recent_kernel
    region.utilization_switch = switch
    return PodUsage(idstr="pod_ctr", region=region)


@pytest.mark.parametrize(
    "content, expected",
    [
        ("cgroupDriver: systemd\n", CgroupDriver.SYSTEMD),
        ("cgroupDriver: cgroupfs\n", CgroupDriver.CGROUPFS),
        ("cgroupDriver: other\n", CgroupDriver.UNKNOWN),
        ("kind: KubeletConfiguration\n", CgroupDriver.UNKNOWN),
    ],
)
def test_detect_cgroup_driver(tmp_path, content, expected):
    config = tmp_path / "config.yaml"
    config.write_text(content)
    assert detect_cgroup_driver(config) == expected


def test_detect_cgroup_driver_missing_file(tmp_path):
    assert detect_cgroup_driver(tmp_path / "none.yaml") == CgroupDriver.UNKNOWN


def test_cgroup_tasks_path_cgroupfs():
    path = cgroup_tasks_path(CgroupDriver.CGROUPFS, "Burstable", "abc-def", "docker://xyz")
    assert path == "/sysinfo/fs/cgroup/memory/kubepods/burstable/podabc-def/xyz/tasks"


def test_cgroup_tasks_path_systemd():
    path = cgroup_tasks_path(CgroupDriver.SYSTEMD, "Burstable", "abc-def", "docker://xyz")
    assert path == (
        "/sysinfo/fs/cgroup/systemd/kubepods.slice/kubepods-burstable.slice/"
        "kubepods-burstable-podabc_def.slice/docker-xyz.scope/tasks"
    )


def test_cgroup_tasks_path_unknown():
    with pytest.raises(ValueError, match="cgroup driver"):
        cgroup_tasks_path(CgroupDriver.UNKNOWN, "burstable", "abc", "xyz")


def test_read_host_pids(tmp_path):
    proc = tmp_path / "proc"
    for pid, mtime in ((10, 1000), (20, 2000)):
        (proc / str(pid)).mkdir(parents=True)
        os.utime(proc / str(pid), (mtime, mtime))
    tasks = tmp_path / "tasks"
    tasks.write_text("10\n20\n\nabc\n")
    assert read_host_pids(tasks, proc) == [HostGpuPid(10, 1000), HostGpuPid(20, 2000)]


def test_read_host_pids_missing_proc(tmp_path):
    tasks = tmp_path / "tasks"
    tasks.write_text("10\n")
    with pytest.raises(FileNotFoundError):
        read_host_pids(tasks, tmp_path / "proc")


def test_assign_host_pids_newest_first():
    region = SharedRegion(bytearray(SHARED_REGION_SIZE))
    region.write_proc_slot(0, ProcSlot(pid=1))
    region.write_proc_slot(1, ProcSlot(pid=2))
    region.write_proc_slot(2, ProcSlot(pid=3))
    hosts = [HostGpuPid(10, 100), HostGpuPid(20, 200), HostGpuPid(40, 300)]
    updated = assign_host_pids(region, [10, 20, 30], hosts)
    assert updated == [0, 1]
    assert region.proc_slot(0).hostpid == 20
    assert region.proc_slot(1).hostpid == 10
    assert region.proc_slot(2).hostpid == 0


def test_assign_host_pids_keeps_matching():
    region = SharedRegion(bytearray(SHARED_REGION_SIZE))
    region.write_proc_slot(0, ProcSlot(pid=1, hostpid=10))
    assert assign_host_pids(region, [10], [HostGpuPid(10, 100)]) == []
    assert region.proc_slot(0).hostpid == 10


def test_assign_host_pids_without_region():
    assert assign_host_pids(None, [10], [HostGpuPid(10, 100)]) == []


def test_check_blocking_and_priority():
    usage = _usage(uuids=("GPU-a",), priority=1)
    assert check_blocking({"GPU-a": [1, 0]}, 1, usage) is True
    assert check_blocking({"GPU-a": [0, 2]}, 1, usage) is False
    assert check_priority({"GPU-a": [0, 2]}, 1, usage) is True
    assert check_priority({"GPU-a": [0, 1]}, 1, usage) is False
    assert check_blocking({"GPU-z": [1, 0]}, 1, usage) is False
    assert check_priority({"GPU-z": [1, 0]}, 1, usage) is False


def test_check_blocking_stops_at_first_device():
    usage = _usage(uuids=("GPU-a", "GPU-b"), priority=1)
    table = {"GPU-a": [0, 0], "GPU-b": [1, 0]}
    assert check_blocking(table, 1, usage) is False
    assert check_priority(table, 1, usage) is True


def test_observe_single_task():
    usage = _usage(priority=1, recent_kernel=2, switch=1)
    table = observe({"a": usage})
    assert table == {"GPU-a": [0, 1]}
    assert usage.region.recent_kernel == 1
    assert usage.region.utilization_switch == 0


def test_observe_same_priority_enables_switch():
    first = _usage(priority=1, recent_kernel=5)
    second = _usage(priority=1, recent_kernel=5)
    observe({"a": first, "b": second})
    for usage in (first, second):
        assert usage.region.utilization_switch == 1
        assert usage.region.recent_kernel == 4


def test_observe_blocks_lower_priority():
    high = _usage(priority=0, recent_kernel=3)
    low = _usage(priority=1, recent_kernel=0)
    observe({"high": high, "low": low})
    assert low.region.recent_kernel == -1
    assert low.region.utilization_switch == 1
    assert high.region.recent_kernel == 2
    assert high.region.utilization_switch == 0


def test_observe_unblocks_when_idle():
    usage = _usage(priority=1, recent_kernel=-1, switch=1)
    assert observe({"a": usage}) == {}
    assert usage.region.recent_kernel == 0
    assert usage.region.utilization_switch == 0


def test_observe_skips_missing_region_and_null_devices():
    usage = _usage(uuids=("",), priority=1, recent_kernel=3)
    table = observe({"a": usage, "b": PodUsage(idstr="b")})
    assert table == {}
    assert usage.region.recent_kernel == 2