import json
import os
import threading

import pytest

from hami.cli import feedback_loop, load_pods, main
from hami.pathmonitor import PathMonitor
from hami.shared_region import SHARED_REGION_SIZE, SharedRegion


def write_pods(path, data):
    path.write_text(json.dumps(data), encoding="utf-8")
    return path


def test_load_pods_from_pod_list(tmp_path):
    pods_file = write_pods(
        tmp_path / "pods.json",
        {
            "items": [
                {
                    "metadata": {
                        "uid": "uid-1",
                        "name": "trainer",
                        "namespace": "ml",
                        "labels": {"app": "demo"},
                    },
                    "spec": {"containers": [{"name": "main"}, {"name": "side"}]},
                }
            ]
        },
    )
    pods = load_pods(pods_file)
    assert len(pods) == 1
    pod = pods[0]
    assert (pod.uid, pod.name, pod.namespace) == ("uid-1", "trainer", "ml")
    assert pod.labels == {"app": "demo"}
    assert pod.containers == ("main", "side")


def test_load_pods_from_bare_list(tmp_path):
    pods_file = write_pods(tmp_path / "pods.json", [{"metadata": {"uid": "a"}}, {"metadata": {"uid": "b"}}])
    assert [pod.uid for pod in load_pods(pods_file)] == ["a", "b"]


def test_load_pods_rejects_pod_without_uid(tmp_path):
    pods_file = write_pods(tmp_path / "pods.json", [{"metadata": {"name": "x"}}])
    with pytest.raises(ValueError):
        load_pods(pods_file)


def test_feedback_loop_scans_and_observes(tmp_path):
    containers = tmp_path / "containers"
    ctr_dir = containers / "uid1_main"
    ctr_dir.mkdir(parents=True)
    buffer = bytearray(SHARED_REGION_SIZE)
    region = SharedRegion(buffer)
    region.num = 1
    region.set_uuid(0, "GPU-made-up")
    region.recent_kernel = 3
    (ctr_dir / "x.cache").write_bytes(bytes(buffer))

    pods_file = write_pods(
        tmp_path / "pods.json",
        [{"metadata": {"uid": "uid1"}, "spec": {"containers": [{"name": "main"}]}}],
    )
    stop_event = threading.Event()

    def list_pods():
        stop_event.set()
        return load_pods(pods_file)

    monitor = PathMonitor(containers)
    try:
        rounds = feedback_loop(monitor, list_pods, 0, stop_event)
        assert rounds == 1
        key = os.path.join(str(containers), "uid1_main")
        assert list(monitor.usages) == [key]
        mapped = monitor.usages[key].region
        assert mapped.recent_kernel == 2
        assert mapped.utilization_switch == 0
    finally:
        for usage in monitor.usages.values():
            usage.region.close()


def test_feedback_loop_stops_immediately_when_stopped(tmp_path):
    stop_event = threading.Event()
    stop_event.set()
    monitor = PathMonitor(tmp_path)
    assert feedback_loop(monitor, lambda: [], 0, stop_event) == 0


def test_main_fails_without_hook_path(tmp_path, monkeypatch):
    monkeypatch.delenv("HOOK_PATH", raising=False)
    pods_file = write_pods(tmp_path / "pods.json", [])
    assert main(["--pods-file", str(pods_file)]) == 1


def test_main_requires_pods_file():
    with pytest.raises(SystemExit) as excinfo:
        main([])
    assert excinfo.value.code == 2