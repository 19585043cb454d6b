"""Command that watches vGPU containers on a node and exports their metrics."""

from __future__ import annotations

import argparse
import json
import logging
import threading
from dataclasses import replace
from typing import Callable, Iterable

from hami.feedback import observe
from hami.metrics import Sample, container_samples, serve_metrics
from hami.pathmonitor import PathMonitor, PodInfo, default_container_path
from hami.validation import MissingEnvironmentError, validate_env_vars

log = logging.getLogger(__name__)

ZONE = "vGPU"
DEFAULT_METRICS_ADDRESS = ":9394"
DEFAULT_INTERVAL = 5.0


def _pod_from_json(item) -> PodInfo:
    if not isinstance(item, dict):
        raise ValueError("pod entry is not an object")
    meta = item.get("metadata") or {}
    spec = item.get("spec") or {}
    uid = meta.get("uid")
    if not uid:
        raise ValueError("pod without uid")
    return PodInfo(
        uid=str(uid),
        name=str(meta.get("name", "")),
        namespace=str(meta.get("namespace", "")),
        labels=dict(meta.get("labels") or {}),
        containers=tuple(str(ctr.get("name", "")) for ctr in spec.get("containers") or ()),
    )


def load_pods(path) -> list[PodInfo]:
    """Read pods from a JSON pod list, either ``{"items": [...]}`` or a bare list."""
    with open(path, encoding="utf-8") as handle:
        data = json.load(handle)
    items = data.get("items") or [] if isinstance(data, dict) else data
    if not isinstance(items, list):
        raise ValueError(f"{path}: pod items are not a list")
    return [_pod_from_json(item) for item in items]


def feedback_loop(
    monitor: PathMonitor,
    list_pods: Callable[[], Iterable[PodInfo]],
    interval: float,
    stop_event: threading.Event,
) -> int:
    """Every ``interval`` seconds rescan containers and update their switches.

    Runs until ``stop_event`` is set and returns the number of rounds done.
    """
    rounds = 0
    while not stop_event.wait(interval):
        rounds += 1
        try:
            monitor.scan(list_pods())
        except (OSError, ValueError) as exc:
            log.error("monitoring %s failed: %s", monitor.container_path, exc)
        log.debug("feedback over %d containers", len(monitor.usages))
        observe(monitor.usages)
    return rounds


def _collector(monitor: PathMonitor, list_pods: Callable[[], Iterable[PodInfo]]):
    def collect() -> list[Sample]:
        try:
            pods = list(list_pods())
        except (OSError, ValueError) as exc:
            log.error("failed to list pods: %s", exc)
            return []
        try:
            monitor.scan(pods)
        except (OSError, ValueError) as exc:
            log.error("monitoring %s failed: %s", monitor.container_path, exc)
        samples = container_samples(pods, dict(monitor.usages))
        return [replace(sample, labels={**sample.labels, "zone": ZONE}) for sample in samples]

    return collect


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Monitor vGPU containers on this node.")
    parser.add_argument("--pods-file", required=True, help="JSON list of the pods on this node")
    parser.add_argument(
        "--metrics-address", default=DEFAULT_METRICS_ADDRESS, help="address to serve metrics on"
    )
    parser.add_argument(
        "--interval", type=float, default=DEFAULT_INTERVAL, help="seconds between feedback rounds"
    )
    args = parser.parse_args(argv)
    try:
        validate_env_vars()
    except MissingEnvironmentError as exc:
        log.error("Failed to validate environment variables: %s", exc)
        return 1

    monitor = PathMonitor(default_container_path())

    def list_pods() -> list[PodInfo]:
        return load_pods(args.pods_file)

    server = serve_metrics(args.metrics_address, _collector(monitor, list_pods))
    stop_event = threading.Event()
    try:
        feedback_loop(monitor, list_pods, args.interval, stop_event)
    except KeyboardInterrupt:
        pass
    finally:
        stop_event.set()
        server.shutdown()
        server.server_close()
    return 0