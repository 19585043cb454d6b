"""Prometheus metrics for containers that share a GPU."""

from __future__ import annotations

import logging
import math
import threading
from dataclasses import dataclass, field
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Callable, Iterable, Iterator, Mapping

from hami.pathmonitor import PodInfo, PodUsage
from hami.shared_region import MAX_DEVICES, SharedRegion

log = logging.getLogger(__name__)

CONTENT_TYPE = "text/plain; version=0.0.4; charset=utf-8"
METRICS_PATH = "/metrics"
UUID_LABEL_LENGTH = 40

_KINDS = ("gauge", "counter", "untyped")

_VGPU_USAGE = ("vGPU_device_memory_usage_in_bytes", "vGPU device usage")
_VGPU_LIMIT = ("vGPU_device_memory_limit_in_bytes", "vGPU device limit")
_DEVICE_MEMORY = ("Device_memory_desc_of_container", "Container device meory description")
_DEVICE_UTILIZATION = (
    "Device_utilization_desc_of_container",
    "Container device utilization description",
)


@dataclass(frozen=True)
class Sample:
    """One metric value with its name, help text, labels and type."""

    name: str
    help: str
    labels: Mapping[str, str] = field(default_factory=dict)
    value: float = 0.0
    kind: str = "gauge"

    def __post_init__(self) -> None:
        if self.kind not in _KINDS:
            raise ValueError(f"unknown metric type {self.kind!r}")
        if not self.name:
            raise ValueError("metric name must not be empty")


def parse_id_str(idstr: str) -> tuple[str, str]:
    """Split a container directory name into pod UID and container name."""
    parts = idstr.split("_")
    if len(parts) < 2:
        raise ValueError("parse error")
    return parts[0], parts[1]


def _region_samples(pod: PodInfo, ctr_name: str, region: SharedRegion) -> Iterator[Sample]:
    limits = region.limits
    for index in range(min(region.num, MAX_DEVICES)):
        usage = region.total_usage(index)
        utilization = region.total_utilization(index)
        base = {
            "podnamespace": pod.namespace,
            "podname": pod.name,
            "ctrname": ctr_name,
            "vdeviceid": str(index),
            "deviceuuid": region.uuid(index)[:UUID_LABEL_LENGTH],
        }
        yield Sample(*_VGPU_USAGE, dict(base), float(usage.total))
        yield Sample(*_VGPU_LIMIT, dict(base), float(limits[index]))
        memory_labels = {
            **base,
            "context": str(usage.context_size),
            "module": str(usage.module_size),
            "data": str(usage.buffer_size),
            "offset": str(usage.offset),
        }
        yield Sample(*_DEVICE_MEMORY, memory_labels, float(usage.total), "counter")
        yield Sample(*_DEVICE_UTILIZATION, dict(base), float(utilization.sm_util))


def container_samples(
    pods: Iterable[PodInfo],
    usages: Mapping[str, PodUsage] | Iterable[PodUsage],
) -> list[Sample]:
    """Per-device samples for every container of ``pods`` that has a shared region."""
    usage_list = list(usages.values()) if isinstance(usages, Mapping) else list(usages)
    samples: list[Sample] = []
    for pod in pods:
        for usage in usage_list:
            if usage.region is None:
                continue
            try:
                pod_uid, ctr_name = parse_id_str(usage.idstr)
            except ValueError:
                log.warning("ignoring container directory %r: no pod uid", usage.idstr)
                continue
            if pod.uid != pod_uid or ctr_name not in pod.containers:
                continue
            log.debug("collecting %s/%s container %s", pod.namespace, pod.name, ctr_name)
            samples.extend(_region_samples(pod, ctr_name, usage.region))
    return samples


def _escape_label(value: str) -> str:
    return value.replace("\\", "\\\\").replace("\n", "\\n").replace('"', '\\"')


def _escape_help(text: str) -> str:
    return text.replace("\\", "\\\\").replace("\n", "\\n")


def _format_labels(labels: Mapping[str, str]) -> str:
    if not labels:
        return ""
    pairs = ",".join(f'{key}="{_escape_label(str(labels[key]))}"' for key in sorted(labels))
    return "{" + pairs + "}"


def _format_value(value: float) -> str:
    value = float(value)
    if math.isnan(value):
        return "NaN"
    if math.isinf(value):
        return "+Inf" if value > 0 else "-Inf"
    if value.is_integer() and abs(value) < 2**63:
        return str(int(value))
    return repr(value)


def render_samples(samples: Iterable[Sample]) -> str:
    """Render samples in the Prometheus text exposition format."""
    families: dict[str, list[Sample]] = {}
    for sample in samples:
        families.setdefault(sample.name, []).append(sample)
    lines = []
    for name in sorted(families):
        group = families[name]
        first = group[0]
        for sample in group:
            if sample.help != first.help or sample.kind != first.kind:
                raise ValueError(f"metric {name} collected with inconsistent help or type")
        lines.append(f"# HELP {name} {_escape_help(first.help)}")
        lines.append(f"# TYPE {name} {first.kind}")
        for sample in sorted(group, key=lambda s: sorted(s.labels.items())):
            lines.append(f"{name}{_format_labels(sample.labels)} {_format_value(sample.value)}")
    return "".join(line + "\n" for line in lines)


def _split_address(address: str) -> tuple[str, int]:
    host, sep, port = address.rpartition(":")
    if not sep:
        raise ValueError(f"address {address!r} has no port")
    try:
        port_number = int(port)
    except ValueError:
        raise ValueError(f"address {address!r} has an invalid port") from None
    if not 0 <= port_number <= 65535:
        raise ValueError(f"address {address!r} has an invalid port")
    return host.strip("[]"), port_number


def serve_metrics(address: str, collect: Callable[[], Iterable[Sample]]) -> ThreadingHTTPServer:
    """Serve ``collect()`` on /metrics at ``address`` in a background thread.

    The returned server is already running; call ``shutdown()`` to stop it.
    """
    host, port = _split_address(address)

    class _Handler(BaseHTTPRequestHandler):
        def do_GET(self) -> None:
            if self.path.split("?", 1)[0] != METRICS_PATH:
                self.send_error(404)
                return
            try:
                body = render_samples(collect()).encode("utf-8")
            except Exception as exc:  # report any collection failure to the scraper
                log.exception("collecting metrics failed")
                self.send_error(500, str(exc))
                return
            self.send_response(200)
            self.send_header("Content-Type", CONTENT_TYPE)
            self.send_header("Content-Length", str(len(body)))
            self.end_headers()
            self.wfile.write(body)

        def log_message(self, format, *args) -> None:
            log.debug(format, *args)

    server = ThreadingHTTPServer((host, port), _Handler)
    thread = threading.Thread(target=server.serve_forever, name="metrics", daemon=True)
    thread.start()
    log.info("serving metrics on %s", address)
    return server