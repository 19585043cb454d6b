"""A collector with fixed data for trying out the metrics endpoint."""

from __future__ import annotations

import argparse
import time
from dataclasses import dataclass

from hami.metrics import Sample, serve_metrics

_OOM_COUNT = ("clustermanager_oom_crashes_total", "Number of OOM crashes.")
_RAM_USAGE = ("clustermanager_ram_usage_bytes", "RAM usage as reported to the cluster manager.")


@dataclass
class ClusterManager:
    """A cluster manager of one zone that reports made-up host figures."""

    zone: str

    def assess(self) -> tuple[dict[str, int], dict[str, float]]:
        """OOM counts and RAM usage by host."""
        oom_count_by_host = {"foo.example.org": 42, "bar.example.org": 2001}
        ram_usage_by_host = {"foo.example.org": 6.023e23, "bar.example.org": 3.14}
        return oom_count_by_host, ram_usage_by_host

    def collect(self) -> list[Sample]:
        """Samples for every host, labelled with the zone."""
        oom_count_by_host, ram_usage_by_host = self.assess()
        samples = [
            Sample(*_OOM_COUNT, {"host": host, "zone": self.zone}, float(count), "counter")
            for host, count in oom_count_by_host.items()
        ]
        samples.extend(
            Sample(*_RAM_USAGE, {"host": host, "zone": self.zone}, usage)
            for host, usage in ram_usage_by_host.items()
        )
        return samples


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Serve fixed sample metrics.")
    parser.add_argument("--listen", default=":8080", help="address to serve metrics on")
    args = parser.parse_args(argv)
    managers = [ClusterManager("db"), ClusterManager("ca")]
    server = serve_metrics(
        args.listen, lambda: [sample for manager in managers for sample in manager.collect()]
    )
    try:
        while True:
            time.sleep(3600)
    except KeyboardInterrupt:
        pass
    finally:
        server.shutdown()
        server.server_close()
    return 0