"""Discovery of per-container cache directories and their shared regions."""

from __future__ import annotations

import logging
import os
import shutil
import threading
import time
from dataclasses import dataclass, field
from typing import Iterable, Mapping, MutableMapping

from hami.shared_region import SharedRegion, open_shared_region

log = logging.getLogger(__name__)

STALE_AFTER_SECONDS = 300
MAX_CACHE_ENTRIES = 2


@dataclass
class PodInfo:
    """The parts of a pod the monitor needs."""

    uid: str
    name: str = ""
    namespace: str = ""
    labels: dict[str, str] = field(default_factory=dict)
    containers: tuple[str, ...] = ()


@dataclass
class PodUsage:
    """A container directory name together with its mapped shared region."""

    idstr: str
    region: SharedRegion | None = None


def check_files(path) -> SharedRegion | None:
    """Map the cache file found in a container directory, if there is one."""
    log.info("Checking path %s", path)
    names = sorted(os.listdir(path))
    if len(names) > MAX_CACHE_ENTRIES:
        raise ValueError("cache num not matched")
    for name in names:
        if "libvgpu.so" in name or ".cache" not in name:
            continue
        cache_file = os.path.join(path, name)
        try:
            region = open_shared_region(cache_file)
        except (OSError, ValueError) as exc:
            log.error("mapping %s failed: %s", cache_file, exc)
            continue
        log.info(
            "mapped %s with utilization_switch=%d, recent_kernel=%d, priority=%d",
            cache_file,
            region.utilization_switch,
            region.recent_kernel,
            region.priority,
        )
        return region
    return None


def is_valid_pod(name: str, pods: Iterable[PodInfo]) -> bool:
    """Whether a directory name contains the UID of one of ``pods``."""
    return any(pod.uid in name for pod in pods)


def default_container_path(environ: Mapping[str, str] | None = None) -> str | None:
    """The containers directory under ``HOOK_PATH``, or None when it is unset."""
    env = os.environ if environ is None else environ
    hook_path = env.get("HOOK_PATH")
    if hook_path is None:
        return None
    return os.path.join(hook_path, "containers")


class PathMonitor:
    """Keeps a map of container directories to their shared regions up to date."""

    def __init__(self, container_path, usages: MutableMapping[str, PodUsage] | None = None):
        self.container_path = os.fspath(container_path)
        self.usages: MutableMapping[str, PodUsage] = {} if usages is None else usages
        self._lock = threading.Lock()

    def _forget(self, dirname: str) -> None:
        usage = self.usages.pop(dirname, None)
        if usage is not None and usage.region is not None:
            usage.region.close()

    def scan(self, pods: Iterable[PodInfo], now: float | None = None) -> MutableMapping[str, PodUsage]:
        """Add directories of known pods and remove stale ones of unknown pods."""
        pods = list(pods)
        current = time.time() if now is None else now
        with self._lock:
            for name in sorted(os.listdir(self.container_path)):
                dirname = os.path.join(self.container_path, name)
                try:
                    info = os.stat(dirname)
                except OSError:
                    self._forget(dirname)
                    continue
                if not is_valid_pod(name, pods):
                    if info.st_mtime + STALE_AFTER_SECONDS < current:
                        log.info("Removing dirname %s in monitorpath", dirname)
                        self._forget(dirname)
                        shutil.rmtree(dirname)
                    continue
                if dirname in self.usages:
                    continue
                log.info("Adding ctr dirname %s in monitorpath", dirname)
                region = check_files(dirname)
                if region is None:
                    # The container has not used the GPU yet.
                    continue
                self.usages[dirname] = PodUsage(idstr=name, region=region)
        return self.usages