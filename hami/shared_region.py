"""Access to the shared-memory cache file written by the vGPU interposer."""

from __future__ import annotations

import logging
import mmap
import os
import struct
from dataclasses import dataclass, field, replace
from typing import Iterator

log = logging.getLogger(__name__)

MAX_DEVICES = 16
MAX_PROCS = 1024
UUID_SIZE = 96
SEM_SIZE = 32

_U64_MASK = (1 << 64) - 1

_DEVICE_MEMORY = struct.Struct("<5Q")
_DEVICE_UTIL = struct.Struct("<3Q")
_U64 = struct.Struct("<Q")
_I32 = struct.Struct("<i")
_SLOT_STRUCT = struct.Struct(
    f"<2i{MAX_DEVICES * 5}Q{MAX_DEVICES}Q{MAX_DEVICES * 3}Qi4x"
)

PROC_SLOT_SIZE = _SLOT_STRUCT.size

_SLOT_USED_OFFSET = 8
_SLOT_MONITOR_OFFSET = _SLOT_USED_OFFSET + MAX_DEVICES * _DEVICE_MEMORY.size
_SLOT_UTIL_OFFSET = _SLOT_MONITOR_OFFSET + MAX_DEVICES * _U64.size

_INITIALIZED_OFFSET = 0
_SM_INIT_OFFSET = 4
_OWNER_PID_OFFSET = 8
_NUM_OFFSET = 48
UUIDS_OFFSET = _NUM_OFFSET + 8
LIMIT_OFFSET = UUIDS_OFFSET + MAX_DEVICES * UUID_SIZE
SM_LIMIT_OFFSET = LIMIT_OFFSET + MAX_DEVICES * 8
PROCS_OFFSET = SM_LIMIT_OFFSET + MAX_DEVICES * 8
_PROCNUM_OFFSET = PROCS_OFFSET + MAX_PROCS * PROC_SLOT_SIZE
_UTILIZATION_SWITCH_OFFSET = _PROCNUM_OFFSET + 4
_RECENT_KERNEL_OFFSET = _PROCNUM_OFFSET + 8
_PRIORITY_OFFSET = _PROCNUM_OFFSET + 12
SHARED_REGION_SIZE = (_PRIORITY_OFFSET + 4 + 7) // 8 * 8


def _chunks(values, size):
    return zip(*[iter(values)] * size)


def _check_index(index: int, limit: int, what: str) -> None:
    if not 0 <= index < limit:
        raise IndexError(f"out of {what} idx: {index}")


@dataclass(frozen=True)
class DeviceMemory:
    """Memory usage of one process on one device, in bytes."""

    context_size: int = 0
    module_size: int = 0
    buffer_size: int = 0
    offset: int = 0
    total: int = 0


@dataclass(frozen=True)
class DeviceUtilization:
    """Utilization counters of one process on one device."""

    dec_util: int = 0
    enc_util: int = 0
    sm_util: int = 0


def _zero_memory() -> tuple[DeviceMemory, ...]:
    return tuple(DeviceMemory() for _ in range(MAX_DEVICES))


def _zero_monitor() -> tuple[int, ...]:
    return (0,) * MAX_DEVICES


def _zero_util() -> tuple[DeviceUtilization, ...]:
    return tuple(DeviceUtilization() for _ in range(MAX_DEVICES))


@dataclass(frozen=True)
class ProcSlot:
    """One process entry of the shared region."""

    pid: int = 0
    hostpid: int = 0
    used: tuple[DeviceMemory, ...] = field(default_factory=_zero_memory)
    monitor_used: tuple[int, ...] = field(default_factory=_zero_monitor)
    device_util: tuple[DeviceUtilization, ...] = field(default_factory=_zero_util)
    status: int = 0

    def to_bytes(self) -> bytes:
        """Encode the slot in its on-disk layout."""
        if not (
            len(self.used) == len(self.monitor_used) == len(self.device_util) == MAX_DEVICES
        ):
            raise ValueError(f"a proc slot holds exactly {MAX_DEVICES} devices")
        used = [
            value
            for mem in self.used
            for value in (mem.context_size, mem.module_size, mem.buffer_size, mem.offset, mem.total)
        ]
        util = [
            value
            for u in self.device_util
            for value in (u.dec_util, u.enc_util, u.sm_util)
        ]
        return _SLOT_STRUCT.pack(
            self.pid, self.hostpid, *used, *self.monitor_used, *util, self.status
        )

    @classmethod
    def from_buffer(cls, buffer, offset: int = 0) -> "ProcSlot":
        """Decode a slot exactly as stored at ``offset``."""
        values = _SLOT_STRUCT.unpack_from(buffer, offset)
        used_end = 2 + MAX_DEVICES * 5
        monitor_end = used_end + MAX_DEVICES
        util_end = monitor_end + MAX_DEVICES * 3
        return cls(
            pid=values[0],
            hostpid=values[1],
            used=tuple(DeviceMemory(*chunk) for chunk in _chunks(values[2:used_end], 5)),
            monitor_used=tuple(values[used_end:monitor_end]),
            device_util=tuple(
                DeviceUtilization(*chunk) for chunk in _chunks(values[monitor_end:util_end], 3)
            ),
            status=values[util_end],
        )


def read_proc_slot(buffer, offset: int) -> ProcSlot:
    """Read a slot, raising each device total to its monitored usage when higher."""
    raw = ProcSlot.from_buffer(buffer, offset)
    used = tuple(
        replace(mem, total=monitored) if monitored > mem.total else mem
        for mem, monitored in zip(raw.used, raw.monitor_used)
    )
    return replace(raw, used=used)


class _Field:
    """A scalar stored at a fixed offset of the region."""

    def __init__(self, fmt: str, offset: int):
        self._struct = struct.Struct("<" + fmt)
        self._offset = offset

    def __get__(self, obj, owner=None):
        if obj is None:
            return self
        return self._struct.unpack_from(obj._buffer, self._offset)[0]

    def __set__(self, obj, value) -> None:
        self._struct.pack_into(obj._buffer, self._offset, value)


class SharedRegion:
    """A view over the bytes of a shared region; writes go straight to the buffer."""

    initialized_flag = _Field("i", _INITIALIZED_OFFSET)
    sm_init_flag = _Field("i", _SM_INIT_OFFSET)
    owner_pid = _Field("I", _OWNER_PID_OFFSET)
    num = _Field("Q", _NUM_OFFSET)
    procnum = _Field("i", _PROCNUM_OFFSET)
    utilization_switch = _Field("i", _UTILIZATION_SWITCH_OFFSET)
    recent_kernel = _Field("i", _RECENT_KERNEL_OFFSET)
    priority = _Field("i", _PRIORITY_OFFSET)

    def __init__(self, buffer):
        if len(buffer) < SHARED_REGION_SIZE:
            raise ValueError(
                f"shared region needs {SHARED_REGION_SIZE} bytes, got {len(buffer)}"
            )
        self._buffer = buffer

    def __enter__(self) -> "SharedRegion":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    @staticmethod
    def _slot_offset(index: int) -> int:
        _check_index(index, MAX_PROCS, "proc")
        return PROCS_OFFSET + index * PROC_SLOT_SIZE

    def proc_slot(self, index: int) -> ProcSlot:
        """The process slot at ``index`` as stored."""
        return ProcSlot.from_buffer(self._buffer, self._slot_offset(index))

    def procs(self) -> Iterator[ProcSlot]:
        """All process slots in order."""
        return (self.proc_slot(index) for index in range(MAX_PROCS))

    def write_proc_slot(self, index: int, slot: ProcSlot) -> None:
        offset = self._slot_offset(index)
        self._buffer[offset:offset + PROC_SLOT_SIZE] = slot.to_bytes()

    def set_host_pid(self, index: int, pid: int) -> None:
        _I32.pack_into(self._buffer, self._slot_offset(index) + 4, pid)

    def uuid(self, index: int) -> str:
        """The UUID of device ``index``; empty for an unused device."""
        _check_index(index, MAX_DEVICES, "device")
        start = UUIDS_OFFSET + index * UUID_SIZE
        raw = bytes(self._buffer[start:start + UUID_SIZE])
        return raw.split(b"\0", 1)[0].decode("utf-8", errors="replace")

    def set_uuid(self, index: int, value: str) -> None:
        _check_index(index, MAX_DEVICES, "device")
        encoded = value.encode("utf-8")
        if len(encoded) > UUID_SIZE:
            raise ValueError(f"uuid longer than {UUID_SIZE} bytes")
        start = UUIDS_OFFSET + index * UUID_SIZE
        self._buffer[start:start + UUID_SIZE] = encoded.ljust(UUID_SIZE, b"\0")

    @property
    def uuids(self) -> tuple[str, ...]:
        return tuple(self.uuid(index) for index in range(MAX_DEVICES))

    @property
    def limits(self) -> tuple[int, ...]:
        return struct.unpack_from(f"<{MAX_DEVICES}Q", self._buffer, LIMIT_OFFSET)

    @property
    def sm_limits(self) -> tuple[int, ...]:
        return struct.unpack_from(f"<{MAX_DEVICES}Q", self._buffer, SM_LIMIT_OFFSET)

    def set_limit(self, index: int, value: int) -> None:
        _check_index(index, MAX_DEVICES, "device")
        _U64.pack_into(self._buffer, LIMIT_OFFSET + index * 8, value)

    def total_usage(self, index: int) -> DeviceMemory:
        """Memory of device ``index`` summed over all process slots."""
        _check_index(index, MAX_DEVICES, "device")
        base = PROCS_OFFSET + _SLOT_USED_OFFSET + index * _DEVICE_MEMORY.size
        rows = (
            _DEVICE_MEMORY.unpack_from(self._buffer, base + slot * PROC_SLOT_SIZE)
            for slot in range(MAX_PROCS)
        )
        return DeviceMemory(*(sum(column) & _U64_MASK for column in zip(*rows)))

    def total_utilization(self, index: int) -> DeviceUtilization:
        """Utilization of device ``index`` summed over all process slots."""
        _check_index(index, MAX_DEVICES, "device")
        base = PROCS_OFFSET + _SLOT_UTIL_OFFSET + index * _DEVICE_UTIL.size
        rows = (
            _DEVICE_UTIL.unpack_from(self._buffer, base + slot * PROC_SLOT_SIZE)
            for slot in range(MAX_PROCS)
        )
        return DeviceUtilization(*(sum(column) & _U64_MASK for column in zip(*rows)))

    def device_used_memory(self, index: int) -> int:
        """Total memory in use on device ``index``."""
        return self.total_usage(index).total

    def close(self) -> None:
        """Unmap the region if it is backed by a memory map."""
        if isinstance(self._buffer, mmap.mmap) and not self._buffer.closed:
            self._buffer.close()


def open_shared_region(path) -> SharedRegion:
    """Map a cache file read-write and shared."""
    with open(path, "r+b") as handle:
        size = os.fstat(handle.fileno()).st_size
        if size < SHARED_REGION_SIZE:
            raise ValueError(
                f"{path}: cache file holds {size} bytes, need {SHARED_REGION_SIZE}"
            )
        mapped = mmap.mmap(handle.fileno(), SHARED_REGION_SIZE)
    region = SharedRegion(mapped)
    log.debug(
        "mapped %s: utilization_switch=%d recent_kernel=%d",
        path,
        region.utilization_switch,
        region.recent_kernel,
    )
    return region