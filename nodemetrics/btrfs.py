"""Btrfs filesystem statistics read from sysfs."""

from __future__ import annotations

import glob
import math
import os
from collections.abc import Iterator
from dataclasses import dataclass, field

from .collector import NAMESPACE, Settings, read_uint_from_file, register_collector
from .metrics import Desc, Metric, ValueType, build_fq_name

SUBSYSTEM = "btrfs"

_SECTOR_SIZE = 512
_ALLOCATION_TYPES = ("data", "metadata", "system")


@dataclass
class _LayoutUsage:
    used_bytes: int
    total_bytes: int
    ratio: float


@dataclass
class _AllocationStats:
    reserved_bytes: int
    layouts: dict[str, _LayoutUsage] = field(default_factory=dict)


@dataclass
class BtrfsStats:
    """Statistics of one Btrfs filesystem."""

    uuid: str
    label: str = ""
    global_rsv_size: int = 0
    devices: dict[str, int] = field(default_factory=dict)
    allocations: dict[str, _AllocationStats] = field(default_factory=dict)


@dataclass(frozen=True)
class BtrfsMetric:
    """One value of a filesystem, before it becomes a labelled sample."""

    name: str
    help: str
    value: float
    extra_label: tuple[str, ...] = ()
    extra_label_value: tuple[str, ...] = ()


def _read_text(path: str) -> str:
    with open(path, encoding="utf-8", errors="replace") as handle:
        return handle.read().strip()


def _divide(numerator: float, denominator: float) -> float:
    if denominator == 0:
        if numerator == 0:
            return math.nan
        return math.copysign(math.inf, numerator)
    return numerator / denominator


def _layout_ratio(mode: str, device_count: int) -> float:
    if mode in ("single", "raid0"):
        return 1.0
    if mode in ("dup", "raid1", "raid10"):
        return 2.0
    if mode == "raid5":
        return _divide(device_count, device_count - 1)
    if mode == "raid6":
        return _divide(device_count, device_count - 2)
    return 0.0


def _subdirectories(path: str) -> list[str]:
    return sorted(name for name in os.listdir(path) if os.path.isdir(os.path.join(path, name)))


def _read_allocation(path: str, device_count: int) -> _AllocationStats:
    stats = _AllocationStats(reserved_bytes=read_uint_from_file(os.path.join(path, "bytes_reserved")))
    for mode in _subdirectories(path):
        layout = os.path.join(path, mode)
        stats.layouts[mode] = _LayoutUsage(
            used_bytes=read_uint_from_file(os.path.join(layout, "used_bytes")),
            total_bytes=read_uint_from_file(os.path.join(layout, "total_bytes")),
            ratio=_layout_ratio(mode, device_count),
        )
    return stats


def _read_filesystem(path: str) -> BtrfsStats:
    uuid_file = os.path.join(path, "metadata_uuid")
    uuid = _read_text(uuid_file) if os.path.exists(uuid_file) else os.path.basename(path)
    stats = BtrfsStats(uuid=uuid, label=_read_text(os.path.join(path, "label")))

    devices_dir = os.path.join(path, "devices")
    for device in sorted(os.listdir(devices_dir)):
        sectors = read_uint_from_file(os.path.join(devices_dir, device, "size"))
        stats.devices[device] = sectors * _SECTOR_SIZE

    allocation = os.path.join(path, "allocation")
    stats.global_rsv_size = read_uint_from_file(os.path.join(allocation, "global_rsv_size"))
    for kind in _ALLOCATION_TYPES:
        stats.allocations[kind] = _read_allocation(os.path.join(allocation, kind), len(stats.devices))
    return stats


def read_btrfs_stats(sys_path: str) -> list[BtrfsStats]:
    """Read every Btrfs filesystem under fs/btrfs of the given sysfs root."""
    pattern = os.path.join(sys_path, "fs", "btrfs", "*-*-*-*-*")
    return [_read_filesystem(path) for path in sorted(glob.glob(pattern))]


def _layout_metrics(kind: str, mode: str, usage: _LayoutUsage) -> list[BtrfsMetric]:
    labels = ("block_group_type", "mode")
    values = (kind, mode)
    return [
        BtrfsMetric("used_bytes", "Amount of used space by a layout/data type",
                    usage.used_bytes, labels, values),
        BtrfsMetric("size_bytes", "Amount of space allocated for a layout/data type",
                    usage.total_bytes, labels, values),
        BtrfsMetric("allocation_ratio", "Data allocation ratio for a layout/data type",
                    usage.ratio, labels, values),
    ]


def _allocation_metrics(kind: str, stats: _AllocationStats) -> list[BtrfsMetric]:
    metrics = [
        BtrfsMetric("reserved_bytes", "Amount of space reserved for a data type",
                    stats.reserved_bytes, ("block_group_type",), (kind,)),
    ]
    for mode, usage in stats.layouts.items():
        metrics += _layout_metrics(kind, mode, usage)
    return metrics


def btrfs_metrics(stats: BtrfsStats) -> list[BtrfsMetric]:
    """All metric values of one filesystem, in a fixed order."""
    metrics = [
        BtrfsMetric("info", "Filesystem information", 1, ("label",), (stats.label,)),
        BtrfsMetric("global_rsv_size_bytes", "Size of global reserve.", stats.global_rsv_size),
    ]
    for device, size in stats.devices.items():
        metrics.append(
            BtrfsMetric("device_size_bytes", "Size of a device that is part of the filesystem.",
                        size, ("device",), (device,))
        )
    for kind in _ALLOCATION_TYPES:
        allocation = stats.allocations.get(kind)
        if allocation is not None:
            metrics += _allocation_metrics(kind, allocation)
    return metrics


@register_collector("btrfs", True)
class BtrfsCollector:
    """Exposes Btrfs filesystem statistics."""

    def __init__(self, settings: Settings | None = None) -> None:
        self.settings = settings if settings is not None else Settings()
        sys_path = self.settings.sys_path
        if not os.path.isdir(sys_path):
            raise RuntimeError(f"failed to open sysfs: {sys_path!r} is not a directory")

    def update(self) -> Iterator[Metric]:
        try:
            stats = read_btrfs_stats(self.settings.sys_path)
        except (OSError, ValueError) as err:
            raise RuntimeError(f"failed to retrieve Btrfs stats: {err}") from err

        for filesystem in stats:
            for spec in btrfs_metrics(filesystem):
                desc = Desc(
                    build_fq_name(NAMESPACE, SUBSYSTEM, spec.name),
                    spec.help,
                    ("uuid",) + spec.extra_label,
                )
                yield Metric(desc, ValueType.GAUGE, spec.value, (filesystem.uuid,) + spec.extra_label_value)