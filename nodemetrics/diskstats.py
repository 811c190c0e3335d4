"""Block device I/O statistics read from the kernel's diskstats table."""

from __future__ import annotations

import logging
import os
import re
from collections.abc import Iterator
from dataclasses import dataclass

from .collector import NAMESPACE, Settings, register_collector
from .metrics import Desc, Metric, TypedDesc, ValueType, build_fq_name

DISK_SUBSYSTEM = "disk"

SECONDS_PER_TICK = 1.0 / 1000.0

# Read and written sectors are standard 512-byte UNIX sectors, whatever the device block size.
UNIX_SECTOR_SIZE = 512.0

_DISK_LABELS = ("device",)

READS_COMPLETED_DESC = Desc(
    build_fq_name(NAMESPACE, DISK_SUBSYSTEM, "reads_completed_total"),
    "The total number of reads completed successfully.",
    _DISK_LABELS,
)
READ_BYTES_DESC = Desc(
    build_fq_name(NAMESPACE, DISK_SUBSYSTEM, "read_bytes_total"),
    "The total number of bytes read successfully.",
    _DISK_LABELS,
)
WRITES_COMPLETED_DESC = Desc(
    build_fq_name(NAMESPACE, DISK_SUBSYSTEM, "writes_completed_total"),
    "The total number of writes completed successfully.",
    _DISK_LABELS,
)
WRITTEN_BYTES_DESC = Desc(
    build_fq_name(NAMESPACE, DISK_SUBSYSTEM, "written_bytes_total"),
    "The total number of bytes written successfully.",
    _DISK_LABELS,
)
IO_TIME_SECONDS_DESC = Desc(
    build_fq_name(NAMESPACE, DISK_SUBSYSTEM, "io_time_seconds_total"),
    "Total seconds spent doing I/Os.",
    _DISK_LABELS,
)
READ_TIME_SECONDS_DESC = Desc(
    build_fq_name(NAMESPACE, DISK_SUBSYSTEM, "read_time_seconds_total"),
    "The total number of seconds spent by all reads.",
    _DISK_LABELS,
)
WRITE_TIME_SECONDS_DESC = Desc(
    build_fq_name(NAMESPACE, DISK_SUBSYSTEM, "write_time_seconds_total"),
    "This is the total number of seconds spent by all writes.",
    _DISK_LABELS,
)

_MIN_FIELDS = 14
_MAX_FIELDS = 20

log = logging.getLogger(__name__)


@dataclass
class DiskStats:
    """One row of the diskstats table."""

    major: int
    minor: int
    device_name: str
    read_ios: int = 0
    read_merges: int = 0
    read_sectors: int = 0
    read_ticks: int = 0
    write_ios: int = 0
    write_merges: int = 0
    write_sectors: int = 0
    write_ticks: int = 0
    ios_in_progress: int = 0
    ios_total_ticks: int = 0
    weighted_io_ticks: int = 0
    discard_ios: int = 0
    discard_merges: int = 0
    discard_sectors: int = 0
    discard_ticks: int = 0
    flush_requests_completed: int = 0
    time_spent_flushing: int = 0
    io_stats_count: int = 0


def _uint(text: str) -> int:
    if not text.isdigit():
        raise ValueError(f"invalid unsigned integer {text!r} in diskstats")
    return int(text)


def parse_diskstats(text: str) -> list[DiskStats]:
    """Parse the diskstats table; rows with fewer than 14 fields are left out."""
    result: list[DiskStats] = []
    for line in text.splitlines():
        parts = line.split()[:_MAX_FIELDS]
        if len(parts) < _MIN_FIELDS:
            continue
        major, minor, name, *counters = parts
        stats = DiskStats(_uint(major), _uint(minor), name, *(_uint(c) for c in counters))
        stats.io_stats_count = len(parts)
        result.append(stats)
    return result


def _stat_values(stats: DiskStats) -> list[float]:
    return [
        float(stats.read_ios),
        float(stats.read_merges),
        stats.read_sectors * UNIX_SECTOR_SIZE,
        stats.read_ticks * SECONDS_PER_TICK,
        float(stats.write_ios),
        float(stats.write_merges),
        stats.write_sectors * UNIX_SECTOR_SIZE,
        stats.write_ticks * SECONDS_PER_TICK,
        float(stats.ios_in_progress),
        stats.ios_total_ticks * SECONDS_PER_TICK,
        stats.weighted_io_ticks * SECONDS_PER_TICK,
        float(stats.discard_ios),
        float(stats.discard_merges),
        float(stats.discard_sectors),
        stats.discard_ticks * SECONDS_PER_TICK,
        float(stats.flush_requests_completed),
        stats.time_spent_flushing * SECONDS_PER_TICK,
    ]


def _counter(name: str, help_text: str) -> TypedDesc:
    return TypedDesc(
        Desc(build_fq_name(NAMESPACE, DISK_SUBSYSTEM, name), help_text, _DISK_LABELS),
        ValueType.COUNTER,
    )


@register_collector("diskstats", True)
class DiskstatsCollector:
    """Exposes disk device statistics."""

    def __init__(self, settings: Settings | None = None) -> None:
        self.settings = settings if settings is not None else Settings()
        for path in (self.settings.proc_path, self.settings.sys_path):
            if not os.path.isdir(path):
                raise RuntimeError(f"failed to open sysfs: {path!r} is not a directory")
        try:
            self.ignored_devices = re.compile(self.settings.diskstats_ignored_devices)
        except re.error as err:
            raise ValueError(f"invalid ignored devices pattern: {err}") from err

        self.info = TypedDesc(
            Desc(
                build_fq_name(NAMESPACE, DISK_SUBSYSTEM, "info"),
                "Info of /sys/block/<block_device>.",
                ("device", "major", "minor"),
            ),
            ValueType.GAUGE,
        )
        counter = ValueType.COUNTER
        self.descs = [
            TypedDesc(READS_COMPLETED_DESC, counter),
            _counter("reads_merged_total", "The total number of reads merged."),
            TypedDesc(READ_BYTES_DESC, counter),
            TypedDesc(READ_TIME_SECONDS_DESC, counter),
            TypedDesc(WRITES_COMPLETED_DESC, counter),
            _counter("writes_merged_total", "The number of writes merged."),
            TypedDesc(WRITTEN_BYTES_DESC, counter),
            TypedDesc(WRITE_TIME_SECONDS_DESC, counter),
            TypedDesc(
                Desc(
                    build_fq_name(NAMESPACE, DISK_SUBSYSTEM, "io_now"),
                    "The number of I/Os currently in progress.",
                    _DISK_LABELS,
                ),
                ValueType.GAUGE,
            ),
            TypedDesc(IO_TIME_SECONDS_DESC, counter),
            _counter("io_time_weighted_seconds_total", "The weighted # of seconds spent doing I/Os."),
            _counter("discards_completed_total", "The total number of discards completed successfully."),
            _counter("discards_merged_total", "The total number of discards merged."),
            _counter("discarded_sectors_total", "The total number of sectors discarded successfully."),
            _counter("discard_time_seconds_total",
                     "This is the total number of seconds spent by all discards."),
            _counter("flush_requests_total",
                     "The total number of flush requests completed successfully"),
            _counter("flush_requests_time_seconds_total",
                     "This is the total number of seconds spent by all flush requests."),
        ]

    def update(self) -> Iterator[Metric]:
        try:
            with open(self.settings.proc_file("diskstats"), encoding="utf-8") as handle:
                disks = parse_diskstats(handle.read())
        except (OSError, ValueError) as err:
            raise RuntimeError(f"couldn't get diskstats: {err}") from err

        for stats in disks:
            dev = stats.device_name
            if self.ignored_devices.search(dev):
                log.debug("Ignoring device: device=%s pattern=%s", dev, self.ignored_devices.pattern)
                continue

            yield self.info.metric(1.0, dev, str(stats.major), str(stats.minor))

            # Total record count, less major number, minor number and device name.
            stat_count = max(stats.io_stats_count - 3, 0)
            for desc, value in zip(self.descs, _stat_values(stats)[:stat_count]):
                yield desc.metric(value, dev)