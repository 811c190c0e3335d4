"""Linux bcache statistics read from sysfs."""

from __future__ import annotations

import glob
import os
from collections.abc import Iterator
from dataclasses import dataclass, field

from .collector import NAMESPACE, Settings, read_uint_from_file, register_collector
from .metrics import Desc, Metric, ValueType, build_fq_name

SUBSYSTEM = "bcache"

_MULTIPLIERS = {
    "k": 1 << 10,
    "M": 1 << 20,
    "G": 1 << 30,
    "T": 1 << 40,
    "P": 1 << 50,
    "E": 1 << 60,
    "Z": 1 << 70,
    "Y": 1 << 80,
}

_PERIOD_FILES = (
    "cache_hits",
    "cache_misses",
    "cache_bypass_hits",
    "cache_bypass_misses",
    "cache_miss_collisions",
    "cache_readaheads",
)


def dehumanize(value: str) -> int:
    """Convert a human-readable size such as '2.7M' into a whole number."""
    text = value.strip()
    if not text:
        raise ValueError("zero-length reply")
    multiplier = 1
    if text[-1] > "9":
        suffix = text[-1]
        try:
            multiplier = _MULTIPLIERS[suffix]
        except KeyError:
            raise ValueError(f"unknown multiplier {suffix!r} in {value!r}") from None
        text = text[:-1]
    try:
        mantissa = float(text)
    except ValueError:
        raise ValueError(f"invalid number {value!r}") from None
    if mantissa < 0:
        raise ValueError(f"negative value {value!r}")
    return int(mantissa * multiplier)


def _dehumanize_signed(value: str) -> int:
    text = value.strip()
    if text.startswith("-"):
        return -dehumanize(text[1:])
    return dehumanize(text)


@dataclass
class PeriodStats:
    """Cache activity counted over one period of a backing device."""

    bypassed: int = 0
    cache_hits: int = 0
    cache_misses: int = 0
    cache_bypass_hits: int = 0
    cache_bypass_misses: int = 0
    cache_miss_collisions: int = 0
    cache_readaheads: int = 0


@dataclass
class BackingDevice:
    """Statistics of one backing device of a cache set."""

    name: str
    dirty_data: int = 0
    total: PeriodStats = field(default_factory=PeriodStats)
    writeback_rate: int = 0
    writeback_dirty: int = 0
    writeback_target: int = 0
    writeback_proportional: int = 0
    writeback_integral: int = 0
    writeback_change: int = 0
    writeback_next_io: int = 0


@dataclass
class CacheDevice:
    """Statistics of one cache device of a cache set."""

    name: str
    io_errors: int = 0
    metadata_written: int = 0
    written: int = 0
    priority_unused_percent: int = 0
    priority_metadata_percent: int = 0


@dataclass
class BcacheStats:
    """Statistics of one bcache cache set, named by its UUID."""

    name: str
    average_key_size: int = 0
    btree_cache_size: int = 0
    cache_available_percent: int = 0
    congested: int = 0
    root_usage_percent: int = 0
    tree_depth: int = 0
    active_journal_entries: int = 0
    btree_nodes: int = 0
    btree_read_average_duration_nanoseconds: int = 0
    cache_read_races: int = 0
    bdevs: list[BackingDevice] = field(default_factory=list)
    caches: list[CacheDevice] = field(default_factory=list)


def _read_text(path: str) -> str:
    with open(path, encoding="utf-8", errors="replace") as handle:
        return handle.read()


def _read_human(path: str) -> int:
    return dehumanize(_read_text(path))


def _read_period(path: str) -> PeriodStats:
    stats = PeriodStats(bypassed=_read_human(os.path.join(path, "bypassed")))
    for name in _PERIOD_FILES:
        setattr(stats, name, read_uint_from_file(os.path.join(path, name)))
    return stats


def _parse_writeback_rate_debug(text: str, bdev: BackingDevice) -> None:
    for line in text.splitlines():
        key, sep, rest = line.partition(":")
        fields_ = rest.split()
        if not sep or not fields_:
            continue
        raw = fields_[-1]
        key = key.strip()
        if key == "rate":
            bdev.writeback_rate = dehumanize(raw.removesuffix("/sec"))
        elif key == "dirty":
            bdev.writeback_dirty = dehumanize(raw)
        elif key == "target":
            bdev.writeback_target = dehumanize(raw)
        elif key == "proportional":
            bdev.writeback_proportional = _dehumanize_signed(raw)
        elif key == "integral":
            bdev.writeback_integral = _dehumanize_signed(raw)
        elif key == "change":
            bdev.writeback_change = _dehumanize_signed(raw.removesuffix("/sec"))
        elif key == "next io":
            bdev.writeback_next_io = int(raw.removesuffix("ms"))


def _parse_priority_stats(text: str, cache: CacheDevice) -> None:
    for line in text.splitlines():
        fields_ = line.split()
        if not fields_:
            continue
        value = fields_[-1].removesuffix("%")
        if line.startswith("Unused:"):
            cache.priority_unused_percent = int(float(value))
        elif line.startswith("Metadata:"):
            cache.priority_metadata_percent = int(float(value))


def _read_bdev(path: str) -> BackingDevice:
    bdev = BackingDevice(name=os.path.basename(path))
    bdev.dirty_data = _read_human(os.path.join(path, "dirty_data"))
    bdev.total = _read_period(os.path.join(path, "stats_total"))
    _parse_writeback_rate_debug(_read_text(os.path.join(path, "writeback_rate_debug")), bdev)
    return bdev


def _read_cache(path: str, priority_stats: bool) -> CacheDevice:
    cache = CacheDevice(name=os.path.basename(path))
    cache.io_errors = read_uint_from_file(os.path.join(path, "io_errors"))
    cache.metadata_written = _read_human(os.path.join(path, "metadata_written"))
    cache.written = _read_human(os.path.join(path, "written"))
    if priority_stats:
        _parse_priority_stats(_read_text(os.path.join(path, "priority_stats")), cache)
    return cache


def _read_cache_set(path: str, priority_stats: bool) -> BcacheStats:
    stats = BcacheStats(name=os.path.basename(path))
    stats.average_key_size = _read_human(os.path.join(path, "average_key_size"))
    stats.btree_cache_size = _read_human(os.path.join(path, "btree_cache_size"))
    for name in ("cache_available_percent", "congested", "root_usage_percent", "tree_depth"):
        setattr(stats, name, read_uint_from_file(os.path.join(path, name)))

    internal = os.path.join(path, "internal")
    stats.active_journal_entries = read_uint_from_file(os.path.join(internal, "active_journal_entries"))
    stats.btree_nodes = read_uint_from_file(os.path.join(internal, "btree_nodes"))
    stats.btree_read_average_duration_nanoseconds = 1000 * read_uint_from_file(
        os.path.join(internal, "btree_read_average_duration_us")
    )
    stats.cache_read_races = read_uint_from_file(os.path.join(internal, "cache_read_races"))

    stats.bdevs = [_read_bdev(p) for p in sorted(glob.glob(os.path.join(path, "bdev[0-9]*")))]
    stats.caches = [
        _read_cache(p, priority_stats) for p in sorted(glob.glob(os.path.join(path, "cache[0-9]*")))
    ]
    return stats


def read_bcache_stats(sys_path: str, priority_stats: bool = False) -> list[BcacheStats]:
    """Read every cache set under fs/bcache of the given sysfs root."""
    pattern = os.path.join(sys_path, "fs", "bcache", "*-*")
    return [_read_cache_set(path, priority_stats) for path in sorted(glob.glob(pattern))]


@dataclass(frozen=True)
class _BcacheMetric:
    name: str
    help: str
    value: float
    value_type: ValueType
    extra_label: tuple[str, ...] = ()
    extra_label_value: str = ""


def period_stats_metrics(stats: PeriodStats, label_value: str) -> list[_BcacheMetric]:
    """Metric specifications for the period counters of one backing device."""
    label = ("backing_device",)
    counter = ValueType.COUNTER
    return [
        _BcacheMetric("bypassed_bytes_total",
                      "Amount of IO (both reads and writes) that has bypassed the cache.",
                      stats.bypassed, counter, label, label_value),
        _BcacheMetric("cache_hits_total", "Hits counted per individual IO as bcache sees them.",
                      stats.cache_hits, counter, label, label_value),
        _BcacheMetric("cache_misses_total", "Misses counted per individual IO as bcache sees them.",
                      stats.cache_misses, counter, label, label_value),
        _BcacheMetric("cache_bypass_hits_total", "Hits for IO intended to skip the cache.",
                      stats.cache_bypass_hits, counter, label, label_value),
        _BcacheMetric("cache_bypass_misses_total", "Misses for IO intended to skip the cache.",
                      stats.cache_bypass_misses, counter, label, label_value),
        _BcacheMetric("cache_miss_collisions_total",
                      "Instances where data insertion from cache miss raced with write "
                      "(data already present).",
                      stats.cache_miss_collisions, counter, label, label_value),
        _BcacheMetric("cache_readaheads_total", "Count of times readahead occurred.",
                      stats.cache_readaheads, counter, label, label_value),
    ]


def _set_specs(s: BcacheStats) -> list[_BcacheMetric]:
    gauge, counter = ValueType.GAUGE, ValueType.COUNTER
    return [
        _BcacheMetric("average_key_size_sectors", "Average data per key in the btree (sectors).",
                      s.average_key_size, gauge),
        _BcacheMetric("btree_cache_size_bytes", "Amount of memory currently used by the btree cache.",
                      s.btree_cache_size, gauge),
        _BcacheMetric("cache_available_percent",
                      "Percentage of cache device without dirty data, usable for writeback "
                      "(may contain clean cached data).",
                      s.cache_available_percent, gauge),
        _BcacheMetric("congested", "Congestion.", s.congested, gauge),
        _BcacheMetric("root_usage_percent",
                      "Percentage of the root btree node in use (tree depth increases if too high).",
                      s.root_usage_percent, gauge),
        _BcacheMetric("tree_depth", "Depth of the btree.", s.tree_depth, gauge),
        _BcacheMetric("active_journal_entries",
                      "Number of journal entries that are newer than the index.",
                      s.active_journal_entries, gauge),
        _BcacheMetric("btree_nodes", "Total nodes in the btree.", s.btree_nodes, gauge),
        _BcacheMetric("btree_read_average_duration_seconds", "Average btree read duration.",
                      s.btree_read_average_duration_nanoseconds * 1e-9, gauge),
        _BcacheMetric("cache_read_races_total",
                      "Counts instances where while data was being read from the cache, the bucket "
                      "was reused and invalidated - i.e. where the pointer was stale after the read "
                      "completed.",
                      s.cache_read_races, counter),
    ]


def _bdev_specs(bdev: BackingDevice) -> list[_BcacheMetric]:
    gauge = ValueType.GAUGE
    label = ("backing_device",)
    name = bdev.name
    return [
        _BcacheMetric("dirty_data_bytes", "Amount of dirty data for this backing device in the cache.",
                      bdev.dirty_data, gauge, label, name),
        _BcacheMetric("dirty_target_bytes",
                      "Current dirty data target threshold for this backing device in bytes.",
                      bdev.writeback_target, gauge, label, name),
        _BcacheMetric("writeback_rate", "Current writeback rate for this backing device in bytes.",
                      bdev.writeback_rate, gauge, label, name),
        _BcacheMetric("writeback_rate_proportional_term",
                      "Current result of proportional controller, part of writeback rate",
                      bdev.writeback_proportional, gauge, label, name),
        _BcacheMetric("writeback_rate_integral_term",
                      "Current result of integral controller, part of writeback rate",
                      bdev.writeback_integral, gauge, label, name),
        _BcacheMetric("writeback_change", "Last writeback rate change step for this backing device.",
                      bdev.writeback_change, gauge, label, name),
    ]


def _cache_specs(cache: CacheDevice, priority_stats: bool) -> list[_BcacheMetric]:
    gauge, counter = ValueType.GAUGE, ValueType.COUNTER
    label = ("cache_device",)
    name = cache.name
    specs = [
        _BcacheMetric("io_errors", "Number of errors that have occurred, decayed by io_error_halflife.",
                      cache.io_errors, gauge, label, name),
        _BcacheMetric("metadata_written_bytes_total",
                      "Sum of all non data writes (btree writes and all other metadata).",
                      cache.metadata_written, counter, label, name),
        _BcacheMetric("written_bytes_total", "Sum of all data that has been written to the cache.",
                      cache.written, counter, label, name),
    ]
    if priority_stats:
        specs += [
            _BcacheMetric("priority_stats_unused_percent",
                          "The percentage of the cache that doesn't contain any data.",
                          cache.priority_unused_percent, gauge, label, name),
            _BcacheMetric("priority_stats_metadata_percent", "Bcache's metadata overhead.",
                          cache.priority_metadata_percent, gauge, label, name),
        ]
    return specs


def bcache_metrics(stats: BcacheStats, priority_stats: bool = False) -> list[Metric]:
    """All samples for one cache set, labelled with its UUID."""
    specs = _set_specs(stats)
    for bdev in stats.bdevs:
        specs += _bdev_specs(bdev)
        specs += period_stats_metrics(bdev.total, bdev.name)
    for cache in stats.caches:
        specs += _cache_specs(cache, priority_stats)

    metrics = []
    for spec in specs:
        desc = Desc(build_fq_name(NAMESPACE, SUBSYSTEM, spec.name), spec.help, ("uuid",) + spec.extra_label)
        labels = (stats.name, spec.extra_label_value) if spec.extra_label_value else (stats.name,)
        metrics.append(Metric(desc, spec.value_type, spec.value, labels))
    return metrics


@register_collector("bcache", True)
class BcacheCollector:
    """Exposes Linux bcache statistics."""

    def __init__(self, settings: Settings | None = None) -> None:
        self.settings = settings if settings is not None else Settings()
        sys_path = self.settings.sys_path
        if not os.path.isdir(sys_path):
            raise RuntimeError(f"failed to open sysfs: {sys_path!r} is not a directory")

    def update(self) -> Iterator[Metric]:
        priority = self.settings.bcache_priority_stats
        try:
            stats = read_bcache_stats(self.settings.sys_path, priority)
        except (OSError, ValueError) as err:
            raise RuntimeError(f"failed to retrieve bcache stats: {err}") from err
        for cache_set in stats:
            yield from bcache_metrics(cache_set, priority)