"""Free memory blocks per node, zone and order."""

from __future__ import annotations

import logging
import os
from collections.abc import Iterator
from dataclasses import dataclass, field

from .collector import NAMESPACE, Settings, register_collector
from .metrics import Desc, Metric, ValueType, build_fq_name

SUBSYSTEM = "buddyinfo"

log = logging.getLogger(__name__)


@dataclass
class BuddyInfo:
    """Free block counts of one memory zone, indexed by block order."""

    node: str
    zone: str
    sizes: list[float] = field(default_factory=list)


def parse_buddyinfo(text: str) -> list[BuddyInfo]:
    """Parse a buddyinfo listing; every line must have the same number of buckets."""
    result: list[BuddyInfo] = []
    bucket_count: int | None = None
    for line in text.splitlines():
        parts = line.split()
        if len(parts) < 4:
            raise ValueError("invalid number of fields when parsing buddyinfo")
        node = parts[1].rstrip(",")
        zone = parts[3].rstrip(",")
        raw_sizes = parts[4:]
        if bucket_count is None:
            bucket_count = len(raw_sizes)
        elif bucket_count != len(raw_sizes):
            raise ValueError(
                "mismatch in number of buddyinfo buckets, previous count "
                f"{bucket_count}, new count {len(raw_sizes)}"
            )
        try:
            sizes = [float(value) for value in raw_sizes]
        except ValueError as err:
            raise ValueError(f"invalid value in buddyinfo: {err}") from err
        result.append(BuddyInfo(node, zone, sizes))
    return result


@register_collector("buddyinfo", False)
class BuddyinfoCollector:
    """Exposes the count of free blocks by node, zone and size."""

    def __init__(self, settings: Settings | None = None) -> None:
        self.settings = settings if settings is not None else Settings()
        proc_path = self.settings.proc_path
        if not os.path.isdir(proc_path):
            raise RuntimeError(f"failed to open procfs: {proc_path!r} is not a directory")
        self.desc = Desc(
            build_fq_name(NAMESPACE, SUBSYSTEM, "blocks"),
            "Count of free blocks according to size.",
            ("node", "zone", "size"),
        )

    def update(self) -> Iterator[Metric]:
        try:
            with open(self.settings.proc_file("buddyinfo"), encoding="utf-8") as handle:
                info = parse_buddyinfo(handle.read())
        except (OSError, ValueError) as err:
            raise RuntimeError(f"couldn't get buddyinfo: {err}") from err

        log.debug("Set node_buddy: buddyInfo=%s", info)
        for entry in info:
            for size, value in enumerate(entry.sizes):
                yield Metric(self.desc, ValueType.GAUGE, value, (entry.node, entry.zone, str(size)))