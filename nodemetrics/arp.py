"""ARP table entries per network device."""

from __future__ import annotations

import re
from collections import Counter
from collections.abc import Iterator

from .collector import NAMESPACE, Settings, register_collector
from .metrics import Desc, Metric, ValueType, build_fq_name


def parse_arp_entries(text: str) -> dict[str, int]:
    """Count the entries of an ARP table listing by device."""
    entries: Counter[str] = Counter()
    for line in text.splitlines():
        columns = line.split()
        if len(columns) < 6:
            raise ValueError("unexpected ARP table format")
        if columns[0] != "IP":
            entries[columns[-1]] += 1
    return dict(entries)


class DeviceFilter:
    """Decides which devices to ignore from exclude and include patterns."""

    def __init__(self, exclude: str = "", include: str = "") -> None:
        self.exclude = re.compile(exclude) if exclude else None
        self.include = re.compile(include) if include else None

    def ignored(self, name: str) -> bool:
        if self.exclude is not None and self.exclude.search(name):
            return True
        return self.include is not None and not self.include.search(name)


@register_collector("arp", True)
class ARPCollector:
    """Exposes the number of ARP entries per device."""

    def __init__(self, settings: Settings | None = None) -> None:
        self.settings = settings if settings is not None else Settings()
        self.device_filter = DeviceFilter(
            self.settings.arp_device_exclude, self.settings.arp_device_include
        )
        self.entries = Desc(
            build_fq_name(NAMESPACE, "arp", "entries"),
            "ARP entries by device",
            ("device",),
        )

    def update(self) -> Iterator[Metric]:
        try:
            with open(self.settings.proc_file("net/arp"), encoding="utf-8") as handle:
                entries = parse_arp_entries(handle.read())
        except (OSError, ValueError) as err:
            raise RuntimeError(f"could not get ARP entries: {err}") from err

        for device, count in entries.items():
            if self.device_filter.ignored(device):
                continue
            yield Metric(self.entries, ValueType.GAUGE, count, (device,))