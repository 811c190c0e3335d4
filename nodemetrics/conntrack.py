"""Connection tracking table size and statistics."""

from __future__ import annotations

import logging
import os
import re
from collections.abc import Iterator
from dataclasses import dataclass, fields
from functools import reduce

from .collector import NAMESPACE, NoDataError, Settings, read_uint_from_file, register_collector
from .metrics import Desc, Metric, ValueType, build_fq_name

log = logging.getLogger(__name__)

_HEX = re.compile(r"[0-9a-fA-F]+")
_FIELD_COUNT = 17


@dataclass
class ConntrackStatistics:
    """Connection tracking counters, for one CPU or summed over all."""

    found: int = 0
    invalid: int = 0
    ignore: int = 0
    insert: int = 0
    insert_failed: int = 0
    drop: int = 0
    early_drop: int = 0
    search_restart: int = 0

    def __add__(self, other: ConntrackStatistics) -> ConntrackStatistics:
        if not isinstance(other, ConntrackStatistics):
            return NotImplemented
        return ConntrackStatistics(
            *(getattr(self, f.name) + getattr(other, f.name) for f in fields(self))
        )


def _hex(value: str) -> int:
    if not _HEX.fullmatch(value):
        raise ValueError(f"invalid hexadecimal value {value!r} in conntrack stat")
    return int(value, 16)


def parse_conntrack_stat(text: str) -> list[ConntrackStatistics]:
    """Parse a per-CPU conntrack stat table; the first line is its header."""
    entries: list[ConntrackStatistics] = []
    for line in text.splitlines()[1:]:
        columns = line.split()
        if len(columns) != _FIELD_COUNT:
            raise ValueError("invalid conntrackstat entry, missing fields")
        values = [_hex(column) for column in columns]
        entries.append(
            ConntrackStatistics(
                found=values[2],
                invalid=values[4],
                ignore=values[5],
                insert=values[8],
                insert_failed=values[9],
                drop=values[10],
                early_drop=values[11],
                search_restart=values[16],
            )
        )
    return entries


def read_conntrack_statistics(proc_path: str) -> ConntrackStatistics:
    """Sum the conntrack counters of every CPU."""
    path = os.path.join(proc_path, "net", "stat", "nf_conntrack")
    with open(path, encoding="utf-8") as handle:
        entries = parse_conntrack_stat(handle.read())
    return reduce(lambda total, entry: total + entry, entries, ConntrackStatistics())


def _desc(name: str, help_text: str) -> Desc:
    return Desc(build_fq_name(NAMESPACE, "", name), help_text)


@register_collector("conntrack", True)
class ConntrackCollector:
    """Exposes connection tracking table size and statistics."""

    def __init__(self, settings: Settings | None = None) -> None:
        self.settings = settings if settings is not None else Settings()
        self.current = _desc("nf_conntrack_entries",
                             "Number of currently allocated flow entries for connection tracking.")
        self.limit = _desc("nf_conntrack_entries_limit", "Maximum size of connection tracking table.")
        self.found = _desc("nf_conntrack_stat_found", "Number of searched entries which were successful.")
        self.invalid = _desc("nf_conntrack_stat_invalid", "Number of packets seen which can not be tracked.")
        self.ignore = _desc("nf_conntrack_stat_ignore",
                            "Number of packets seen which are already connected to a conntrack entry.")
        self.insert = _desc("nf_conntrack_stat_insert", "Number of entries inserted into the list.")
        self.insert_failed = _desc("nf_conntrack_stat_insert_failed",
                                   "Number of entries for which list insertion was attempted but failed.")
        self.drop = _desc("nf_conntrack_stat_drop", "Number of packets dropped due to conntrack failure.")
        self.early_drop = _desc(
            "nf_conntrack_stat_early_drop",
            "Number of dropped conntrack entries to make room for new ones, if maximum table size was reached.",
        )
        self.search_restart = _desc(
            "nf_conntrack_stat_search_restart",
            "Number of conntrack table lookups which had to be restarted due to hashtable resizes.",
        )

    @staticmethod
    def _error(err: Exception) -> Exception:
        if isinstance(err, FileNotFoundError):
            log.debug("conntrack probably not loaded")
            return NoDataError()
        return RuntimeError(f"failed to retrieve conntrack stats: {err}")

    def update(self) -> Iterator[Metric]:
        for desc, name in (
            (self.current, "sys/net/netfilter/nf_conntrack_count"),
            (self.limit, "sys/net/netfilter/nf_conntrack_max"),
        ):
            try:
                value = read_uint_from_file(self.settings.proc_file(name))
            except (OSError, ValueError) as err:
                raise self._error(err) from err
            yield Metric(desc, ValueType.GAUGE, value)

        try:
            stats = read_conntrack_statistics(self.settings.proc_path)
        except (OSError, ValueError) as err:
            raise self._error(err) from err

        for desc, value in (
            (self.found, stats.found),
            (self.invalid, stats.invalid),
            (self.ignore, stats.ignore),
            (self.insert, stats.insert),
            (self.insert_failed, stats.insert_failed),
            (self.drop, stats.drop),
            (self.early_drop, stats.early_drop),
            (self.search_restart, stats.search_restart),
        ):
            yield Metric(desc, ValueType.GAUGE, value)