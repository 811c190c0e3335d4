"""Collector registry, settings and the aggregate node collector."""

from __future__ import annotations

import logging
import os
import re
import threading
import time
from collections.abc import Callable, Iterable, Mapping
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Protocol

from .metrics import Desc, Metric, ValueType, build_fq_name

NAMESPACE = "node"

DEFAULT_IGNORED_DEVICES = r"^(ram|loop|fd|(h|s|v|xv)d[a-z]|nvme\d+n\d+p)\d+$"

SCRAPE_DURATION_DESC = Desc(
    build_fq_name(NAMESPACE, "scrape", "collector_duration_seconds"),
    "nodemetrics: Duration of a collector scrape.",
    ("collector",),
)
SCRAPE_SUCCESS_DESC = Desc(
    build_fq_name(NAMESPACE, "scrape", "collector_success"),
    "nodemetrics: Whether a collector succeeded.",
    ("collector",),
)

_UINT = re.compile(r"[0-9]+")
_UINT_MAX = 2**64 - 1

log = logging.getLogger(__name__)


class NoDataError(Exception):
    """The collector found no data to collect, but had no other error."""

    def __init__(self, message: str = "collector returned no data") -> None:
        super().__init__(message)


@dataclass
class Settings:
    """Paths and per-collector options."""

    proc_path: str = "/proc"
    sys_path: str = "/sys"
    arp_device_include: str = ""
    arp_device_exclude: str = ""
    bcache_priority_stats: bool = False
    cpu_guest: bool = True
    cpu_info: bool = False
    cpu_flags_include: str = ""
    cpu_bugs_include: str = ""
    diskstats_ignored_devices: str = DEFAULT_IGNORED_DEVICES

    def proc_file(self, name: str) -> str:
        return os.path.join(self.proc_path, name)

    def sys_file(self, name: str) -> str:
        return os.path.join(self.sys_path, name)


def read_uint_from_file(path: str | os.PathLike[str]) -> int:
    """Read a file holding one unsigned 64-bit integer."""
    with open(path, encoding="utf-8", errors="replace") as handle:
        text = handle.read().strip()
    if not _UINT.fullmatch(text):
        raise ValueError(f"invalid unsigned integer {text!r} in {os.fspath(path)}")
    value = int(text)
    if value > _UINT_MAX:
        raise ValueError(f"value {text} in {os.fspath(path)} out of range")
    return value


class _Collector(Protocol):
    def update(self) -> Iterable[Metric]: ...


Factory = Callable[[Settings], Any]


@dataclass
class _Entry:
    factory: Factory
    default_enabled: bool
    enabled: bool
    forced: bool = False


class Registry:
    """Known collectors, their enabled state and created instances."""

    def __init__(self) -> None:
        self._entries: dict[str, _Entry] = {}
        self._instances: dict[str, Any] = {}
        self._lock = threading.Lock()

    def _entry(self, name: str) -> _Entry:
        try:
            return self._entries[name]
        except KeyError:
            raise KeyError(f"unknown collector: {name}") from None

    def register(self, name: str, default_enabled: bool, factory: Factory) -> None:
        if name in self._entries:
            raise ValueError(f"collector already registered: {name}")
        self._entries[name] = _Entry(factory, bool(default_enabled), bool(default_enabled))

    def set_enabled(self, name: str, enabled: bool) -> None:
        """Explicitly enable or disable a collector."""
        entry = self._entry(name)
        entry.enabled = bool(enabled)
        entry.forced = True

    def disable_defaults(self) -> None:
        """Disable every collector that was not explicitly enabled or disabled."""
        for entry in self._entries.values():
            if not entry.forced:
                entry.enabled = False

    def is_enabled(self, name: str) -> bool:
        return self._entry(name).enabled

    def create(self, settings: Settings | None = None, filters: Iterable[str] = ()) -> NodeCollector:
        """Build a NodeCollector from the enabled collectors, optionally filtered."""
        settings = settings if settings is not None else Settings()
        wanted: set[str] = set()
        for name in filters:
            entry = self._entries.get(name)
            if entry is None:
                raise ValueError(f"missing collector: {name}")
            if not entry.enabled:
                raise ValueError(f"disabled collector: {name}")
            wanted.add(name)

        collectors: dict[str, Any] = {}
        with self._lock:
            for name, entry in self._entries.items():
                if not entry.enabled or (wanted and name not in wanted):
                    continue
                instance = self._instances.get(name)
                if instance is None:
                    instance = entry.factory(settings)
                    self._instances[name] = instance
                collectors[name] = instance
        return NodeCollector(collectors)


default_registry = Registry()


def register_collector(name: str, default_enabled: bool) -> Callable[[Factory], Factory]:
    """Class decorator adding a collector factory to the default registry."""

    def decorate(factory: Factory) -> Factory:
        default_registry.register(name, default_enabled, factory)
        return factory

    return decorate


def _execute(name: str, collector: _Collector) -> list[Metric]:
    begin = time.monotonic()
    metrics: list[Metric] = []
    try:
        for metric in collector.update():
            metrics.append(metric)
    except NoDataError as err:
        duration = time.monotonic() - begin
        log.debug("collector returned no data: name=%s duration_seconds=%f err=%s", name, duration, err)
        success = 0.0
    except Exception as err:  # any failure of a single collector is reported, not raised
        duration = time.monotonic() - begin
        log.error("collector failed: name=%s duration_seconds=%f err=%s", name, duration, err)
        success = 0.0
    else:
        duration = time.monotonic() - begin
        log.debug("collector succeeded: name=%s duration_seconds=%f", name, duration)
        success = 1.0
    metrics.append(Metric(SCRAPE_DURATION_DESC, ValueType.GAUGE, duration, (name,)))
    metrics.append(Metric(SCRAPE_SUCCESS_DESC, ValueType.GAUGE, success, (name,)))
    return metrics


class NodeCollector:
    """Runs a set of collectors concurrently and gathers their samples."""

    def __init__(self, collectors: Mapping[str, _Collector]) -> None:
        self.collectors = dict(collectors)

    def describe(self) -> list[Desc]:
        return [SCRAPE_DURATION_DESC, SCRAPE_SUCCESS_DESC]

    def collect(self) -> list[Metric]:
        items = sorted(self.collectors.items())
        if not items:
            return []
        with ThreadPoolExecutor(max_workers=len(items)) as pool:
            results = pool.map(lambda item: _execute(*item), items)
            return [metric for batch in results for metric in batch]