"""Configured and active slaves of Linux bonding interfaces."""

from __future__ import annotations

import logging
import os
from collections.abc import Iterator

from .collector import NAMESPACE, NoDataError, Settings, register_collector
from .metrics import Desc, Metric, TypedDesc, ValueType, build_fq_name

log = logging.getLogger(__name__)


def _read(path: str) -> str:
    with open(path, encoding="utf-8", errors="replace") as handle:
        return handle.read()


def read_bonding_stats(root: str) -> dict[str, tuple[int, int]]:
    """Map each bonding master to its (configured, active) slave counts."""
    status: dict[str, tuple[int, int]] = {}
    for master in _read(os.path.join(root, "bonding_masters")).split():
        slaves = _read(os.path.join(root, master, "bonding", "slaves")).split()
        active = 0
        for slave in slaves:
            try:
                state = _read(os.path.join(root, master, f"lower_{slave}", "bonding_slave", "mii_status"))
            except FileNotFoundError:
                # Some older kernels use the slave_ prefix.
                state = _read(os.path.join(root, master, f"slave_{slave}", "bonding_slave", "mii_status"))
            if state.strip() == "up":
                active += 1
        status[master] = (len(slaves), active)
    return status


@register_collector("bonding", True)
class BondingCollector:
    """Exposes the number of configured and active slaves per bonding interface."""

    def __init__(self, settings: Settings | None = None) -> None:
        self.settings = settings if settings is not None else Settings()
        self.slaves = TypedDesc(
            Desc(
                build_fq_name(NAMESPACE, "bonding", "slaves"),
                "Number of configured slaves per bonding interface.",
                ("master",),
            ),
            ValueType.GAUGE,
        )
        self.active = TypedDesc(
            Desc(
                build_fq_name(NAMESPACE, "bonding", "active"),
                "Number of active slaves per bonding interface.",
                ("master",),
            ),
            ValueType.GAUGE,
        )

    def update(self) -> Iterator[Metric]:
        status_file = self.settings.sys_file("class/net")
        try:
            stats = read_bonding_stats(status_file)
        except FileNotFoundError as err:
            log.debug("Not collecting bonding, file does not exist: file=%s", status_file)
            raise NoDataError() from err
        for master, (configured, active) in stats.items():
            yield self.slaves.metric(configured, master)
            yield self.active.metric(active, master)