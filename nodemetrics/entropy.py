"""Kernel entropy pool statistics."""

from __future__ import annotations

import os
from collections.abc import Iterator

from .collector import NAMESPACE, Settings, read_uint_from_file, register_collector
from .metrics import Desc, Metric, ValueType, build_fq_name

_RANDOM_FILES = (
    "entropy_avail",
    "poolsize",
    "urandom_min_reseed_secs",
    "write_wakeup_threshold",
    "read_wakeup_threshold",
)


def read_kernel_random(proc_path: str) -> dict[str, int]:
    """Read the values under sys/kernel/random; missing files are left out."""
    base = os.path.join(proc_path, "sys", "kernel", "random")
    values: dict[str, int] = {}
    for name in _RANDOM_FILES:
        try:
            values[name] = read_uint_from_file(os.path.join(base, name))
        except FileNotFoundError:
            continue
    return values


@register_collector("entropy", True)
class EntropyCollector:
    """Exposes available entropy and the entropy pool size."""

    def __init__(self, settings: Settings | None = None) -> None:
        settings = settings if settings is not None else Settings()
        if not os.path.exists(settings.proc_path):
            raise RuntimeError(f"failed to open procfs: could not read {settings.proc_path!r}")
        if not os.path.isdir(settings.proc_path):
            raise RuntimeError(
                f"failed to open procfs: mount point {settings.proc_path!r} is not a directory"
            )
        self.proc_path = settings.proc_path
        self.entropy_avail = Desc(
            build_fq_name(NAMESPACE, "", "entropy_available_bits"),
            "Bits of available entropy.",
        )
        self.entropy_pool_size = Desc(
            build_fq_name(NAMESPACE, "", "entropy_pool_size_bits"),
            "Bits of entropy pool.",
        )

    def update(self) -> Iterator[Metric]:
        try:
            stats = read_kernel_random(self.proc_path)
        except (OSError, ValueError) as err:
            raise RuntimeError(f"failed to get kernel random stats: {err}") from err

        available = stats.get("entropy_avail")
        if available is None:
            raise RuntimeError("couldn't get entropy_avail")
        yield Metric(self.entropy_avail, ValueType.GAUGE, available)

        pool_size = stats.get("poolsize")
        if pool_size is None:
            raise RuntimeError("couldn't get entropy poolsize")
        yield Metric(self.entropy_pool_size, ValueType.GAUGE, pool_size)