"""CPU frequency statistics read from sysfs."""

from __future__ import annotations

import glob
import os
import re
from collections.abc import Iterator
from dataclasses import dataclass

from .collector import NAMESPACE, Settings, read_uint_from_file, register_collector
from .metrics import Desc, Metric, ValueType, build_fq_name
from .cpu import CPU_SUBSYSTEM

_FREQUENCY_FILES = {
    "cpuinfo_current_frequency": "cpuinfo_cur_freq",
    "cpuinfo_minimum_frequency": "cpuinfo_min_freq",
    "cpuinfo_maximum_frequency": "cpuinfo_max_freq",
    "cpuinfo_transition_latency": "cpuinfo_transition_latency",
    "scaling_current_frequency": "scaling_cur_freq",
    "scaling_minimum_frequency": "scaling_min_freq",
    "scaling_maximum_frequency": "scaling_max_freq",
}

_CPU_NUMBER = re.compile(r"cpu(\d+)$")


@dataclass
class CPUFreqStats:
    """Frequency settings of one CPU thread, in kHz; absent values are None."""

    name: str
    cpuinfo_current_frequency: int | None = None
    cpuinfo_minimum_frequency: int | None = None
    cpuinfo_maximum_frequency: int | None = None
    cpuinfo_transition_latency: int | None = None
    scaling_current_frequency: int | None = None
    scaling_minimum_frequency: int | None = None
    scaling_maximum_frequency: int | None = None


def _optional_uint(path: str) -> int | None:
    try:
        return read_uint_from_file(path)
    except (FileNotFoundError, PermissionError):
        return None


def _cpu_sort_key(path: str) -> tuple[int, str]:
    match = _CPU_NUMBER.search(os.path.basename(path))
    return (int(match.group(1)) if match else -1, path)


def read_cpufreq(sys_path: str) -> list[CPUFreqStats]:
    """Read the cpufreq values of every CPU under devices/system/cpu."""
    cpus = glob.glob(os.path.join(sys_path, "devices", "system", "cpu", "cpu[0-9]*"))
    if not cpus:
        raise FileNotFoundError("could not find any cpufreq files")

    result: list[CPUFreqStats] = []
    for cpu in sorted(cpus, key=_cpu_sort_key):
        cpufreq = os.path.join(cpu, "cpufreq")
        if not os.path.isdir(cpufreq):
            continue
        stats = CPUFreqStats(name=os.path.basename(cpu).removeprefix("cpu"))
        for attribute, filename in _FREQUENCY_FILES.items():
            setattr(stats, attribute, _optional_uint(os.path.join(cpufreq, filename)))
        result.append(stats)
    return result


def _desc(name: str, help_text: str) -> Desc:
    return Desc(build_fq_name(NAMESPACE, CPU_SUBSYSTEM, name), help_text, ("cpu",))


@register_collector("cpufreq", True)
class CPUFreqCollector:
    """Exposes current, minimum and maximum CPU frequencies in hertz."""

    def __init__(self, settings: Settings | None = None) -> None:
        self.settings = settings if settings is not None else Settings()
        sys_path = self.settings.sys_path
        if not os.path.isdir(sys_path):
            raise RuntimeError(f"failed to open sysfs: {sys_path!r} is not a directory")
        self.descs = (
            ("cpuinfo_current_frequency",
             _desc("frequency_hertz", "Current cpu thread frequency in hertz.")),
            ("cpuinfo_minimum_frequency",
             _desc("frequency_min_hertz", "Minimum cpu thread frequency in hertz.")),
            ("cpuinfo_maximum_frequency",
             _desc("frequency_max_hertz", "Maximum cpu thread frequency in hertz.")),
            ("scaling_current_frequency",
             _desc("scaling_frequency_hertz", "Current scaled CPU thread frequency in hertz.")),
            ("scaling_minimum_frequency",
             _desc("scaling_frequency_min_hertz", "Minimum scaled CPU thread frequency in hertz.")),
            ("scaling_maximum_frequency",
             _desc("scaling_frequency_max_hertz", "Maximum scaled CPU thread frequency in hertz.")),
        )

    def update(self) -> Iterator[Metric]:
        # sysfs reports kHz; multiply by 1000 to export hertz.
        for stats in read_cpufreq(self.settings.sys_path):
            for attribute, desc in self.descs:
                value = getattr(stats, attribute)
                if value is not None:
                    yield Metric(desc, ValueType.GAUGE, value * 1000.0, (stats.name,))