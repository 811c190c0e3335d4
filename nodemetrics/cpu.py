"""Per-CPU time, information and thermal throttle statistics."""

from __future__ import annotations

import copy
import glob
import logging
import os
import re
import threading
from collections.abc import Iterator
from dataclasses import dataclass, field, fields

from .collector import NAMESPACE, Settings, read_uint_from_file, register_collector
from .metrics import Desc, Metric, ValueType, build_fq_name

CPU_SUBSYSTEM = "cpu"

NODE_CPU_SECONDS_DESC = Desc(
    build_fq_name(NAMESPACE, CPU_SUBSYSTEM, "seconds_total"),
    "Seconds the CPUs spent in each mode.",
    ("cpu", "mode"),
)

# Idle jump back limit in seconds.
JUMP_BACK_SECONDS = 3.0

_USER_HZ = 100.0

_JUMP_BACK_MESSAGE = (
    f"CPU Idle counter jumped backwards more than {JUMP_BACK_SECONDS:f} seconds, "
    "possible hotplug event, resetting CPU stats"
)

log = logging.getLogger(__name__)


@dataclass
class CPUStat:
    """Seconds one CPU spent in each mode."""

    user: float = 0.0
    nice: float = 0.0
    system: float = 0.0
    idle: float = 0.0
    iowait: float = 0.0
    irq: float = 0.0
    softirq: float = 0.0
    steal: float = 0.0
    guest: float = 0.0
    guest_nice: float = 0.0


_STAT_FIELDS = tuple(f.name for f in fields(CPUStat))


@dataclass
class CPUInfo:
    """One processor entry of a cpuinfo listing."""

    processor: int
    vendor_id: str = ""
    cpu_family: str = ""
    model: str = ""
    model_name: str = ""
    stepping: str = ""
    microcode: str = ""
    cpu_mhz: float = 0.0
    cache_size: str = ""
    physical_id: str = ""
    siblings: int = 0
    core_id: str = ""
    cpu_cores: int = 0
    apic_id: str = ""
    initial_apic_id: str = ""
    fpu: str = ""
    fpu_exception: str = ""
    cpuid_level: int = 0
    wp: str = ""
    flags: list[str] = field(default_factory=list)
    bugs: list[str] = field(default_factory=list)
    bogomips: float = 0.0
    clflush_size: int = 0
    cache_alignment: int = 0
    address_sizes: str = ""
    power_management: str = ""


_INFO_STRINGS = {
    "vendor_id": "vendor_id",
    "vendor": "vendor_id",
    "cpu family": "cpu_family",
    "model": "model",
    "model name": "model_name",
    "stepping": "stepping",
    "microcode": "microcode",
    "cache size": "cache_size",
    "physical id": "physical_id",
    "core id": "core_id",
    "apicid": "apic_id",
    "initial apicid": "initial_apic_id",
    "fpu": "fpu",
    "fpu_exception": "fpu_exception",
    "wp": "wp",
    "address sizes": "address_sizes",
    "power management": "power_management",
}
_INFO_INTS = {
    "siblings": "siblings",
    "cpu cores": "cpu_cores",
    "cpuid level": "cpuid_level",
    "clflush size": "clflush_size",
    "cache_alignment": "cache_alignment",
}
_INFO_FLOATS = {"cpu MHz": "cpu_mhz", "bogomips": "bogomips"}
_INFO_LISTS = {"flags": "flags", "bugs": "bugs"}


def _parse_cpu_line(line: str) -> tuple[int, CPUStat]:
    label, *values = line.split()
    numbers: list[float] = []
    for raw in values[: len(_STAT_FIELDS)]:
        try:
            numbers.append(float(raw))
        except ValueError:
            break
    if not numbers:
        raise ValueError(f"couldn't parse {line!r} (cpu)")
    stat = CPUStat(*(value / _USER_HZ for value in numbers))
    if label == "cpu":
        return -1, stat
    try:
        cpu_id = int(label[3:])
    except ValueError:
        raise ValueError(f"couldn't parse {label!r} (cpu id)") from None
    return cpu_id, stat


def parse_proc_stat(text: str) -> list[CPUStat]:
    """Return the per-CPU times of a stat listing, indexed by CPU number."""
    cpus: list[CPUStat] = []
    for line in text.splitlines():
        parts = line.split()
        if not parts or not parts[0].startswith("cpu"):
            continue
        cpu_id, stat = _parse_cpu_line(line)
        if cpu_id < 0:
            continue
        while len(cpus) <= cpu_id:
            cpus.append(CPUStat())
        cpus[cpu_id] = stat
    return cpus


def parse_cpuinfo(text: str) -> list[CPUInfo]:
    """Parse a cpuinfo listing into one entry per processor."""
    infos: list[CPUInfo] = []
    for line in text.splitlines():
        if not line.strip() or ":" not in line:
            continue
        key, _, value = line.partition(":")
        key, value = key.strip(), value.strip()
        if key == "processor":
            try:
                infos.append(CPUInfo(processor=int(value)))
            except ValueError:
                raise ValueError(f"invalid processor number {value!r}") from None
            continue
        if not infos:
            raise ValueError(f"invalid cpuinfo file: {line!r}")
        current = infos[-1]
        try:
            if key in _INFO_STRINGS:
                setattr(current, _INFO_STRINGS[key], value)
            elif key in _INFO_INTS:
                setattr(current, _INFO_INTS[key], int(value))
            elif key in _INFO_FLOATS:
                setattr(current, _INFO_FLOATS[key], float(value))
            elif key in _INFO_LISTS:
                setattr(current, _INFO_LISTS[key], value.split())
        except ValueError:
            raise ValueError(f"invalid value {value!r} for {key!r}") from None
    return infos


@register_collector("cpu", True)
class CPUCollector:
    """Exposes CPU times, CPU information and thermal throttle counters."""

    def __init__(self, settings: Settings | None = None) -> None:
        self.settings = settings if settings is not None else Settings()
        proc_path = self.settings.proc_path
        if not os.path.exists(proc_path):
            raise RuntimeError(f"failed to open procfs: could not read {proc_path!r}")
        if not os.path.isdir(proc_path):
            raise RuntimeError(f"failed to open procfs: mount point {proc_path!r} is not a directory")

        self.cpu = NODE_CPU_SECONDS_DESC
        self.cpu_info = Desc(
            build_fq_name(NAMESPACE, CPU_SUBSYSTEM, "info"),
            "CPU information from /proc/cpuinfo.",
            ("package", "core", "cpu", "vendor", "family", "model", "model_name",
             "microcode", "stepping", "cachesize"),
        )
        self.cpu_flags_info = Desc(
            build_fq_name(NAMESPACE, CPU_SUBSYSTEM, "flag_info"),
            "The `flags` field of CPU information from /proc/cpuinfo taken from the first core.",
            ("flag",),
        )
        self.cpu_bugs_info = Desc(
            build_fq_name(NAMESPACE, CPU_SUBSYSTEM, "bug_info"),
            "The `bugs` field of CPU information from /proc/cpuinfo taken from the first core.",
            ("bug",),
        )
        self.cpu_guest = Desc(
            build_fq_name(NAMESPACE, CPU_SUBSYSTEM, "guest_seconds_total"),
            "Seconds the CPUs spent in guests (VMs) for each mode.",
            ("cpu", "mode"),
        )
        self.cpu_core_throttle = Desc(
            build_fq_name(NAMESPACE, CPU_SUBSYSTEM, "core_throttles_total"),
            "Number of times this CPU core has been throttled.",
            ("package", "core"),
        )
        self.cpu_package_throttle = Desc(
            build_fq_name(NAMESPACE, CPU_SUBSYSTEM, "package_throttles_total"),
            "Number of times this CPU package has been throttled.",
            ("package",),
        )
        self.cpu_stats: list[CPUStat] = []
        self._lock = threading.Lock()

        self.enable_info = self.settings.cpu_info
        flags_include = self.settings.cpu_flags_include
        bugs_include = self.settings.cpu_bugs_include
        if (flags_include or bugs_include) and not self.enable_info:
            self.enable_info = True
            log.info(
                "cpu info has been enabled because a flags-include or bugs-include filter was set"
            )
        try:
            self.flags_include = re.compile(flags_include) if flags_include else None
            self.bugs_include = re.compile(bugs_include) if bugs_include else None
        except re.error as err:
            raise ValueError(
                "fail to compile the cpu info flags-include and bugs-include filters, "
                f"their values must be regular expressions: {err}"
            ) from err

    def update(self) -> Iterator[Metric]:
        if self.enable_info:
            yield from self._update_info()
        yield from self._update_stat()
        yield from self._update_thermal_throttle()

    def _update_info(self) -> Iterator[Metric]:
        with open(self.settings.proc_file("cpuinfo"), encoding="utf-8") as handle:
            info = parse_cpuinfo(handle.read())
        for cpu in info:
            yield Metric(
                self.cpu_info,
                ValueType.GAUGE,
                1,
                (cpu.physical_id, cpu.core_id, str(cpu.processor), cpu.vendor_id,
                 cpu.cpu_family, cpu.model, cpu.model_name, cpu.microcode,
                 cpu.stepping, cpu.cache_size),
            )
        if info:
            first = info[0]
            yield from self._field_info(first.flags, self.flags_include, self.cpu_flags_info)
            yield from self._field_info(first.bugs, self.bugs_include, self.cpu_bugs_info)

    @staticmethod
    def _field_info(values: list[str], pattern: re.Pattern[str] | None, desc: Desc) -> Iterator[Metric]:
        if pattern is None:
            return
        for value in values:
            if pattern.search(value):
                yield Metric(desc, ValueType.GAUGE, 1, (value,))

    def _update_thermal_throttle(self) -> Iterator[Metric]:
        cpus = sorted(glob.glob(self.settings.sys_file("devices/system/cpu/cpu[0-9]*")))
        package_throttles: dict[int, int] = {}
        package_core_throttles: dict[int, dict[int, int]] = {}

        for cpu in cpus:
            try:
                package_id = read_uint_from_file(os.path.join(cpu, "topology", "physical_package_id"))
            except (OSError, ValueError):
                log.debug("CPU is missing physical_package_id: cpu=%s", cpu)
                continue
            try:
                core_id = read_uint_from_file(os.path.join(cpu, "topology", "core_id"))
            except (OSError, ValueError):
                log.debug("CPU is missing core_id: cpu=%s", cpu)
                continue

            # Core throttles come first: some systems expose them without package throttles.
            cores = package_core_throttles.setdefault(package_id, {})
            if core_id not in cores:
                try:
                    cores[core_id] = read_uint_from_file(
                        os.path.join(cpu, "thermal_throttle", "core_throttle_count")
                    )
                except (OSError, ValueError):
                    log.debug("CPU is missing core_throttle_count: cpu=%s", cpu)

            if package_id not in package_throttles:
                try:
                    package_throttles[package_id] = read_uint_from_file(
                        os.path.join(cpu, "thermal_throttle", "package_throttle_count")
                    )
                except (OSError, ValueError):
                    log.debug("CPU is missing package_throttle_count: cpu=%s", cpu)

        for package_id, count in package_throttles.items():
            yield Metric(self.cpu_package_throttle, ValueType.COUNTER, count, (str(package_id),))
        for package_id, cores in package_core_throttles.items():
            for core_id, count in cores.items():
                yield Metric(
                    self.cpu_core_throttle, ValueType.COUNTER, count, (str(package_id), str(core_id))
                )

    def _update_stat(self) -> Iterator[Metric]:
        with open(self.settings.proc_file("stat"), encoding="utf-8") as handle:
            stats = parse_proc_stat(handle.read())
        self.update_cpu_stats(stats)

        with self._lock:
            snapshot = [copy.copy(stat) for stat in self.cpu_stats]
        for cpu_id, stat in enumerate(snapshot):
            cpu_num = str(cpu_id)
            for mode, value in (
                ("user", stat.user),
                ("nice", stat.nice),
                ("system", stat.system),
                ("idle", stat.idle),
                ("iowait", stat.iowait),
                ("irq", stat.irq),
                ("softirq", stat.softirq),
                ("steal", stat.steal),
            ):
                yield Metric(self.cpu, ValueType.COUNTER, value, (cpu_num, mode))
            if self.settings.cpu_guest:
                # Guest time is also counted in user and nice.
                yield Metric(self.cpu_guest, ValueType.COUNTER, stat.guest, (cpu_num, "user"))
                yield Metric(self.cpu_guest, ValueType.COUNTER, stat.guest_nice, (cpu_num, "nice"))

    def update_cpu_stats(self, new_stats: list[CPUStat]) -> None:
        """Merge fresh readings into the cache, keeping every counter monotonic."""
        with self._lock:
            if len(self.cpu_stats) != len(new_stats):
                self.cpu_stats = [CPUStat() for _ in new_stats]

            for cpu_id, new in enumerate(new_stats):
                old = self.cpu_stats[cpu_id]
                if old.idle - new.idle >= JUMP_BACK_SECONDS:
                    log.debug(
                        "%s: cpu=%d old_value=%f new_value=%f",
                        _JUMP_BACK_MESSAGE, cpu_id, old.idle, new.idle,
                    )
                    old = CPUStat()
                    self.cpu_stats[cpu_id] = old

                for name in _STAT_FIELDS:
                    old_value = getattr(old, name)
                    new_value = getattr(new, name)
                    if new_value >= old_value:
                        setattr(old, name, new_value)
                    else:
                        log.debug(
                            "CPU %s counter jumped backwards: cpu=%d old_value=%f new_value=%f",
                            name, cpu_id, old_value, new_value,
                        )