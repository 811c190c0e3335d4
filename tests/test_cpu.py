import copy

import pytest

from nodemetrics.collector import Settings
from nodemetrics.cpu import CPUCollector, CPUStat, parse_cpuinfo, parse_proc_stat

FIRST = CPUStat(*([100.0] * 10))


def _settings(tmp_path, **kwargs):
    proc = tmp_path / "proc"
    sys = tmp_path / "sys"
    proc.mkdir(exist_ok=True)
    sys.mkdir(exist_ok=True)
    return Settings(proc_path=str(proc), sys_path=str(sys), **kwargs)


def _collector(tmp_path, stats):
    collector = CPUCollector(_settings(tmp_path))
    collector.cpu_stats = [copy.deepcopy(s) for s in stats]
    return collector


def _write(path, text):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text)


def test_update_cpu_stats_advances(tmp_path):
    collector = _collector(tmp_path, [FIRST])
    want = [CPUStat(*([101.0] * 10))]
    collector.update_cpu_stats(want)
    assert collector.cpu_stats == want


def test_update_cpu_stats_ignores_jump_back(tmp_path):
    collector = _collector(tmp_path, [FIRST])
    jump_back = [CPUStat(*([99.9] * 10))]
    collector.update_cpu_stats(jump_back)
    assert collector.cpu_stats != jump_back
    assert collector.cpu_stats == [FIRST]


def test_update_cpu_stats_resets_on_idle_drop(tmp_path):
    collector = _collector(tmp_path, [FIRST])
    reset_idle = [
        CPUStat(
            user=102.0, nice=102.0, system=102.0, idle=1.0, iowait=102.0,
            irq=102.0, softirq=102.0, steal=102.0, guest=102.0, guest_nice=102.0,
        )
    ]
    collector.update_cpu_stats(reset_idle)
    assert collector.cpu_stats == reset_idle


def test_update_cpu_stats_resizes_on_cpu_count_change(tmp_path):
    collector = _collector(tmp_path, [FIRST])
    new = [CPUStat(user=1.0), CPUStat(user=2.0)]
    collector.update_cpu_stats(new)
    assert [s.user for s in collector.cpu_stats] == [1.0, 2.0]


def test_parse_proc_stat():
    text = (
        "cpu  300 0 150 3000 10 0 5 0 0 0\n"
        "cpu0 100 0 50 1000 5 0 2 0 0 0\n"
        "cpu2 200 1 100 2000 5 3 3 7 4 2\n"
        "intr 12345\n"
    )
    stats = parse_proc_stat(text)
    assert len(stats) == 3
    assert stats[0] == CPUStat(1.0, 0.0, 0.5, 10.0, 0.05, 0.0, 0.02, 0.0, 0.0, 0.0)
    assert stats[1] == CPUStat()
    assert stats[2].steal == pytest.approx(0.07)
    assert stats[2].guest_nice == pytest.approx(0.02)


def test_parse_proc_stat_rejects_bad_line():
    with pytest.raises(ValueError):
        parse_proc_stat("cpu0 abc\n")


CPUINFO = """processor\t: 0
vendor_id\t: GenuineIntel
cpu family\t: 6
model\t\t: 142
model name\t: Example CPU @ 2.00GHz
stepping\t: 10
microcode\t: 0xb4
cpu MHz\t\t: 799.998
cache size\t: 8192 KB
physical id\t: 0
siblings\t: 2
core id\t\t: 0
cpu cores\t: 2
flags\t\t: fpu vme sse avx
bugs\t\t: spectre_v1 meltdown
bogomips\t: 4224.00

processor\t: 1
vendor_id\t: GenuineIntel
physical id\t: 0
core id\t\t: 1
flags\t\t: fpu sse
"""


def test_parse_cpuinfo():
    info = parse_cpuinfo(CPUINFO)
    assert [cpu.processor for cpu in info] == [0, 1]
    first = info[0]
    assert first.vendor_id == "GenuineIntel"
    assert first.cpu_family == "6"
    assert first.model_name == "Example CPU @ 2.00GHz"
    assert first.cpu_mhz == pytest.approx(799.998)
    assert first.cache_size == "8192 KB"
    assert first.cpu_cores == 2
    assert first.flags == ["fpu", "vme", "sse", "avx"]
    assert first.bugs == ["spectre_v1", "meltdown"]
    assert info[1].core_id == "1"


def test_parse_cpuinfo_requires_processor_first():
    with pytest.raises(ValueError):
        parse_cpuinfo("vendor_id : GenuineIntel\n")


def test_update_stat_metrics(tmp_path):
    settings = _settings(tmp_path)
    _write(tmp_path / "proc" / "stat", "cpu  100 0 50 1000 0 0 0 0 0 0\ncpu0 100 0 50 1000 0 0 0 0 20 10\n")
    metrics = list(CPUCollector(settings).update())
    seconds = {m.labels["mode"]: m.value for m in metrics if m.name == "node_cpu_seconds_total"}
    assert seconds == {
        "user": 1.0, "nice": 0.0, "system": 0.5, "idle": 10.0,
        "iowait": 0.0, "irq": 0.0, "softirq": 0.0, "steal": 0.0,
    }
    guest = {m.labels["mode"]: m.value for m in metrics if m.name == "node_cpu_guest_seconds_total"}
    assert guest == {"user": 0.2, "nice": 0.1}


def test_update_without_guest(tmp_path):
    settings = _settings(tmp_path, cpu_guest=False)
    _write(tmp_path / "proc" / "stat", "cpu0 100 0 50 1000 0 0 0 0 20 10\n")
    names = {m.name for m in CPUCollector(settings).update()}
    assert names == {"node_cpu_seconds_total"}


def test_thermal_throttle(tmp_path):
    settings = _settings(tmp_path)
    _write(tmp_path / "proc" / "stat", "cpu0 1 1 1 1 1 1 1 1 1 1\n")
    base = tmp_path / "sys" / "devices" / "system" / "cpu"
    for cpu, core, core_count, package_count in (("cpu0", "0", "5", "7"), ("cpu1", "1", "3", "9")):
        _write(base / cpu / "topology" / "physical_package_id", "0\n")
        _write(base / cpu / "topology" / "core_id", core + "\n")
        _write(base / cpu / "thermal_throttle" / "core_throttle_count", core_count + "\n")
        _write(base / cpu / "thermal_throttle" / "package_throttle_count", package_count + "\n")
    (base / "cpu2").mkdir()
    metrics = list(CPUCollector(settings).update())
    packages = {
        m.labels["package"]: m.value for m in metrics if m.name == "node_cpu_package_throttles_total"
    }
    cores = {
        (m.labels["package"], m.labels["core"]): m.value
        for m in metrics
        if m.name == "node_cpu_core_throttles_total"
    }
    assert packages == {"0": 7.0}
    assert cores == {("0", "0"): 5.0, ("0", "1"): 3.0}


def test_info_enabled_by_flags_filter(tmp_path):
    settings = _settings(tmp_path, cpu_flags_include="^(sse|avx)$")
    _write(tmp_path / "proc" / "stat", "cpu0 1 1 1 1 1 1 1 1 1 1\n")
    _write(tmp_path / "proc" / "cpuinfo", CPUINFO)
    collector = CPUCollector(settings)
    assert collector.enable_info is True
    metrics = list(collector.update())
    flags = sorted(m.labels["flag"] for m in metrics if m.name == "node_cpu_flag_info")
    assert flags == ["avx", "sse"]
    assert not [m for m in metrics if m.name == "node_cpu_bug_info"]
    info = [m for m in metrics if m.name == "node_cpu_info"]
    assert len(info) == 2
    assert info[0].labels["model_name"] == "Example CPU @ 2.00GHz"
    assert info[0].labels["cachesize"] == "8192 KB"


def test_invalid_include_regex(tmp_path):
    with pytest.raises(ValueError, match="regular expressions"):
        CPUCollector(_settings(tmp_path, cpu_bugs_include="("))


def test_missing_procfs(tmp_path):
    with pytest.raises(RuntimeError, match="failed to open procfs"):
        CPUCollector(Settings(proc_path=str(tmp_path / "absent")))