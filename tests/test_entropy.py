import pytest

from nodemetrics.collector import Settings
from nodemetrics.entropy import EntropyCollector, read_kernel_random


def _proc(tmp_path, **files):
    random_dir = tmp_path / "proc" / "sys" / "kernel" / "random"
    random_dir.mkdir(parents=True)
    for name, content in files.items():
        (random_dir / name).write_text(content)
    return str(tmp_path / "proc")


def test_read_kernel_random(tmp_path):
    proc = _proc(tmp_path, entropy_avail="3210\n", poolsize="4096\n")
    assert read_kernel_random(proc) == {"entropy_avail": 3210, "poolsize": 4096}


def test_read_kernel_random_bad_value(tmp_path):
    proc = _proc(tmp_path, entropy_avail="many\n")
    with pytest.raises(ValueError):
        read_kernel_random(proc)


def test_update(tmp_path):
    proc = _proc(tmp_path, entropy_avail="3210\n", poolsize="4096\n")
    metrics = list(EntropyCollector(Settings(proc_path=proc)).update())
    assert [(m.name, m.value) for m in metrics] == [
        ("node_entropy_available_bits", 3210.0),
        ("node_entropy_pool_size_bits", 4096.0),
    ]


def test_update_missing_entropy_avail(tmp_path):
    proc = _proc(tmp_path, poolsize="4096\n")
    with pytest.raises(RuntimeError, match="entropy_avail"):
        list(EntropyCollector(Settings(proc_path=proc)).update())


def test_update_missing_poolsize_keeps_first_metric(tmp_path):
    proc = _proc(tmp_path, entropy_avail="3210\n")
    produced = []
    with pytest.raises(RuntimeError, match="poolsize"):
        for metric in EntropyCollector(Settings(proc_path=proc)).update():
            produced.append(metric.value)
    assert produced == [3210.0]


def test_missing_procfs(tmp_path):
    with pytest.raises(RuntimeError, match="failed to open procfs"):
        EntropyCollector(Settings(proc_path=str(tmp_path / "absent")))