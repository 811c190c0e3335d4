import pytest

from nodemetrics.collector import NoDataError, Settings
from nodemetrics.drbd import (
    CONNECTED_DESC,
    NUMERICAL_METRICS,
    STRING_PAIR_METRICS,
    DRBDCollector,
    drbd_metrics,
)
from nodemetrics.metrics import Metric, ValueType

SAMPLE = """version: 8.4.3 (api:1/proto:86-101)
srcversion: 1A9F77B1CA5FF92235C2213
 1: cs:Connected ro:Primary/Secondary ds:UpToDate/UpToDate C r-----
    ns:100 nr:200 dw:300 dr:400 al:5 bm:6 lo:0 pe:0 ua:0 ap:0 ep:1 wo:f oos:0
"""


def test_connected_state():
    metrics = drbd_metrics(SAMPLE)
    assert Metric(CONNECTED_DESC, ValueType.GAUGE, 1.0, ("drbd1",)) in metrics


def test_disconnected_state():
    metrics = drbd_metrics(" 2: cs:WFConnection\n")
    assert metrics == [Metric(CONNECTED_DESC, ValueType.GAUGE, 0.0, ("drbd2",))]


def test_string_pairs():
    metrics = drbd_metrics(SAMPLE)
    role = STRING_PAIR_METRICS["ro"].desc
    disk = STRING_PAIR_METRICS["ds"].desc
    assert Metric(role, ValueType.GAUGE, 1.0, ("drbd1", "local")) in metrics
    assert Metric(role, ValueType.GAUGE, 0.0, ("drbd1", "remote")) in metrics
    assert Metric(disk, ValueType.GAUGE, 1.0, ("drbd1", "local")) in metrics
    assert Metric(disk, ValueType.GAUGE, 1.0, ("drbd1", "remote")) in metrics


def test_numerical_without_multiplier():
    metrics = drbd_metrics(SAMPLE)
    nr = NUMERICAL_METRICS["nr"]
    assert Metric(nr.desc, ValueType.COUNTER, 200.0, ("drbd1",)) in metrics
    ep = NUMERICAL_METRICS["ep"]
    assert Metric(ep.desc, ValueType.GAUGE, 1.0, ("drbd1",)) in metrics


def test_numerical_in_kibibytes_is_scaled():
    metrics = drbd_metrics(" 0:\n ns:1\n")
    ns = NUMERICAL_METRICS["ns"]
    assert metrics == [Metric(ns.desc, ValueType.COUNTER, 1024.0, ("drbd0",))]


def test_every_numerical_key_is_reported_once():
    metrics = drbd_metrics(SAMPLE)
    descs = [m.desc for m in metrics]
    for numerical in NUMERICAL_METRICS.values():
        assert descs.count(numerical.desc) == 1


def test_device_defaults_to_unknown():
    metrics = drbd_metrics("cs:Connected\n")
    assert metrics == [Metric(CONNECTED_DESC, ValueType.GAUGE, 1.0, ("unknown",))]


def test_unhandled_fields_are_skipped():
    assert drbd_metrics("wo:f C r----- a:b:c\n") == []


def test_invalid_number_raises():
    with pytest.raises(ValueError):
        drbd_metrics(" 1: ns:abc\n")


def test_incomplete_string_pair_raises():
    with pytest.raises(ValueError):
        drbd_metrics(" 1: ro:Primary\n")


def test_collector_missing_file_is_no_data(tmp_path):
    collector = DRBDCollector(Settings(proc_path=str(tmp_path), sys_path=str(tmp_path)))
    with pytest.raises(NoDataError):
        list(collector.update())


def test_collector_reads_status_file(tmp_path):
    (tmp_path / "drbd").write_text(SAMPLE)
    collector = DRBDCollector(Settings(proc_path=str(tmp_path), sys_path=str(tmp_path)))
    assert list(collector.update()) == drbd_metrics(SAMPLE)