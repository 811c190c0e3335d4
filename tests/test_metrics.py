import math

import pytest

from nodemetrics.metrics import (
    Desc,
    Metric,
    TypedDesc,
    ValueType,
    build_fq_name,
    format_metrics,
)


def test_build_fq_name_joins_parts():
    assert (
        build_fq_name("node", "scrape", "collector_duration_seconds")
        == "node_scrape_collector_duration_seconds"
    )


def test_build_fq_name_skips_empty_subsystem():
    assert build_fq_name("node", "", "entropy_available_bits") == "node_entropy_available_bits"


def test_build_fq_name_empty_name():
    assert build_fq_name("node", "cpu", "") == ""


def test_metric_label_cardinality_checked():
    desc = Desc("node_disk_io_now", "The number of I/Os currently in progress.", ("device",))
    with pytest.raises(ValueError):
        Metric(desc, ValueType.GAUGE, 0, ())


def test_metric_labels_mapping():
    desc = Desc("node_disk_info", "Info of /sys/block/<block_device>.", ("device", "major", "minor"))
    metric = Metric(desc, ValueType.GAUGE, 1, ("sda", "8", "0"))
    assert metric.labels == {"device": "sda", "major": "8", "minor": "0"}
    assert metric.name == "node_disk_info"


def test_typed_desc_metric():
    desc = Desc("node_arp_entries", "ARP entries by device", ("device",))
    metric = TypedDesc(desc, ValueType.GAUGE).metric(3, "eth0")
    assert metric.value == 3.0
    assert metric.label_values == ("eth0",)
    assert metric.value_type is ValueType.GAUGE


def _line(value):
    desc = Desc("node_x", "help", ())
    text = format_metrics([Metric(desc, ValueType.GAUGE, value)])
    return text.splitlines()[-1]


@pytest.mark.parametrize(
    "value,expected",
    [
        (68851, "68851"),
        (1.206301256e06, "1.206301256e+06"),
        (9653.880000000001, "9653.880000000001"),
        (0.10400000000000001, "0.10400000000000001"),
        (5.9910002e07, "5.9910002e+07"),
        (0, "0"),
        (1, "1"),
    ],
)
def test_value_formatting(value, expected):
    assert _line(value) == f"node_x {expected}"


def test_special_values():
    assert _line(math.inf) == "node_x +Inf"
    assert _line(-math.inf) == "node_x -Inf"
    assert _line(math.nan) == "node_x NaN"


def test_format_family_sorted():
    desc = Desc("node_disk_io_now", "The number of I/Os currently in progress.", ("device",))
    other = Desc("node_disk_info", "Info of /sys/block/<block_device>.", ("device", "major", "minor"))
    metrics = [
        Metric(desc, ValueType.GAUGE, 0, ("sdb",)),
        Metric(desc, ValueType.GAUGE, 0, ("dm-0",)),
        Metric(other, ValueType.GAUGE, 1, ("sda", "8", "0")),
    ]
    expected = (
        "# HELP node_disk_info Info of /sys/block/<block_device>.\n"
        "# TYPE node_disk_info gauge\n"
        'node_disk_info{device="sda",major="8",minor="0"} 1\n'
        "# HELP node_disk_io_now The number of I/Os currently in progress.\n"
        "# TYPE node_disk_io_now gauge\n"
        'node_disk_io_now{device="dm-0"} 0\n'
        'node_disk_io_now{device="sdb"} 0\n'
    )
    assert format_metrics(metrics) == expected


def test_labels_written_in_name_order_and_escaped():
    desc = Desc("node_m", "h", ("uuid", "backing_device"))
    text = format_metrics([Metric(desc, ValueType.COUNTER, 2, ('a"b', "bdev0"))])
    assert text.splitlines()[-1] == 'node_m{backing_device="bdev0",uuid="a\\"b"} 2'
    assert "# TYPE node_m counter" in text


def test_conflicting_types_rejected():
    desc = Desc("node_m", "h", ())
    with pytest.raises(ValueError):
        format_metrics([Metric(desc, ValueType.GAUGE, 1), Metric(desc, ValueType.COUNTER, 1)])