import pytest

from nodemetrics.collector import (
    SCRAPE_DURATION_DESC,
    SCRAPE_SUCCESS_DESC,
    NoDataError,
    Registry,
    Settings,
    default_registry,
    read_uint_from_file,
    register_collector,
)
from nodemetrics.metrics import Desc, TypedDesc, ValueType

_DESC = TypedDesc(Desc("node_test_value", "Test value.", ("item",)), ValueType.GAUGE)


class _Good:
    def __init__(self, settings):
        self.settings = settings

    def update(self):
        yield _DESC.metric(7.0, "a")


class _Failing:
    def __init__(self, settings):
        self.settings = settings

    def update(self):
        yield _DESC.metric(1.0, "partial")
        raise RuntimeError("boom")


class _Empty:
    def __init__(self, settings):
        self.settings = settings

    def update(self):
        raise NoDataError()
        yield  # pragma: no cover


def _success(metrics, name):
    return [
        m.value
        for m in metrics
        if m.desc == SCRAPE_SUCCESS_DESC and m.label_values == (name,)
    ]


def test_settings_paths():
    settings = Settings(proc_path="/tmp/proc", sys_path="/tmp/sys")
    assert settings.proc_file("net/arp") == "/tmp/proc/net/arp"
    assert settings.sys_file("class/net") == "/tmp/sys/class/net"


def test_read_uint_from_file(tmp_path):
    path = tmp_path / "value"
    path.write_text("  42\n")
    assert read_uint_from_file(path) == 42


@pytest.mark.parametrize("content", ["abc", "-1", "", "1.5", str(2**64)])
def test_read_uint_from_file_invalid(tmp_path, content):
    path = tmp_path / "value"
    path.write_text(content)
    with pytest.raises(ValueError):
        read_uint_from_file(path)


def test_read_uint_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        read_uint_from_file(tmp_path / "missing")


def test_collect_success():
    registry = Registry()
    registry.register("good", True, _Good)
    node = registry.create(Settings())
    metrics = node.collect()
    assert _success(metrics, "good") == [1.0]
    values = [m.value for m in metrics if m.name == "node_test_value"]
    assert values == [7.0]
    durations = [m for m in metrics if m.desc == SCRAPE_DURATION_DESC]
    assert len(durations) == 1 and durations[0].value >= 0


def test_collect_failure_keeps_partial_metrics():
    registry = Registry()
    registry.register("bad", True, _Failing)
    registry.register("empty", True, _Empty)
    metrics = registry.create(Settings()).collect()
    assert _success(metrics, "bad") == [0.0]
    assert _success(metrics, "empty") == [0.0]
    assert [m.label_values for m in metrics if m.name == "node_test_value"] == [("partial",)]


def test_filters():
    registry = Registry()
    registry.register("a", True, _Good)
    registry.register("b", True, _Good)
    registry.register("c", False, _Good)
    assert set(registry.create(Settings()).collectors) == {"a", "b"}
    assert set(registry.create(Settings(), ["a"]).collectors) == {"a"}
    with pytest.raises(ValueError, match="disabled collector: c"):
        registry.create(Settings(), ["c"])
    with pytest.raises(ValueError, match="missing collector: zzz"):
        registry.create(Settings(), ["zzz"])


def test_instances_are_cached():
    registry = Registry()
    registry.register("a", True, _Good)
    first = registry.create(Settings()).collectors["a"]
    second = registry.create(Settings()).collectors["a"]
    assert first is second


def test_disable_defaults_keeps_forced():
    registry = Registry()
    registry.register("a", True, _Good)
    registry.register("b", True, _Good)
    registry.register("c", False, _Good)
    registry.set_enabled("b", True)
    registry.set_enabled("c", True)
    registry.disable_defaults()
    assert registry.is_enabled("a") is False
    assert registry.is_enabled("b") is True
    assert registry.is_enabled("c") is True


def test_duplicate_and_unknown():
    registry = Registry()
    registry.register("a", True, _Good)
    with pytest.raises(ValueError):
        registry.register("a", False, _Good)
    with pytest.raises(KeyError):
        registry.is_enabled("nope")


def test_register_collector_decorator():
    class _Decorated(_Good):
        pass

    result = register_collector("test_decorated_collector", False)(_Decorated)
    assert result is _Decorated
    assert default_registry.is_enabled("test_decorated_collector") is False


def test_describe():
    node = Registry().create(Settings())
    names = [d.fq_name for d in node.describe()]
    assert names == [
        "node_scrape_collector_duration_seconds",
        "node_scrape_collector_success",
    ]
    assert node.collect() == []