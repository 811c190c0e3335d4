"""DRBD device statistics read from the kernel's drbd status file."""

from __future__ import annotations

import logging
from collections.abc import Iterator
from dataclasses import dataclass

from .collector import NAMESPACE, NoDataError, Settings, register_collector
from .metrics import Desc, Metric, ValueType, build_fq_name

SUBSYSTEM = "drbd"

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class _NumericalMetric:
    desc: Desc
    value_type: ValueType
    multiplier: float


@dataclass(frozen=True)
class _StringPairMetric:
    desc: Desc
    value_ok: str

    def samples(self, key: str, device: str, value: str) -> list[Metric]:
        """Split a local/remote pair and report whether each side is in the expected state."""
        parts = value.split("/")
        if len(parts) < 2:
            raise ValueError(f"invalid string pair {value!r} for {key!r}")
        return [
            Metric(
                self.desc,
                ValueType.GAUGE,
                1.0 if state == self.value_ok else 0.0,
                (device, node),
            )
            for node, state in zip(("local", "remote"), parts)
        ]


def _numerical(name: str, help_text: str, value_type: ValueType, multiplier: float) -> _NumericalMetric:
    return _NumericalMetric(
        Desc(build_fq_name(NAMESPACE, SUBSYSTEM, name), help_text, ("device",)),
        value_type,
        multiplier,
    )


def _string_pair(name: str, help_text: str, value_ok: str) -> _StringPairMetric:
    return _StringPairMetric(
        Desc(build_fq_name(NAMESPACE, SUBSYSTEM, name), help_text, ("device", "node")),
        value_ok,
    )


_COUNTER = ValueType.COUNTER
_GAUGE = ValueType.GAUGE

NUMERICAL_METRICS: dict[str, _NumericalMetric] = {
    "ns": _numerical("network_sent_bytes_total",
                     "Total number of bytes sent via the network.", _COUNTER, 1024),
    "nr": _numerical("network_received_bytes_total",
                     "Total number of bytes received via the network.", _COUNTER, 1),
    "dw": _numerical("disk_written_bytes_total",
                     "Net data written on local hard disk; in bytes.", _COUNTER, 1024),
    "dr": _numerical("disk_read_bytes_total",
                     "Net data read from local hard disk; in bytes.", _COUNTER, 1024),
    "al": _numerical("activitylog_writes_total",
                     "Number of updates of the activity log area of the meta data.", _COUNTER, 1),
    "bm": _numerical("bitmap_writes_total",
                     "Number of updates of the bitmap area of the meta data.", _COUNTER, 1),
    "lo": _numerical("local_pending",
                     "Number of open requests to the local I/O sub-system.", _GAUGE, 1),
    "pe": _numerical("remote_pending",
                     "Number of requests sent to the peer, but that have not yet been answered "
                     "by the latter.", _GAUGE, 1),
    "ua": _numerical("remote_unacknowledged",
                     "Number of requests received by the peer via the network connection, but "
                     "that have not yet been answered.", _GAUGE, 1),
    "ap": _numerical("application_pending",
                     "Number of block I/O requests forwarded to DRBD, but not yet answered by DRBD.",
                     _GAUGE, 1),
    "ep": _numerical("epochs", "Number of Epochs currently on the fly.", _GAUGE, 1),
    "oos": _numerical("out_of_sync_bytes",
                      "Amount of data known to be out of sync; in bytes.", _GAUGE, 1024),
}

STRING_PAIR_METRICS: dict[str, _StringPairMetric] = {
    "ro": _string_pair("node_role_is_primary",
                       "Whether the role of the node is in the primary state.", "Primary"),
    "ds": _string_pair("disk_state_is_up_to_date",
                       "Whether the disk of the node is up to date.", "UpToDate"),
}

CONNECTED_DESC = Desc(
    build_fq_name(NAMESPACE, SUBSYSTEM, "connected"),
    "Whether DRBD is connected to the peer.",
    ("device",),
)


def _is_uint(text: str) -> bool:
    return text.isascii() and text.isdigit()


def drbd_metrics(text: str) -> list[Metric]:
    """Turn the whitespace-separated key:value pairs of a drbd status listing into samples."""
    metrics: list[Metric] = []
    device = "unknown"

    for field_ in text.split():
        kv = field_.split(":")
        if len(kv) != 2:
            log.debug("skipping invalid key:value pair: field=%s", field_)
            continue
        key, value = kv

        if _is_uint(key) and value == "":
            # A new DRBD device starts here.
            device = f"drbd{int(key)}"
            continue

        numerical = NUMERICAL_METRICS.get(key)
        if numerical is not None:
            try:
                number = float(value)
            except ValueError:
                raise ValueError(f"invalid value {value!r} for {key!r}") from None
            metrics.append(
                Metric(numerical.desc, numerical.value_type, number * numerical.multiplier, (device,))
            )
            continue

        pair = STRING_PAIR_METRICS.get(key)
        if pair is not None:
            metrics.extend(pair.samples(key, device, value))
            continue

        if key == "cs":
            connected = 1.0 if value == "Connected" else 0.0
            metrics.append(Metric(CONNECTED_DESC, ValueType.GAUGE, connected, (device,)))
            continue

        log.debug("unhandled key-value pair: key=%s value=%s", key, value)

    return metrics


@register_collector("drbd", False)
class DRBDCollector:
    """Exposes DRBD replication and disk statistics."""

    def __init__(self, settings: Settings | None = None) -> None:
        self.settings = settings if settings is not None else Settings()

    def update(self) -> Iterator[Metric]:
        stats_file = self.settings.proc_file("drbd")
        try:
            with open(stats_file, encoding="utf-8", errors="replace") as handle:
                text = handle.read()
        except FileNotFoundError as err:
            log.debug("stats file does not exist, skipping: file=%s", stats_file)
            raise NoDataError() from err
        yield from drbd_metrics(text)