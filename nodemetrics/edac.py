"""Memory error counters from the EDAC subsystem."""

from __future__ import annotations

import glob
import os
import re
from collections.abc import Iterator

from .collector import NAMESPACE, Settings, read_uint_from_file, register_collector
from .metrics import Desc, Metric, ValueType, build_fq_name

SUBSYSTEM = "edac"

_MEM_CONTROLLER_RE = re.compile(r".*devices/system/edac/mc/mc([0-9]*)")
_MEM_CSROW_RE = re.compile(r".*devices/system/edac/mc/mc[0-9]*/csrow([0-9]*)")


def _read(path: str, what: str) -> int:
    try:
        return read_uint_from_file(path)
    except (OSError, ValueError) as err:
        raise RuntimeError(f"couldn't get {what}: {err}") from err


@register_collector("edac", True)
class EdacCollector:
    """Exposes correctable and uncorrectable memory error counts."""

    def __init__(self, settings: Settings | None = None) -> None:
        self.settings = settings if settings is not None else Settings()
        self.ce_count = Desc(
            build_fq_name(NAMESPACE, SUBSYSTEM, "correctable_errors_total"),
            "Total correctable memory errors.",
            ("controller",),
        )
        self.ue_count = Desc(
            build_fq_name(NAMESPACE, SUBSYSTEM, "uncorrectable_errors_total"),
            "Total uncorrectable memory errors.",
            ("controller",),
        )
        self.csrow_ce_count = Desc(
            build_fq_name(NAMESPACE, SUBSYSTEM, "csrow_correctable_errors_total"),
            "Total correctable memory errors for this csrow.",
            ("controller", "csrow"),
        )
        self.csrow_ue_count = Desc(
            build_fq_name(NAMESPACE, SUBSYSTEM, "csrow_uncorrectable_errors_total"),
            "Total uncorrectable memory errors for this csrow.",
            ("controller", "csrow"),
        )

    def update(self) -> Iterator[Metric]:
        counter = ValueType.COUNTER
        controllers = sorted(glob.glob(self.settings.sys_file("devices/system/edac/mc/mc[0-9]*")))
        for controller in controllers:
            match = _MEM_CONTROLLER_RE.search(controller.replace(os.sep, "/"))
            if match is None:
                raise RuntimeError(f"controller string didn't match regexp: {controller}")
            number = match.group(1)

            def controller_value(name: str) -> int:
                return _read(os.path.join(controller, name), f"{name} for controller {number}")

            yield Metric(self.ce_count, counter, controller_value("ce_count"), (number,))
            yield Metric(self.csrow_ce_count, counter, controller_value("ce_noinfo_count"),
                         (number, "unknown"))
            yield Metric(self.ue_count, counter, controller_value("ue_count"), (number,))
            yield Metric(self.csrow_ue_count, counter, controller_value("ue_noinfo_count"),
                         (number, "unknown"))

            for csrow in sorted(glob.glob(os.path.join(controller, "csrow[0-9]*"))):
                csrow_match = _MEM_CSROW_RE.search(csrow.replace(os.sep, "/"))
                if csrow_match is None:
                    raise RuntimeError(f"csrow string didn't match regexp: {csrow}")
                csrow_number = csrow_match.group(1)
                where = f"controller/csrow {number}/{csrow_number}"
                yield Metric(
                    self.csrow_ce_count, counter,
                    _read(os.path.join(csrow, "ce_count"), f"ce_count for {where}"),
                    (number, csrow_number),
                )
                yield Metric(
                    self.csrow_ue_count, counter,
                    _read(os.path.join(csrow, "ue_count"), f"ue_count for {where}"),
                    (number, csrow_number),
                )