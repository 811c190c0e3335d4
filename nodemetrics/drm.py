"""Graphics card statistics from the DRM class in sysfs."""

from __future__ import annotations

import glob
import os
import re
from collections.abc import Iterator
from dataclasses import dataclass

from .collector import NAMESPACE, Settings, read_uint_from_file, register_collector
from .metrics import Desc, Metric, ValueType, build_fq_name

SUBSYSTEM = "drm"

_CARD_NAME = re.compile(r"card\d+")

_NUMERIC_FILES = {
    "gpu_busy_percent": "gpu_busy_percent",
    "memory_gtt_size": "mem_info_gtt_total",
    "memory_gtt_used": "mem_info_gtt_used",
    "memory_visible_vram_size": "mem_info_vis_vram_total",
    "memory_visible_vram_used": "mem_info_vis_vram_used",
    "memory_vram_size": "mem_info_vram_total",
    "memory_vram_used": "mem_info_vram_used",
}

_TEXT_FILES = {
    "memory_vram_vendor": "mem_info_vram_vendor",
    "power_dpm_force_performance_level": "power_dpm_force_performance_level",
    "unique_id": "unique_id",
}


@dataclass
class AMDGPUStats:
    """Statistics of one card driven by amdgpu; missing values stay at their defaults."""

    name: str
    gpu_busy_percent: int = 0
    memory_gtt_size: int = 0
    memory_gtt_used: int = 0
    memory_visible_vram_size: int = 0
    memory_visible_vram_used: int = 0
    memory_vram_size: int = 0
    memory_vram_used: int = 0
    memory_vram_vendor: str = ""
    power_dpm_force_performance_level: str = ""
    unique_id: str = ""


def _read_text(path: str) -> str:
    with open(path, encoding="utf-8", errors="replace") as handle:
        return handle.read().strip()


def _read_card(card: str) -> AMDGPUStats | None:
    device = os.path.join(card, "device")
    if "DRIVER=amdgpu" not in _read_text(os.path.join(device, "uevent")):
        return None
    stats = AMDGPUStats(name=os.path.basename(card))
    for attribute, filename in _NUMERIC_FILES.items():
        try:
            setattr(stats, attribute, read_uint_from_file(os.path.join(device, filename)))
        except (OSError, ValueError):
            pass
    for attribute, filename in _TEXT_FILES.items():
        try:
            setattr(stats, attribute, _read_text(os.path.join(device, filename)))
        except OSError:
            pass
    return stats


def read_amdgpu_stats(sys_path: str) -> list[AMDGPUStats]:
    """Read every amdgpu card under class/drm; other cards are left out."""
    pattern = os.path.join(sys_path, "class", "drm", "card[0-9]*")
    cards = sorted(
        path for path in glob.glob(pattern) if _CARD_NAME.fullmatch(os.path.basename(path))
    )
    result = []
    for card in cards:
        stats = _read_card(card)
        if stats is not None:
            result.append(stats)
    return result


def _card_desc(name: str, help_text: str) -> Desc:
    return Desc(build_fq_name(NAMESPACE, SUBSYSTEM, name), help_text, ("card",))


@register_collector("drm", False)
class DRMCollector:
    """Exposes per-card GPU and memory statistics."""

    def __init__(self, settings: Settings | None = None) -> None:
        self.settings = settings if settings is not None else Settings()
        sys_path = self.settings.sys_path
        if not os.path.isdir(sys_path):
            raise RuntimeError(f"failed to open sysfs: {sys_path!r} is not a directory")

        self.card_info = Desc(
            build_fq_name(NAMESPACE, SUBSYSTEM, "card_info"),
            "Card information",
            ("card", "memory_vendor", "power_performance_level", "unique_id", "vendor"),
        )
        self.gpu_busy_percent = _card_desc("gpu_busy_percent", "How busy the GPU is as a percentage.")
        self.memory_gtt_size = _card_desc(
            "memory_gtt_size_bytes", "The size of the graphics translation table (GTT) block in bytes."
        )
        self.memory_gtt_used = _card_desc(
            "memory_gtt_used_bytes",
            "The used amount of the graphics translation table (GTT) block in bytes.",
        )
        self.memory_visible_vram_size = _card_desc(
            "memory_vis_vram_size_bytes", "The size of visible VRAM in bytes."
        )
        self.memory_visible_vram_used = _card_desc(
            "memory_vis_vram_used_bytes", "The used amount of visible VRAM in bytes."
        )
        self.memory_vram_size = _card_desc("memory_vram_size_bytes", "The size of VRAM in bytes.")
        self.memory_vram_used = _card_desc("memory_vram_used_bytes", "The used amount of VRAM in bytes.")

    def update(self) -> Iterator[Metric]:
        vendor = "amd"
        gauge = ValueType.GAUGE
        for s in read_amdgpu_stats(self.settings.sys_path):
            yield Metric(
                self.card_info, gauge, 1,
                (s.name, s.memory_vram_vendor, s.power_dpm_force_performance_level, s.unique_id, vendor),
            )
            for desc, value in (
                (self.gpu_busy_percent, s.gpu_busy_percent),
                (self.memory_gtt_size, s.memory_gtt_size),
                (self.memory_gtt_used, s.memory_gtt_used),
                (self.memory_vram_size, s.memory_vram_size),
                (self.memory_vram_used, s.memory_vram_used),
                (self.memory_visible_vram_size, s.memory_visible_vram_size),
                (self.memory_visible_vram_used, s.memory_visible_vram_used),
            ):
                yield Metric(desc, gauge, float(value), (s.name,))