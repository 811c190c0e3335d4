"""Metric descriptions, samples and the text exposition format."""

from __future__ import annotations

import math
from collections.abc import Iterable
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum


class ValueType(Enum):
    """Kind of value a metric sample carries."""

    COUNTER = "counter"
    GAUGE = "gauge"
    UNTYPED = "untyped"


def build_fq_name(namespace: str, subsystem: str, name: str) -> str:
    """Join the non-empty parts with underscores; an empty name gives ''."""
    if not name:
        return ""
    return "_".join(part for part in (namespace, subsystem, name) if part)


@dataclass(frozen=True)
class Desc:
    """Description of a metric: its name, help text and label names."""

    fq_name: str
    help: str
    variable_labels: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "variable_labels", tuple(self.variable_labels))


@dataclass(frozen=True)
class Metric:
    """A single constant sample of a described metric."""

    desc: Desc
    value_type: ValueType
    value: float
    label_values: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        labels = tuple(self.label_values)
        expected = len(self.desc.variable_labels)
        if len(labels) != expected:
            raise ValueError(
                f"inconsistent label cardinality for {self.desc.fq_name}: "
                f"expected {expected} label values but got {len(labels)} in {labels!r}"
            )
        object.__setattr__(self, "label_values", labels)
        object.__setattr__(self, "value", float(self.value))

    @property
    def name(self) -> str:
        return self.desc.fq_name

    @property
    def labels(self) -> dict[str, str]:
        return dict(zip(self.desc.variable_labels, self.label_values))


@dataclass(frozen=True)
class TypedDesc:
    """A description bound to the value type its samples use."""

    desc: Desc
    value_type: ValueType

    def metric(self, value: float, *args: str) -> Metric:
        """Build a sample with the given value and label values."""
        return Metric(self.desc, self.value_type, value, args)


def _format_value(value: float) -> str:
    if math.isnan(value):
        return "NaN"
    if math.isinf(value):
        return "+Inf" if value > 0 else "-Inf"
    if value == 0:
        return "0"
    sign, digits, exponent = Decimal(repr(value)).normalize().as_tuple()
    text = "".join(str(d) for d in digits)
    point = len(text) + exponent
    exp10 = point - 1
    prefix = "-" if sign else ""
    if exp10 < -4 or exp10 >= 6:
        mantissa = text[0] + ("." + text[1:] if len(text) > 1 else "")
        exp_sign = "-" if exp10 < 0 else "+"
        return f"{prefix}{mantissa}e{exp_sign}{abs(exp10):02d}"
    if point <= 0:
        body = "0." + "0" * (-point) + text
    elif point >= len(text):
        body = text + "0" * (point - len(text))
    else:
        body = text[:point] + "." + text[point:]
    return prefix + body


def _escape_help(text: str) -> str:
    return text.replace("\\", "\\\\").replace("\n", "\\n")


def _escape_label(text: str) -> str:
    return text.replace("\\", "\\\\").replace("\n", "\\n").replace('"', '\\"')


def _sample_line(metric: Metric) -> str:
    pairs = sorted(metric.labels.items())
    if pairs:
        inner = ",".join(f'{key}="{_escape_label(val)}"' for key, val in pairs)
        return f"{metric.name}{{{inner}}} {_format_value(metric.value)}"
    return f"{metric.name} {_format_value(metric.value)}"


def format_metrics(metrics: Iterable[Metric]) -> str:
    """Render samples in the text exposition format, sorted by name and labels."""
    families: dict[str, list[Metric]] = {}
    for metric in metrics:
        family = families.setdefault(metric.name, [])
        if family and family[0].value_type is not metric.value_type:
            raise ValueError(f"metric {metric.name} has conflicting value types")
        family.append(metric)

    lines: list[str] = []
    for name in sorted(families):
        family = families[name]
        first = family[0]
        lines.append(f"# HELP {name} {_escape_help(first.desc.help)}")
        lines.append(f"# TYPE {name} {first.value_type.value}")
        for metric in sorted(family, key=lambda m: sorted(m.labels.items())):
            lines.append(_sample_line(metric))
    return "".join(line + "\n" for line in lines)