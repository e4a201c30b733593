"""Placement constraints as data.

A constraint is a predicate over a host attribute map, e.g.
``node.hostname == node-1`` or ``node.labels.zone != b``. One generic matcher
evaluates all of them; nothing here knows about specific hosts.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Mapping

_CONSTRAINT_RE = re.compile(r"^\s*([A-Za-z0-9_.\-]+)\s*(==|!=)\s*(.+?)\s*$")

KNOWN_ATTRIBUTES = {"node.id", "node.hostname", "node.role", "node.platform.os", "node.platform.arch"}
LABEL_PREFIXES = ("node.labels.", "engine.labels.")


@dataclass(frozen=True)
class PlacementConstraint:
    attribute: str
    operator: str  # ==|!=
    value: str

    def matches(self, attrs: Mapping[str, str]) -> bool:
        actual = attrs.get(self.attribute)
        if self.operator == "==":
            return actual == self.value
        return actual != self.value

    @property
    def pins_hostname(self) -> bool:
        return self.attribute == "node.hostname" and self.operator == "=="

    def __str__(self) -> str:
        return f"{self.attribute} {self.operator} {self.value}"


def parse_constraint(expr: str) -> PlacementConstraint:
    m = _CONSTRAINT_RE.match(expr)
    if not m:
        raise ValueError(f"Invalid placement constraint {expr!r}; expected '<attribute> ==|!= <value>'.")
    attribute, operator, value = m.groups()
    if attribute not in KNOWN_ATTRIBUTES and not attribute.startswith(LABEL_PREFIXES):
        raise ValueError(f"Unknown constraint attribute {attribute!r}.")
    return PlacementConstraint(attribute=attribute, operator=operator, value=value.strip("'\""))


def first_violation(constraints: tuple[PlacementConstraint, ...], attrs: Mapping[str, str]) -> PlacementConstraint | None:
    for c in constraints:
        if not c.matches(attrs):
            return c
    return None


def pinned_hostname(constraints: tuple[PlacementConstraint, ...]) -> str | None:
    for c in constraints:
        if c.pins_hostname:
            return c.value
    return None
