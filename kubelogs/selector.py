"""Kubernetes label selector parsing and matching.

Supports the set-based and equality-based syntax accepted by ``kubectl -l``::

    app=web, tier!=cache, env in (prod, staging), !canary, release, rank>3

An empty expression selects everything.
"""

from __future__ import annotations

import re
from collections.abc import Mapping
from dataclasses import dataclass

from kubelogs.errors import InvalidSelector

_NAME_RE = re.compile(r"^[A-Za-z0-9]([-A-Za-z0-9_.]*[A-Za-z0-9])?$")
_DNS_SUBDOMAIN_RE = re.compile(r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?(\.[a-z0-9]([-a-z0-9]*[a-z0-9])?)*$")

_TOKEN = r"[^\s!=<>(),]+"
_SET_RE = re.compile(rf"^(?P<key>{_TOKEN})\s+(?P<op>in|notin)\s*\((?P<values>[^()]*)\)$")
_CMP_RE = re.compile(rf"^(?P<key>{_TOKEN})\s*(?P<op>==|!=|=|>|<)\s*(?P<value>[^\s!=<>(),]*)$")
_EXISTS_RE = re.compile(rf"^(?P<neg>!)?\s*(?P<key>{_TOKEN})$")

EXISTS = "exists"
NOT_EXISTS = "!"
EQUALS = "="
NOT_EQUALS = "!="
IN = "in"
NOT_IN = "notin"
GREATER_THAN = ">"
LESS_THAN = "<"


def _validate_key(key: str) -> None:
    prefix, _, name = key.rpartition("/")
    if "/" in key:
        if not prefix or len(prefix) > 253 or not _DNS_SUBDOMAIN_RE.match(prefix):
            raise InvalidSelector(f"invalid label key prefix in {key!r}")
    if not name or len(name) > 63 or not _NAME_RE.match(name):
        raise InvalidSelector(f"invalid label key {key!r}")


def _validate_value(value: str) -> None:
    if value and (len(value) > 63 or not _NAME_RE.match(value)):
        raise InvalidSelector(f"invalid label value {value!r}")


def _split_requirements(expression: str) -> list[str]:
    """Split on top-level commas, leaving ``in (a, b)`` value lists intact."""
    parts: list[str] = []
    depth = 0
    current: list[str] = []
    for char in expression:
        if char == "(":
            depth += 1
        elif char == ")":
            depth -= 1
            if depth < 0:
                raise InvalidSelector(f"unbalanced parenthesis in {expression!r}")
        if char == "," and depth == 0:
            parts.append("".join(current).strip())
            current = []
            continue
        current.append(char)
    if depth != 0:
        raise InvalidSelector(f"unbalanced parenthesis in {expression!r}")
    parts.append("".join(current).strip())
    return parts


@dataclass(frozen=True)
class Requirement:
    key: str
    operator: str
    values: tuple[str, ...] = ()

    def matches(self, labels: Mapping[str, str]) -> bool:
        present = self.key in labels
        if self.operator == EXISTS:
            return present
        if self.operator == NOT_EXISTS:
            return not present
        if self.operator == EQUALS:
            return present and labels[self.key] == self.values[0]
        if self.operator == NOT_EQUALS:
            return not present or labels[self.key] != self.values[0]
        if self.operator == IN:
            return present and labels[self.key] in self.values
        if self.operator == NOT_IN:
            return not present or labels[self.key] not in self.values
        if not present:
            return False
        try:
            actual = int(labels[self.key])
        except ValueError:
            return False
        if self.operator == GREATER_THAN:
            return actual > int(self.values[0])
        return actual < int(self.values[0])

    def __str__(self) -> str:
        if self.operator == EXISTS:
            return self.key
        if self.operator == NOT_EXISTS:
            return f"!{self.key}"
        if self.operator in (IN, NOT_IN):
            return f"{self.key} {self.operator} ({','.join(sorted(self.values))})"
        return f"{self.key}{self.operator}{self.values[0]}"


def _parse_requirement(text: str) -> Requirement:
    match = _SET_RE.match(text)
    if match:
        key = match.group("key")
        _validate_key(key)
        values = tuple(v.strip() for v in match.group("values").split(","))
        if values == ("",):
            raise InvalidSelector(f"empty value set in {text!r}")
        for value in values:
            _validate_value(value)
        return Requirement(key, match.group("op"), values)

    match = _CMP_RE.match(text)
    if match:
        key, op, value = match.group("key"), match.group("op"), match.group("value")
        _validate_key(key)
        if op in (GREATER_THAN, LESS_THAN):
            try:
                int(value)
            except ValueError:
                raise InvalidSelector(f"{op} needs an integer value in {text!r}") from None
        else:
            _validate_value(value)
        if op == "==":
            op = EQUALS
        return Requirement(key, op, (value,))

    match = _EXISTS_RE.match(text)
    if match:
        key = match.group("key")
        _validate_key(key)
        return Requirement(key, NOT_EXISTS if match.group("neg") else EXISTS)

    raise InvalidSelector(f"cannot parse label selector requirement {text!r}")


@dataclass(frozen=True)
class LabelSelector:
    """Immutable, parsed label selector; a pod matches when every requirement does."""

    requirements: tuple[Requirement, ...] = ()

    @classmethod
    def parse(cls, expression: str | None) -> LabelSelector:
        if expression is None or not expression.strip():
            return cls()
        parts = _split_requirements(expression)
        if any(not part for part in parts):
            raise InvalidSelector(f"empty requirement in {expression!r}")
        return cls(tuple(_parse_requirement(part) for part in parts))

    @property
    def empty(self) -> bool:
        return not self.requirements

    def matches(self, labels: Mapping[str, str] | None) -> bool:
        labels = labels or {}
        return all(req.matches(labels) for req in self.requirements)

    def __str__(self) -> str:
        return ",".join(str(req) for req in self.requirements)


EVERYTHING = LabelSelector()
