"""Managed-field diffing with semantic normalization.

The control plane echoes values back in its own canonical form, so a naive
string comparison reports drift that is not there. Normalization rules map
equivalent spellings onto one value before comparing.

COMMON FALSE POSITIVES HANDLED:
1. Memory units: "1Gi" vs "1024Mi"
2. CPU units: "1" vs "1000m" vs "1.0"
3. Boolean spellings: "True" vs "true"
4. Enum case: "docker" vs "DOCKER"
5. Surrounding whitespace

Only fields this system manages are compared. Unmanaged fields returned by
the cloud are ignored, except for wholesale families (env vars, secret refs,
volume mounts) where an observed key the desired state lacks is itself drift.
"""

from __future__ import annotations

import fnmatch
import logging
from collections.abc import Mapping
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from enum import Enum

from .catalog import ResourceSpec

logger = logging.getLogger(__name__)


class NormalizationType(str, Enum):
    """Types of normalization operations."""

    MEMORY_QUANTITY = "memory_quantity"
    CPU_QUANTITY = "cpu_quantity"
    BOOLEAN_NORMALIZE = "boolean_normalize"
    CASE_INSENSITIVE = "case_insensitive"


@dataclass(frozen=True)
class NormalizationRule:
    """A single normalization rule.

    Attributes:
        kind: Resource kind value to match (supports wildcards)
        field_pattern: Field name pattern to match (supports wildcards)
        normalization_type: Type of normalization to apply
    """

    kind: str
    field_pattern: str
    normalization_type: NormalizationType

    def matches(self, kind: str, field_name: str) -> bool:
        return fnmatch.fnmatchcase(kind, self.kind) and fnmatch.fnmatchcase(
            field_name, self.field_pattern
        )


DEFAULT_NORMALIZATION_RULES: list[NormalizationRule] = [
    NormalizationRule("compute-service", "memory", NormalizationType.MEMORY_QUANTITY),
    NormalizationRule("compute-service", "cpu", NormalizationType.CPU_QUANTITY),
    NormalizationRule("*", "*Enabled", NormalizationType.BOOLEAN_NORMALIZE),
    NormalizationRule("artifact-repository", "format", NormalizationType.CASE_INSENSITIVE),
    NormalizationRule(
        "database-instance", "availabilityType", NormalizationType.CASE_INSENSITIVE
    ),
]

_MEMORY_FACTORS_MI: dict[str, Decimal] = {
    "Ki": Decimal(1) / Decimal(1024),
    "Mi": Decimal(1),
    "Gi": Decimal(1024),
    "Ti": Decimal(1024 * 1024),
    "K": Decimal(1000) / Decimal(1024 * 1024),
    "M": Decimal(1000 * 1000) / Decimal(1024 * 1024),
    "G": Decimal(1000 * 1000 * 1000) / Decimal(1024 * 1024),
}


def _normalize_memory(value: str) -> str:
    for suffix in sorted(_MEMORY_FACTORS_MI, key=len, reverse=True):
        if value.endswith(suffix):
            number = value[: -len(suffix)]
            try:
                mebibytes = Decimal(number) * _MEMORY_FACTORS_MI[suffix]
            except InvalidOperation:
                return value
            return f"{mebibytes.normalize():f}Mi"
    return value


def _normalize_cpu(value: str) -> str:
    try:
        if value.endswith("m"):
            cores = Decimal(value[:-1]) / Decimal(1000)
        else:
            cores = Decimal(value)
    except InvalidOperation:
        return value
    return f"{cores.normalize():f}"


class DiffNormalizer:
    """Applies normalization rules to field values."""

    def __init__(self, rules: list[NormalizationRule] | None = None) -> None:
        self._rules = rules if rules is not None else DEFAULT_NORMALIZATION_RULES

    def normalize(self, kind: str, field_name: str, value: str | None) -> str | None:
        """Return the canonical spelling of ``value`` for comparison."""
        if value is None:
            return None
        result = value.strip()
        for rule in self._rules:
            if not rule.matches(kind, field_name):
                continue
            match rule.normalization_type:
                case NormalizationType.MEMORY_QUANTITY:
                    result = _normalize_memory(result)
                case NormalizationType.CPU_QUANTITY:
                    result = _normalize_cpu(result)
                case NormalizationType.BOOLEAN_NORMALIZE:
                    result = "true" if result.lower() in ("true", "1", "yes") else "false"
                case NormalizationType.CASE_INSENSITIVE:
                    result = result.upper()
        return result

    def equivalent(self, kind: str, field_name: str, a: str | None, b: str | None) -> bool:
        return self.normalize(kind, field_name, a) == self.normalize(kind, field_name, b)


@dataclass(frozen=True)
class FieldDiff:
    """One managed field whose observed value differs from the desired one."""

    field: str
    desired: str | None
    observed: str | None


def managed_field_names(spec: ResourceSpec) -> list[str]:
    """Fields of ``spec`` that are compared against the cloud."""
    rule = spec.rule
    if rule.managed_fields is not None:
        return [f for f in rule.managed_fields if f in spec.desired_fields]
    excluded = set(rule.create_only_fields) | set(rule.write_only_fields)
    return [f for f in spec.desired_fields if f not in excluded]


def diff_managed_fields(
    spec: ResourceSpec,
    observed: Mapping[str, str],
    normalizer: DiffNormalizer | None = None,
) -> list[FieldDiff]:
    """Compare the managed subset of ``spec`` with observed fields.

    Returns:
        One FieldDiff per drifted field; empty when the resource matches.
    """
    normalizer = normalizer or DiffNormalizer()
    kind = spec.kind.value
    diffs: list[FieldDiff] = []

    for name in managed_field_names(spec):
        desired = spec.desired_fields[name]
        current = observed.get(name)
        if not normalizer.equivalent(kind, name, desired, current):
            diffs.append(FieldDiff(field=name, desired=desired, observed=current))

    # Stale keys from a previous deployment shape
    for prefix in spec.rule.wholesale_prefixes:
        for name, current in observed.items():
            if name.startswith(prefix) and name not in spec.desired_fields:
                diffs.append(FieldDiff(field=name, desired=None, observed=current))

    if diffs:
        logger.debug(
            "Managed field drift detected",
            extra={"resource": spec.key, "fields": [d.field for d in diffs]},
        )
    return diffs
