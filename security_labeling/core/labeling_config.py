"""Labeling configuration for the Security Labeling Service.

Centralizes FHIR constants, tuning bounds and policy switches used by the
rule compiler and the tagging pipeline.  All tunables are loaded from
environment variables with defaults that work out-of-the-box.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from enum import Enum
from typing import FrozenSet


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, str(default)))
    except (TypeError, ValueError):
        return default


def _env_str(name: str, default: str) -> str:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip() or default


# ---------------------------------------------------------------------------
# FHIR constants
# ---------------------------------------------------------------------------

LAST_SOURCE_SYNC_URL = "http://hl7.org/fhir/StructureDefinition/lastSourceSync"
CONFIDENTIALITY_SYSTEM = "http://terminology.hl7.org/CodeSystem/v3-Confidentiality"
RESTRICTED_CODE = "R"
RESTRICTED_DISPLAY = "restricted"

PROCESSING_TAG_SYSTEM = "http://example.org/fhir/CodeSystem/sls-processing"
PROCESSING_TAG_CODE = "sls-tagged"
PROCESSING_TAG_DISPLAY = "SLS Security Labeled"
PROCESSING_SUMMARY_URL = "http://example.org/fhir/StructureDefinition/processing-summary"

FOCUS_CONTEXT_CODE = "focus"

# US Core clinical resources that may carry sensitive codes.
DEFAULT_SUPPORTED_RESOURCES: FrozenSet[str] = frozenset(
    {
        "AllergyIntolerance",
        "Condition",
        "Procedure",
        "Immunization",
        "MedicationRequest",
        "Medication",
        "CarePlan",
        "CareTeam",
        "Goal",
        "Observation",
        "DiagnosticReport",
        "DocumentReference",
        "QuestionnaireResponse",
        "Specimen",
        "Encounter",
        "ServiceRequest",
    }
)


class UnsupportedResourcePolicy(str, Enum):
    """What full-mode output does with records of unsupported type."""

    PASSTHROUGH = "passthrough"
    DROP = "drop"
    REPORT = "report"


def _env_policy(name: str, default: UnsupportedResourcePolicy) -> UnsupportedResourcePolicy:
    try:
        return UnsupportedResourcePolicy(_env_str(name, default.value).lower())
    except ValueError:
        return default


def _env_resource_types(name: str) -> FrozenSet[str]:
    raw = os.getenv(name)
    if not raw:
        return DEFAULT_SUPPORTED_RESOURCES
    types = frozenset(part.strip() for part in raw.split(",") if part.strip())
    return types or DEFAULT_SUPPORTED_RESOURCES


# ---------------------------------------------------------------------------
# Tuning
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class LabelingTuning:
    """Bounds applied to untrusted input trees."""

    # Maximum nesting depth walked inside a single clinical record
    max_scan_depth: int = field(
        default_factory=lambda: _env_int("LABELING_MAX_SCAN_DEPTH", 64),
    )
    # Maximum nesting depth of expansion.contains inside one ValueSet
    max_member_depth: int = field(
        default_factory=lambda: _env_int("LABELING_MAX_MEMBER_DEPTH", 32),
    )
    # Worker threads used to scan records of one batch (1 = sequential)
    scan_workers: int = field(
        default_factory=lambda: max(1, _env_int("LABELING_SCAN_WORKERS", 1)),
    )


# ---------------------------------------------------------------------------
# Policy
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class LabelingPolicy:
    """Which records are eligible and how ineligible ones are emitted."""

    supported_resources: FrozenSet[str] = field(
        default_factory=lambda: _env_resource_types("LABELING_SUPPORTED_RESOURCES"),
    )
    unsupported_resource_policy: UnsupportedResourcePolicy = field(
        default_factory=lambda: _env_policy(
            "UNSUPPORTED_RESOURCE_POLICY", UnsupportedResourcePolicy.PASSTHROUGH
        ),
    )

    def is_supported(self, resource_type: object) -> bool:
        return isinstance(resource_type, str) and resource_type in self.supported_resources


# ---------------------------------------------------------------------------
# Singletons (import these)
# ---------------------------------------------------------------------------

labeling_tuning = LabelingTuning()
labeling_policy = LabelingPolicy()
