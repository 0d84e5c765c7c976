"""Bundle assembler: turns per-record outcomes into the response Bundle.

Narrowed mode emits a ``batch`` Bundle holding only scanned records, each with a
PUT directive (POST when the record has no id). Full mode mirrors the request
Bundle entry-for-entry. Both modes carry the deduplicated union of emitted
labels in ``meta.security`` and the processing counters in a summary extension.
Malformed security codings are left in the records but kept out of the union.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from security_labeling.core.labeling_config import (
    PROCESSING_SUMMARY_URL,
    PROCESSING_TAG_CODE,
    PROCESSING_TAG_DISPLAY,
    PROCESSING_TAG_SYSTEM,
    LabelingPolicy,
    UnsupportedResourcePolicy,
    labeling_policy,
)
from security_labeling.services.fhir_time import format_fhir_instant, utc_now
from security_labeling.services.label_applier import label_identity
from security_labeling.services.labeling_types import (
    Disposition,
    OutputMode,
    ProcessingOutcome,
    TaggingCounters,
    TaggingResult,
    TopicLabel,
)

# Bundle fields copied verbatim into full-mode output.
_PRESERVED_BUNDLE_FIELDS = ("identifier", "timestamp", "total", "link")


def count_outcomes(outcomes: Iterable[ProcessingOutcome]) -> TaggingCounters:
    counters = TaggingCounters()
    for outcome in outcomes:
        if outcome.disposition is Disposition.UNSUPPORTED:
            counters.unsupported += 1
        elif outcome.disposition is Disposition.SKIPPED:
            counters.skipped += 1
        else:
            counters.analyzed += 1
            if outcome.labeled:
                counters.labeled += 1
    return counters


def collect_distinct_labels(entries: Iterable[Mapping[str, Any]]) -> List[TopicLabel]:
    """Union of every entry's ``meta.security``, first occurrence wins."""
    distinct: Dict[TopicLabel, TopicLabel] = {}
    for entry in entries:
        resource = entry.get("resource")
        meta = resource.get("meta") if isinstance(resource, dict) else None
        security = meta.get("security") if isinstance(meta, dict) else None
        if not isinstance(security, list):
            continue
        for coding in security:
            identity = label_identity(coding)
            if identity is None:
                continue
            display = coding.get("display")
            label = TopicLabel(
                system=identity[0],
                code=identity[1],
                display=display if isinstance(display, str) else None,
            )
            distinct.setdefault(label, label)
    return list(distinct.values())


def update_directive(resource: Mapping[str, Any]) -> Dict[str, Any]:
    """PUT by id; records without an id are created with a POST instead."""
    resource_type = resource.get("resourceType")
    resource_id = resource.get("id")
    if isinstance(resource_id, str) and resource_id:
        request = {"method": "PUT", "url": f"{resource_type}/{resource_id}"}
    else:
        request = {"method": "POST", "url": f"{resource_type}"}
    return {"request": request, "resource": resource}


class BundleAssembler:
    def __init__(self, *, policy: LabelingPolicy = labeling_policy) -> None:
        self._policy = policy

    def assemble(
        self,
        outcomes: Sequence[ProcessingOutcome],
        *,
        mode: OutputMode,
        source_bundle: Optional[Mapping[str, Any]] = None,
        now: Optional[datetime] = None,
        table_version: int = 0,
    ) -> TaggingResult:
        counters = count_outcomes(outcomes)
        if mode is OutputMode.NARROWED:
            entries = [
                update_directive(outcome.resource)
                for outcome in outcomes
                if outcome.disposition is Disposition.PROCESSED and outcome.resource is not None
            ]
            bundle: Dict[str, Any] = {"resourceType": "Bundle", "type": "batch"}
        else:
            entries = self._full_entries(outcomes)
            bundle = self._full_envelope(source_bundle or {})

        labels = collect_distinct_labels(entries)
        meta: Dict[str, Any] = {
            "lastUpdated": format_fhir_instant(now or utc_now()),
            "tag": [{"system": PROCESSING_TAG_SYSTEM, "code": PROCESSING_TAG_CODE, "display": PROCESSING_TAG_DISPLAY}],
        }
        if labels:
            meta["security"] = [label.to_coding() for label in labels]
        bundle["meta"] = meta
        bundle["entry"] = entries
        bundle["extension"] = [self._summary_extension(counters)]

        return TaggingResult(bundle=bundle, labels=labels, counters=counters, table_version=table_version)

    def _full_entries(self, outcomes: Sequence[ProcessingOutcome]) -> List[Dict[str, Any]]:
        drop_unsupported = self._policy.unsupported_resource_policy is UnsupportedResourcePolicy.DROP
        return [
            outcome.entry
            for outcome in outcomes
            if not (drop_unsupported and outcome.disposition is Disposition.UNSUPPORTED)
        ]

    @staticmethod
    def _full_envelope(source_bundle: Mapping[str, Any]) -> Dict[str, Any]:
        bundle: Dict[str, Any] = {"resourceType": "Bundle"}
        if source_bundle.get("id"):
            bundle["id"] = source_bundle["id"]
        bundle["type"] = source_bundle.get("type") or "collection"
        for name in _PRESERVED_BUNDLE_FIELDS:
            if source_bundle.get(name) is not None:
                bundle[name] = source_bundle[name]
        return bundle

    def _summary_extension(self, counters: TaggingCounters) -> Dict[str, Any]:
        values = counters.as_dict()
        if self._policy.unsupported_resource_policy is UnsupportedResourcePolicy.REPORT:
            values["unsupported"] = counters.unsupported
        return {
            "url": PROCESSING_SUMMARY_URL,
            "extension": [{"url": name, "valueInteger": value} for name, value in values.items()],
        }
