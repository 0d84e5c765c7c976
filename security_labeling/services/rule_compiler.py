"""Rule compiler: turns topic-source ValueSets into a RuleTable.

Pipeline per source:

1. **Expand** the ValueSet through the terminology collaborator when it has no
   ``expansion.contains`` (at most one call per source per request).
2. **Validate** identifier, topic identities and member codes; every problem
   becomes a diagnostic and the source is rejected without affecting siblings.
3. **Flatten** nested ``contains`` lists into an ordered set of code identities.
4. **Date** the source from ``expansion.timestamp``, falling back to ``date``.

Merging keys contributions by source id, so re-compiling a ValueSet replaces
what it contributed before instead of duplicating it.
"""

from __future__ import annotations

import logging
from copy import deepcopy
from datetime import datetime
from types import MappingProxyType
from typing import Any, Dict, Iterable, List, Mapping, Optional, Protocol, Tuple

from security_labeling.core.labeling_config import FOCUS_CONTEXT_CODE, LabelingTuning, labeling_tuning
from security_labeling.services.fhir_time import parse_fhir_datetime
from security_labeling.services.labeling_errors import ExpansionError, SourceValidationError
from security_labeling.services.labeling_types import (
    CodeIdentity,
    CompilationOutcome,
    RuleTable,
    Severity,
    TopicLabel,
    TopicSource,
)

logger = logging.getLogger(__name__)

# Fields carried over from the submitted ValueSet when the server omits them.
_INHERITED_FIELDS = ("id", "date", "topic", "useContext")


class ValueSetExpander(Protocol):
    def expand(self, value_set: Mapping[str, Any]) -> Dict[str, Any]:
        ...


def _non_empty_str(value: object) -> bool:
    return isinstance(value, str) and bool(value)


def _source_label(resource: Mapping[str, Any]) -> str:
    source_id = resource.get("id")
    return source_id if _non_empty_str(source_id) else "unknown"


def has_members(resource: Mapping[str, Any]) -> bool:
    expansion = resource.get("expansion")
    return isinstance(expansion, dict) and isinstance(expansion.get("contains"), list)


def extract_topics(resource: Mapping[str, Any]) -> List[TopicLabel]:
    """Collect the primary topic and every ``focus`` use-context coding."""
    found: Dict[TopicLabel, TopicLabel] = {}

    def _add(coding: object) -> None:
        if not isinstance(coding, dict) or not _non_empty_str(coding.get("code")):
            return
        system = coding.get("system") if _non_empty_str(coding.get("system")) else None
        display = coding.get("display") if _non_empty_str(coding.get("display")) else coding["code"]
        label = TopicLabel(system=system, code=coding["code"], display=display)
        found.setdefault(label, label)

    topics = resource.get("topic")
    if isinstance(topics, list) and topics and isinstance(topics[0], dict):
        codings = topics[0].get("coding")
        if isinstance(codings, list) and codings:
            _add(codings[0])

    contexts = resource.get("useContext")
    if isinstance(contexts, list):
        for ctx in contexts:
            if not isinstance(ctx, dict):
                continue
            ctx_code = ctx.get("code")
            if not isinstance(ctx_code, dict) or ctx_code.get("code") != FOCUS_CONTEXT_CODE:
                continue
            concept = ctx.get("valueCodeableConcept")
            codings = concept.get("coding") if isinstance(concept, dict) else None
            if isinstance(codings, list):
                for coding in codings:
                    _add(coding)

    return list(found.values())


def source_date(resource: Mapping[str, Any]) -> Optional[datetime]:
    """Prefer the expansion timestamp; fall back to the ValueSet date."""
    expansion = resource.get("expansion")
    if isinstance(expansion, dict):
        stamped = parse_fhir_datetime(expansion.get("timestamp"))
        if stamped is not None:
            return stamped
    return parse_fhir_datetime(resource.get("date"))


def earliest(dates: Iterable[Optional[datetime]]) -> Optional[datetime]:
    present = [d for d in dates if d is not None]
    return min(present) if present else None


class RuleCompiler:
    def __init__(
        self,
        *,
        expander: Optional[ValueSetExpander] = None,
        tuning: LabelingTuning = labeling_tuning,
    ) -> None:
        self._expander = expander
        self._tuning = tuning

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def compile(self, payload: object, prior: RuleTable) -> CompilationOutcome:
        """Compile a ValueSet or a Bundle of ValueSets on top of ``prior``."""
        if not isinstance(payload, dict) or payload.get("resourceType") not in {"ValueSet", "Bundle"}:
            return CompilationOutcome(
                severity=Severity.ERROR,
                message='Invalid input: resourceType must be "Bundle" or "ValueSet"',
            )

        diagnostics: List[str] = []
        if payload["resourceType"] == "ValueSet":
            resources: List[object] = [payload]
        else:
            entries = payload.get("entry")
            if not isinstance(entries, list) or not entries:
                return CompilationOutcome(severity=Severity.WARNING, message="Bundle contains no entries")
            resources = [entry.get("resource") if isinstance(entry, dict) else None for entry in entries]

        sources: List[TopicSource] = []
        expansion_failures = 0
        for resource in resources:
            if not isinstance(resource, dict) or resource.get("resourceType") != "ValueSet":
                resource_type = resource.get("resourceType") if isinstance(resource, dict) else None
                diagnostics.append(f"Skipping non-ValueSet resource: {resource_type or 'unknown'}")
                continue
            try:
                sources.append(self.build_source(resource))
            except ExpansionError as exc:
                logger.warning("Expansion failed for ValueSet %s: %s", _source_label(resource), exc)
                diagnostics.append(f"Failed to expand ValueSet {_source_label(resource)}")
                expansion_failures += 1
            except SourceValidationError as exc:
                logger.warning("Rejected ValueSet %s: %s", _source_label(resource), exc)
                diagnostics.extend(exc.errors)

        if not sources:
            if payload["resourceType"] == "ValueSet" and expansion_failures:
                # A lone ValueSet that could not be expanded reports that failure as the outcome.
                return CompilationOutcome(severity=Severity.ERROR, message=diagnostics[0])
            message = "Invalid ValueSet" if payload["resourceType"] == "ValueSet" else "No valid ValueSets found"
            return CompilationOutcome(severity=Severity.ERROR, message=message, diagnostics=diagnostics)

        table = self.merge(prior, sources)
        logger.info(
            "Compiled %s ValueSet(s) into rule table v%s codes=%s epoch=%s rejected=%s",
            len(sources),
            table.version,
            len(table.entries),
            table.effective_epoch.isoformat() if table.effective_epoch else None,
            len(diagnostics),
        )
        return CompilationOutcome(
            severity=Severity.SUCCESS,
            message=f"Successfully processed {len(sources)} ValueSet(s)",
            diagnostics=diagnostics,
            compiled_count=len(sources),
            table=table,
            sources=sources,
        )

    def build_source(self, resource: Mapping[str, Any]) -> TopicSource:
        """Expand, validate and flatten one ValueSet."""
        if not has_members(resource):
            resource = self._expand(resource)

        errors: List[str] = []
        label = _source_label(resource)
        if not _non_empty_str(resource.get("id")):
            errors.append("ValueSet missing required field: id")

        topics = extract_topics(resource)
        if not topics:
            errors.append(
                f"ValueSet {label} missing topic: must have either topic[0].coding[0] or useContext with code=focus"
            )

        codes: Tuple[CodeIdentity, ...] = ()
        if not has_members(resource):
            errors.append(f"ValueSet {label} missing expansion.contains")
        else:
            codes = self.flatten_members(resource["expansion"]["contains"], source_id=label)
            if not codes:
                errors.append(f"ValueSet {label} expansion contains no member codes")

        if errors:
            raise SourceValidationError(errors)

        return TopicSource(
            source_id=resource["id"],
            topics=tuple(topics),
            codes=codes,
            source_date=source_date(resource),
            resource=resource,
        )

    def flatten_members(self, contains: List[Any], *, source_id: str = "unknown") -> Tuple[CodeIdentity, ...]:
        """Flatten nested ``contains`` lists, keeping first-seen order."""
        collected: Dict[CodeIdentity, None] = {}
        seen: set[int] = set()
        max_depth = self._tuning.max_member_depth

        def _walk(items: List[Any], depth: int) -> None:
            if depth > max_depth:
                raise SourceValidationError(
                    [f"ValueSet {source_id} expansion nesting exceeds maximum depth of {max_depth}"]
                )
            for item in items:
                if not isinstance(item, dict) or id(item) in seen:
                    continue
                seen.add(id(item))
                if _non_empty_str(item.get("system")) and _non_empty_str(item.get("code")):
                    collected.setdefault(CodeIdentity(system=item["system"], code=item["code"]), None)
                nested = item.get("contains")
                if isinstance(nested, list):
                    _walk(nested, depth + 1)

        _walk(contains, 1)
        return tuple(collected)

    @staticmethod
    def merge(prior: RuleTable, sources: Iterable[TopicSource]) -> RuleTable:
        """Build the next snapshot; ``prior`` is left untouched."""
        new_sources = list(sources)
        contributions: Dict[str, TopicSource] = dict(prior.sources)
        for source in new_sources:
            contributions[source.source_id] = source

        buckets: Dict[CodeIdentity, Dict[TopicLabel, TopicLabel]] = {}
        for source in contributions.values():
            for code in source.codes:
                bucket = buckets.setdefault(code, {})
                for topic in source.topics:
                    bucket.setdefault(topic, topic)

        return RuleTable(
            entries=MappingProxyType({code: tuple(bucket.values()) for code, bucket in buckets.items()}),
            sources=MappingProxyType(contributions),
            effective_epoch=earliest([prior.effective_epoch] + [s.source_date for s in new_sources]),
            version=prior.version + 1,
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _expand(self, resource: Mapping[str, Any]) -> Dict[str, Any]:
        if self._expander is None:
            raise ExpansionError("no terminology server configured")

        expanded = self._expander.expand(resource)
        if not isinstance(expanded, dict):
            raise ExpansionError("expansion returned no ValueSet")

        expanded = deepcopy(expanded)
        for name in _INHERITED_FIELDS:
            if not expanded.get(name) and resource.get(name):
                expanded[name] = deepcopy(resource[name])
        return expanded
