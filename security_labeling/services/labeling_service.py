"""Security labeling service: request orchestrator.

Two operations share one :class:`RuleStore`:

- ``process_value_sets`` compiles topic sources and publishes a new snapshot.
- ``tag_bundle`` binds the snapshot current at request start and runs every
  entry through SyncGate → CodeScanner → LabelApplier before handing the
  outcomes to the BundleAssembler.

Per-record work touches only a private copy of the record, so entries may be
scanned in a thread pool; aggregation happens afterwards on one thread.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from copy import deepcopy
from dataclasses import replace
from datetime import datetime
from typing import Any, Callable, Dict, List, Mapping, Optional

from security_labeling.core.labeling_config import LabelingPolicy, LabelingTuning, labeling_policy, labeling_tuning
from security_labeling.repositories.labeling_repository import LabelingRepository
from security_labeling.services.bundle_assembler import BundleAssembler
from security_labeling.services.code_scanner import CodeScanner
from security_labeling.services.fhir_time import format_fhir_instant, utc_now
from security_labeling.services.label_applier import apply_labels
from security_labeling.services.labeling_errors import BatchStructureError, RulesNotLoadedError
from security_labeling.services.labeling_types import (
    CompilationOutcome,
    Disposition,
    OutputMode,
    ProcessingOutcome,
    RuleTable,
    TaggingResult,
)
from security_labeling.services.rule_compiler import RuleCompiler, ValueSetExpander, earliest
from security_labeling.services.rule_store import RuleStore
from security_labeling.services.sync_gate import read_sync_marker, should_skip

logger = logging.getLogger(__name__)


class SecurityLabelingService:
    def __init__(
        self,
        rule_store: RuleStore,
        *,
        repository: Optional[LabelingRepository] = None,
        expander: Optional[ValueSetExpander] = None,
        tuning: LabelingTuning = labeling_tuning,
        policy: LabelingPolicy = labeling_policy,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.rule_store = rule_store
        self.repository = repository
        self._compiler = RuleCompiler(expander=expander, tuning=tuning)
        self._assembler = BundleAssembler(policy=policy)
        self._tuning = tuning
        self._policy = policy
        self._clock = clock

    # ------------------------------------------------------------------
    # Rule compilation
    # ------------------------------------------------------------------

    def process_value_sets(self, payload: object) -> CompilationOutcome:
        with self.rule_store.compiling() as prior:
            outcome = self._compiler.compile(payload, prior)
            if outcome.table is None:
                logger.warning("ValueSet compilation rejected: %s (%s issues)", outcome.message, len(outcome.diagnostics))
                return outcome

            if self.repository is not None:
                self.repository.save_compilation(outcome.sources, outcome.table.effective_epoch)
            self.rule_store.publish(outcome.table)
        return outcome

    def load_persisted(self) -> RuleTable:
        """Rebuild the rule table from stored, already-expanded ValueSets."""
        if self.repository is None:
            return self.rule_store.current()

        resources = self.repository.load_source_resources()
        stored_epoch = self.repository.get_epoch()
        if not resources:
            logger.info("No stored ValueSets found; rule table left empty")
            return self.rule_store.current()

        with self.rule_store.compiling() as prior:
            payload = {"resourceType": "Bundle", "entry": [{"resource": resource} for resource in resources]}
            outcome = self._compiler.compile(payload, prior)
            if outcome.table is None:
                logger.warning("Stored ValueSets could not be recompiled: %s", outcome.diagnostics)
                return prior
            table = replace(
                outcome.table,
                effective_epoch=earliest([outcome.table.effective_epoch, stored_epoch]),
            )
            self.rule_store.publish(table)
        logger.info("Restored %s stored ValueSet(s) into rule table v%s", len(outcome.sources), table.version)
        return table

    # ------------------------------------------------------------------
    # Tagging
    # ------------------------------------------------------------------

    def tag_bundle(self, bundle: object, mode: OutputMode = OutputMode.NARROWED) -> TaggingResult:
        entries = self._validate_batch(bundle)
        table = self.rule_store.current()
        if not table.is_loaded:
            raise RulesNotLoadedError()

        now = self._clock()
        outcomes = self._process_entries(entries, table, now)
        result = self._assembler.assemble(
            outcomes,
            mode=mode,
            source_bundle=bundle,
            now=now,
            table_version=table.version,
        )

        if self.repository is not None:
            self.repository.record_tagging(result.counters)

        logger.info(
            "Tagged bundle mode=%s table=v%s entries=%s analyzed=%s labeled=%s skipped=%s unsupported=%s",
            mode.value,
            table.version,
            len(entries),
            result.counters.analyzed,
            result.counters.labeled,
            result.counters.skipped,
            result.counters.unsupported,
        )
        return result

    def process_entry(self, entry: Dict[str, Any], table: RuleTable, now: datetime) -> ProcessingOutcome:
        resource = entry.get("resource")
        if not isinstance(resource, dict) or not self._policy.is_supported(resource.get("resourceType")):
            return ProcessingOutcome(entry=entry, disposition=Disposition.UNSUPPORTED)

        if should_skip(read_sync_marker(resource), table.effective_epoch):
            return ProcessingOutcome(entry=entry, disposition=Disposition.SKIPPED)

        matched = CodeScanner(table, tuning=self._tuning).scan(resource)
        updated = deepcopy(entry)
        added = apply_labels(updated["resource"], matched, now=now)
        return ProcessingOutcome(entry=updated, disposition=Disposition.PROCESSED, matched=matched, added=added)

    def _process_entries(
        self,
        entries: List[Dict[str, Any]],
        table: RuleTable,
        now: datetime,
    ) -> List[ProcessingOutcome]:
        workers = min(self._tuning.scan_workers, len(entries))
        if workers <= 1:
            return [self.process_entry(entry, table, now) for entry in entries]

        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="sls-scan") as pool:
            return list(pool.map(lambda entry: self.process_entry(entry, table, now), entries))

    @staticmethod
    def _validate_batch(bundle: object) -> List[Dict[str, Any]]:
        if not isinstance(bundle, dict) or bundle.get("resourceType") != "Bundle":
            raise BatchStructureError('Invalid Bundle: resourceType must be "Bundle"')

        entries = bundle.get("entry")
        if not isinstance(entries, list) or not entries:
            raise BatchStructureError("Bundle contains no entries")

        for index, entry in enumerate(entries):
            if not isinstance(entry, dict):
                raise BatchStructureError(f"Bundle entry {index} must be an object")
        return entries

    # ------------------------------------------------------------------
    # Status / maintenance
    # ------------------------------------------------------------------

    def status(self) -> Dict[str, Any]:
        table = self.rule_store.current()
        return {
            "valueSets": [
                {"id": source.source_id, "date": _source_date_text(source.resource)}
                for source in table.sources.values()
            ],
            "rulesCount": table.rule_count,
            "codesCount": len(table.entries),
            "earliestDate": format_fhir_instant(table.effective_epoch) if table.effective_epoch else None,
            "tableVersion": table.version,
            "stats": self.repository.get_stats() if self.repository is not None else {},
        }

    def clear_all(self) -> None:
        with self.rule_store.compiling():
            if self.repository is not None:
                self.repository.clear_all()
            self.rule_store.reset()
        logger.info("Cleared all ValueSets, rules and statistics")


def _source_date_text(resource: Mapping[str, Any]) -> Optional[str]:
    value = resource.get("date")
    return value if isinstance(value, str) else None
