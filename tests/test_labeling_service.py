"""Tests for security_labeling.services.labeling_service: end-to-end pipeline."""
from __future__ import annotations

from collections.abc import Iterator
from copy import deepcopy
from datetime import datetime, timezone
from typing import Any

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from security_labeling.core.labeling_config import (
    LAST_SOURCE_SYNC_URL,
    LabelingPolicy,
    LabelingTuning,
    UnsupportedResourcePolicy,
)
from security_labeling.db.models import Base
from security_labeling.repositories.labeling_repository import LabelingRepository
from security_labeling.services.labeling_errors import (
    BatchStructureError,
    RecordTooDeepError,
    RulesNotLoadedError,
    TaggingRequestError,
)
from security_labeling.services.labeling_service import SecurityLabelingService
from security_labeling.services.labeling_types import CodeIdentity, OutputMode, Severity
from security_labeling.services.rule_store import RuleStore

SNOMED = "http://snomed.info/sct"
ICD10CM = "http://hl7.org/fhir/sid/icd-10-cm"
ACT_CODE = "http://terminology.hl7.org/CodeSystem/v3-ActCode"
CONF = "http://terminology.hl7.org/CodeSystem/v3-Confidentiality"

NOW = datetime(2024, 6, 1, 8, 0, tzinfo=timezone.utc)
NOW_TEXT = "2024-06-01T08:00:00.000Z"

DEPRESSION = (SNOMED, "35489007")
ALCOHOL_DEP = (ICD10CM, "F10.20")
FRACTURE = (SNOMED, "71620000")


def _value_set(vs_id: str, topic: str, codes: list[tuple[str, str]], *, date: str = "2024-03-01") -> dict[str, Any]:
    return {
        "resourceType": "ValueSet",
        "id": vs_id,
        "date": date,
        "topic": [{"coding": [{"system": ACT_CODE, "code": topic, "display": topic.lower()}]}],
        "expansion": {"contains": [{"system": s, "code": c} for s, c in codes]},
    }


def _bundle(*resources: dict[str, Any], bundle_type: str = "collection") -> dict[str, Any]:
    return {"resourceType": "Bundle", "type": bundle_type, "entry": [{"resource": r} for r in resources]}


def _condition(rid: str, code: tuple[str, str], *, marker: str | None = None) -> dict[str, Any]:
    record: dict[str, Any] = {
        "resourceType": "Condition",
        "id": rid,
        "code": {"coding": [{"system": code[0], "code": code[1]}]},
    }
    if marker is not None:
        record["meta"] = {"extension": [{"url": LAST_SOURCE_SYNC_URL, "valueDateTime": marker}]}
    return record


def _security_codes(resource: dict[str, Any]) -> list[str]:
    return [coding["code"] for coding in resource.get("meta", {}).get("security", [])]


def _service(**kwargs: Any) -> SecurityLabelingService:
    kwargs.setdefault("clock", lambda: NOW)
    kwargs.setdefault("policy", LabelingPolicy(
        supported_resources=frozenset({"Condition", "Observation"}),
        unsupported_resource_policy=UnsupportedResourcePolicy.PASSTHROUGH,
    ))
    return SecurityLabelingService(RuleStore(), **kwargs)


@pytest.fixture
def service() -> SecurityLabelingService:
    svc = _service()
    outcome = svc.process_value_sets(
        _bundle(
            _value_set("vs-psy", "PSY", [DEPRESSION, ALCOHOL_DEP]),
            _value_set("vs-eth", "ETH", [ALCOHOL_DEP], date="2024-04-15"),
        )
    )
    assert outcome.severity is Severity.SUCCESS
    return svc


@pytest.fixture
def db_session() -> Iterator[Session]:
    engine = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    Base.metadata.create_all(bind=engine)
    session = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)()
    try:
        yield session
    finally:
        session.close()
        engine.dispose()


# ───────────────────────────── Compilation ─────────────────────────────


class TestProcessValueSets:
    def test_publishes_new_snapshot(self, service: SecurityLabelingService) -> None:
        table = service.rule_store.current()
        assert table.version == 1
        assert table.effective_epoch == datetime(2024, 3, 1, tzinfo=timezone.utc)
        assert [t.code for t in table.topics_for(CodeIdentity(*ALCOHOL_DEP))] == ["PSY", "ETH"]

    def test_rejected_compilation_keeps_previous_snapshot(self, service: SecurityLabelingService) -> None:
        before = service.rule_store.current()
        outcome = service.process_value_sets({"resourceType": "Patient"})
        assert outcome.severity is Severity.ERROR
        assert service.rule_store.current() is before

    def test_status_summary(self, service: SecurityLabelingService) -> None:
        status = service.status()
        assert status["valueSets"] == [{"id": "vs-psy", "date": "2024-03-01"}, {"id": "vs-eth", "date": "2024-04-15"}]
        assert status["codesCount"] == 2
        assert status["rulesCount"] == 3
        assert status["earliestDate"] == "2024-03-01T00:00:00.000Z"
        assert status["stats"] == {}


# ───────────────────────────── Tagging ─────────────────────────────


class TestTagBundle:
    def test_unmatched_record_analyzed_not_labeled(self, service: SecurityLabelingService) -> None:
        result = service.tag_bundle(_bundle(_condition("c1", FRACTURE)))
        (entry,) = result.bundle["entry"]
        assert "security" not in entry["resource"]["meta"]
        assert entry["resource"]["meta"]["extension"] == [{"url": LAST_SOURCE_SYNC_URL, "valueDateTime": NOW_TEXT}]
        assert result.counters.as_dict() == {"analyzed": 1, "labeled": 0, "skipped": 0}

    def test_code_mapped_by_two_sources_gets_both_topics(self, service: SecurityLabelingService) -> None:
        result = service.tag_bundle(_bundle(_condition("c1", ALCOHOL_DEP)))
        (entry,) = result.bundle["entry"]
        assert _security_codes(entry["resource"]) == ["R", "PSY", "ETH"]
        assert [label.code for label in result.labels] == ["R", "PSY", "ETH"]

    def test_narrowed_batch_skips_current_records(self, service: SecurityLabelingService) -> None:
        batch = _bundle(
            _condition("c1", DEPRESSION, marker="2024-03-01T00:00:00Z"),
            _condition("c2", FRACTURE),
            _condition("c3", DEPRESSION, marker="2024-05-01T00:00:00Z"),
            _condition("c4", DEPRESSION, marker="2024-02-29T23:59:59Z"),
            _condition("c5", FRACTURE, marker="2023-01-01"),
        )
        result = service.tag_bundle(batch, OutputMode.NARROWED)
        assert [e["request"]["url"] for e in result.bundle["entry"]] == ["Condition/c2", "Condition/c4", "Condition/c5"]
        assert result.counters.as_dict() == {"analyzed": 3, "labeled": 1, "skipped": 2}
        assert result.bundle["type"] == "batch"

    def test_full_mode_keeps_skipped_and_unsupported_records(self, service: SecurityLabelingService) -> None:
        patient = {"resourceType": "Patient", "id": "p1"}
        current = _condition("c1", DEPRESSION, marker="2024-05-01T00:00:00Z")
        batch = _bundle(current, patient, _condition("c2", DEPRESSION))
        result = service.tag_bundle(batch, OutputMode.FULL)
        resources = [e["resource"] for e in result.bundle["entry"]]
        assert resources[0] == current
        assert resources[1] == patient
        assert _security_codes(resources[2]) == ["R", "PSY"]
        assert result.counters.as_dict() == {"analyzed": 1, "labeled": 1, "skipped": 1}
        assert result.counters.unsupported == 1

    def test_input_bundle_not_mutated(self, service: SecurityLabelingService) -> None:
        batch = _bundle(_condition("c1", DEPRESSION), _condition("c2", FRACTURE))
        snapshot = deepcopy(batch)
        service.tag_bundle(batch, OutputMode.FULL)
        assert batch == snapshot

    def test_retagging_output_is_stable(self, service: SecurityLabelingService) -> None:
        first = service.tag_bundle(_bundle(_condition("c1", DEPRESSION)), OutputMode.FULL)
        again = _bundle(*[e["resource"] for e in first.bundle["entry"]])
        second = service.tag_bundle(again, OutputMode.FULL)
        assert second.counters.skipped == 1
        assert second.bundle["entry"] == first.bundle["entry"]

    def test_earlier_source_moves_epoch_back(self, service: SecurityLabelingService) -> None:
        record = _condition("c1", FRACTURE, marker="2024-02-01T00:00:00Z")
        assert service.tag_bundle(_bundle(record)).counters.analyzed == 1

        service.process_value_sets(_value_set("vs-inj", "INJ", [FRACTURE], date="2020-01-01"))
        assert service.rule_store.current().effective_epoch == datetime(2020, 1, 1, tzinfo=timezone.utc)
        result = service.tag_bundle(_bundle(record), OutputMode.FULL)
        assert result.counters.skipped == 1
        assert result.bundle["entry"][0]["resource"] == record

    def test_parallel_scan_matches_sequential(self, service: SecurityLabelingService) -> None:
        batch = _bundle(*[_condition(f"c{i}", DEPRESSION if i % 3 else FRACTURE) for i in range(12)])
        parallel = _service(tuning=LabelingTuning(max_scan_depth=64, max_member_depth=32, scan_workers=4))
        parallel.rule_store.publish(service.rule_store.current())
        expected = service.tag_bundle(deepcopy(batch), OutputMode.FULL)
        actual = parallel.tag_bundle(deepcopy(batch), OutputMode.FULL)
        assert actual.bundle == expected.bundle
        assert actual.counters == expected.counters


class TestMalformedSecurityInput:
    def test_matched_record_with_unhashable_security(self, service: SecurityLabelingService) -> None:
        record = _condition("c1", DEPRESSION)
        record["meta"] = {"security": [{"system": ["x"], "code": "N"}]}
        result = service.tag_bundle(_bundle(record), OutputMode.NARROWED)
        (entry,) = result.bundle["entry"]
        assert entry["resource"]["meta"]["security"][0] == {"system": ["x"], "code": "N"}
        assert _security_codes(entry["resource"])[1:] == ["R", "PSY"]
        assert [label.code for label in result.labels] == ["R", "PSY"]

    def test_passthrough_record_with_unhashable_security(self, service: SecurityLabelingService) -> None:
        patient = {"resourceType": "Patient", "id": "p1", "meta": {"security": [{"system": {"a": 1}, "code": "N"}]}}
        result = service.tag_bundle(_bundle(patient, _condition("c1", FRACTURE)), OutputMode.FULL)
        assert result.bundle["entry"][0]["resource"] == patient
        assert result.counters.unsupported == 1
        assert "security" not in result.bundle["meta"]

    def test_record_without_id_gets_create_directive(self, service: SecurityLabelingService) -> None:
        record = _condition("c1", DEPRESSION)
        del record["id"]
        result = service.tag_bundle(_bundle(record), OutputMode.NARROWED)
        assert result.bundle["entry"][0]["request"] == {"method": "POST", "url": "Condition"}


class TestTagBundleErrors:
    def test_rules_not_loaded(self) -> None:
        with pytest.raises(RulesNotLoadedError, match="process ValueSets first"):
            _service().tag_bundle(_bundle(_condition("c1", DEPRESSION)))

    @pytest.mark.parametrize(
        ("payload", "message"),
        [
            ({"resourceType": "Patient"}, 'resourceType must be "Bundle"'),
            ([], 'resourceType must be "Bundle"'),
            ({"resourceType": "Bundle", "entry": []}, "Bundle contains no entries"),
            ({"resourceType": "Bundle"}, "Bundle contains no entries"),
            ({"resourceType": "Bundle", "entry": ["x"]}, "Bundle entry 0 must be an object"),
        ],
    )
    def test_batch_structure(self, service: SecurityLabelingService, payload: Any, message: str) -> None:
        with pytest.raises(BatchStructureError, match=message):
            service.tag_bundle(payload)

    def test_structure_checked_before_rules(self) -> None:
        with pytest.raises(BatchStructureError):
            _service().tag_bundle({"resourceType": "Bundle", "entry": []})

    def test_too_deep_record_rejects_batch(self, service: SecurityLabelingService) -> None:
        shallow = _service(tuning=LabelingTuning(max_scan_depth=4, max_member_depth=32, scan_workers=1))
        shallow.rule_store.publish(service.rule_store.current())
        deep: dict[str, Any] = {"coding": [{"system": DEPRESSION[0], "code": DEPRESSION[1]}]}
        for _ in range(6):
            deep = {"nested": deep}
        record = {"resourceType": "Condition", "id": "c1", "note": [deep]}
        with pytest.raises(RecordTooDeepError) as excinfo:
            shallow.tag_bundle(_bundle(record))
        assert isinstance(excinfo.value, TaggingRequestError)

    def test_clear_all_unloads_rules(self, service: SecurityLabelingService) -> None:
        service.clear_all()
        assert service.rule_store.current().version == 2
        with pytest.raises(RulesNotLoadedError):
            service.tag_bundle(_bundle(_condition("c1", DEPRESSION)))


# ───────────────────────────── Persistence ─────────────────────────────


class TestPersistence:
    def test_restart_restores_rules_and_epoch(self, db_session: Session) -> None:
        first = _service(repository=LabelingRepository(db_session))
        first.process_value_sets(_value_set("vs-eth", "ETH", [ALCOHOL_DEP], date="2024-04-15"))
        first.process_value_sets(_value_set("vs-psy", "PSY", [DEPRESSION], date="2024-05-20"))

        restarted = _service(repository=LabelingRepository(db_session))
        table = restarted.load_persisted()
        assert set(table.sources) == {"vs-eth", "vs-psy"}
        assert [t.code for t in table.topics_for(CodeIdentity(*DEPRESSION))] == ["PSY"]
        assert table.effective_epoch == datetime(2024, 4, 15, tzinfo=timezone.utc)
        assert restarted.rule_store.current() is table

    def test_stored_epoch_only_moves_earlier(self, db_session: Session) -> None:
        repo = LabelingRepository(db_session)
        svc = _service(repository=repo)
        svc.process_value_sets(_value_set("vs-a", "PSY", [DEPRESSION], date="2024-04-01"))
        svc.process_value_sets(_value_set("vs-b", "ETH", [ALCOHOL_DEP], date="2024-09-01"))
        assert repo.get_epoch() == datetime(2024, 4, 1, tzinfo=timezone.utc)

    def test_statistics_accumulate(self, db_session: Session) -> None:
        repo = LabelingRepository(db_session)
        repo.ensure_stats()
        svc = _service(repository=repo)
        svc.process_value_sets(
            _bundle(_value_set("vs-psy", "PSY", [DEPRESSION]), _value_set("vs-eth", "ETH", [ALCOHOL_DEP]))
        )
        svc.tag_bundle(_bundle(_condition("c1", DEPRESSION), _condition("c2", FRACTURE)))
        svc.tag_bundle(_bundle(_condition("c3", DEPRESSION, marker="2025-01-01T00:00:00Z")))
        assert repo.get_stats() == {
            "totalValueSetsProcessed": 2,
            "totalResourcesAnalyzed": 2,
            "totalResourcesLabeled": 1,
            "totalResourcesSkipped": 1,
        }

    def test_clear_all_empties_storage(self, db_session: Session) -> None:
        repo = LabelingRepository(db_session)
        svc = _service(repository=repo)
        svc.process_value_sets(_value_set("vs-psy", "PSY", [DEPRESSION]))
        svc.clear_all()
        assert repo.list_sources() == []
        assert repo.get_epoch() is None
        assert set(repo.get_stats().values()) == {0}
        assert not _service(repository=repo).load_persisted().is_loaded
