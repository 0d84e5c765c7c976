from __future__ import annotations

import json
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from sqlalchemy import delete, select, update
from sqlalchemy.orm import Session

from security_labeling.models.labeling_state import LabelingMetadata, LabelingStat
from security_labeling.models.topic_source import StoredTopicSource
from security_labeling.services.fhir_time import format_fhir_instant, parse_fhir_datetime
from security_labeling.services.labeling_types import TaggingCounters, TopicSource

EPOCH_KEY = "earliestDate"

STAT_VALUESETS = "totalValueSetsProcessed"
STAT_ANALYZED = "totalResourcesAnalyzed"
STAT_LABELED = "totalResourcesLabeled"
STAT_SKIPPED = "totalResourcesSkipped"
STAT_KEYS = (STAT_VALUESETS, STAT_ANALYZED, STAT_LABELED, STAT_SKIPPED)


class LabelingRepository:
    def __init__(self, db: Session) -> None:
        self.db = db

    # -- topic sources ------------------------------------------------------

    def list_sources(self) -> List[StoredTopicSource]:
        stmt = select(StoredTopicSource).order_by(StoredTopicSource.created_at, StoredTopicSource.id)
        return list(self.db.execute(stmt).scalars().all())

    def load_source_resources(self) -> List[dict]:
        return [json.loads(row.resource) for row in self.list_sources()]

    def save_compilation(self, sources: Iterable[TopicSource], epoch: Optional[datetime]) -> None:
        """Persist compiled sources, the epoch floor and the ValueSet counter in one commit."""
        count = 0
        for source in sources:
            date_value = source.resource.get("date")
            self.db.merge(
                StoredTopicSource(
                    id=source.source_id,
                    resource=json.dumps(source.resource),
                    source_date=date_value if isinstance(date_value, str) else None,
                )
            )
            count += 1

        if epoch is not None:
            current = self.get_epoch()
            if current is None or epoch < current:
                self.db.merge(LabelingMetadata(key=EPOCH_KEY, value=format_fhir_instant(epoch)))

        self._increment(STAT_VALUESETS, count)
        self.db.commit()

    # -- metadata -----------------------------------------------------------

    def get_epoch(self) -> Optional[datetime]:
        row = self.db.get(LabelingMetadata, EPOCH_KEY)
        return parse_fhir_datetime(row.value) if row else None

    # -- statistics ---------------------------------------------------------

    def ensure_stats(self) -> None:
        for key in STAT_KEYS:
            if self.db.get(LabelingStat, key) is None:
                self.db.add(LabelingStat(key=key, value=0))
        self.db.commit()

    def get_stats(self) -> Dict[str, int]:
        stats = {key: 0 for key in STAT_KEYS}
        stmt = select(LabelingStat).execution_options(populate_existing=True)
        for row in self.db.execute(stmt).scalars().all():
            stats[row.key] = row.value
        return stats

    def record_tagging(self, counters: TaggingCounters) -> None:
        self._increment(STAT_ANALYZED, counters.analyzed)
        self._increment(STAT_LABELED, counters.labeled)
        self._increment(STAT_SKIPPED, counters.skipped)
        self.db.commit()

    def _increment(self, key: str, amount: int) -> None:
        if self.db.get(LabelingStat, key) is None:
            self.db.add(LabelingStat(key=key, value=amount))
            self.db.flush()
            return
        self.db.execute(update(LabelingStat).where(LabelingStat.key == key).values(value=LabelingStat.value + amount))

    # -- maintenance --------------------------------------------------------

    def clear_all(self) -> None:
        self.db.execute(delete(StoredTopicSource))
        self.db.execute(delete(LabelingMetadata))
        self.db.execute(update(LabelingStat).values(value=0))
        self.db.commit()
