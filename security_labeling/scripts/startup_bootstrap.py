from __future__ import annotations

import logging
from pathlib import Path

from sqlalchemy.orm import Session

from security_labeling.core.config import settings
from security_labeling.db.models import Base
from security_labeling.db.session import SessionLocal, engine
from security_labeling.repositories.labeling_repository import LabelingRepository
from security_labeling.services.labeling_service import SecurityLabelingService
from security_labeling.services.rule_store import RuleStore

logger = logging.getLogger(__name__)


def _configure_logging() -> None:
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )


def _ensure_schema() -> None:
    if settings.is_sqlite:
        # sqlite:///./data/sls.db needs its directory before the first connect.
        database = engine.url.database
        if database and database != ":memory:":
            Path(database).parent.mkdir(parents=True, exist_ok=True)
    Base.metadata.create_all(bind=engine)


def bootstrap(rule_store: RuleStore) -> None:
    """Create tables, seed statistics and restore the rule table from storage."""
    _configure_logging()
    _ensure_schema()

    db: Session = SessionLocal()
    try:
        repository = LabelingRepository(db)
        repository.ensure_stats()
        table = SecurityLabelingService(rule_store, repository=repository).load_persisted()
        logger.info(
            "Security labeling bootstrap complete sources=%s rules=%s epoch=%s",
            len(table.sources),
            table.rule_count,
            table.effective_epoch.isoformat() if table.effective_epoch else None,
        )
    except Exception:
        db.rollback()
        logger.exception("Startup bootstrap failed while restoring stored ValueSets")
    finally:
        db.close()


def main() -> None:
    try:
        bootstrap(RuleStore())
    except Exception:
        logger.exception("Startup bootstrap terminated with unexpected error")


if __name__ == "__main__":
    main()
