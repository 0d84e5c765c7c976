from fastapi import Depends, Request
from sqlalchemy.orm import Session

from security_labeling.db.session import get_db
from security_labeling.repositories.labeling_repository import LabelingRepository
from security_labeling.services.labeling_service import SecurityLabelingService
from security_labeling.services.rule_compiler import ValueSetExpander
from security_labeling.services.rule_store import RuleStore
from security_labeling.services.terminology_expansion import TerminologyExpansionClient


def get_rule_store(request: Request) -> RuleStore:
    return request.app.state.rule_store


def get_expander() -> ValueSetExpander:
    return TerminologyExpansionClient()


def get_labeling_service(
    db: Session = Depends(get_db),
    rule_store: RuleStore = Depends(get_rule_store),
    expander: ValueSetExpander = Depends(get_expander),
) -> SecurityLabelingService:
    return SecurityLabelingService(
        rule_store,
        repository=LabelingRepository(db),
        expander=expander,
    )
