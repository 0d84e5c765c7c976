"""FastAPI router for security labeling.

Endpoints:
- POST /api/v1/valuesets      compile topic-source ValueSets into rules
- POST /api/v1/analyze        tag a Bundle, return only updated records
- POST /api/v1/analyze-full   tag a Bundle, return every record
- GET  /api/v1/status         loaded ValueSets, rule counts, statistics
- DELETE /api/v1/data         drop every ValueSet, rule and statistic
"""

from __future__ import annotations

import logging
from typing import Any, Dict

from fastapi import APIRouter, Body, Depends, HTTPException, status
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from security_labeling.core.deps import get_labeling_service
from security_labeling.schemas.labeling_status import ClearDataResponse, LabelingStatusResponse
from security_labeling.schemas.operation_outcome import OperationOutcome
from security_labeling.services.labeling_errors import TaggingRequestError
from security_labeling.services.labeling_service import SecurityLabelingService
from security_labeling.services.labeling_types import OutputMode

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1", tags=["security-labeling"])


def _outcome_response(outcome: OperationOutcome, status_code: int) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=outcome.model_dump())


def _rollback(service: SecurityLabelingService) -> None:
    if service.repository is not None:
        service.repository.db.rollback()


@router.post("/valuesets")
def process_value_sets(
    payload: Any = Body(default=None),
    service: SecurityLabelingService = Depends(get_labeling_service),
) -> JSONResponse:
    if payload is None:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Request body is required")

    try:
        outcome = OperationOutcome.from_compilation(service.process_value_sets(payload))
    except SQLAlchemyError:
        _rollback(service)
        logger.exception("Failed to persist compiled ValueSets")
        return _outcome_response(
            OperationOutcome.single("error", "Failed to store ValueSets", code="exception"),
            status.HTTP_500_INTERNAL_SERVER_ERROR,
        )

    return _outcome_response(outcome, status.HTTP_400_BAD_REQUEST if outcome.is_error else status.HTTP_200_OK)


def _tag(service: SecurityLabelingService, payload: Any, mode: OutputMode) -> JSONResponse:
    if payload is None:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Request body is required")

    try:
        result = service.tag_bundle(payload, mode)
    except TaggingRequestError as exc:
        logger.warning("Rejected %s tagging request: %s", mode.value, exc)
        return _outcome_response(OperationOutcome.single("error", str(exc)), status.HTTP_400_BAD_REQUEST)
    except SQLAlchemyError:
        _rollback(service)
        logger.exception("Failed to record tagging statistics")
        return _outcome_response(
            OperationOutcome.single("error", "Failed to record tagging statistics", code="exception"),
            status.HTTP_500_INTERNAL_SERVER_ERROR,
        )

    return JSONResponse(status_code=status.HTTP_200_OK, content=result.bundle)


@router.post("/analyze")
def analyze(
    payload: Any = Body(default=None),
    service: SecurityLabelingService = Depends(get_labeling_service),
) -> JSONResponse:
    return _tag(service, payload, OutputMode.NARROWED)


@router.post("/analyze-full")
def analyze_full(
    payload: Any = Body(default=None),
    service: SecurityLabelingService = Depends(get_labeling_service),
) -> JSONResponse:
    return _tag(service, payload, OutputMode.FULL)


@router.get("/status", response_model=LabelingStatusResponse)
def get_status(service: SecurityLabelingService = Depends(get_labeling_service)) -> Dict[str, Any]:
    try:
        return service.status()
    except SQLAlchemyError as exc:
        logger.exception("Failed to read labeling status")
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Failed to get status") from exc


@router.delete("/data", response_model=ClearDataResponse)
def clear_data(service: SecurityLabelingService = Depends(get_labeling_service)) -> ClearDataResponse:
    try:
        service.clear_all()
    except SQLAlchemyError as exc:
        _rollback(service)
        logger.exception("Failed to clear labeling data")
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Failed to clear data") from exc
    return ClearDataResponse(message="All data cleared successfully")
