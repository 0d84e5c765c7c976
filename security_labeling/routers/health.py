from fastapi import APIRouter

from security_labeling.schemas.labeling_status import HealthResponse
from security_labeling.services.fhir_time import utc_now

APP_VERSION = "1.0.0"

router = APIRouter()


@router.get("/health", response_model=HealthResponse)
def health_check() -> HealthResponse:
    return HealthResponse(status="healthy", timestamp=utc_now(), version=APP_VERSION)
