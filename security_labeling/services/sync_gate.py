from __future__ import annotations

from datetime import datetime
from typing import Any, Mapping, Optional

from security_labeling.core.labeling_config import LAST_SOURCE_SYNC_URL
from security_labeling.services.fhir_time import parse_fhir_datetime


def read_sync_marker(record: Mapping[str, Any]) -> Optional[datetime]:
    """Return the record's ``lastSourceSync`` timestamp, if it carries one."""
    meta = record.get("meta")
    if not isinstance(meta, dict):
        return None
    extensions = meta.get("extension")
    if not isinstance(extensions, list):
        return None
    for ext in extensions:
        if isinstance(ext, dict) and ext.get("url") == LAST_SOURCE_SYNC_URL:
            return parse_fhir_datetime(ext.get("valueDateTime"))
    return None


def should_skip(marker: Optional[datetime], epoch: Optional[datetime]) -> bool:
    """A record synced at or after the epoch is current; the boundary is inclusive."""
    if epoch is None or marker is None:
        return False
    return marker >= epoch


def is_current(record: Mapping[str, Any], epoch: Optional[datetime]) -> bool:
    return should_skip(read_sync_marker(record), epoch)
