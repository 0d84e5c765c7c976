from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple

from security_labeling.core.labeling_config import (
    CONFIDENTIALITY_SYSTEM,
    LAST_SOURCE_SYNC_URL,
    RESTRICTED_CODE,
    RESTRICTED_DISPLAY,
)
from security_labeling.services.fhir_time import format_fhir_instant, utc_now
from security_labeling.services.labeling_types import TopicLabel

logger = logging.getLogger(__name__)

RESTRICTED_LABEL = TopicLabel(system=CONFIDENTIALITY_SYSTEM, code=RESTRICTED_CODE, display=RESTRICTED_DISPLAY)


def _record_ref(record: Dict[str, Any]) -> str:
    return f"{record.get('resourceType')}/{record.get('id')}"


def _meta_list(record: Dict[str, Any], key: str) -> List[Any]:
    meta = record.get("meta")
    if not isinstance(meta, dict):
        if meta is not None:
            logger.warning("Replacing non-object meta on %s (was %s)", _record_ref(record), type(meta).__name__)
        meta = {}
        record["meta"] = meta
    values = meta.get(key)
    if not isinstance(values, list):
        if values is not None:
            logger.warning(
                "Replacing non-list meta.%s on %s (was %s)", key, _record_ref(record), type(values).__name__
            )
        values = []
        meta[key] = values
    return values


def label_identity(coding: Any) -> Optional[Tuple[Optional[str], str]]:
    """``(system, code)`` of a security coding, or None when it is malformed."""
    if not isinstance(coding, dict):
        return None
    system, code = coding.get("system"), coding.get("code")
    if not isinstance(code, str) or not (system is None or isinstance(system, str)):
        return None
    return system, code


def apply_labels(
    record: Dict[str, Any],
    matched: Iterable[TopicLabel],
    *,
    now: Optional[datetime] = None,
) -> Tuple[TopicLabel, ...]:
    """Label ``record`` in place and stamp a fresh sync marker.

    Returns the labels that were actually appended. Calling it again with the
    same matches appends nothing and only refreshes the marker.
    """
    topics = list(matched)
    added: List[TopicLabel] = []

    if topics:
        security = _meta_list(record, "security")
        present = {label_identity(coding) for coding in security}
        for label in [RESTRICTED_LABEL, *topics]:
            identity = (label.system, label.code)
            if identity in present:
                continue
            security.append(label.to_coding())
            present.add(identity)
            added.append(label)

    stamp_sync_marker(record, now=now)
    return tuple(added)


def stamp_sync_marker(record: Dict[str, Any], *, now: Optional[datetime] = None) -> None:
    extensions = _meta_list(record, "extension")
    extensions[:] = [
        ext for ext in extensions if not (isinstance(ext, dict) and ext.get("url") == LAST_SOURCE_SYNC_URL)
    ]
    extensions.append({"url": LAST_SOURCE_SYNC_URL, "valueDateTime": format_fhir_instant(now or utc_now())})
