"""Terminology server client used to expand ValueSets without members.

Posts a FHIR ``Parameters`` resource to ``ValueSet/$expand`` and accepts either
a bare expanded ValueSet or a ``Parameters`` response with a ``return``
parameter. Every failure surfaces as :class:`ExpansionError` so the compiler
can reject only the affected source.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Mapping, Optional

import httpx

from security_labeling.core.config import Settings, settings
from security_labeling.services.labeling_errors import ExpansionError

logger = logging.getLogger(__name__)

FHIR_JSON = "application/fhir+json"


def extract_expanded_value_set(payload: object) -> Optional[Dict[str, Any]]:
    if not isinstance(payload, dict):
        return None
    if payload.get("resourceType") == "ValueSet" and isinstance(payload.get("expansion"), dict):
        return payload
    if payload.get("resourceType") == "Parameters" and isinstance(payload.get("parameter"), list):
        for param in payload["parameter"]:
            if not isinstance(param, dict) or param.get("name") != "return":
                continue
            resource = param.get("resource")
            if isinstance(resource, dict) and isinstance(resource.get("expansion"), dict):
                return resource
    return None


class TerminologyExpansionClient:
    def __init__(
        self,
        *,
        base_url: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
        config: Settings = settings,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        self._base_url = (base_url or config.terminology_server_url).rstrip("/")
        self._timeout = httpx.Timeout(timeout_seconds or config.terminology_timeout_seconds, connect=10.0)
        self._transport = transport

    @property
    def expand_url(self) -> str:
        return f"{self._base_url}/ValueSet/$expand"

    def expand(self, value_set: Mapping[str, Any]) -> Dict[str, Any]:
        value_set_id = value_set.get("id") or "unknown"
        body = {"resourceType": "Parameters", "parameter": [{"name": "valueSet", "resource": value_set}]}
        logger.info("Expanding ValueSet %s via %s", value_set_id, self.expand_url)

        try:
            with httpx.Client(timeout=self._timeout, transport=self._transport) as client:
                response = client.post(
                    self.expand_url,
                    json=body,
                    headers={"Content-Type": FHIR_JSON, "Accept": FHIR_JSON},
                )
        except httpx.HTTPError as exc:
            raise ExpansionError(f"request to terminology server failed: {exc}") from exc

        if response.status_code >= 400:
            logger.warning(
                "Expansion of ValueSet %s failed status=%s body=%s",
                value_set_id,
                response.status_code,
                response.text[:500],
            )
            raise ExpansionError(f"terminology server returned HTTP {response.status_code}")

        try:
            payload = response.json()
        except ValueError as exc:
            raise ExpansionError("terminology server returned invalid JSON") from exc

        expanded = extract_expanded_value_set(payload)
        if expanded is None:
            raise ExpansionError("unexpected expansion response format")

        contains = expanded["expansion"].get("contains")
        logger.info(
            "Expanded ValueSet %s with %s top-level codes",
            value_set_id,
            len(contains) if isinstance(contains, list) else 0,
        )
        return expanded
