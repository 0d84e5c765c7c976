"""Code scanner: finds terminology codes inside a clinical record.

Every node of the record is classified into one of a closed set of shapes and
dispatched explicitly:

- ``LEAF_CODE``: a mapping with string ``system`` and ``code`` (a Coding);
  looked up in the rule table, then its child containers are visited.
- ``CONCEPT_WRAPPER``: a mapping with a ``coding`` list (a CodeableConcept);
  each member is visited first, then the remaining child containers.
- ``CONTAINER``: any other mapping or list.
- ``SCALAR``: everything else; ignored.

Depth is bounded because records come from untrusted callers.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, Iterator, Tuple

from security_labeling.core.labeling_config import LabelingTuning, labeling_tuning
from security_labeling.services.labeling_errors import RecordTooDeepError
from security_labeling.services.labeling_types import CodeIdentity, RuleTable, TopicLabel


class NodeShape(str, Enum):
    LEAF_CODE = "leaf_code"
    CONCEPT_WRAPPER = "concept_wrapper"
    CONTAINER = "container"
    SCALAR = "scalar"


def classify_node(node: Any) -> NodeShape:
    if isinstance(node, dict):
        system, code = node.get("system"), node.get("code")
        if isinstance(system, str) and system and isinstance(code, str) and code:
            return NodeShape.LEAF_CODE
        if isinstance(node.get("coding"), list):
            return NodeShape.CONCEPT_WRAPPER
        return NodeShape.CONTAINER
    if isinstance(node, list):
        return NodeShape.CONTAINER
    return NodeShape.SCALAR


def _child_containers(node: Any, *, skip: str | None = None) -> Iterator[Any]:
    if isinstance(node, dict):
        for key, value in node.items():
            if key != skip and isinstance(value, (dict, list)):
                yield value
    elif isinstance(node, list):
        for value in node:
            if isinstance(value, (dict, list)):
                yield value


class CodeScanner:
    def __init__(self, table: RuleTable, *, tuning: LabelingTuning = labeling_tuning) -> None:
        self._table = table
        self._max_depth = tuning.max_scan_depth

    def scan(self, record: Any) -> Tuple[TopicLabel, ...]:
        """Return the matched topics for ``record``, deduplicated in first-match order."""
        matched: Dict[TopicLabel, TopicLabel] = {}
        self._visit(record, 0, matched)
        return tuple(matched.values())

    def _visit(self, node: Any, depth: int, matched: Dict[TopicLabel, TopicLabel]) -> None:
        if depth > self._max_depth:
            raise RecordTooDeepError(self._max_depth)

        shape = classify_node(node)
        if shape is NodeShape.SCALAR:
            return

        if shape is NodeShape.LEAF_CODE:
            for topic in self._table.topics_for(CodeIdentity(system=node["system"], code=node["code"])):
                matched.setdefault(topic, topic)
            children = _child_containers(node)
        elif shape is NodeShape.CONCEPT_WRAPPER:
            for member in node["coding"]:
                self._visit(member, depth + 1, matched)
            children = _child_containers(node, skip="coding")
        else:
            children = _child_containers(node)

        for child in children:
            self._visit(child, depth + 1, matched)
