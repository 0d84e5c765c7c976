"""Value types shared by the rule compiler and the tagging pipeline.

Composite identities are frozen dataclasses so they can key dictionaries and
sets directly; nothing here is keyed by concatenated strings.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional, Tuple


# ---------------------------------------------------------------------------
# Identities
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class CodeIdentity:
    """A (terminology system, code) pair; exact, case-sensitive equality."""

    system: str
    code: str


@dataclass(frozen=True)
class TopicLabel:
    """A sensitive-topic security label.

    Identity is ``(system, code)``; ``display`` never takes part in equality
    or hashing.
    """

    system: Optional[str]
    code: str
    display: Optional[str] = field(default=None, compare=False)

    def to_coding(self) -> Dict[str, Any]:
        coding: Dict[str, Any] = {}
        if self.system is not None:
            coding["system"] = self.system
        coding["code"] = self.code
        coding["display"] = self.display if self.display is not None else self.code
        return coding


# ---------------------------------------------------------------------------
# Sources and compiled rules
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class TopicSource:
    """One validated, flattened topic source ready to be merged."""

    source_id: str
    topics: Tuple[TopicLabel, ...]
    codes: Tuple[CodeIdentity, ...]
    source_date: Optional[datetime]
    resource: Mapping[str, Any] = field(compare=False, repr=False)

    @property
    def association_count(self) -> int:
        return len(self.topics) * len(self.codes)


@dataclass(frozen=True)
class RuleTable:
    """Immutable compiled snapshot.

    ``entries`` is derived from ``sources``; replacing a source contribution
    means building a new table, never editing this one.
    """

    entries: Mapping[CodeIdentity, Tuple[TopicLabel, ...]]
    sources: Mapping[str, TopicSource]
    effective_epoch: Optional[datetime]
    version: int = 0

    @classmethod
    def empty(cls) -> "RuleTable":
        return cls(entries=MappingProxyType({}), sources=MappingProxyType({}), effective_epoch=None, version=0)

    @property
    def is_loaded(self) -> bool:
        return bool(self.entries)

    @property
    def rule_count(self) -> int:
        return sum(len(topics) for topics in self.entries.values())

    def topics_for(self, identity: CodeIdentity) -> Tuple[TopicLabel, ...]:
        return self.entries.get(identity, ())


# ---------------------------------------------------------------------------
# Outcomes
# ---------------------------------------------------------------------------

class Severity(str, Enum):
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"


@dataclass
class CompilationOutcome:
    severity: Severity
    message: str
    diagnostics: List[str] = field(default_factory=list)
    compiled_count: int = 0
    table: Optional[RuleTable] = None
    sources: List[TopicSource] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.severity != Severity.ERROR


class OutputMode(str, Enum):
    NARROWED = "narrowed"
    FULL = "full"


class Disposition(str, Enum):
    UNSUPPORTED = "unsupported"
    SKIPPED = "skipped"
    PROCESSED = "processed"


@dataclass
class ProcessingOutcome:
    """Result of running one bundle entry through the per-record pipeline."""

    entry: Dict[str, Any]
    disposition: Disposition
    matched: Tuple[TopicLabel, ...] = ()
    added: Tuple[TopicLabel, ...] = ()

    @property
    def resource(self) -> Optional[Dict[str, Any]]:
        resource = self.entry.get("resource")
        return resource if isinstance(resource, dict) else None

    @property
    def labeled(self) -> bool:
        return self.disposition == Disposition.PROCESSED and bool(self.matched)


@dataclass
class TaggingCounters:
    analyzed: int = 0
    labeled: int = 0
    skipped: int = 0
    unsupported: int = 0

    def as_dict(self) -> Dict[str, int]:
        return {"analyzed": self.analyzed, "labeled": self.labeled, "skipped": self.skipped}


@dataclass
class TaggingResult:
    bundle: Dict[str, Any]
    labels: List[TopicLabel]
    counters: TaggingCounters
    table_version: int = 0
