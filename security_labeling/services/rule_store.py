from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from dataclasses import replace
from typing import Iterator

from security_labeling.services.labeling_types import RuleTable

logger = logging.getLogger(__name__)


class RuleStore:
    """Owner of the current RuleTable snapshot.

    Readers call :meth:`current` once per request and keep that snapshot;
    publishing swaps the reference and never edits a published table.
    """

    def __init__(self, table: RuleTable | None = None) -> None:
        self._table = table or RuleTable.empty()
        self._publish_lock = threading.Lock()
        self._compile_lock = threading.RLock()

    def current(self) -> RuleTable:
        return self._table

    def publish(self, table: RuleTable) -> None:
        with self._publish_lock:
            self._table = table
        logger.info("Published rule table v%s with %s coded rules", table.version, table.rule_count)

    def reset(self) -> None:
        with self._compile_lock:
            self.publish(replace(RuleTable.empty(), version=self._table.version + 1))

    @contextmanager
    def compiling(self) -> Iterator[RuleTable]:
        """Serialize compilations so each one builds on the latest snapshot."""
        with self._compile_lock:
            yield self._table
