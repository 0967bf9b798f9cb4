"""Everything a REPL handler needs, in one place."""
from __future__ import annotations
from dataclasses import dataclass, field
from typing import Callable, List, Optional
import logging

import psycopg

from otsql.core.connection import Connection, MonitorConnection, PrimaryConnection
from otsql.core.state import StateHandle
from otsql.core.transaction import TransactionState, check_transaction
from otsql.core.write_mode import WriteModeGate

logger = logging.getLogger(__name__)


@dataclass
class ReplContext:
    primary: PrimaryConnection
    monitor: MonitorConnection
    state: StateHandle
    audit: object
    reader: object
    redactions: List[str] = field(default_factory=list)
    editor: Optional[str] = None
    max_col_width: int = 50
    use_colours: bool = True
    show_progress: bool = True
    catalog_factory: Optional[Callable[[], Connection]] = None
    gate: Optional[WriteModeGate] = None
    last_input: Optional[str] = None
    last_tx_state: TransactionState = TransactionState.NONE
    _catalog: Optional[Connection] = None

    def __post_init__(self):
        if self.gate is None:
            self.gate = WriteModeGate(self.primary, self.monitor, self.state, self.audit, self.reader)

    @property
    def backend_pid(self) -> int:
        return self.primary.backend_pid

    def refresh_transaction_state(self) -> TransactionState:
        """Probe the primary's transaction (for the prompt) and remember it."""
        self.last_tx_state = check_transaction(self.monitor, self.backend_pid)
        return self.last_tx_state

    def catalog_connection(self, sameconn: bool) -> Connection:
        """Connection for schema listings: the primary one, or a lazily opened side connection."""
        if sameconn or self.catalog_factory is None:
            return self.primary
        if self._catalog is None:
            try:
                self._catalog = self.catalog_factory()
            except psycopg.Error as e:
                logger.warning("Could not open catalog connection, using the primary one: %s", e)
                return self.primary
        return self._catalog

    def close(self) -> None:
        with self.state.locked() as st:
            st.close_output()
        if self._catalog is not None:
            self._catalog.close()
            self._catalog = None
