"""Transaction state of the primary connection, observed from the monitor."""
from __future__ import annotations
from dataclasses import dataclass
from enum import Enum
import logging

import psycopg

from otsql.core.connection import MonitorConnection

logger = logging.getLogger(__name__)

STATE_QUERY = "SELECT state, backend_xid::text FROM pg_stat_activity WHERE pid = %s"
XACT_QUERY = "SELECT xact_start, backend_xid::text FROM pg_stat_activity WHERE pid = %s"


class TransactionState(Enum):
    NONE = 'none'
    IDLE = 'idle'
    ACTIVE = 'active'
    ERROR = 'error'


@dataclass(frozen=True)
class TransactionProbe:
    state: TransactionState
    verified: bool


def _classify(monitor: MonitorConnection, backend_pid: int) -> TransactionState:
    row = monitor.query_one(STATE_QUERY, (backend_pid,))
    if row is None:
        return TransactionState.NONE
    state, xid = row
    state = state or ''
    if state == 'idle in transaction (aborted)':
        return TransactionState.ERROR
    if state.startswith('idle in transaction'):
        return TransactionState.ACTIVE if xid else TransactionState.IDLE
    if state == 'active':
        # The backend is mid-statement; look at the transaction itself.
        row = monitor.query_one(XACT_QUERY, (backend_pid,))
        if row is None or row[0] is None:
            return TransactionState.NONE
        return TransactionState.ACTIVE if row[1] else TransactionState.IDLE
    return TransactionState.NONE


def probe_transaction(monitor: MonitorConnection, backend_pid: int) -> TransactionProbe:
    """Classify the primary backend's transaction; ``verified`` is False when the probe failed."""
    if not isinstance(monitor, MonitorConnection):
        raise TypeError(f"transaction probes need a MonitorConnection, got {type(monitor).__name__}")
    try:
        return TransactionProbe(_classify(monitor, backend_pid), True)
    except psycopg.Error as e:
        logger.warning("Transaction state probe failed: %s", e)
        return TransactionProbe(TransactionState.NONE, False)


def check_transaction(monitor: MonitorConnection, backend_pid: int) -> TransactionState:
    """Best-effort state for display; any failure reads as NONE."""
    return probe_transaction(monitor, backend_pid).state
