"""Append-only audit trail of everything run in a session.

Entries live in an embedded DuckDB file inside the audit directory. One
process at a time owns ``audit-main.duckdb`` (DuckDB holds an exclusive
file lock for writers); a process that cannot get it writes to its own
``audit-orphan-<host>-<pid>-<id>.duckdb`` instead. The owner of the main
store folds orphans back in once their writers are gone, and an orphan
folds itself in at shutdown when the main store is free. ``read_audit``
gives the merged, chronological view across all of them.

Each store has two tables: ``history`` maps a monotonic index to the JSON
entry and ``history_index`` maps the same index to its timestamp
(microseconds since the epoch, strictly increasing per process).
"""
from __future__ import annotations
from dataclasses import asdict, dataclass
from typing import Dict, List, Optional, Sequence, Tuple
import glob
import json
import logging
import os
import random
import re
import socket
import threading
import time
import uuid

import duckdb
import pandas as pd

from otsql.core.errors import AuditError
from otsql.core.state import ReplState
from otsql.utils.constants import (
    AUDIT_MAIN_FILE, AUDIT_OPEN_RETRIES, AUDIT_ORPHAN_PREFIX, AUDIT_RETRY_DELAY,
    AUDIT_SUFFIX, AUDIT_SYNC_INTERVAL,
)

logger = logging.getLogger(__name__)

SCHEMA = (
    "CREATE TABLE IF NOT EXISTS history (idx UBIGINT PRIMARY KEY, entry VARCHAR NOT NULL)",
    "CREATE TABLE IF NOT EXISTS history_index (idx UBIGINT PRIMARY KEY, ts UBIGINT NOT NULL)",
)
ROWS_SQL = """
    SELECT h.idx, i.ts, h.entry
    FROM history h JOIN history_index i ON i.idx = h.idx
"""

# Stores opened by this process, so readers reuse the live connection
# instead of opening a second, conflicting one.
_REGISTRY_LOCK = threading.Lock()
_OPEN_STORES: Dict[str, 'AuditLog'] = {}


def now_micros() -> int:
    return time.time_ns() // 1000


@dataclass(frozen=True)
class AuditEntry:
    timestamp: int
    query: str
    db_user: str
    sys_user: str
    writemode: bool
    ots: Optional[str] = None
    redacted: bool = False
    from_include: bool = False

    @classmethod
    def from_state(cls, query: str, state: ReplState, from_include: Optional[bool] = None) -> 'AuditEntry':
        """Build an entry from a state snapshot; the timestamp is set on append."""
        return cls(
            timestamp=0,
            query=query,
            db_user=state.db_user,
            sys_user=state.sys_user,
            writemode=state.write_mode,
            ots=state.ots,
            redacted=state.redact_mode,
            from_include=state.from_snippet_or_include if from_include is None else from_include,
        )

    def to_json(self) -> str:
        data = asdict(self)
        del data['timestamp']
        return json.dumps(data)

    @classmethod
    def from_json(cls, text: str, timestamp: int) -> 'AuditEntry':
        data = json.loads(text)
        return cls(
            timestamp=timestamp,
            query=data.get('query', ''),
            db_user=data.get('db_user', ''),
            sys_user=data.get('sys_user', ''),
            writemode=bool(data.get('writemode', False)),
            ots=data.get('ots'),
            redacted=bool(data.get('redacted', False)),
            from_include=bool(data.get('from_include', False)),
        )


@dataclass(frozen=True)
class AuditRecord:
    source: str
    idx: int
    entry: AuditEntry


@dataclass(frozen=True)
class WorkingDatabase:
    """Which store this process writes to."""
    path: str
    main_path: str
    is_primary: bool
    pid: int
    uuid: str

    @classmethod
    def primary(cls, audit_dir: str) -> 'WorkingDatabase':
        return cls(main_path(audit_dir), main_path(audit_dir), True, os.getpid(), uuid.uuid4().hex)

    @classmethod
    def orphan(cls, audit_dir: str) -> 'WorkingDatabase':
        ident = uuid.uuid4().hex
        host = re.sub(r'[^A-Za-z0-9]+', '_', socket.gethostname()) or 'host'
        name = f"{AUDIT_ORPHAN_PREFIX}{host}-{os.getpid()}-{ident[:12]}{AUDIT_SUFFIX}"
        return cls(os.path.join(audit_dir, name), main_path(audit_dir), False, os.getpid(), ident)


def main_path(audit_dir: str) -> str:
    return os.path.join(audit_dir, AUDIT_MAIN_FILE)


def find_orphan_databases(audit_dir: str) -> List[str]:
    """Orphan stores in ``audit_dir``, oldest first."""
    pattern = os.path.join(glob.escape(audit_dir), f"{AUDIT_ORPHAN_PREFIX}*{AUDIT_SUFFIX}")
    found = []
    for path in glob.glob(pattern):
        try:
            found.append((os.path.getmtime(path), path))
        except FileNotFoundError:
            # merged and removed by another session since the glob
            continue
    return [path for _, path in sorted(found)]


def _ensure_schema(con: duckdb.DuckDBPyConnection) -> None:
    for statement in SCHEMA:
        con.execute(statement)


def _has_schema(con: duckdb.DuckDBPyConnection) -> bool:
    row = con.execute(
        "SELECT count(*) FROM information_schema.tables WHERE table_name IN ('history', 'history_index')"
    ).fetchone()
    return row[0] == 2


def _read_rows(con: duckdb.DuckDBPyConnection, order: str = 'h.idx') -> List[Tuple[int, int, str]]:
    if not _has_schema(con):
        return []
    return con.execute(f"{ROWS_SQL} ORDER BY {order}").fetchall()


def _insert_rows(con: duckdb.DuckDBPyConnection, rows: Sequence[Tuple[int, str]]) -> None:
    """Append (ts, entry) rows in one transaction with fresh indexes."""
    con.begin()
    try:
        start = con.execute("SELECT coalesce(max(idx) + 1, 0) FROM history").fetchone()[0]
        for offset, (ts, entry) in enumerate(rows):
            con.execute("INSERT INTO history VALUES (?, ?)", [start + offset, entry])
            con.execute("INSERT INTO history_index VALUES (?, ?)", [start + offset, ts])
        con.commit()
    except duckdb.Error:
        con.rollback()
        raise


def _remove_store(path: str) -> None:
    for candidate in (path, path + '.wal'):
        if os.path.exists(candidate):
            os.remove(candidate)


def _connect_main(path: str) -> Optional[duckdb.DuckDBPyConnection]:
    """Try to become the writer of the main store; None if another writer has it."""
    for attempt in range(AUDIT_OPEN_RETRIES):
        try:
            return duckdb.connect(path)
        except duckdb.Error as e:
            logger.debug("Main audit store busy (attempt %d): %s", attempt + 1, e)
            time.sleep(random.uniform(*AUDIT_RETRY_DELAY))
    return None


class AuditLog:
    """Writer for this process's audit store."""

    def __init__(self, con: duckdb.DuckDBPyConnection, working: WorkingDatabase, audit_dir: str):
        self.working = working
        self.audit_dir = audit_dir
        self._con = con
        self._lock = threading.Lock()
        self._closed = False
        self._sync: Optional[AuditSync] = None
        _ensure_schema(con)
        self._last_ts = con.execute("SELECT coalesce(max(ts), 0) FROM history_index").fetchone()[0]

    @classmethod
    def open(cls, audit_dir: str, sync_interval: float = AUDIT_SYNC_INTERVAL,
             start_sync: bool = True) -> 'AuditLog':
        """Open the main store, or a fresh orphan store if the main one is taken."""
        audit_dir = os.path.abspath(os.path.expanduser(audit_dir))
        try:
            os.makedirs(audit_dir, exist_ok=True)
        except OSError as e:
            raise AuditError(f"Cannot create audit directory {audit_dir}: {e}")

        working = WorkingDatabase.primary(audit_dir)
        with _REGISTRY_LOCK:
            owned_here = working.path in _OPEN_STORES
        con = None if owned_here else _connect_main(working.path)
        if con is None:
            working = WorkingDatabase.orphan(audit_dir)
            logger.info("Main audit store is in use; writing to %s", working.path)
            try:
                con = duckdb.connect(working.path)
            except duckdb.Error as e:
                raise AuditError(f"Cannot open audit store {working.path}: {e}")

        try:
            log = cls(con, working, audit_dir)
        except duckdb.Error as e:
            con.close()
            raise AuditError(f"Cannot initialise audit store {working.path}: {e}")
        with _REGISTRY_LOCK:
            _OPEN_STORES[working.path] = log
        if start_sync:
            log._sync = AuditSync(log, sync_interval)
            log._sync.start()
        return log

    @property
    def is_primary(self) -> bool:
        return self.working.is_primary

    def append(self, entry: AuditEntry) -> int:
        """Persist ``entry`` and return its index in this store."""
        with self._lock:
            if self._closed:
                raise AuditError("Audit log is closed")
            ts = max(now_micros(), self._last_ts + 1)
            try:
                self._con.begin()
                idx = self._con.execute("SELECT coalesce(max(idx) + 1, 0) FROM history").fetchone()[0]
                self._con.execute("INSERT INTO history VALUES (?, ?)", [idx, entry.to_json()])
                self._con.execute("INSERT INTO history_index VALUES (?, ?)", [idx, ts])
                self._con.commit()
            except duckdb.Error as e:
                try:
                    self._con.rollback()
                except duckdb.Error as rollback_error:
                    logger.debug("Rollback after failed append also failed: %s", rollback_error)
                raise AuditError(f"Failed to record audit entry: {e}")
            self._last_ts = ts
            return idx

    def add_entry(self, query: str, state: ReplState, from_include: Optional[bool] = None) -> int:
        return self.append(AuditEntry.from_state(query, state, from_include))

    def _rows(self, order: str = 'h.idx') -> List[Tuple[int, int, str]]:
        with self._lock:
            if self._closed:
                return []
            return _read_rows(self._con, order)

    def list(self) -> List[Tuple[int, AuditEntry]]:
        """Entries of this store in the order they were appended."""
        return [(idx, AuditEntry.from_json(entry, ts)) for idx, ts, entry in self._rows()]

    def list_between(self, start_us: int, end_us: int) -> List[Tuple[int, AuditEntry]]:
        """Entries whose timestamp falls in ``[start_us, end_us]``, oldest first."""
        with self._lock:
            if self._closed:
                return []
            rows = self._con.execute(
                f"{ROWS_SQL} WHERE i.ts BETWEEN ? AND ? ORDER BY i.ts, h.idx", [start_us, end_us]
            ).fetchall()
        return [(idx, AuditEntry.from_json(entry, ts)) for idx, ts, entry in rows]

    def last(self) -> Optional[AuditEntry]:
        entries = self.list()
        return entries[-1][1] if entries else None

    def ots_history(self) -> List[str]:
        """Distinct OTS phrases used so far, most recent first."""
        seen: List[str] = []
        try:
            rows = self._rows('i.ts, h.idx')
        except duckdb.Error as e:
            logger.warning("Could not read OTS history: %s", e)
            return seen
        for _, ts, text in reversed(rows):
            ots = AuditEntry.from_json(text, ts).ots
            if ots and ots not in seen:
                seen.append(ots)
        return seen

    def import_rows(self, rows: Sequence[Tuple[int, str]]) -> None:
        with self._lock:
            _insert_rows(self._con, rows)

    def recover_orphans(self) -> int:
        """Fold orphan stores whose writers are gone into the main store."""
        if not self.is_primary:
            return 0
        moved = 0
        for path in find_orphan_databases(self.audit_dir):
            with _REGISTRY_LOCK:
                if path in _OPEN_STORES:
                    continue
            try:
                src = duckdb.connect(path, read_only=True)
            except duckdb.Error as e:
                logger.debug("Orphan audit store %s still in use: %s", path, e)
                continue
            try:
                rows = [(ts, entry) for _, ts, entry in _read_rows(src, 'i.ts, h.idx')]
            finally:
                src.close()
            self.import_rows(rows)
            _remove_store(path)
            moved += len(rows)
            logger.info("Recovered %d audit entries from %s", len(rows), path)
        return moved

    def checkpoint(self) -> None:
        with self._lock:
            if not self._closed:
                self._con.execute("CHECKPOINT")

    def sync_once(self) -> None:
        """One round of background maintenance; failures are logged only."""
        try:
            self.recover_orphans()
            self.checkpoint()
        except Exception as e:
            logger.warning("Audit sync failed: %s", e)

    def _fold_into_main(self) -> bool:
        """Copy this orphan store into the main store if it can be reached."""
        rows = [(ts, entry) for _, ts, entry in _read_rows(self._con, 'i.ts, h.idx')]
        with _REGISTRY_LOCK:
            live_main = _OPEN_STORES.get(self.working.main_path)
        if live_main is not None:
            live_main.import_rows(rows)
            return True
        try:
            main = duckdb.connect(self.working.main_path)
        except duckdb.Error as e:
            logger.info("Main audit store still busy, leaving %s for recovery: %s", self.working.path, e)
            return False
        try:
            _ensure_schema(main)
            _insert_rows(main, rows)
        finally:
            main.close()
        return True

    def shutdown(self) -> None:
        """Stop syncing and close the store. Safe to call more than once; never raises."""
        if self._sync is not None:
            self._sync.stop()
            self._sync = None
        if self.is_primary and not self._closed:
            try:
                self.recover_orphans()
            except (duckdb.Error, OSError) as e:
                logger.warning("Orphan recovery at shutdown failed: %s", e)
        with self._lock:
            if self._closed:
                return
            self._closed = True
            folded = False
            try:
                self._con.execute("CHECKPOINT")
                if not self.is_primary:
                    folded = self._fold_into_main()
            except (duckdb.Error, OSError) as e:
                logger.warning("Failed to flush audit store %s: %s", self.working.path, e)
            try:
                self._con.close()
            except duckdb.Error as e:
                logger.warning("Failed to close audit store %s: %s", self.working.path, e)
        with _REGISTRY_LOCK:
            _OPEN_STORES.pop(self.working.path, None)
        if folded:
            try:
                _remove_store(self.working.path)
            except OSError as e:
                logger.warning("Could not remove merged orphan store %s: %s", self.working.path, e)

    close = shutdown

    def __enter__(self) -> 'AuditLog':
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.shutdown()

    def __del__(self):
        if getattr(self, '_closed', True) is False:
            try:
                self.shutdown()
            except Exception as e:  # pragma: no cover
                logger.debug("Audit log teardown failed: %s", e)


class NullAuditLog:
    """Stand-in used when no audit store could be opened."""

    working = None
    is_primary = False

    def append(self, entry: AuditEntry) -> None:
        return None

    def add_entry(self, query: str, state: ReplState, from_include: Optional[bool] = None) -> None:
        return None

    def list(self) -> List[Tuple[int, AuditEntry]]:
        return []

    def list_between(self, start_us: int, end_us: int) -> List[Tuple[int, AuditEntry]]:
        return []

    def last(self) -> Optional[AuditEntry]:
        return None

    def ots_history(self) -> List[str]:
        return []

    def shutdown(self) -> None:
        pass

    close = shutdown


class AuditSync(threading.Thread):
    """Periodic orphan recovery and checkpointing for one AuditLog."""

    def __init__(self, log: AuditLog, interval: float = AUDIT_SYNC_INTERVAL):
        super().__init__(name='otsql-audit-sync', daemon=True)
        self.log = log
        self.interval = interval
        self._stop_event = threading.Event()

    def run(self) -> None:
        self.log.sync_once()
        while not self._stop_event.wait(self.interval):
            self.log.sync_once()

    def stop(self) -> None:
        self._stop_event.set()
        if self.is_alive() and threading.current_thread() is not self:
            self.join()


def read_audit(audit_dir: str, include_orphans: bool = True) -> List[AuditRecord]:
    """Merged view of the main store and (optionally) orphan stores, oldest first.

    Stores locked by a live writer in another process are skipped with a
    warning.
    """
    audit_dir = os.path.abspath(os.path.expanduser(audit_dir))
    sources = [main_path(audit_dir)]
    if include_orphans:
        sources.extend(find_orphan_databases(audit_dir))

    records: List[AuditRecord] = []
    for path in sources:
        if not os.path.exists(path):
            continue
        with _REGISTRY_LOCK:
            live = _OPEN_STORES.get(path)
        if live is not None:
            rows = live._rows()
        else:
            try:
                con = duckdb.connect(path, read_only=True)
            except duckdb.Error as e:
                logger.warning("Skipping audit store %s: %s", path, e)
                continue
            try:
                rows = _read_rows(con)
            finally:
                con.close()
        source = os.path.basename(path)
        records.extend(AuditRecord(source, idx, AuditEntry.from_json(entry, ts)) for idx, ts, entry in rows)

    records.sort(key=lambda r: (r.entry.timestamp, r.source, r.idx))
    return records


def audit_frame(records: Sequence[AuditRecord]) -> pd.DataFrame:
    """Tabular form of ``records`` for export."""
    columns = ['timestamp', 'source', 'idx', 'query', 'db_user', 'sys_user',
               'writemode', 'ots', 'redacted', 'from_include']
    data = []
    for record in records:
        row = asdict(record.entry)
        row['source'] = record.source
        row['idx'] = record.idx
        data.append(row)
    df = pd.DataFrame(data, columns=columns)
    df['timestamp'] = pd.to_datetime(df['timestamp'], unit='us', utc=True)
    return df
