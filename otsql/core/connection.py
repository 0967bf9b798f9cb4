"""Database connections used by the session.

The session holds two connections to the same server. The primary one runs
the operator's statements. The monitor one only observes the primary's
backend through ``pg_stat_activity`` and never runs operator SQL; keeping
them as separate types means one cannot be passed where the other is
expected.
"""
from __future__ import annotations
from dataclasses import dataclass, field
from typing import Any, List, Optional, Sequence
import logging

import pandas as pd
import psycopg

logger = logging.getLogger(__name__)


@dataclass
class QueryResult:
    columns: List[str] = field(default_factory=list)
    rows: List[tuple] = field(default_factory=list)
    rowcount: int = -1
    status: Optional[str] = None

    @property
    def has_rows(self) -> bool:
        return bool(self.columns)

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame.from_records(self.rows, columns=self.columns)


class Connection:
    """Thin wrapper over an autocommit ``psycopg`` connection."""

    role = 'connection'

    def __init__(self, raw: psycopg.Connection):
        self.raw = raw

    @classmethod
    def connect(cls, dsn: str, application_name: str = 'otsql'):
        raw = psycopg.connect(dsn, autocommit=True, application_name=f"{application_name}-{cls.role}")
        logger.debug("Opened %s connection (backend pid %s)", cls.role, raw.info.backend_pid)
        return cls(raw)

    def execute(self, sql: str, params: Optional[Sequence[Any]] = None) -> QueryResult:
        with self.raw.cursor() as cur:
            cur.execute(sql, params)
            if cur.description is None:
                return QueryResult(rowcount=cur.rowcount, status=cur.statusmessage)
            columns = [col.name for col in cur.description]
            rows = cur.fetchall()
            return QueryResult(columns, rows, cur.rowcount, cur.statusmessage)

    def batch_execute(self, sql: str) -> None:
        """Run several ``;``-separated statements that take no parameters."""
        self.raw.execute(sql)

    def query_one(self, sql: str, params: Optional[Sequence[Any]] = None) -> Optional[tuple]:
        with self.raw.cursor() as cur:
            cur.execute(sql, params)
            return cur.fetchone()

    @property
    def backend_pid(self) -> int:
        return self.raw.info.backend_pid

    @property
    def user(self) -> str:
        return self.raw.info.user

    @property
    def database(self) -> str:
        return self.raw.info.dbname

    @property
    def is_superuser(self) -> bool:
        return self.raw.info.parameter_status('is_superuser') == 'on'

    def cancel(self) -> None:
        """Ask the server to cancel the statement running on this connection."""
        try:
            self.raw.cancel()
        except psycopg.Error as e:
            logger.warning("Failed to cancel running statement: %s", e)

    def close(self) -> None:
        try:
            self.raw.close()
        except psycopg.Error as e:
            logger.debug("Error closing %s connection: %s", self.role, e)


class PrimaryConnection(Connection):
    """Runs the operator's statements."""
    role = 'primary'


class MonitorConnection(Connection):
    """Observes the primary connection's backend; never runs operator SQL."""
    role = 'monitor'


class CatalogConnection(Connection):
    """Side connection for schema listings that must not disturb the primary transaction."""
    role = 'catalog'
