#!/usr/bin/env python
"""Unit tests for the DuckDB-backed audit log."""
import os
import subprocess
import sys
import tempfile
import time
import unittest
from unittest import mock

import duckdb

from otsql.core.audit import (
    SCHEMA, AuditEntry, AuditLog, NullAuditLog, WorkingDatabase, audit_frame,
    find_orphan_databases, main_path, now_micros, read_audit,
)
from otsql.core.errors import AuditError
from otsql.core.state import ReplState

WORKER_SCRIPT = r'''
import sys
from otsql.core.audit import AuditEntry, AuditLog

audit_dir, prefix, count = sys.argv[1], sys.argv[2], int(sys.argv[3])
log = AuditLog.open(audit_dir, start_sync=False)
print("primary" if log.is_primary else "orphan", flush=True)
sys.stdin.readline()
for i in range(count):
    log.append(AuditEntry(0, f"{prefix}-{i}", "app", "worker", False))
log.shutdown()
print("done", flush=True)
'''


def entry(query, ots=None, **kwargs):
    return AuditEntry(0, query, 'app', 'alice', ots is not None, ots, **kwargs)


class AuditLogTestCase(unittest.TestCase):

    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.dir = self._tmp.name
        self.logs = []

    def tearDown(self):
        for log in self.logs:
            log.shutdown()
        self._tmp.cleanup()

    def open(self):
        log = AuditLog.open(self.dir, start_sync=False)
        self.logs.append(log)
        return log


class AppendTests(AuditLogTestCase):
    """Appending to and reading back one store."""

    def test_first_writer_owns_main_store(self):
        log = self.open()
        self.assertTrue(log.is_primary)
        self.assertEqual(log.working.path, main_path(self.dir))

    def test_append_and_list(self):
        log = self.open()
        self.assertEqual(log.append(entry('SELECT 1')), 0)
        self.assertEqual(log.append(entry('UPDATE t SET a = 1', ots='INC-9')), 1)
        listed = log.list()
        self.assertEqual([idx for idx, _ in listed], [0, 1])
        self.assertEqual(listed[1][1].query, 'UPDATE t SET a = 1')
        self.assertEqual(listed[1][1].ots, 'INC-9')
        self.assertTrue(listed[1][1].writemode)
        self.assertEqual(log.last().query, 'UPDATE t SET a = 1')

    def test_timestamps_strictly_increase(self):
        log = self.open()
        before = now_micros()
        for i in range(200):
            log.append(entry(f'SELECT {i}'))
        stamps = [e.timestamp for _, e in log.list()]
        self.assertEqual(len(stamps), 200)
        self.assertTrue(all(b > a for a, b in zip(stamps, stamps[1:])))
        self.assertGreaterEqual(stamps[0], before)

    def test_list_between(self):
        log = self.open()
        log.append(entry('early'))
        middle = now_micros() + 1
        time.sleep(0.01)
        log.append(entry('late'))
        self.assertEqual([e.query for _, e in log.list_between(middle, now_micros() + 1000)], ['late'])
        self.assertEqual(len(log.list_between(0, now_micros() + 1000)), 2)

    def test_add_entry_from_state(self):
        log = self.open()
        state = ReplState(db_user='app', sys_user='alice', redact_mode=True)
        log.add_entry('SELECT email FROM users', state, from_include=True)
        recorded = log.last()
        self.assertEqual(recorded.db_user, 'app')
        self.assertTrue(recorded.redacted)
        self.assertTrue(recorded.from_include)
        self.assertFalse(recorded.writemode)

    def test_ots_history_distinct_most_recent_first(self):
        log = self.open()
        for ots in ('INC-1', None, 'INC-2', 'INC-1', 'INC-2', 'INC-3'):
            log.append(entry('x', ots=ots))
        self.assertEqual(log.ots_history(), ['INC-3', 'INC-2', 'INC-1'])

    def test_entries_survive_reopen(self):
        log = AuditLog.open(self.dir, start_sync=False)
        log.append(entry('persisted'))
        last_ts = log.last().timestamp
        log.shutdown()
        again = self.open()
        self.assertTrue(again.is_primary)
        self.assertEqual([e.query for _, e in again.list()], ['persisted'])
        again.append(entry('next'))
        self.assertGreater(again.last().timestamp, last_ts)

    def test_shutdown_is_idempotent(self):
        log = AuditLog.open(self.dir, start_sync=False)
        log.shutdown()
        log.shutdown()
        log.close()
        with self.assertRaises(AuditError):
            log.append(entry('too late'))
        self.assertEqual(log.list(), [])
        self.assertEqual(log.list_between(0, now_micros()), [])

    def test_context_manager(self):
        with AuditLog.open(self.dir, start_sync=False) as log:
            log.append(entry('inside'))
        self.assertEqual([r.entry.query for r in read_audit(self.dir)], ['inside'])

    def test_unusable_directory(self):
        blocker = os.path.join(self.dir, 'not-a-dir')
        with open(blocker, 'w') as f:
            f.write('x')
        with self.assertRaises(AuditError):
            AuditLog.open(blocker, start_sync=False)

    def test_background_sync(self):
        log = AuditLog.open(self.dir, sync_interval=0.05)
        self.logs.append(log)
        log.append(entry('synced'))
        time.sleep(0.2)
        log.shutdown()
        self.assertEqual([r.entry.query for r in read_audit(self.dir)], ['synced'])


class OrphanTests(AuditLogTestCase):
    """Concurrent sessions and orphan stores."""

    def test_second_writer_gets_orphan_store(self):
        main = self.open()
        other = self.open()
        self.assertTrue(main.is_primary)
        self.assertFalse(other.is_primary)
        self.assertTrue(os.path.basename(other.working.path).startswith('audit-orphan-'))
        self.assertEqual(find_orphan_databases(self.dir), [other.working.path])

    def test_merged_view_while_both_are_open(self):
        main = self.open()
        other = self.open()
        main.append(entry('main-0'))
        other.append(entry('orphan-0'))
        main.append(entry('main-1'))
        self.assertEqual([r.entry.query for r in read_audit(self.dir)], ['main-0', 'orphan-0', 'main-1'])
        self.assertEqual([r.entry.query for r in read_audit(self.dir, include_orphans=False)],
                         ['main-0', 'main-1'])

    def test_orphan_folds_into_main_on_shutdown(self):
        main = self.open()
        other = self.open()
        other.append(entry('orphan-0'))
        other.append(entry('orphan-1'))
        orphan_path = other.working.path
        other.shutdown()
        self.assertFalse(os.path.exists(orphan_path))
        self.assertEqual([e.query for _, e in main.list()], ['orphan-0', 'orphan-1'])

    def test_orphan_folds_into_closed_main(self):
        main = self.open()
        other = self.open()
        other.append(entry('late'))
        main.append(entry('early'))
        main.shutdown()
        other.shutdown()
        self.assertEqual(find_orphan_databases(self.dir), [])
        self.assertEqual(sorted(r.entry.query for r in read_audit(self.dir)), ['early', 'late'])

    def abandoned_orphan(self, queries):
        working = WorkingDatabase.orphan(self.dir)
        con = duckdb.connect(working.path)
        for statement in SCHEMA:
            con.execute(statement)
        for idx, query in enumerate(queries):
            con.execute("INSERT INTO history VALUES (?, ?)", [idx, entry(query).to_json()])
            con.execute("INSERT INTO history_index VALUES (?, ?)", [idx, 1000 + idx])
        con.close()
        return working.path

    def test_recover_abandoned_orphan(self):
        path = self.abandoned_orphan(['lost-0', 'lost-1'])
        main = self.open()
        main.append(entry('current'))
        self.assertEqual(main.recover_orphans(), 2)
        self.assertFalse(os.path.exists(path))
        self.assertEqual([e.query for _, e in main.list()], ['current', 'lost-0', 'lost-1'])
        self.assertEqual([r.entry.query for r in read_audit(self.dir)], ['lost-0', 'lost-1', 'current'])

    def test_primary_recovers_orphans_at_shutdown(self):
        main = self.open()
        path = self.abandoned_orphan(['lost-0'])
        main.shutdown()
        self.assertFalse(os.path.exists(path))
        self.assertEqual([r.entry.query for r in read_audit(self.dir)], ['lost-0'])

    def test_orphan_removed_during_listing_is_skipped(self):
        gone = self.abandoned_orphan(['merged-0'])
        kept = self.abandoned_orphan(['lost-0'])
        getmtime = os.path.getmtime

        def vanishing(path):
            if path == gone:
                raise FileNotFoundError(path)
            return getmtime(path)

        with mock.patch('otsql.core.audit.os.path.getmtime', side_effect=vanishing):
            self.assertEqual(find_orphan_databases(self.dir), [kept])

    def test_orphans_do_not_recover(self):
        self.open()
        other = self.open()
        self.assertEqual(other.recover_orphans(), 0)

    def test_concurrent_processes(self):
        child = subprocess.Popen(
            [sys.executable, '-c', WORKER_SCRIPT, self.dir, 'child', '500'],
            stdin=subprocess.PIPE, stdout=subprocess.PIPE, text=True,
        )
        try:
            self.assertEqual(child.stdout.readline().strip(), 'primary')
            log = self.open()
            self.assertFalse(log.is_primary)
            child.stdin.write('go\n')
            child.stdin.flush()
            for i in range(500):
                log.append(entry(f'parent-{i}'))
            self.assertEqual(child.stdout.readline().strip(), 'done')
            self.assertEqual(child.wait(timeout=60), 0)
        finally:
            if child.poll() is None:
                child.kill()
            child.stdin.close()
            child.stdout.close()
        log.shutdown()

        records = read_audit(self.dir, include_orphans=True)
        self.assertEqual(len(records), 1000)
        for prefix in ('child', 'parent'):
            queries = [r.entry.query for r in records if r.entry.query.startswith(prefix + '-')]
            self.assertEqual(queries, [f'{prefix}-{i}' for i in range(500)])
        self.assertEqual(find_orphan_databases(self.dir), [])


class ExportTests(AuditLogTestCase):
    """Tabular export and the null log."""

    def test_audit_frame(self):
        log = self.open()
        log.append(entry('SELECT 1', ots='INC-5'))
        df = audit_frame(read_audit(self.dir))
        self.assertEqual(list(df['query']), ['SELECT 1'])
        self.assertEqual(list(df['source']), ['audit-main.duckdb'])
        self.assertEqual(str(df['timestamp'].dt.tz), 'UTC')

    def test_empty_frame(self):
        df = audit_frame([])
        self.assertEqual(len(df), 0)
        self.assertIn('ots', df.columns)

    def test_null_log(self):
        log = NullAuditLog()
        self.assertIsNone(log.append(entry('x')))
        self.assertEqual(log.list(), [])
        self.assertEqual(log.ots_history(), [])
        log.shutdown()


if __name__ == '__main__':
    unittest.main()
