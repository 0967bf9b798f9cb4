#!/usr/bin/env python
"""Tests for the interactive loop and the command line entry points."""
import argparse
import io
import os
import tempfile
import unittest
from contextlib import redirect_stderr, redirect_stdout
from unittest import mock

import psycopg
from fakes import FakeMonitor, FakePrimary, FakeReader, make_context

from otsql.cli.main import build_parser, cmd_audit, main
from otsql.cli.repl import build_prompt, open_audit, repl_loop, start_repl
from otsql.core.audit import AuditEntry, AuditLog, NullAuditLog, read_audit
from otsql.core.transaction import TransactionState
from otsql.core.write_mode import DISABLE_REFUSED, EXIT_REFUSED
from otsql.utils.config import Config
from otsql.utils.constants import BEGIN_SQL, ENTER_WRITE_MODE_SQL, READ_ONLY_SQL


class PromptTests(unittest.TestCase):
    """Tests for build_prompt."""

    def test_markers(self):
        self.assertEqual(build_prompt('appdb', False, TransactionState.NONE, False), 'appdb=> ')
        self.assertEqual(build_prompt('appdb', True, TransactionState.IDLE, True), 'appdb=# ')
        self.assertEqual(build_prompt('appdb', False, TransactionState.ACTIVE, True), 'appdb=*> ')
        self.assertEqual(build_prompt('appdb', False, TransactionState.ERROR, True), 'appdb=!> ')

    def test_continuation(self):
        self.assertEqual(build_prompt('appdb', False, TransactionState.NONE, False, continuation=True),
                         'appdb-> ')

    def test_colour_escapes_are_invisible_to_readline(self):
        prompt = build_prompt('appdb', False, TransactionState.NONE, True, color=True)
        self.assertEqual(prompt, '\001\033[1;32m\002appdb=>\001\033[0m\002 ')

    def test_colours(self):
        self.assertEqual(build_prompt('appdb', False, TransactionState.NONE, False, color=True), 'appdb=> ')
        self.assertIn('\033[1;34m', build_prompt('appdb', False, TransactionState.ACTIVE, True, color=True))
        self.assertIn('\033[1;31m', build_prompt('appdb', False, TransactionState.ERROR, False, color=True))


class ReplLoopTests(unittest.TestCase):
    """Whole sessions driven by scripted input."""

    def run_session(self, lines):
        ctx = make_context(reader_lines=lines)
        out, err = io.StringIO(), io.StringIO()
        with redirect_stdout(out), redirect_stderr(err):
            repl_loop(ctx, ctx.primary.database, ctx.primary.is_superuser)
        return ctx, out.getvalue(), err.getvalue()

    def test_write_session(self):
        ctx, _, err = self.run_session([
            '\\W',
            'INC-9 with erin',
            'INSERT INTO t',
            'VALUES (1);',
            '\\q',
            '\\W',
            'COMMIT;',
            '\\q',
        ])
        self.assertEqual(ctx.reader.lines, [])
        self.assertIn(EXIT_REFUSED, err)
        self.assertIn(DISABLE_REFUSED, err)
        self.assertEqual(ctx.primary.batches, [ENTER_WRITE_MODE_SQL, BEGIN_SQL])
        self.assertIn('appdb-> ', ctx.reader.prompts)
        self.assertIn('appdb=*> ', ctx.reader.prompts)
        self.assertIn('INSERT INTO t\nVALUES (1);', ctx.reader.added)
        entries = ctx.audit.entries
        self.assertEqual([e.query for e in entries],
                         ['\\W', 'INSERT INTO t\nVALUES (1);', '\\q', 'COMMIT;', '\\q'])
        self.assertTrue(all(e.ots == 'INC-9 with erin' for e in entries))
        self.assertTrue(ctx.state.snapshot().write_mode)

    def test_end_of_input_refused_until_rollback(self):
        ctx, _, err = self.run_session([
            '\\W', 'INC-1', 'DELETE FROM t;', EOFError(), 'ROLLBACK;',
        ])
        self.assertIn(EXIT_REFUSED, err)
        self.assertEqual(ctx.reader.lines, [])
        self.assertEqual(ctx.primary.executed, ['DELETE FROM t', 'ROLLBACK'])

    def test_interrupt_clears_buffer(self):
        ctx, out, _ = self.run_session(['SELECT', KeyboardInterrupt(), 'SELECT 2;'])
        self.assertEqual(ctx.primary.executed, ['SELECT 2'])
        self.assertIn('^C (cleared buffer)', out)

    def test_quit_word(self):
        ctx, _, _ = self.run_session(['quit', 'SELECT 1;'])
        self.assertEqual(ctx.reader.lines, ['SELECT 1;'])
        self.assertEqual(ctx.primary.executed, [])

    def test_several_actions_on_one_line(self):
        ctx, _, _ = self.run_session(['\\set n 3', 'SELECT ${n}; SELECT 4;'])
        self.assertEqual(ctx.primary.executed, ['SELECT 3', 'SELECT 4'])


class StartReplTests(unittest.TestCase):
    """start_repl wiring with the connections and reader replaced."""

    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.dir = self._tmp.name
        self.cfg = Config(os.path.join(self.dir, 'config.json'))

    def tearDown(self):
        self._tmp.cleanup()

    def start(self, lines, write=False):
        self.primary = primary = FakePrimary()
        reader = FakeReader(lines)
        patches = [
            mock.patch('otsql.cli.repl.PrimaryConnection.connect', return_value=primary),
            mock.patch('otsql.cli.repl.MonitorConnection.connect', return_value=FakeMonitor(primary)),
            mock.patch('otsql.cli.repl.LineReader', return_value=reader),
            mock.patch('otsql.cli.repl.getpass.getuser', return_value='alice'),
        ]
        for patch in patches:
            patch.start()
            self.addCleanup(patch.stop)
        with redirect_stdout(io.StringIO()), redirect_stderr(io.StringIO()):
            return start_repl('dbname=appdb', self.cfg, write=write, audit_dir=self.dir)

    def test_session_starts_read_only(self):
        self.assertEqual(self.start(['\\q']), 0)
        self.assertEqual(self.primary.batches, [READ_ONLY_SQL])

    def test_write_session_is_audited(self):
        self.assertEqual(self.start(['INC-4', 'SELECT 1;', '\\q'], write=True), 0)
        records = read_audit(self.dir)
        self.assertEqual([r.entry.query for r in records], ['\\W', 'SELECT 1;', '\\q'])
        self.assertEqual({r.entry.sys_user for r in records}, {'alice'})
        self.assertEqual(records[1].entry.ots, 'INC-4')

    def test_write_start_needs_ots(self):
        self.assertEqual(self.start([EOFError()], write=True), 1)
        self.assertEqual(read_audit(self.dir), [])

    def test_primary_closed_when_monitor_cannot_connect(self):
        primary = FakePrimary()
        with mock.patch('otsql.cli.repl.PrimaryConnection.connect', return_value=primary), \
                mock.patch('otsql.cli.repl.MonitorConnection.connect',
                           side_effect=psycopg.OperationalError('too many clients')), \
                mock.patch.object(primary, 'close') as close:
            with self.assertRaises(psycopg.OperationalError):
                start_repl('dbname=appdb', self.cfg, audit_dir=self.dir)
        close.assert_called_once_with()
        self.assertEqual(primary.batches, [])

    def test_unavailable_audit_degrades(self):
        blocker = os.path.join(self.dir, 'file')
        with open(blocker, 'w') as f:
            f.write('x')
        err = io.StringIO()
        with redirect_stderr(err):
            log = open_audit(self.cfg, blocker)
        self.assertIsInstance(log, NullAuditLog)
        self.assertIn('audit log unavailable', err.getvalue())


class CliTests(unittest.TestCase):
    """Tests for the otsql command line."""

    def test_parser(self):
        args = build_parser().parse_args(['repl', 'dbname=x', '--write'])
        self.assertEqual(args.command, 'repl')
        self.assertEqual(args.dsn, 'dbname=x')
        self.assertTrue(args.write)
        args = build_parser().parse_args(['audit', '--format', 'jsonl', '--limit', '5'])
        self.assertEqual((args.format, args.limit), ('jsonl', 5))

    def test_version(self):
        with mock.patch('sys.argv', ['otsql', '--version']), redirect_stdout(io.StringIO()):
            with self.assertRaises(SystemExit) as cm:
                main()
        self.assertEqual(cm.exception.code, 0)

    def test_audit_export(self):
        with tempfile.TemporaryDirectory() as tmp:
            with AuditLog.open(tmp, start_sync=False) as log:
                log.append(AuditEntry(0, 'SELECT 1', 'app', 'alice', False))
                log.append(AuditEntry(0, '\\W', 'app', 'alice', True, 'INC-8'))
                log.append(AuditEntry(0, '\\W', 'app', 'alice', True, 'INC-9'))
            args = argparse.Namespace(audit_dir=tmp, orphans=True, limit=None, format='csv',
                                      output=None, ots=False)
            out = io.StringIO()
            with redirect_stdout(out):
                self.assertEqual(cmd_audit(args), 0)
            lines = out.getvalue().splitlines()
            self.assertTrue(lines[0].startswith('timestamp,source,idx,query'))
            self.assertEqual(len(lines), 4)

            args.ots = True
            out = io.StringIO()
            with redirect_stdout(out):
                cmd_audit(args)
            self.assertEqual(out.getvalue().split(), ['INC-9', 'INC-8'])

    def test_audit_export_to_excel(self):
        with tempfile.TemporaryDirectory() as tmp:
            with AuditLog.open(tmp, start_sync=False) as log:
                log.append(AuditEntry(0, 'SELECT 1', 'app', 'alice', False))
            target = os.path.join(tmp, 'export', 'audit.xlsx')
            args = argparse.Namespace(audit_dir=tmp, orphans=False, limit=1, format=None,
                                      output=target, ots=False)
            self.assertEqual(cmd_audit(args), 0)
            self.assertTrue(os.path.exists(target))


if __name__ == '__main__':
    unittest.main()
