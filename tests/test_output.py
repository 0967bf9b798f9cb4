#!/usr/bin/env python
"""Unit tests for result rendering and catalog queries."""
import io
import json
import os
import tempfile
import unittest
from contextlib import redirect_stdout

import pandas as pd

from otsql.core.catalog import describe_object, glob_to_like, list_objects, split_pattern
from otsql.core.connection import QueryResult
from otsql.core.metacommands import ListItem
from otsql.core.output_writer import (
    format_expanded, format_json, format_table, redact_frame, write_output, write_result,
)


class RenderTests(unittest.TestCase):
    """Tests for the table, expanded and JSON renderers."""

    def setUp(self):
        self.df = pd.DataFrame({'id': [1, 2], 'note': ['short', None]})

    def test_table(self):
        lines = format_table(self.df)
        self.assertEqual(lines[0], 'id | note ')
        self.assertEqual(lines[1], '---+------')
        self.assertEqual(lines[2], '1  | short')
        self.assertEqual(lines[3], '2  |')
        self.assertEqual(lines[-1], '(2 rows)')

    def test_long_values_are_clipped(self):
        df = pd.DataFrame({'text': ['x' * 80]})
        lines = format_table(df, max_col_width=10)
        self.assertEqual(lines[2], 'x' * 9 + '…')
        self.assertEqual(lines[-1], '(1 row)')

    def test_expanded(self):
        lines = format_expanded(self.df)
        self.assertEqual(lines[:3], ['-[ RECORD 1 ]-', 'id   | 1', 'note | short'])
        self.assertEqual(lines[-1], '(2 rows)')

    def test_json(self):
        lines = format_json(self.df)
        self.assertEqual([json.loads(line) for line in lines],
                         [{'id': 1, 'note': 'short'}, {'id': 2, 'note': None}])
        self.assertEqual(json.loads(format_json(self.df, expanded=True)[0])[0]['id'], 1)

    def test_write_result(self):
        out = io.StringIO()
        write_result(self.df, out, as_json=True)
        self.assertEqual(len(out.getvalue().splitlines()), 2)

    def test_redact_frame(self):
        df = pd.DataFrame({'Email': ['a@b.c', None], 'id': [1, 2]})
        redacted = redact_frame(df, ['email'])
        self.assertEqual(list(redacted['Email']), ['[redacted]', ''])
        self.assertEqual(df['Email'].iloc[0], 'a@b.c')
        self.assertTrue(pd.isna(df['Email'].iloc[1]))
        self.assertIs(redact_frame(df, ['ssn']), df)


class WriteOutputTests(unittest.TestCase):
    """Tests for write_output file formats."""

    def setUp(self):
        self.df = pd.DataFrame({'query': ['SELECT 1', '\\W'], 'writemode': [False, True]})

    def test_formats_to_files(self):
        with tempfile.TemporaryDirectory() as tmp:
            for fmt, name in (('csv', 'a.csv'), ('json', 'a.json'), ('jsonl', 'a.jsonl'),
                              ('table', 'a.txt'), ('excel', 'a.xlsx')):
                path = os.path.join(tmp, 'nested', name)
                write_output(self.df, path, fmt)
                self.assertTrue(os.path.exists(path), fmt)
            self.assertEqual(len(pd.read_csv(os.path.join(tmp, 'nested', 'a.csv'))), 2)
            with open(os.path.join(tmp, 'nested', 'a.jsonl')) as f:
                self.assertEqual(len(f.read().splitlines()), 2)

    def test_stdout(self):
        out = io.StringIO()
        with redirect_stdout(out):
            write_output(self.df, None, 'csv')
        self.assertEqual(out.getvalue().splitlines()[0], 'query,writemode')

    def test_excel_needs_path(self):
        with self.assertRaises(ValueError):
            write_output(self.df, None, 'excel')

    def test_unknown_format(self):
        with self.assertRaises(ValueError):
            write_output(self.df, None, 'yaml')


class RecordingConnection:
    """Returns canned results and remembers the queries it was given."""

    def __init__(self, relation=None, results=None):
        self.relation = relation
        self.results = list(results or [])
        self.calls = []

    def execute(self, sql, params=None):
        self.calls.append((sql, params))
        if self.results:
            return self.results.pop(0)
        return QueryResult(['name'], [])

    def query_one(self, sql, params=None):
        self.calls.append((sql, params))
        return self.relation


class CatalogTests(unittest.TestCase):
    """Tests for the catalog query builders."""

    def test_glob_to_like(self):
        self.assertEqual(glob_to_like('user_*'), 'user\\_%')
        self.assertEqual(glob_to_like('t?'), 't_')
        self.assertEqual(glob_to_like('100%'), '100\\%')

    def test_split_pattern(self):
        self.assertEqual(split_pattern('audit.events'), ('audit', 'events'))
        self.assertEqual(split_pattern('events'), ('public', 'events'))
        self.assertEqual(split_pattern('audit.'), ('audit', '*'))

    def test_list_tables(self):
        conn = RecordingConnection()
        list_objects(conn, ListItem.TABLE, 'public.*')
        sql, params = conn.calls[0]
        self.assertIn("c.relkind IN ('r', 'p', 'f')", sql)
        self.assertEqual(params, ('public', '%'))

    def test_list_schemas_and_functions(self):
        conn = RecordingConnection()
        list_objects(conn, ListItem.SCHEMA, 'pg_*', detail=True)
        self.assertIn('pg_namespace', conn.calls[0][0])
        self.assertEqual(conn.calls[0][1], ('pg\\_%',))
        list_objects(conn, ListItem.FUNCTION, 'public.calc_*')
        self.assertIn('pg_proc', conn.calls[1][0])
        self.assertEqual(conn.calls[1][1], ('public', 'calc\\_%'))

    def test_describe_table(self):
        columns = QueryResult(['column', 'type'], [('id', 'integer')])
        indexes = QueryResult(['index', 'definition'], [])
        conn = RecordingConnection(relation=(16384, 'r'), results=[columns, indexes])
        sections = describe_object(conn, 'users')
        self.assertEqual([title for title, _ in sections], ['public.users', 'Indexes'])
        self.assertEqual(conn.calls[0][1], ('public', 'users'))
        self.assertEqual(conn.calls[1][1], (16384,))

    def test_describe_missing(self):
        conn = RecordingConnection(relation=None)
        self.assertEqual(describe_object(conn, 'ghost'), [])


if __name__ == '__main__':
    unittest.main()
