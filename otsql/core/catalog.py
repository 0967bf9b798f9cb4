"""Schema listings and object descriptions (``\\list``, ``\\dt``, ``\\d``)."""
from __future__ import annotations
from typing import List, Optional, Tuple

from otsql.core.connection import Connection, QueryResult
from otsql.core.metacommands import ListItem

RELKINDS = {
    ListItem.TABLE: ('r', 'p', 'f'),
    ListItem.VIEW: ('v', 'm'),
    ListItem.INDEX: ('i', 'I'),
    ListItem.SEQUENCE: ('S',),
}

RELKIND_NAMES = """
    CASE c.relkind
        WHEN 'r' THEN 'table' WHEN 'p' THEN 'partitioned table' WHEN 'f' THEN 'foreign table'
        WHEN 'v' THEN 'view' WHEN 'm' THEN 'materialized view'
        WHEN 'i' THEN 'index' WHEN 'I' THEN 'partitioned index' WHEN 'S' THEN 'sequence'
        ELSE c.relkind::text
    END
"""


def glob_to_like(pattern: str) -> str:
    """``*`` and ``?`` globs as a LIKE pattern (backslash escapes)."""
    out = []
    for ch in pattern:
        if ch in ('%', '_', '\\'):
            out.append('\\' + ch)
        elif ch == '*':
            out.append('%')
        elif ch == '?':
            out.append('_')
        else:
            out.append(ch)
    return ''.join(out)


def split_pattern(pattern: str, default_schema: str = 'public') -> Tuple[str, str]:
    """``schema.name`` into its parts; a bare name is looked up in ``default_schema``."""
    if '.' in pattern:
        schema, name = pattern.split('.', 1)
        return schema or default_schema, name or '*'
    return default_schema, pattern


def _relations_sql(kinds: Tuple[str, ...], detail: bool, item: ListItem) -> str:
    columns = [
        'n.nspname AS "schema"',
        'c.relname AS "name"',
        f'{RELKIND_NAMES} AS "type"',
        'pg_catalog.pg_get_userbyid(c.relowner) AS "owner"',
    ]
    joins = ''
    if item is ListItem.INDEX:
        columns.append('t.relname AS "table"')
        joins = ('LEFT JOIN pg_catalog.pg_index x ON x.indexrelid = c.oid '
                 'LEFT JOIN pg_catalog.pg_class t ON t.oid = x.indrelid')
    if detail:
        columns.append('pg_catalog.pg_size_pretty(pg_catalog.pg_total_relation_size(c.oid)) AS "size"')
        columns.append('pg_catalog.obj_description(c.oid, \'pg_class\') AS "description"')
    kinds_sql = ', '.join(f"'{k}'" for k in kinds)
    return f"""
        SELECT {', '.join(columns)}
        FROM pg_catalog.pg_class c
        JOIN pg_catalog.pg_namespace n ON n.oid = c.relnamespace
        {joins}
        WHERE c.relkind IN ({kinds_sql})
          AND n.nspname LIKE %s AND c.relname LIKE %s
        ORDER BY 1, 2
    """


def _functions_sql(detail: bool) -> str:
    columns = [
        'n.nspname AS "schema"',
        'p.proname AS "name"',
        'pg_catalog.pg_get_function_result(p.oid) AS "result type"',
        'pg_catalog.pg_get_function_arguments(p.oid) AS "arguments"',
    ]
    if detail:
        columns.append('l.lanname AS "language"')
        columns.append('pg_catalog.obj_description(p.oid, \'pg_proc\') AS "description"')
    return f"""
        SELECT {', '.join(columns)}
        FROM pg_catalog.pg_proc p
        JOIN pg_catalog.pg_namespace n ON n.oid = p.pronamespace
        LEFT JOIN pg_catalog.pg_language l ON l.oid = p.prolang
        WHERE n.nspname LIKE %s AND p.proname LIKE %s
        ORDER BY 1, 2, 4
    """


def _schemas_sql(detail: bool) -> str:
    columns = ['n.nspname AS "name"', 'pg_catalog.pg_get_userbyid(n.nspowner) AS "owner"']
    if detail:
        columns.append('pg_catalog.obj_description(n.oid, \'pg_namespace\') AS "description"')
    return f"""
        SELECT {', '.join(columns)}
        FROM pg_catalog.pg_namespace n
        WHERE n.nspname LIKE %s
        ORDER BY 1
    """


def list_objects(conn: Connection, item: ListItem, pattern: str, detail: bool = False) -> QueryResult:
    """Objects of kind ``item`` matching the ``schema.name`` glob ``pattern``."""
    if item is ListItem.SCHEMA:
        schema_glob = pattern.split('.', 1)[0] or '*'
        return conn.execute(_schemas_sql(detail), (glob_to_like(schema_glob),))
    schema, name = split_pattern(pattern)
    params = (glob_to_like(schema), glob_to_like(name))
    if item is ListItem.FUNCTION:
        return conn.execute(_functions_sql(detail), params)
    return conn.execute(_relations_sql(RELKINDS[item], detail, item), params)


def _find_relation(conn: Connection, schema: str, name: str) -> Optional[tuple]:
    return conn.query_one(
        """
        SELECT c.oid, c.relkind::text
        FROM pg_catalog.pg_class c
        JOIN pg_catalog.pg_namespace n ON n.oid = c.relnamespace
        WHERE n.nspname = %s AND c.relname = %s
        """,
        (schema, name),
    )


def describe_object(conn: Connection, name: str, detail: bool = False) -> List[Tuple[str, QueryResult]]:
    """Sections describing ``name`` as (title, result) pairs; empty if nothing matched."""
    schema, relname = split_pattern(name)
    sections: List[Tuple[str, QueryResult]] = []
    found = _find_relation(conn, schema, relname)
    if found is not None:
        oid, relkind = found
        columns = [
            'a.attname AS "column"',
            'pg_catalog.format_type(a.atttypid, a.atttypmod) AS "type"',
            "CASE WHEN a.attnotnull THEN 'not null' ELSE '' END AS \"nullable\"",
            'pg_catalog.pg_get_expr(d.adbin, d.adrelid) AS "default"',
        ]
        if detail:
            columns.append('pg_catalog.col_description(a.attrelid, a.attnum) AS "description"')
        sections.append((f'{schema}.{relname}', conn.execute(
            f"""
            SELECT {', '.join(columns)}
            FROM pg_catalog.pg_attribute a
            LEFT JOIN pg_catalog.pg_attrdef d ON d.adrelid = a.attrelid AND d.adnum = a.attnum
            WHERE a.attrelid = %s AND a.attnum > 0 AND NOT a.attisdropped
            ORDER BY a.attnum
            """,
            (oid,),
        )))
        if relkind in ('r', 'p', 'm'):
            sections.append(('Indexes', conn.execute(
                """
                SELECT c.relname AS "index", pg_catalog.pg_get_indexdef(x.indexrelid) AS "definition"
                FROM pg_catalog.pg_index x
                JOIN pg_catalog.pg_class c ON c.oid = x.indexrelid
                WHERE x.indrelid = %s
                ORDER BY 1
                """,
                (oid,),
            )))
        if relkind in ('v', 'm') and detail:
            sections.append(('Definition', conn.execute(
                'SELECT pg_catalog.pg_get_viewdef(%s::oid, true) AS "definition"', (oid,))))
        return sections

    functions = conn.execute(_functions_sql(detail), (glob_to_like(schema), glob_to_like(relname)))
    if functions.rows:
        sections.append((f'{schema}.{relname}', functions))
    return sections
