"""Rendering query results and exporting audit data."""
from __future__ import annotations
import json
import logging
from pathlib import Path
from typing import Iterable, List, Optional, TextIO
import pandas as pd

from otsql.utils.constants import REDACTED_VALUE

logger = logging.getLogger(__name__)


def _cell(val) -> str:
    if val is None:
        return ''
    try:
        if pd.isna(val):
            return ''
    except (TypeError, ValueError):
        pass
    return str(val)


def _clip(text: str, width: int) -> str:
    return text if len(text) <= width else text[: width - 1] + '…'


def _colorize(text: str, code: str, color: bool) -> str:
    return f"\033[{code}m{text}\033[0m" if color else text


def _row_footer(n: int) -> str:
    return f"({n} row{'s' if n != 1 else ''})"


def redact_frame(df: pd.DataFrame, columns: Iterable[str]) -> pd.DataFrame:
    """Copy of ``df`` with the named columns (case-insensitive) masked."""
    wanted = {c.lower() for c in columns}
    hit = [c for c in df.columns if str(c).lower() in wanted]
    if not hit:
        return df
    out = df.copy()
    for col in hit:
        out[col] = [REDACTED_VALUE if _cell(v) != '' else '' for v in out[col].tolist()]
    return out


def format_table(df: pd.DataFrame, max_col_width: int = 50, color: bool = False) -> List[str]:
    """psql-like aligned table."""
    display_cols = [str(c) for c in df.columns]
    columns = [df.iloc[:, i].tolist() for i in range(len(df.columns))]
    widths = []
    for name, values in zip(display_cols, columns):
        cells = [name] + [_cell(v) for v in values]
        widths.append(min(max(len(x) for x in cells), max_col_width))
    lines = [
        ' | '.join(_colorize(name[:w].ljust(w), '32', color) for name, w in zip(display_cols, widths)),
        '-+-'.join('-' * w for w in widths),
    ]
    for i in range(len(df)):
        lines.append(' | '.join(
            _clip(_cell(values[i]), w).ljust(w) for values, w in zip(columns, widths)).rstrip())
    lines.append(_row_footer(len(df)))
    return lines


def format_expanded(df: pd.DataFrame, max_col_width: int = 50, color: bool = False) -> List[str]:
    """One block per record, one line per column."""
    lines = []
    names = [str(c) for c in df.columns]
    label_w = max((len(n) for n in names), default=0)
    for i in range(len(df)):
        lines.append(_colorize(f"-[ RECORD {i + 1} ]-", '36', color))
        for j, name in enumerate(names):
            sval = _clip(_cell(df.iat[i, j]), max_col_width)
            lines.append(f"{_colorize(name.ljust(label_w), '33', color)} | {sval}")
    lines.append(_row_footer(len(df)))
    return lines


def format_json(df: pd.DataFrame, expanded: bool = False) -> List[str]:
    records = json.loads(df.to_json(orient='records', date_format='iso', default_handler=str))
    if expanded:
        return [json.dumps(records, indent=2)]
    return [json.dumps(rec) for rec in records]


def write_result(df: pd.DataFrame, out: TextIO, *, expanded: bool = False, as_json: bool = False,
                 max_col_width: int = 50, color: bool = False) -> None:
    """Write a query result to ``out``."""
    if as_json:
        lines = format_json(df, expanded)
    elif expanded:
        lines = format_expanded(df, max_col_width, color)
    else:
        lines = format_table(df, max_col_width, color)
    for line in lines:
        out.write(line + '\n')
    out.flush()


def write_output(df: pd.DataFrame, output_path: Optional[str], output_format: Optional[str],
                 max_col_width: int = 50) -> None:
    """Write dataframe to the desired destination.

    Supported formats: table, csv, excel(xlsx), json, jsonl.
    If output_path is None and format != excel -> write to stdout.
    """
    if df is None:
        logger.warning("write_output called with df=None")
        return
    fmt = (output_format or "table").lower()

    path: Optional[Path] = Path(output_path) if output_path else None
    if path:
        path.parent.mkdir(parents=True, exist_ok=True)

    if fmt == 'table':
        text = '\n'.join(format_table(df, max_col_width))
        if path:
            path.write_text(text + '\n', encoding='utf-8')
        else:
            print(text)
    elif fmt == 'csv':
        if path:
            df.to_csv(path, index=False)
        else:
            print(df.to_csv(index=False), end='')
    elif fmt in ('xlsx', 'excel'):
        if not path:
            raise ValueError("Excel output requires an output path")
        out = df.copy()
        for col in out.select_dtypes(include=['datetimetz']).columns:
            # Excel cannot store timezone-aware datetimes
            out[col] = out[col].dt.tz_localize(None)
        out.to_excel(path, index=False)
    elif fmt == 'json':
        if path:
            df.to_json(path, orient='records', indent=2, date_format='iso')
        else:
            print(df.to_json(orient='records', indent=2, date_format='iso'))
    elif fmt == 'jsonl':
        if path:
            df.to_json(path, orient='records', lines=True, date_format='iso')
        else:
            print(df.to_json(orient='records', lines=True, date_format='iso'), end='')
    else:
        raise ValueError(f"Unsupported output format: {fmt}")
    if path:
        logger.info("Wrote %d rows to %s (%s)", len(df), path, fmt)
