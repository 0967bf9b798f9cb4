"""CLI entry for otsql with subcommands.

Subcommands:
  repl         Start the interactive session against a PostgreSQL database
  audit        Show or export the audit log
  snippets     List available snippets
  config       View or update configuration
"""
from __future__ import annotations
import argparse
import sys
import logging
from typing import Optional

import psycopg

from otsql import __version__
from otsql.cli.repl import start_repl
from otsql.core.audit import audit_frame, read_audit
from otsql.core.errors import OtsqlException
from otsql.core.output_writer import write_output
from otsql.core.snippets import SnippetStore
from otsql.utils.constants import SUPPORTED_OUTPUT_FORMATS, DEFAULT_OUTPUT_FORMAT
from otsql.utils.logging_setup import configure_logging
from otsql.utils.config import config
from otsql.utils.validation import validate_output_path, ValidationError

logger = logging.getLogger(__name__)

LOG_LEVELS = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']


# --- Helpers shared across subcommands ---

def _infer_output_format(output_path: Optional[str]) -> str:
    if not output_path:
        return DEFAULT_OUTPUT_FORMAT
    lower = output_path.lower()
    if lower.endswith(('.xlsx', '.xlsm')):
        return 'excel'
    if lower.endswith('.csv'):
        return 'csv'
    if lower.endswith(('.jsonl', '.ndjson')):
        return 'jsonl'
    if lower.endswith('.json'):
        return 'json'
    return DEFAULT_OUTPUT_FORMAT


def _convert_value(value: str):
    if value.lower() == 'true':
        return True
    if value.lower() == 'false':
        return False
    if value.lower() == 'none':
        return None
    if value.isdigit():
        return int(value)
    return value


# --- Subcommands ---

def cmd_repl(args: argparse.Namespace) -> int:
    return start_repl(args.dsn or '', config, write=args.write, audit_dir=args.audit_dir,
                      banner=not args.no_banner)


def cmd_audit(args: argparse.Namespace) -> int:
    audit_dir = args.audit_dir or config.ensure_audit_dir()
    records = read_audit(audit_dir, include_orphans=args.orphans)
    if args.ots:
        seen = []
        for record in reversed(records):
            if record.entry.ots and record.entry.ots not in seen:
                seen.append(record.entry.ots)
        print("\n".join(seen))
        return 0

    df = audit_frame(records)
    if args.limit:
        df = df.tail(args.limit)
    fmt = args.format or _infer_output_format(args.output)
    if fmt == 'table' and args.output:
        logger.warning("Ignoring output path '%s' for table format (stdout)", args.output)
        args.output = None
    if args.output:
        validate_output_path(args.output, create_dirs=True)
    write_output(df, args.output, fmt, max_col_width=int(config.get('max_col_width')))
    return 0


def cmd_snippets(_args: argparse.Namespace) -> int:
    store = SnippetStore.from_config(config)
    names = store.names()
    if not names:
        print("No snippets found in: " + ", ".join(str(d) for d in store.dirs))
    else:
        print("\n".join(names))
    return 0


def cmd_config(args: argparse.Namespace) -> int:
    """Handle configuration commands."""
    if args.list:
        for key, value in config.settings.items():
            print(f"{key} = {value}")
    elif args.get:
        value = config.get(args.get)
        print(f"{args.get} = {value}")
    elif args.set and args.value is not None:
        value = _convert_value(args.value)
        config.set(args.set, value)
        config.save()
        print(f"Set {args.set} = {value}")
    else:
        print(f"Configuration file: {config.config_file}")
    return 0


# --- Parser construction ---

def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog='otsql', description='Audited interactive PostgreSQL client')
    p.add_argument('--version', action='version', version=f'%(prog)s {__version__}')
    sub = p.add_subparsers(dest='command', required=True)

    # repl
    repl_p = sub.add_parser('repl', help='Start interactive session')
    repl_p.add_argument('dsn', nargs='?', help='Connection string (default: libpq PG* environment)')
    repl_p.add_argument('--write', action='store_true', help='Enter write mode before the first prompt')
    repl_p.add_argument('--audit-dir', help='Directory of the audit log')
    repl_p.add_argument('--no-banner', action='store_true', help='Suppress the connection banner')
    repl_p.add_argument('--log-level', default=None, choices=LOG_LEVELS)

    # audit
    audit_p = sub.add_parser('audit', help='Show or export the audit log')
    audit_p.add_argument('--audit-dir', help='Directory of the audit log')
    audit_p.add_argument('--orphans', action='store_true', help='Include orphan stores of other sessions')
    audit_p.add_argument('--limit', type=int, help='Only the most recent N entries')
    audit_p.add_argument('--format', choices=SUPPORTED_OUTPUT_FORMATS, help='Output format')
    audit_p.add_argument('--output', help='Output file path (omit to print)')
    audit_p.add_argument('--ots', action='store_true', help='List distinct OTS phrases, most recent first')
    audit_p.add_argument('--log-level', default=None, choices=LOG_LEVELS)

    # snippets
    snip_p = sub.add_parser('snippets', help='List available snippets')
    snip_p.add_argument('--log-level', default=None, choices=LOG_LEVELS)

    # config management
    config_p = sub.add_parser('config', help='View or update configuration')
    config_p.add_argument('--list', action='store_true', help='List all configuration values')
    config_p.add_argument('--get', metavar='KEY', help='Get specific configuration value')
    config_p.add_argument('--set', metavar='KEY', help='Set configuration value')
    config_p.add_argument('--value', help='Value to set (used with --set)')
    config_p.add_argument('--log-level', default=None, choices=LOG_LEVELS)

    return p


# --- Main entry ---

def main() -> None:
    parser = build_parser()
    args = parser.parse_args()

    # Configure logging first
    configure_logging(args.log_level or config.get('log_level') or 'WARNING', config.path('log_file'))

    try:
        if args.command == 'repl':
            code = cmd_repl(args)
        elif args.command == 'audit':
            code = cmd_audit(args)
        elif args.command == 'snippets':
            code = cmd_snippets(args)
        elif args.command == 'config':
            code = cmd_config(args)
        else:
            parser.error('Unknown command')
            return
        sys.exit(code)
    except ValidationError as e:
        logging.error(f"Validation error: {e}")
        sys.exit(2)
    except psycopg.OperationalError as e:
        logging.error(f"Could not connect: {e}")
        sys.exit(1)
    except OtsqlException as e:
        logging.error(f"{e.category.name.lower()} error: {e}")
        sys.exit(1)
    except KeyboardInterrupt:
        logging.warning("Operation interrupted by user")
        sys.exit(130)
    except Exception as e:
        logging.error(f"Unhandled error: {e}", exc_info=True)
        sys.exit(1)


if __name__ == '__main__':
    main()
