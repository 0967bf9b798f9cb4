"""Interactive REPL loop (psql-like) over a PostgreSQL session.

Type \\? for the list of directives. SQL runs when terminated with ``;`` or a
``\\g`` modifier; unfinished input continues on the next line.
"""
from __future__ import annotations
from typing import List, Optional
import getpass
import logging
import sys

from otsql.core.audit import AuditLog, NullAuditLog
from otsql.core.connection import CatalogConnection, MonitorConnection, PrimaryConnection
from otsql.core.context import ReplContext
from otsql.core.errors import AuditError
from otsql.core.handlers import dispatch
from otsql.core.reader import LineReader, readline
from otsql.core.snippets import SnippetStore
from otsql.core.state import ReplState, StateHandle
from otsql.core.statements import handle_input
from otsql.core.transaction import TransactionState
from otsql.utils.config import Config
from otsql.utils.constants import READ_ONLY_SQL

logger = logging.getLogger(__name__)

TRANSACTION_MARKERS = {
    TransactionState.NONE: '',
    TransactionState.IDLE: '',
    TransactionState.ACTIVE: '*',
    TransactionState.ERROR: '!',
}


def _prompt_colour(tx_state: TransactionState, write_mode: bool) -> Optional[str]:
    if tx_state is TransactionState.ERROR:
        return '1;31'
    if not write_mode:
        return None
    return '1;34' if tx_state is TransactionState.ACTIVE else '1;32'


def build_prompt(database: str, is_superuser: bool, tx_state: TransactionState,
                 write_mode: bool, continuation: bool = False, color: bool = False) -> str:
    """``db=>`` style prompt; ``*`` marks uncommitted work, ``!`` a failed transaction.

    Continuation lines get ``db->``. With ``color`` a failed transaction is
    red and write mode is green (blue while work is uncommitted).
    """
    if continuation:
        text = f"{database}->"
    else:
        text = f"{database}={TRANSACTION_MARKERS[tx_state]}{'#' if is_superuser else '>'}"
    code = _prompt_colour(tx_state, write_mode) if color else None
    if code:
        # \001 and \002 tell readline the escapes take no screen space
        text = f"\001\033[{code}m\002{text}\001\033[0m\002"
    return text + ' '


def repl_loop(ctx: ReplContext, database: str, is_superuser: bool, color: bool = False) -> None:
    """Read, parse and dispatch until the operator quits."""
    buffer = ''
    while True:
        try:
            write_mode = ctx.state.snapshot().write_mode
            prompt = build_prompt(database, is_superuser, ctx.last_tx_state, write_mode,
                                  continuation=bool(buffer), color=color)
            try:
                line = ctx.reader.readline(prompt)
            except EOFError:
                print()  # newline on Ctrl-D
                if ctx.gate.can_exit():
                    break
                buffer = ''
                continue

            actions, buffer = handle_input(buffer, line, ctx.state.snapshot().expanded_mode)
            if actions:
                ctx.reader.add_history('\n'.join(a.text for a in actions))
            done = False
            for action in actions:
                if dispatch(ctx, action):
                    done = True
                    break
            if done:
                break
            if actions:
                ctx.refresh_transaction_state()
        except KeyboardInterrupt:
            if buffer:
                buffer = ''
                print('^C (cleared buffer)')
            else:
                print('^C')
            continue


def open_audit(cfg: Config, audit_dir: str = None):
    """Open the audit log, degrading to no history when it is unavailable."""
    try:
        return AuditLog.open(audit_dir or cfg.ensure_audit_dir(),
                             sync_interval=float(cfg.get('sync_interval')))
    except (AuditError, OSError) as e:
        logger.warning("Audit log unavailable, history is disabled: %s", e)
        print(f"WARNING: audit log unavailable ({e}); no history will be recorded", file=sys.stderr)
        return NullAuditLog()


def start_repl(dsn: str, cfg: Config, write: bool = False, audit_dir: str = None,
               banner: bool = True) -> int:
    """Connect and run the interactive session; returns an exit code."""
    primary = PrimaryConnection.connect(dsn)
    monitor = audit = reader = None
    try:
        monitor = MonitorConnection.connect(dsn)
        audit = open_audit(cfg, audit_dir)
        reader = LineReader(cfg.get('history_file'))
        return _run_session(dsn, cfg, primary, monitor, audit, reader, write, banner)
    finally:
        if reader is not None:
            reader.save()
        if audit is not None:
            audit.shutdown()
        if monitor is not None:
            monitor.close()
        primary.close()


def _run_session(dsn, cfg, primary, monitor, audit, reader, write, banner) -> int:
    """Build the session context over open connections and run the loop."""
    state = StateHandle(ReplState(
        db_user=primary.user,
        sys_user=getpass.getuser(),
        snippets=SnippetStore.from_config(cfg),
    ))
    ctx = ReplContext(
        primary=primary,
        monitor=monitor,
        state=state,
        audit=audit,
        reader=reader,
        redactions=list(cfg.get('redactions') or []),
        editor=cfg.get('editor'),
        max_col_width=int(cfg.get('max_col_width')),
        use_colours=bool(cfg.get('use_colours')),
        catalog_factory=lambda: CatalogConnection.connect(dsn),
    )
    color = ctx.use_colours and sys.stdout.isatty() and readline is not None
    try:
        if banner:
            print(f"otsql: connected to {primary.database} as {primary.user}. Type \\? for help.",
                  file=sys.stderr)
        primary.batch_execute(READ_ONLY_SQL)
        if write and not ctx.gate.enable():
            return 1
        ctx.refresh_transaction_state()
        repl_loop(ctx, primary.database, primary.is_superuser, color=color)
        return 0
    finally:
        ctx.close()


__all__: List[str] = ['build_prompt', 'repl_loop', 'start_repl', 'open_audit']
