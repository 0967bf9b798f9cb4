"""Gatekeeping for write mode and for leaving the session."""
from __future__ import annotations
from dataclasses import replace
import logging
import sys

import psycopg

from otsql.core.errors import AuditError, AuthorizationError
from otsql.core.ots import prompt_for_ots
from otsql.core.transaction import TransactionState, probe_transaction
from otsql.utils.constants import ENTER_WRITE_MODE_SQL, LEAVE_WRITE_MODE_SQL

logger = logging.getLogger(__name__)

WRITE_MODE_ON = "AUTOCOMMIT IS OFF -- REMEMBER TO `COMMIT;` YOUR WRITES"
WRITE_MODE_OFF = "SESSION IS NOW READ ONLY"
DISABLE_REFUSED = "Cannot disable write mode while in a transaction. COMMIT or ROLLBACK first."
DISABLE_UNVERIFIED = "Cannot verify the transaction state; write mode stays on. COMMIT or ROLLBACK first."
EXIT_REFUSED = "Cannot exit while in an active transaction. COMMIT or ROLLBACK first."
NESTED_REFUSED = "Write mode can only be changed interactively, not from a snippet or included file."


class WriteModeGate:
    """Moves the session between read-only and write mode.

    Entering write mode needs an OTS phrase. Leaving it, or leaving the
    session while in it, is refused while the primary connection has a
    transaction with uncommitted work; that check always asks the monitor
    connection afresh.
    """

    def __init__(self, primary, monitor, state, audit, reader):
        self.primary = primary
        self.monitor = monitor
        self.state = state
        self.audit = audit
        self.reader = reader
        self.backend_pid = primary.backend_pid

    def toggle(self) -> bool:
        """Flip write mode; returns whether the mode changed."""
        if self.state.snapshot().write_mode:
            return self.disable()
        return self.enable()

    def _record(self, new_state) -> None:
        try:
            self.audit.add_entry('\\W', new_state, from_include=False)
        except AuditError as e:
            logger.error("Audit record for write mode change failed: %s", e)
            print(f"WARNING: the audit log could not record this change: {e}", file=sys.stderr)

    def enable(self) -> bool:
        snapshot = self.state.snapshot()
        if snapshot.write_mode:
            return False
        if snapshot.from_snippet_or_include:
            print(NESTED_REFUSED, file=sys.stderr)
            return False
        try:
            ots = prompt_for_ots(self.reader, self.audit.ots_history())
        except AuthorizationError as e:
            print(e, file=sys.stderr)
            return False

        # The backend switch, its audit record and the state change land
        # together or not at all, Ctrl-C included.
        try:
            self.primary.batch_execute(ENTER_WRITE_MODE_SQL)
            self._record(replace(snapshot, write_mode=True, ots=ots))
            with self.state.locked() as st:
                st.enable_write_mode(ots)
        except psycopg.Error as e:
            print(f"Failed to enable write mode: {e}", file=sys.stderr)
            self._restore_read_only()
            return False
        except BaseException:
            self._restore_read_only()
            with self.state.locked() as st:
                st.disable_write_mode()
            raise
        logger.info("Write mode enabled by %s (OTS: %s)", snapshot.sys_user, ots)
        print(WRITE_MODE_ON, file=sys.stderr)
        return True

    def _restore_read_only(self) -> None:
        try:
            self.primary.batch_execute(LEAVE_WRITE_MODE_SQL)
        except psycopg.Error as e:
            logger.error("Could not put the session back into read-only mode: %s", e)

    def disable(self) -> bool:
        """Leave write mode, rolling back whatever the open transaction holds.

        Only a transaction with pending writes blocks this. An aborted
        transaction (``ERROR``) has nothing left to commit, so it does not
        block leaving even though it is neither idle nor absent; the
        ROLLBACK clears it.
        """
        snapshot = self.state.snapshot()
        if not snapshot.write_mode:
            return False
        if snapshot.from_snippet_or_include:
            print(NESTED_REFUSED, file=sys.stderr)
            return False
        probe = probe_transaction(self.monitor, self.backend_pid)
        if probe.state is TransactionState.ACTIVE:
            print(DISABLE_REFUSED, file=sys.stderr)
            return False
        if not probe.verified:
            print(DISABLE_UNVERIFIED, file=sys.stderr)
            return False

        try:
            self.primary.batch_execute(LEAVE_WRITE_MODE_SQL)
        except psycopg.Error as e:
            print(f"Failed to disable write mode: {e}", file=sys.stderr)
            return False

        self._record(replace(snapshot, write_mode=False, ots=None))
        with self.state.locked() as st:
            st.disable_write_mode()
        logger.info("Write mode disabled by %s", snapshot.sys_user)
        print(WRITE_MODE_OFF, file=sys.stderr)
        return True

    def can_exit(self) -> bool:
        """Whether the session may end now."""
        if not self.state.snapshot().write_mode:
            return True
        probe = probe_transaction(self.monitor, self.backend_pid)
        if probe.state is TransactionState.ACTIVE:
            print(EXIT_REFUSED, file=sys.stderr)
            return False
        if not probe.verified:
            logger.warning("Exiting without a verified transaction state; the server rolls back open work")
        return True
