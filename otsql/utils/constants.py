"""Constants used throughout the otsql package."""

APP_NAME = 'otsql'

# Audit export formats (``otsql audit --format``)
SUPPORTED_OUTPUT_FORMATS = ['table', 'csv', 'excel', 'json', 'jsonl']
DEFAULT_OUTPUT_FORMAT = 'table'

# Audit store layout
AUDIT_MAIN_FILE = 'audit-main.duckdb'
AUDIT_ORPHAN_PREFIX = 'audit-orphan-'
AUDIT_SUFFIX = '.duckdb'
AUDIT_SYNC_INTERVAL = 60.0
AUDIT_OPEN_RETRIES = 3
AUDIT_RETRY_DELAY = (0.05, 0.25)

# Snippets are plain SQL files
SNIPPET_SUFFIX = '.sql'
SNIPPET_NAME_PATTERN = r'^[A-Za-z0-9_][A-Za-z0-9_.-]*$'

# Session control: every session starts read only, the write-mode gate flips it
ENTER_WRITE_MODE_SQL = 'SET SESSION CHARACTERISTICS AS TRANSACTION READ WRITE; COMMIT; BEGIN'
LEAVE_WRITE_MODE_SQL = 'ROLLBACK; SET SESSION CHARACTERISTICS AS TRANSACTION READ ONLY'
BEGIN_SQL = 'BEGIN'
READ_ONLY_SQL = 'SET SESSION CHARACTERISTICS AS TRANSACTION READ ONLY'

REDACTED_VALUE = '[redacted]'

# Seconds before the running-query indicator appears
PROGRESS_DELAY = 1.0
