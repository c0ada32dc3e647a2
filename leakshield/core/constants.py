"""
Shared constants for leakshield.
"""

import os


# Worker pool size for per-package fetch and scan
MAX_WORKERS = min(32, (os.cpu_count() or 1) + 4)

# Seconds before an HTTP request is abandoned (connect, read)
DEFAULT_HTTP_TIMEOUT = 60

# Seconds before a search or extraction subprocess is killed
DEFAULT_TOOL_TIMEOUT = 300

# Region used for identity checks, STS is global but the client needs one
DEFAULT_REGION = "us-east-1"

DEFAULT_REPORT_ROOT = "keys"

DEFAULT_STATE_FILE = "state.json"

USER_AGENT = "leakshield (+https://github.com/leakshield/leakshield)"

# Bytes per chunk when streaming downloads to disk
DOWNLOAD_CHUNK_SIZE = 64 * 1024
