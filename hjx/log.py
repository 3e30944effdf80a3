"""Audit and diagnostic logging.

Audit: appends structured JSON entries to ~/.hjx/logs.jsonl. Each entry records
a persistence event (flush, restore, connect, disconnect, import, export) with
a timestamp and whatever the caller attached.

Diagnostics: modules log through logging.getLogger(__name__); setup_logging()
routes the "hjx" logger to a rich console handler.
"""

import json
import logging
import os
from datetime import datetime
from pathlib import Path

from rich.logging import RichHandler

LOGS_FILE = Path.home() / ".hjx" / "logs.jsonl"

logger = logging.getLogger(__name__)


def write_log(entry):
    """Append an audit entry. Best-effort: a failed write is logged, never raised."""
    entry = {**entry, "timestamp": datetime.now().isoformat()}
    try:
        LOGS_FILE.parent.mkdir(parents=True, exist_ok=True)
        with open(LOGS_FILE, "a") as f:
            f.write(json.dumps(entry) + "\n")
    except OSError as e:
        logger.warning("Could not append to %s: %s", LOGS_FILE, e)


def read_logs(limit=None):
    """Return audit entries oldest-first, skipping lines that don't parse."""
    if not LOGS_FILE.exists():
        return []
    entries = []
    for line in LOGS_FILE.read_text().splitlines():
        line = line.strip()
        if not line:
            continue
        try:
            entries.append(json.loads(line))
        except json.JSONDecodeError:
            continue
    return entries[-limit:] if limit else entries


def setup_logging(level=None, console=None):
    """Send hjx diagnostics to the terminal. Level defaults to $HJX_LOG_LEVEL or WARNING."""
    level = (level or os.environ.get("HJX_LOG_LEVEL", "WARNING")).upper()
    root = logging.getLogger("hjx")
    root.setLevel(level)
    if not any(isinstance(h, RichHandler) for h in root.handlers):
        root.addHandler(RichHandler(console=console, show_path=False, markup=False))
    root.propagate = False
    return root
