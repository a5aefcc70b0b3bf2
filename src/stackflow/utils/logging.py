"""Log setup for deployment runs.

Records carry their deployment coordinates through ``extra=``: the stack,
the rolling-update batch, the unit, the backend operation and how long it
took. The console shows them as a short ``[stack batch N unit]`` prefix.
The JSON-lines run log keeps them as fields, together with the worker
thread, so a single stack can be filtered out of a wave that deployed
several stacks in parallel.
"""

import json
import logging
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional, TextIO

DEPLOYMENT_FIELDS = ('stack_id', 'batch', 'unit_id', 'operation', 'duration')

# Libraries whose INFO output would drown the run's own messages
NOISY_LOGGERS = ('boto3', 'botocore', 'urllib3', 's3transfer')

_LEVEL_COLORS = {
    logging.DEBUG: '\033[2m',
    logging.WARNING: '\033[33m',
    logging.ERROR: '\033[31m',
    logging.CRITICAL: '\033[1;31m',
}


def deployment_fields(record: logging.LogRecord) -> Dict[str, Any]:
    """The deployment coordinates set on ``record``, in a fixed order."""
    return {name: getattr(record, name) for name in DEPLOYMENT_FIELDS if hasattr(record, name)}


class RunLogFormatter(logging.Formatter):
    """One JSON object per line."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            'timestamp': datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'thread': record.threadName,
            'message': record.getMessage(),
        }
        entry.update(deployment_fields(record))
        if record.exc_info:
            entry['exception'] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


class ConsoleFormatter(logging.Formatter):
    """``12:00:01 WARNING [web batch 2 i-0abc] message``"""

    def __init__(self, color: bool = False):
        super().__init__(datefmt='%H:%M:%S')
        self.color = color

    def format(self, record: logging.LogRecord) -> str:
        fields = deployment_fields(record)
        where = []
        if 'stack_id' in fields:
            where.append(str(fields['stack_id']))
        if 'batch' in fields:
            where.append(f"batch {fields['batch']}")
        if 'unit_id' in fields:
            where.append(str(fields['unit_id']))

        level = f"{record.levelname:<7}"
        if self.color and record.levelno in _LEVEL_COLORS:
            level = f"{_LEVEL_COLORS[record.levelno]}{level}\033[0m"
        prefix = f"[{' '.join(where)}] " if where else ""
        line = f"{self.formatTime(record, self.datefmt)} {level} {prefix}{record.getMessage()}"
        if record.exc_info:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line


def setup_logging(
    log_level: str = 'info',
    log_dir: Optional[Path] = None,
    stream: Optional[TextIO] = None
) -> Optional[Path]:
    """Route stackflow logs to the console and, with ``log_dir``, a daily run log.

    The console shows ``log_level`` and above; the run log always gets
    everything down to DEBUG.

    Returns:
        Path of the run log, or None when only the console is used
    """
    stream = stream or sys.stderr
    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()
    root.setLevel(logging.DEBUG)

    console = logging.StreamHandler(stream)
    console.setLevel(log_level.upper())
    console.setFormatter(ConsoleFormatter(color=getattr(stream, 'isatty', lambda: False)()))
    root.addHandler(console)

    log_file = None
    if log_dir is not None:
        Path(log_dir).mkdir(parents=True, exist_ok=True)
        log_file = Path(log_dir) / f"stackflow-{datetime.now(timezone.utc):%Y%m%d}.jsonl"
        run_log = logging.FileHandler(log_file, encoding='utf-8')
        run_log.setLevel(logging.DEBUG)
        run_log.setFormatter(RunLogFormatter())
        root.addHandler(run_log)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
    return log_file


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
