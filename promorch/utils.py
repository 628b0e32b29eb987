"""
Utility functions for promorch.

Includes logging, retries, timestamps and content path helpers.
"""

import json
import logging
import re
import time
import unicodedata
from datetime import datetime, timezone
from email.utils import format_datetime
from pathlib import Path
from typing import Any, Callable, Optional

from rich.console import Console
from rich.logging import RichHandler

from promorch.errors import TransientError


# Global console for pretty output
console = Console()


def setup_logging(log_file: Path, log_level: str = "INFO", log_format: str = "structured", console_output: bool = True) -> logging.Logger:
    """
    Set up logging for promorch.

    Args:
        log_file: Path to log file ({date} is interpolated)
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_format: "structured" (JSON) or "pretty" (human-readable)
        console_output: Also log to console

    Returns:
        Configured logger
    """
    log_file = Path(str(log_file).replace("{date}", datetime.now().strftime("%Y-%m-%d"))).expanduser()
    log_file.parent.mkdir(parents=True, exist_ok=True)

    logger = logging.getLogger("promorch")
    logger.setLevel(getattr(logging, log_level.upper()))
    logger.handlers = []  # Clear existing handlers

    file_handler = logging.FileHandler(log_file)
    if log_format == "structured":
        file_handler.setFormatter(StructuredFormatter())
    else:
        file_handler.setFormatter(
            logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
        )
    logger.addHandler(file_handler)

    if console_output:
        if log_format == "pretty":
            console_handler = RichHandler(console=console, rich_tracebacks=True, show_time=False)
        else:
            console_handler = logging.StreamHandler()
            console_handler.setFormatter(
                logging.Formatter("%(levelname)s: %(message)s")
            )
        logger.addHandler(console_handler)

    return logger


class StructuredFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": utcnow().isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        # Add extra fields if present
        if hasattr(record, "stage"):
            log_data["stage"] = record.stage
        if hasattr(record, "project"):
            log_data["project"] = record.project
        if hasattr(record, "batch"):
            log_data["batch"] = record.batch
        if hasattr(record, "event"):
            log_data["event"] = record.event
        if hasattr(record, "metadata"):
            log_data["metadata"] = record.metadata

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def retry_with_backoff(
    func: Callable,
    max_attempts: int = 3,
    backoff_seconds: float = 5,
    backoff_multiplier: float = 1.0,
    logger: Optional[logging.Logger] = None,
    sleep: Callable[[float], Any] = time.sleep,
) -> Any:
    """
    Retry a function on TransientError.

    Any other exception propagates immediately. With the default multiplier
    of 1.0 the delay is fixed.

    Args:
        func: Function to retry
        max_attempts: Maximum number of attempts
        backoff_seconds: Initial delay in seconds
        backoff_multiplier: Multiplier applied after each failure
        logger: Logger for retry messages
        sleep: Sleep function (injected in tests)

    Returns:
        Result of the first successful call

    Raises:
        TransientError: If all attempts are exhausted
    """
    attempt = 1
    wait_time = backoff_seconds

    while True:
        try:
            return func()
        except TransientError as e:
            if attempt >= max_attempts:
                if logger:
                    logger.error(f"All {max_attempts} attempts failed: {e}")
                raise

            if logger:
                logger.warning(
                    f"Attempt {attempt}/{max_attempts} failed: {e}. Retrying in {wait_time}s..."
                )
            sleep(wait_time)
            wait_time *= backoff_multiplier
            attempt += 1


def utcnow() -> datetime:
    """Return current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


def to_utc_str(dt: Optional[datetime] = None) -> str:
    """Format a datetime as an RFC 1123 UTC string for audit rows."""
    return format_datetime(dt or utcnow(), usegmt=True)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse an ISO timestamp or epoch milliseconds into an aware datetime."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    parsed = datetime.fromisoformat(str(value))
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def to_epoch_ms(dt: datetime) -> int:
    return int(dt.timestamp() * 1000)


def _wildcard_match(file_path: str, pattern: str) -> bool:
    if not file_path or not pattern:
        return False
    regex = re.escape(pattern).replace(r"\*", ".*")
    return re.fullmatch(regex, file_path) is not None


def is_file_pattern_matched(file_path: str, patterns: Any) -> bool:
    """
    Check a path against ignore patterns.

    A pattern matches the path itself or anything beneath it; ``*`` is a
    wildcard.
    """
    if isinstance(patterns, str):
        patterns = [p.strip() for p in patterns.split(",") if p.strip()]
    for pattern in patterns or []:
        if _wildcard_match(file_path, pattern) or _wildcard_match(file_path, f"{pattern}/*"):
            return True
    return False


def handle_extension(path: str) -> str:
    """
    Convert a content file path into its published resource path.

    ``/en/drafts/My Page.docx`` becomes ``/en/drafts/my-page``; spreadsheets
    map to ``.json``; ``index.docx`` maps to the folder itself.
    """
    folder, _, name = path.rpartition("/")
    folder = f"{folder}/"

    if name.endswith(".xlsx"):
        name = name[: -len(".xlsx")] + ".json"
    if name.lower() == "index.docx":
        name = ""
    if name.endswith(".docx"):
        name = name[: name.rfind(".")]

    name = unicodedata.normalize("NFD", name.lower())
    name = "".join(ch for ch in name if not unicodedata.combining(ch))
    name = re.sub(r"[^a-z0-9.]+", "-", name).strip("-")

    return f"{folder}{name}"


def batch_number(batch_name: str) -> int:
    """Numeric suffix of a batch name (``processing_batch_12`` -> 12)."""
    match = re.search(r"_(\d+)$", batch_name)
    return int(match.group(1)) if match else 0


def sanitize_error_message(error: Exception, max_length: int = 500) -> str:
    """
    Render an exception for audit rows and the retry ledger.

    Args:
        error: Exception to render
        max_length: Maximum message length

    Returns:
        Single-line message prefixed with the exception type
    """
    message = " ".join(str(error).split()) or error.__class__.__name__
    if len(message) > max_length:
        message = message[:max_length] + "..."
    return f"{error.__class__.__name__}: {message}"
