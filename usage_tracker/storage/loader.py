"""
Log discovery and parsing.

Finds Claude CLI JSONL logs on disk and turns them into deduplicated
usage entries.
"""

import asyncio
import json
import logging
import os
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Set

from .models import TokenUsageRecord, UsageEntry

logger = logging.getLogger(__name__)

CONFIG_DIR_ENV = "CLAUDE_CONFIG_DIR"
PRIMARY_PROJECTS_DIR = Path(".config") / "claude" / "projects"
LEGACY_PROJECTS_DIR = Path(".claude") / "projects"
LOG_EXTENSION = ".jsonl"

# Lines lacking either marker cannot carry usage data
_USAGE_MARKER = '"usage"'
_OUTPUT_TOKENS_MARKER = '"output_tokens"'

_TIMESTAMP_FORMATS = (
    "%Y-%m-%dT%H:%M:%S.%f%z",
    "%Y-%m-%dT%H:%M:%S%z",
)


def parse_timestamp(value: str) -> datetime:
    """Parse an ISO-8601 timestamp, with or without fractional seconds.

    Args:
        value: Timestamp string such as ``2024-01-15T10:30:00.123Z``

    Returns:
        Timezone-aware datetime

    Raises:
        ValueError: If neither accepted format matches
    """
    for fmt in _TIMESTAMP_FORMATS:
        try:
            return datetime.strptime(value, fmt)
        except ValueError:
            continue
    raise ValueError(f"Cannot decode date: {value}")


def _optional_str(data: Mapping[str, Any], key: str) -> Optional[str]:
    value = data.get(key)
    return value if isinstance(value, str) else None


def _token_count(data: Mapping[str, Any], key: str, required: bool = False) -> int:
    value = data.get(key)
    if value is None and not required:
        return 0
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"'{key}' must be an integer")
    return value


def _parse_usage(data: Any) -> Optional[TokenUsageRecord]:
    if data is None:
        return None
    if not isinstance(data, dict):
        raise ValueError("'usage' must be an object")
    return TokenUsageRecord(
        input_tokens=_token_count(data, "input_tokens", required=True),
        output_tokens=_token_count(data, "output_tokens", required=True),
        cache_creation_input_tokens=_token_count(data, "cache_creation_input_tokens"),
        cache_read_input_tokens=_token_count(data, "cache_read_input_tokens"),
    )


def parse_entry(record: Dict[str, Any]) -> UsageEntry:
    """Build a UsageEntry from one decoded log record.

    Args:
        record: Decoded JSON object from a single log line

    Returns:
        Parsed entry (not yet filtered for relevance)

    Raises:
        ValueError: If the record has a missing or malformed field
    """
    raw_timestamp = record.get("timestamp")
    if not isinstance(raw_timestamp, str):
        raise ValueError("'timestamp' is required")
    timestamp = parse_timestamp(raw_timestamp)

    message = record.get("message")
    if message is not None and not isinstance(message, dict):
        raise ValueError("'message' must be an object")
    message = message or {}

    cost = record.get("costUSD")
    if cost is not None and (isinstance(cost, bool) or not isinstance(cost, (int, float))):
        raise ValueError("'costUSD' must be a number")

    return UsageEntry(
        timestamp=timestamp,
        session_id=_optional_str(record, "sessionId"),
        model=_optional_str(message, "model"),
        message_id=_optional_str(message, "id"),
        cost_usd=float(cost) if cost is not None else None,
        request_id=_optional_str(record, "requestId"),
        usage=_parse_usage(message.get("usage")),
    )


def parse_entry_line(line: str) -> Optional[UsageEntry]:
    """Parse one JSONL line into a relevant usage entry.

    Returns:
        The entry, or None if the line is malformed, has no output tokens,
        or belongs to a non-Claude model
    """
    if _USAGE_MARKER not in line or _OUTPUT_TOKENS_MARKER not in line:
        return None
    try:
        record = json.loads(line)
        if not isinstance(record, dict):
            return None
        entry = parse_entry(record)
    except (ValueError, RecursionError) as e:
        logger.debug("Skipping malformed log line: %s", e)
        return None

    if not entry.has_usage_data or not entry.is_claude_model:
        return None
    return entry


def parse_jsonl_file(path: Path) -> List[UsageEntry]:
    """Parse every relevant entry out of a single JSONL file.

    Args:
        path: Log file path

    Returns:
        Entries in file order

    Raises:
        OSError: If the file cannot be read
    """
    entries = []
    with open(path, 'r', encoding='utf-8', errors='replace') as f:
        for line in f:
            line = line.strip()
            if not line:
                continue
            entry = parse_entry_line(line)
            if entry is not None:
                entries.append(entry)
    return entries


class EntryLoader:
    """Loads usage entries from every Claude data directory on this machine.

    The home directory and environment are injectable so tests can point the
    loader at a temporary tree.
    """

    def __init__(
        self,
        home: Optional[Path] = None,
        environ: Optional[Mapping[str, str]] = None,
    ):
        """Initialize the loader.

        Args:
            home: Home directory to search (defaults to the current user's)
            environ: Environment mapping (defaults to ``os.environ``)
        """
        self.home = home or Path.home()
        self.environ = environ if environ is not None else os.environ

    def get_claude_paths(self) -> List[Path]:
        """Return existing Claude project directories in search order.

        Returns:
            Primary, legacy, then ``CLAUDE_CONFIG_DIR`` paths that exist
        """
        candidates = [
            self.home / PRIMARY_PROJECTS_DIR,
            self.home / LEGACY_PROJECTS_DIR,
        ]
        override = self.environ.get(CONFIG_DIR_ENV)
        if override:
            for component in override.split(","):
                component = component.strip()
                if component:
                    candidates.append(Path(component).expanduser())

        return [path for path in candidates if path.exists()]

    def find_jsonl_files(self) -> List[Path]:
        """Find every JSONL log file beneath the Claude directories.

        Hidden files and directories are skipped. A root or subdirectory that
        cannot be enumerated is logged and skipped; the rest of the tree is
        still searched.

        Returns:
            Files grouped by root in search order, sorted by path within a root
        """
        files = []
        for base_path in self.get_claude_paths():
            try:
                files.extend(self._walk(base_path))
            except OSError as e:
                logger.warning("Failed to enumerate %s: %s", base_path, e)
        return files

    def _walk(self, base_path: Path) -> List[Path]:
        found = []

        def _skip(error: OSError) -> None:
            logger.warning("Skipping unreadable directory %s: %s", error.filename, error)

        for dirpath, dirnames, filenames in os.walk(base_path, onerror=_skip):
            dirnames[:] = [d for d in dirnames if not d.startswith(".")]
            for filename in filenames:
                if filename.startswith(".") or not filename.endswith(LOG_EXTENSION):
                    continue
                path = Path(dirpath) / filename
                if path.is_file():
                    found.append(path)
        return sorted(found)

    def load_entries_sync(self) -> List[UsageEntry]:
        """Load, deduplicate and sort entries from all log files.

        The first occurrence of an entry id wins, following file traversal
        order. Unreadable files are logged and skipped.

        Returns:
            Entries ordered by timestamp (newest first)
        """
        entries = []
        seen_ids: Set[str] = set()

        for path in self.find_jsonl_files():
            try:
                file_entries = parse_jsonl_file(path)
            except OSError as e:
                logger.warning("Failed to read %s: %s", path, e)
                continue
            for entry in file_entries:
                entry_id = entry.entry_id
                if entry_id in seen_ids:
                    continue
                seen_ids.add(entry_id)
                entries.append(entry)

        entries.sort(key=lambda e: e.timestamp, reverse=True)
        logger.debug("Loaded %d usage entries", len(entries))
        return entries

    async def load_all_entries(self) -> List[UsageEntry]:
        """Load all entries without blocking the event loop."""
        return await asyncio.to_thread(self.load_entries_sync)
