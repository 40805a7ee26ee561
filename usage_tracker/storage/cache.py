"""
On-disk pricing cache management.

Provides the location and raw read/write access for the cached pricing
document. Serialization of pricing objects lives in the pricing module.
"""

import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

APP_CACHE_DIR_NAME = "claude-usage-tracker"
PRICING_CACHE_FILENAME = "pricing.json"


def default_cache_path() -> Path:
    """Return the per-user pricing cache location.
    
    Honors ``XDG_CACHE_HOME`` and falls back to ``~/.cache``.
    
    Returns:
        Path to the pricing cache file (the file may not exist yet)
    """
    base = os.environ.get("XDG_CACHE_HOME")
    cache_root = Path(base) if base else Path.home() / ".cache"
    return cache_root / APP_CACHE_DIR_NAME / PRICING_CACHE_FILENAME


def read_cache_document(path: Path) -> Optional[Dict[str, Any]]:
    """Read the cached pricing document.
    
    A missing, unreadable or malformed cache is treated as absent.
    
    Args:
        path: Cache file path
        
    Returns:
        Parsed JSON object, or None when no usable cache exists
    """
    if not path.exists():
        return None
    try:
        with open(path, 'r', encoding='utf-8') as f:
            document = json.load(f)
    except (OSError, ValueError) as e:
        logger.warning("Failed to load pricing cache %s: %s", path, e)
        return None
    if not isinstance(document, dict):
        logger.warning("Ignoring pricing cache %s: not a JSON object", path)
        return None
    return document


def write_cache_document(path: Path, document: Dict[str, Any]) -> None:
    """Overwrite the cache file with a new pricing document.
    
    Writes to a sibling temporary file first and renames it into place so
    readers never see a truncated document.
    
    Args:
        path: Cache file path
        document: JSON-serializable pricing document
        
    Raises:
        OSError: If the cache directory or file cannot be written
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_suffix(".tmp")
    with open(tmp_path, 'w', encoding='utf-8') as f:
        json.dump(document, f, indent=2, sort_keys=True)
    os.replace(tmp_path, path)
