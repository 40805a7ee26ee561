"""
Data models for the log ingestion layer.

Defines the normalized shape of a single Claude CLI usage record.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Optional

# Product name every tracked model identifier must contain (case-insensitive)
PRODUCT_FILTER = "claude"


@dataclass(frozen=True)
class TokenUsageRecord:
    """Token usage block nested under ``message.usage`` in a log line."""
    input_tokens: int
    output_tokens: int
    cache_creation_input_tokens: int = 0
    cache_read_input_tokens: int = 0
    
    def __post_init__(self):
        """Validate token counts are non-negative."""
        for name in (
            "input_tokens",
            "output_tokens",
            "cache_creation_input_tokens",
            "cache_read_input_tokens",
        ):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} cannot be negative")


@dataclass(frozen=True)
class UsageEntry:
    """Immutable record of one assistant response read from a JSONL log.
    
    Entries live only for the duration of a refresh pass. They are never
    written back to disk.
    """
    timestamp: datetime
    session_id: Optional[str] = None
    model: Optional[str] = None
    message_id: Optional[str] = None
    cost_usd: Optional[float] = None
    request_id: Optional[str] = None
    usage: Optional[TokenUsageRecord] = None
    
    @property
    def entry_id(self) -> str:
        """Composite identity used for cross-file deduplication."""
        return f"{self.timestamp.timestamp()}-{self.request_id or ''}-{self.message_id or ''}"
    
    @property
    def has_usage_data(self) -> bool:
        """True when the entry carries a usage record with output tokens."""
        return self.usage is not None and self.usage.output_tokens > 0
    
    @property
    def is_claude_model(self) -> bool:
        if not self.model:
            return False
        return PRODUCT_FILTER in self.model.lower()
    
    @property
    def total_tokens(self) -> int:
        if self.usage is None:
            return 0
        return (
            self.usage.input_tokens
            + self.usage.output_tokens
            + self.usage.cache_creation_input_tokens
            + self.usage.cache_read_input_tokens
        )
