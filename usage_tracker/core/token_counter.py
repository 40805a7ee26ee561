"""
Token counting and usage accumulation.

Sums input, output and cache token quantities across usage entries.
"""

from dataclasses import dataclass

from usage_tracker.storage.models import UsageEntry


@dataclass
class TokenCounts:
    """Running token totals for one or more entries.
    
    Mutable on purpose: aggregation passes accumulate into a fresh instance
    and hand it off once the pass is complete.
    """
    input_tokens: int = 0
    output_tokens: int = 0
    cache_creation_tokens: int = 0
    cache_read_tokens: int = 0
    
    @property
    def total(self) -> int:
        """Total tokens across all four categories."""
        return (
            self.input_tokens
            + self.output_tokens
            + self.cache_creation_tokens
            + self.cache_read_tokens
        )
    
    def add(self, other: "TokenCounts") -> None:
        """Accumulate another set of counts into this one."""
        self.input_tokens += other.input_tokens
        self.output_tokens += other.output_tokens
        self.cache_creation_tokens += other.cache_creation_tokens
        self.cache_read_tokens += other.cache_read_tokens
    
    def add_entry(self, entry: UsageEntry) -> None:
        """Accumulate the usage record of a single entry.
        
        Entries without a usage record contribute nothing.
        """
        usage = entry.usage
        if usage is None:
            return
        self.input_tokens += usage.input_tokens
        self.output_tokens += usage.output_tokens
        self.cache_creation_tokens += usage.cache_creation_input_tokens
        self.cache_read_tokens += usage.cache_read_input_tokens
    
    @classmethod
    def from_entry(cls, entry: UsageEntry) -> "TokenCounts":
        counts = cls()
        counts.add_entry(entry)
        return counts
