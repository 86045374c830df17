from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Iterator, Optional


@dataclass(frozen=True)
class RetryPattern:
    pattern: str
    reason: str

    def __post_init__(self) -> None:
        # Fail at construction rather than at the first classified error.
        re.compile(self.pattern)

    def matches(self, message: str) -> bool:
        return re.search(self.pattern, message) is not None


@dataclass(frozen=True)
class RetryPatternTable:
    """Ordered, versioned table of transient-error patterns.

    Matching is against the error's text; the first matching entry wins. Bump
    `version` whenever an entry changes so logs show which table classified
    an error.
    """

    version: str
    entries: tuple[RetryPattern, ...]

    def __iter__(self) -> Iterator[RetryPattern]:
        return iter(self.entries)

    def __len__(self) -> int:
        return len(self.entries)

    def match(self, message: str) -> Optional[RetryPattern]:
        for entry in self.entries:
            if entry.matches(message):
                return entry
        return None

    def extended(self, *entries: RetryPattern, version: Optional[str] = None) -> "RetryPatternTable":
        return RetryPatternTable(version=version or self.version, entries=self.entries + tuple(entries))

    @staticmethod
    def from_mapping(mapping: dict[str, str], *, version: str) -> "RetryPatternTable":
        return RetryPatternTable(
            version=version,
            entries=tuple(RetryPattern(pattern=p, reason=r) for p, r in mapping.items()),
        )


DEFAULT_RETRY_PATTERNS = RetryPatternTable.from_mapping(
    {
        ".*does not have enough resources available to fulfill the request.  Try a different zone,.*": (
            "Compute zone resources currently unavailable."
        ),
        ".*Error 400: The subnetwork resource*": "Subnet is eventually drained",
    },
    version="1",
)
