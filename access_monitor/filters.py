"""Stream filter value and the matcher that evaluates events against it."""

from dataclasses import dataclass
from typing import Any, Dict, Optional

from .events import AccessEvent


@dataclass(frozen=True)
class StreamFilter:
    """
    Host/path/method criteria. An empty criterion matches everything.
    Instances are values: changing the filter means replacing the instance.
    """
    host: str = ""
    path: str = ""
    method: str = ""

    @property
    def is_empty(self) -> bool:
        return not (self.host or self.path or self.method)

    def to_dict(self) -> Dict[str, str]:
        return {"host": self.host, "path": self.path, "method": self.method}

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "StreamFilter":
        data = data or {}
        return cls(
            host=str(data.get("host") or ""),
            path=str(data.get("path") or ""),
            method=str(data.get("method") or ""),
        )


def _contains(haystack: Optional[str], needle: str) -> bool:
    return needle.lower() in (haystack or "").lower()


def matches(event: AccessEvent, stream_filter: StreamFilter) -> bool:
    """True when the event passes every non-empty criterion of the filter."""
    if stream_filter.host and not _contains(event.host, stream_filter.host):
        return False
    if stream_filter.path and not _contains(event.path, stream_filter.path):
        return False
    # Methods are upper-case tokens, compared exactly.
    if stream_filter.method and (event.method or "") != stream_filter.method:
        return False
    return True
