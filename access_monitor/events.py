"""
Access event records as delivered by the access stream.

The stream emits one JSON object per proxied request, using the camelCase keys
of the upstream access log collector. Records are parsed into immutable
AccessEvent instances; anything that cannot be parsed is dropped so a single
bad record never interrupts the stream.
"""

import datetime
import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, Optional, Union

log = logging.getLogger("AccessMonitor.Events")

# Upstream timestamps carry nanosecond fractions; datetime only keeps microseconds.
_FRACTION_RE = re.compile(r'(\.\d{6})\d+')


@dataclass(frozen=True)
class AccessEvent:
    """A single request observed by the proxy. Never mutated after creation."""
    timestamp: Optional[datetime.datetime] = None
    host: str = ""
    path: str = ""
    method: str = ""
    status_code: int = 0
    duration_ns: int = 0
    client_ip: str = ""
    trace_id: str = ""
    span_id: str = ""
    scheme: str = ""
    protocol: str = ""
    service_name: str = ""
    router_name: str = ""
    origin_status_code: int = 0
    origin_duration_ns: int = 0
    overhead_ns: int = 0
    retry_attempts: int = 0

    @property
    def duration_ms(self) -> float:
        return self.duration_ns / 1_000_000

    @property
    def status_class(self) -> int:
        """Hundreds digit of the status code (2 for 2xx, 5 for 5xx, ...)."""
        return self.status_code // 100

    def to_payload(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
            "host": self.host, "path": self.path, "method": self.method,
            "status_code": self.status_code, "duration_ns": self.duration_ns,
            "duration_ms": round(self.duration_ms, 3),
            "client_ip": self.client_ip, "trace_id": self.trace_id, "span_id": self.span_id,
            "scheme": self.scheme, "protocol": self.protocol,
            "service_name": self.service_name, "router_name": self.router_name,
            "origin_status_code": self.origin_status_code,
            "origin_duration_ns": self.origin_duration_ns,
            "overhead_ns": self.overhead_ns, "retry_attempts": self.retry_attempts,
        }


def parse_timestamp(value: Any) -> Optional[datetime.datetime]:
    """Parses an ISO-8601 instant ('...Z' or with offset). Raises ValueError when malformed."""
    if value is None or value == "":
        return None
    if not isinstance(value, str):
        raise ValueError(f"timestamp is not a string: {value!r}")
    text = value.strip()
    if text.endswith(('Z', 'z')):
        text = text[:-1] + '+00:00'
    text = _FRACTION_RE.sub(r'\1', text)
    ts = datetime.datetime.fromisoformat(text)
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=datetime.timezone.utc)
    return ts


def _as_int(value: Any, default: int = 0) -> int:
    if value is None:
        return default
    if isinstance(value, bool):
        raise ValueError("boolean is not a number")
    if isinstance(value, (int, float, str)):
        return int(value)
    raise ValueError(f"not a number: {value!r}")


def _as_str(value: Any) -> str:
    if value is None:
        return ""
    return str(value)


def parse_access_event(raw: Union[str, bytes, Dict[str, Any]]) -> Optional[AccessEvent]:
    """
    Builds an AccessEvent from a JSON document or an already-decoded mapping.
    Returns None for malformed records; callers drop those silently.
    """
    try:
        data = json.loads(raw) if isinstance(raw, (str, bytes, bytearray)) else raw
        if not isinstance(data, dict):
            return None
        if data.get("statusCode") is None:
            return None
        status_code = data["statusCode"]
        if isinstance(status_code, float) and not status_code.is_integer():
            return None

        return AccessEvent(
            timestamp=parse_timestamp(data.get("timestamp")),
            host=_as_str(data.get("host")),
            path=_as_str(data.get("path")),
            method=_as_str(data.get("method")),
            status_code=_as_int(status_code),
            duration_ns=_as_int(data.get("durationNs")),
            client_ip=_as_str(data.get("clientIp")),
            trace_id=_as_str(data.get("traceId")),
            span_id=_as_str(data.get("spanId")),
            scheme=_as_str(data.get("scheme")),
            protocol=_as_str(data.get("protocol")),
            service_name=_as_str(data.get("serviceName")),
            router_name=_as_str(data.get("routerName")),
            origin_status_code=_as_int(data.get("originStatusCode")),
            origin_duration_ns=_as_int(data.get("originDurationNs")),
            overhead_ns=_as_int(data.get("overheadNs")),
            retry_attempts=_as_int(data.get("retryAttempts")),
        )
    except (json.JSONDecodeError, UnicodeDecodeError, TypeError, ValueError, OverflowError):
        log.debug("Dropping malformed access record", exc_info=True)
        return None
