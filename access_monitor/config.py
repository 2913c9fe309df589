import os

# --- Configuration ---
# Every value can be overridden with an ACCESS_MONITOR_* environment variable.

SERVER_HOST = os.getenv('ACCESS_MONITOR_HOST', "0.0.0.0")
SERVER_PORT = int(os.getenv('ACCESS_MONITOR_PORT', '8766'))

# --- Access Stream Source ---
# SSE endpoint that emits one `access` event per request seen by the proxy.
STREAM_URL = os.getenv('ACCESS_MONITOR_STREAM_URL', 'http://localhost:8080/api/stream/access')
STREAM_EVENT_NAME = 'access'
STREAM_CONNECT_TIMEOUT = 10  # seconds, connect phase only; the stream itself never times out
RECONNECT_INITIAL_SECONDS = 2
RECONNECT_MAX_SECONDS = 60  # Exponential backoff caps at 1 minute
FOLLOW_POLL_SECONDS = 5.0  # Polling fallback when no filesystem notification arrives

# --- Aggregation ---
TICK_INTERVAL_MS = int(os.getenv('ACCESS_MONITOR_TICK_MS', '1000'))
CHART_MAX_POINTS = int(os.getenv('ACCESS_MONITOR_CHART_POINTS', '60'))
RECENT_EVENTS_MAX = int(os.getenv('ACCESS_MONITOR_RECENT_EVENTS', '100'))
CHART_LABEL_FORMAT = '%H:%M:%S'
ERROR_STATUS_MIN = 500  # status codes >= this count as errors in the running totals

# --- Publishing ---
WEBSOCKET_HEARTBEAT_SECONDS = 10
HEARTBEAT_INTERVAL_SECONDS = 30

# --- Global Constants ---
# Methods offered by the dashboard filter; the matcher itself accepts any token.
HTTP_METHODS = ['GET', 'POST', 'PUT', 'DELETE', 'PATCH', 'HEAD', 'OPTIONS']
