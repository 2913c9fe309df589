import argparse
import logging
import os
import sys

# This boilerplate allows the script to be run directly (e.g., `python access_monitor`)
# by putting the project root on the Python path so the absolute imports below resolve.
if __package__ is None or __package__ == '':
    script_dir = os.path.dirname(os.path.abspath(__file__))
    project_root = os.path.dirname(script_dir)
    sys.path.insert(0, project_root)

from access_monitor import config, server
from access_monitor.credentials import Credential
from access_monitor.filters import StreamFilter
from access_monitor.session import StreamSessionController
from access_monitor.transport import file_transport_factory, sse_transport_factory

# --- Centralized Logging Configuration ---
log = logging.getLogger("AccessMonitor")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Access Monitor - live request-rate, status and access-log views for a proxy access stream",
        epilog="""
Examples:
  # Subscribe to the proxy's SSE access stream
  %(prog)s --stream-url http://proxy.local:8080/api/stream/access --user admin --password secret

  # Follow a JSON-lines access log written to disk, only POSTs to /api
  %(prog)s --follow-log /var/log/traefik/access.jsonl --method POST --path /api

The dashboard connects to ws://<listen-host>:<listen-port>/ws for live updates.
        """,
        formatter_class=argparse.RawDescriptionHelpFormatter
    )

    source_group = parser.add_mutually_exclusive_group(required=True)
    source_group.add_argument('--stream-url', metavar='URL',
                              help="Server-Sent Events endpoint emitting 'access' events.")
    source_group.add_argument('--follow-log', metavar='PATH',
                              help="JSON-lines access log file to follow.")

    parser.add_argument('--user', default=os.getenv('ACCESS_MONITOR_USER'),
                        help="Stream username (default: $ACCESS_MONITOR_USER).")
    parser.add_argument('--password', default=os.getenv('ACCESS_MONITOR_PASSWORD', ''),
                        help="Stream password (default: $ACCESS_MONITOR_PASSWORD).")
    parser.add_argument('--host', default='', help="Only count requests whose host contains this text.")
    parser.add_argument('--path', default='', help="Only count requests whose path contains this text.")
    parser.add_argument('--method', default='', help="Only count requests with exactly this method.")
    parser.add_argument('--tick-ms', type=int, default=config.TICK_INTERVAL_MS,
                        help="Aggregation interval in milliseconds.")
    parser.add_argument('--from-start', action='store_true',
                        help="With --follow-log, read the existing file content instead of only new lines.")
    parser.add_argument('--listen-host', default=config.SERVER_HOST)
    parser.add_argument('--listen-port', type=int, default=config.SERVER_PORT)
    parser.add_argument('--debug', action='store_true', help="Enable debug logging.")
    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)

    log_level = logging.DEBUG if args.debug else logging.INFO
    logging.basicConfig(level=log_level, format='%(asctime)s [%(levelname)s] [%(name)s] %(message)s',
                        datefmt='%Y-%m-%d %H:%M:%S')

    if args.tick_ms <= 0:
        log.critical(f"Invalid --tick-ms value: {args.tick_ms}. Must be positive.")
        sys.exit(1)

    if args.stream_url:
        transport_factory = sse_transport_factory(args.stream_url)
        credential = Credential(args.user, args.password) if args.user else None
        if credential is None:
            log.warning("No --user given; the session starts once a dashboard sends a login message.")
    else:
        if not os.path.exists(args.follow_log):
            log.warning(f"Access log does not currently exist at '{args.follow_log}' (may be created later).")
        transport_factory = file_transport_factory(args.follow_log, from_start=args.from_start)
        # A local file needs no identity, but the session still needs one to start.
        credential = Credential(args.user or "local", args.password)

    stream_filter = StreamFilter(host=args.host, path=args.path, method=args.method)
    controller = StreamSessionController(transport_factory, stream_filter, tick_interval_ms=args.tick_ms)
    server.run_server(controller, credential, host=args.listen_host, port=args.listen_port)


if __name__ == "__main__":
    main()
