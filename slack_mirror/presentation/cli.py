"""Command line entry point: ``slack-mirror <command>``.

Commands:
- import    backfill history into the local store
- listen    capture live messages (Socket Mode or polling) and print them
- all       import, then listen
- query     ask a question against the local store
- stats     summary counters
- channels  list stored channels
- users     list stored users
"""

from __future__ import annotations

import argparse
import sys
from collections.abc import Sequence
from typing import Final

from slack_mirror.adapters.sqlite_store import SQLiteStore
from slack_mirror.clients.slack_gateway import create_gateway
from slack_mirror.config.logging_config import get_logger, setup_logging
from slack_mirror.config.settings import Settings, get_settings
from slack_mirror.domain.exceptions import (
    AuthInvalidError,
    CredentialsNotFoundError,
    StorageUnavailableError,
)
from slack_mirror.domain.models import (
    AskResult,
    ContextMessage,
    ImportResult,
    MessageNotification,
    NotificationKind,
)
from slack_mirror.observability.metrics import ensure_metrics_exporter
from slack_mirror.services.notifications import NotificationHub
from slack_mirror.services.shutdown import ShutdownController, install_signal_handlers
from slack_mirror.use_cases.import_history import create_history_importer
from slack_mirror.use_cases.live_capture import create_live_capture
from slack_mirror.use_cases.query_engine import QueryEngine

logger = get_logger(__name__)

EXIT_OK: Final[int] = 0
EXIT_FAILURE: Final[int] = 1
NOTIFICATION_POLL_SECONDS: Final[float] = 1.0
TEXT_PREVIEW_CHARS: Final[int] = 200


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="slack-mirror",
        description="Mirror a Slack workspace into a local searchable database",
    )
    parser.add_argument("-d", "--db", default=None, help="Path to the SQLite database")
    parser.add_argument("--json-logs", action="store_true", help="Emit logs in JSON format")
    subparsers = parser.add_subparsers(dest="command", required=True)

    import_parser = subparsers.add_parser("import", help="Import channel history")
    _add_import_arguments(import_parser)

    listen_parser = subparsers.add_parser("listen", help="Capture live messages")
    _add_listen_arguments(listen_parser)

    all_parser = subparsers.add_parser("all", help="Import history, then listen")
    _add_import_arguments(all_parser)
    _add_listen_arguments(all_parser)

    query_parser = subparsers.add_parser("query", help="Ask a question")
    query_parser.add_argument("question", help="Natural-language question or keywords")
    query_parser.add_argument("-k", "--top-k", type=int, default=5, help="Number of top hits")
    query_parser.add_argument(
        "-w", "--context-window", type=int, default=6, help="Messages of context per hit"
    )
    query_parser.add_argument("-c", "--channel", default=None, help="Restrict to a channel")
    query_parser.add_argument("-u", "--user", default=None, help="Restrict to a user")
    query_parser.add_argument("--json", action="store_true", help="Print the result as JSON")

    subparsers.add_parser("stats", help="Show database statistics")
    subparsers.add_parser("channels", help="List stored channels")
    subparsers.add_parser("users", help="List stored users")

    return parser.parse_args(argv)


def _add_import_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "-c",
        "--channels",
        nargs="+",
        default=None,
        help="Channel names or ids to import (default: all reachable)",
    )
    parser.add_argument(
        "--include-dms", action="store_true", default=None, help="Also import DMs and group DMs"
    )
    parser.add_argument(
        "--join-public",
        action="store_true",
        default=None,
        help="Join unjoined public channels to import their history",
    )
    parser.add_argument(
        "--no-metadata",
        action="store_true",
        help="Skip pins, bookmarks, emoji, user groups, files and stars",
    )


def _add_listen_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--poll-interval",
        type=float,
        default=None,
        help="Seconds between poll cycles for user/session credentials",
    )
    parser.add_argument(
        "--metrics-port",
        type=int,
        default=None,
        help="Expose Prometheus metrics on this port",
    )


def main(argv: Sequence[str] | None = None) -> int:
    args = parse_args(argv)

    settings = get_settings()
    if args.db:
        settings = settings.model_copy(update={"db_path": args.db})
    setup_logging(log_level=settings.log_level, json_logs=args.json_logs or settings.json_logs)

    try:
        store = SQLiteStore(settings.db_path)
    except StorageUnavailableError as exc:
        logger.error("store_open_failed", db_path=settings.db_path, error=str(exc))
        print(f"Error: {exc}", file=sys.stderr)
        return EXIT_FAILURE

    try:
        if args.command == "import":
            return _run_import(args, settings, store)
        if args.command == "listen":
            return _run_listen(args, settings, store)
        if args.command == "all":
            status = _run_import(args, settings, store)
            if status != EXIT_OK:
                return status
            return _run_listen(args, settings, store)
        return _run_query_command(args, store)
    except StorageUnavailableError as exc:
        logger.error("storage_unavailable", error=str(exc))
        print(f"Error: storage unavailable: {exc}", file=sys.stderr)
        return EXIT_FAILURE
    finally:
        store.close()


def _run_import(args: argparse.Namespace, settings: Settings, store: SQLiteStore) -> int:
    try:
        credentials = settings.resolve_credentials()
    except CredentialsNotFoundError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return EXIT_FAILURE

    print(f"Auth mode: {credentials.mode.value}")
    controller = ShutdownController()
    install_signal_handlers(controller)

    gateway = create_gateway(settings, credentials, stop_signal=controller)
    importer = create_history_importer(
        settings,
        store,
        gateway,
        auth_mode=credentials.mode,
        stop_signal=controller,
        include_dms=args.include_dms,
        join_public=args.join_public,
        import_metadata=False if args.no_metadata else None,
    )

    try:
        result = importer.run_once(channels=args.channels)
    except AuthInvalidError as exc:
        logger.error("import_auth_failed", error=str(exc))
        print(
            f"Error: Slack rejected the credential ({exc}). Refresh it and retry.",
            file=sys.stderr,
        )
        return EXIT_FAILURE

    _print_import_result(result)
    return EXIT_OK


def _print_import_result(result: ImportResult) -> None:
    print(f"Users synced:      {result.users_synced}")
    print(f"Channels synced:   {result.channels_synced}")
    print(f"Channels imported: {len(result.channels_processed)}")
    print(f"Messages upserted: {result.messages_upserted}")
    for outcome in result.skipped_channels:
        label = outcome.channel_name or outcome.channel_id
        print(f"  skipped #{label} ({outcome.status.value}): {outcome.error}")


def _run_listen(args: argparse.Namespace, settings: Settings, store: SQLiteStore) -> int:
    try:
        credentials = settings.resolve_credentials()
    except CredentialsNotFoundError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return EXIT_FAILURE

    if args.poll_interval is not None:
        settings = settings.model_copy(update={"poll_interval_seconds": args.poll_interval})
    if args.metrics_port:
        ensure_metrics_exporter(args.metrics_port)

    controller = ShutdownController()
    install_signal_handlers(controller)

    hub = NotificationHub(settings.notification_queue_size)
    gateway = create_gateway(settings, credentials, stop_signal=controller)
    capture = create_live_capture(
        settings, credentials, store, gateway, hub, shutdown=controller
    )

    subscription = hub.subscribe()
    print(f"Auth mode: {credentials.mode.value}. Listening; press Ctrl+C to stop.")
    capture.start()
    try:
        while not controller.is_set() and capture.is_running:
            notification = subscription.get(timeout=NOTIFICATION_POLL_SECONDS)
            if notification is not None:
                print(_format_notification(notification), flush=True)
    finally:
        subscription.close()
        capture.stop()

    if capture.auth_failed:
        print(
            "Error: Slack rejected the credential. Refresh it and restart.",
            file=sys.stderr,
        )
        return EXIT_FAILURE
    if capture.fatal_error is not None:
        logger.error("live_capture_failed", error=str(capture.fatal_error))
        print(f"Error: live capture stopped: {capture.fatal_error}", file=sys.stderr)
        return EXIT_FAILURE
    return EXIT_OK


def _format_notification(notification: MessageNotification) -> str:
    tag = "" if notification.kind == NotificationKind.NEW else f" ({notification.kind.value})"
    text = notification.text[:TEXT_PREVIEW_CHARS]
    return f"[{notification.channel_id}] {notification.user_id or '?'}: {text}{tag}"


def _run_query_command(args: argparse.Namespace, store: SQLiteStore) -> int:
    engine = QueryEngine(store)

    if args.command == "query":
        result = engine.ask(
            args.question,
            top_k=args.top_k,
            context_window=args.context_window,
            channel=args.channel,
            user=args.user,
        )
        if args.json:
            print(result.model_dump_json(indent=2))
        else:
            _print_ask_result(result)
        return EXIT_OK

    if args.command == "stats":
        stats = engine.stats()
        print("Slack mirror database stats")
        print(f"  Messages:  {stats.messages}")
        print(f"  Channels:  {stats.channels}")
        print(f"  Users:     {stats.users}")
        print(f"  Threads:   {stats.threads}")
        return EXIT_OK

    if args.command == "channels":
        channels = engine.channels()
        for channel in channels:
            visibility = "private" if channel.is_private else "public "
            topic = f" - {channel.topic}" if channel.topic else ""
            print(f"{visibility} {channel.label} ({channel.id}){topic}")
        print(f"\n{len(channels)} channels total")
        return EXIT_OK

    if args.command == "users":
        users = engine.users()
        for user in users:
            display = user.display_name or user.real_name or user.name
            bot = " [bot]" if user.is_bot else ""
            print(f"{user.id} {user.name} ({display}){bot}")
        print(f"\n{len(users)} users total")
        return EXIT_OK

    raise ValueError(f"Unknown command: {args.command}")


def _print_ask_result(result: AskResult) -> None:
    print("\n=== Search Results ===\n")
    for hit in result.hits:
        print(f"#{hit.channel_name or hit.channel_id} | {hit.user_name or hit.user_id}: {hit.text}")
        if hit.permalink:
            print(f"  {hit.permalink}")
        print()

    for block in result.context:
        print(f"--- {block.kind} in #{block.channel_name or block.channel_id} ({block.thread_key}) ---")
        for message in block.messages:
            print(f"  {_format_context_line(message)}")
        print()

    print(f"--- {len(result.hits)} hits | {len(result.context)} context blocks ---")
    stats = result.stats
    print(f"DB: {stats.messages} messages, {stats.channels} channels, {stats.users} users")


def _format_context_line(message: ContextMessage) -> str:
    when = message.posted_at.strftime("%Y-%m-%d %H:%M")
    return f"{when} {message.user_name or message.user_id or '?'}: {message.text}"


def run() -> None:
    """Console script entry point."""
    raise SystemExit(main())


__all__ = ["main", "parse_args", "run"]


if __name__ == "__main__":
    run()
