"""
Command line entry point.

    mdmbridge migrate --db /var/db/micromdm.db --url https://nano/migration --key KEY
    mdmbridge serve --listen :9001 --api-key KEY --nano-api-key KEY --nano-url URL

Unset flags fall back to environment settings (see config.Settings).
"""

import argparse
import logging
import sys
from typing import Optional, Sequence

from mdmbridge import __version__
from mdmbridge.config import Settings, get_settings
from mdmbridge.errors import FatalPrecondition
from mdmbridge.logging_utils import setup_logging

logger = logging.getLogger(__name__)


def parse_listen(value: str) -> tuple[str, int]:
    """Split "host:port" or ":port"; an empty host listens on all interfaces."""
    host, sep, port = value.rpartition(":")
    if not sep:
        raise argparse.ArgumentTypeError(f"invalid listen address: {value!r}")
    try:
        port_number = int(port)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid listen port: {port!r}")
    return host or "0.0.0.0", port_number


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="mdmbridge",
        description="Migrate MDM check-in state and proxy MDM commands to a remote MDM service",
    )
    parser.add_argument("--version", action="store_true", help="print version")
    parser.add_argument("--log-level", default=None, help="logging level (default: LOG_LEVEL)")
    sub = parser.add_subparsers(dest="command")

    migrate = sub.add_parser("migrate", help="send Authenticate and TokenUpdate messages")
    migrate.add_argument("--db", dest="source_db_path", help="path to source MDM DB")
    migrate.add_argument("--url", dest="remote_url", help="remote migration URL")
    migrate.add_argument("--key", dest="remote_api_key", help="remote API key")
    migrate.add_argument("--udids", help="UDIDs to migrate (comma separated)")
    migrate.add_argument(
        "--days",
        type=int,
        help="skip devices with a last seen older than this many days",
    )
    migrate.add_argument(
        "--track-path",
        help="path to tracking database to avoid sending duplicate messages",
    )

    serve = sub.add_parser("serve", help="run the command proxy")
    serve.add_argument("--listen", type=parse_listen, help="listen address (default :9001)")
    serve.add_argument("--api-key", dest="proxy_api_key", help="API key accepted from clients")
    serve.add_argument("--nano-api-key", dest="remote_api_key", help="remote API key")
    serve.add_argument("--nano-url", dest="command_url", help="remote command URL")
    serve.add_argument("--method", dest="command_method", help="outbound HTTP method")
    return parser


def settings_from_args(args: argparse.Namespace, base: Settings) -> Settings:
    """Overlay the flags that were given on top of base settings."""
    mapping = {
        "log_level": "LOG_LEVEL",
        "source_db_path": "SOURCE_DB_PATH",
        "remote_url": "REMOTE_URL",
        "remote_api_key": "REMOTE_API_KEY",
        "udids": "MIGRATE_UDIDS",
        "days": "MIGRATE_DAYS",
        "track_path": "TRACK_PATH",
        "proxy_api_key": "PROXY_API_KEY",
        "command_url": "COMMAND_URL",
        "command_method": "COMMAND_METHOD",
    }
    update = {}
    for arg_name, setting_name in mapping.items():
        value = getattr(args, arg_name, None)
        if value is not None:
            update[setting_name] = value
    listen = getattr(args, "listen", None)
    if listen is not None:
        update["LISTEN_HOST"], update["LISTEN_PORT"] = listen
    return base.model_copy(update=update)


def cmd_migrate(settings: Settings) -> int:
    from mdmbridge.migrate import run_migration

    try:
        report = run_migration(settings)
    except FatalPrecondition as e:
        logger.critical(str(e))
        return 1
    counts = report.counts()
    logger.info(
        f"delivered={counts['delivered']} processed={counts['processed']} "
        f"skipped={counts['skipped']} failed={counts['failed']}"
    )
    return 0


def cmd_serve(settings: Settings) -> int:
    import uvicorn

    from mdmbridge.main import create_app

    try:
        app = create_app(settings)
    except ValueError as e:
        logger.critical(str(e))
        return 1
    logger.info(f"starting server {settings.LISTEN_HOST}:{settings.LISTEN_PORT}")
    uvicorn.run(app, host=settings.LISTEN_HOST, port=settings.LISTEN_PORT, log_config=None)
    return 0


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.version:
        print(__version__)
        return 0
    if args.command is None:
        parser.print_help()
        return 2

    settings = settings_from_args(args, get_settings())
    setup_logging(settings.LOG_LEVEL, component=args.command)

    if args.command == "migrate":
        return cmd_migrate(settings)
    return cmd_serve(settings)


if __name__ == "__main__":
    sys.exit(main())
