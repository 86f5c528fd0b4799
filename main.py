import argparse
import asyncio
import logging
import signal
import sys
from typing import Iterable

from config import Config, load_config
from http_utils import RetryPolicy
from installer import DownloadOptions, Installer
from steam_api import open_steam_client
from telemetry import init_telemetry, shutdown_telemetry


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="workshop-installer",
        description="Manages Steam games and workshop items on a server.",
    )
    parser.add_argument(
        "--config",
        default=None,
        help="Path to the JSON config file (default: $WORKSHOP_CONFIG or config.json).",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    update = subparsers.add_parser(
        "update",
        help="Update all games, collections and workshop items in the games config.",
    )
    update.add_argument(
        "--skip-database-update",
        action="store_true",
        help="Do not check whether workshop items are up to date.",
    )
    update.add_argument(
        "--skip-download",
        action="store_true",
        help="Only update the catalog, download nothing.",
    )
    update.add_argument(
        "--download-up-to-date",
        action="store_true",
        help="Also download required workshop items that are up to date.",
    )
    update.add_argument("--login-username", default="", help="steamcmd login to use.")
    update.add_argument(
        "--logout", action="store_true", help="Log out of steamcmd when done."
    )
    update.add_argument(
        "--validate", action="store_true", help="Let steamcmd validate installed files."
    )

    items = subparsers.add_parser(
        "workshop-items",
        help="Print workshop items and their dependencies in dependency order.",
    )
    items.add_argument("game")
    items.add_argument("titles", nargs="+", metavar="title")

    logout = subparsers.add_parser("logout", help="Log a user out of steamcmd.")
    logout.add_argument("username", nargs="?", default="")
    return parser


async def run_update(installer: Installer, config: Config, args: argparse.Namespace) -> None:
    if not args.skip_database_update:
        policy = RetryPolicy(
            retries=config.http_retries,
            backoff=config.http_retry_backoff,
            request_delay=config.request_delay,
        )
        async with open_steam_client(
            config.timeout,
            policy=policy,
            proxies=config.proxy_pool,
            log_requests=config.log_requests,
            language=config.language,
        ) as client:
            await installer.update_catalog(client)
    if not args.skip_download:
        await installer.download(
            DownloadOptions(
                download_up_to_date=args.download_up_to_date,
                validate=args.validate,
                logout=args.logout,
            )
        )
    logging.info("Update successful")


async def run_command(config: Config, args: argparse.Namespace) -> None:
    installer = Installer.from_config(config)
    if args.command == "update":
        await run_update(installer, config, args)
    elif args.command == "workshop-items":
        for item_id, item in installer.dependency_order(args.game, args.titles):
            print(f"{item_id} # {item.title}")
    elif args.command == "logout":
        await installer.logout()
        logging.info("Successfully logged out")


async def _run_cancellable(config: Config, args: argparse.Namespace) -> None:
    loop = asyncio.get_running_loop()
    task = asyncio.current_task()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, task.cancel)
        except NotImplementedError:
            pass
    try:
        await run_command(config, args)
    finally:
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.remove_signal_handler(sig)
            except NotImplementedError:
                pass


def main(argv: Iterable[str] | None = None) -> int:
    args = build_parser().parse_args(list(argv) if argv is not None else None)
    login_username = getattr(args, "login_username", "") or (
        args.username if args.command == "logout" else ""
    )

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")
    try:
        config = load_config(args.config, login_username=login_username)
        logging.getLogger().setLevel(config.log_level)
    except (OSError, ValueError) as exc:
        logging.critical("Failed to read config: %s", exc)
        return 2

    init_telemetry()
    try:
        asyncio.run(_run_cancellable(config, args))
    except asyncio.CancelledError:
        logging.critical("Interrupted")
        return 130
    except Exception as exc:
        logging.critical("Failed to %s: %s", args.command, exc, exc_info=True)
        return 1
    finally:
        shutdown_telemetry()
    return 0


if __name__ == "__main__":
    sys.exit(main())
