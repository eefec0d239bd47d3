"""Entry point for the Parenta router service."""

import argparse
import getpass
import logging
import sys
from pathlib import Path

import uvicorn

from . import __version__
from .api import create_app
from .auth import AuthService, TokenIssuer, hash_password
from .config import load_config
from .dnsmasq import DnsmasqConfigurator, DnsmasqError
from .ndsctl import NDSCtl
from .store import RecordStore, StoreError

logger = logging.getLogger(__name__)


def setup_logging(verbose: bool, log_file: Path | None = None) -> None:
    """Configure logging for the application."""
    level = logging.DEBUG if verbose else logging.INFO
    handlers: list[logging.Handler] = [logging.StreamHandler()]

    if log_file:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file))

    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        handlers=handlers,
    )


def cmd_run(args: argparse.Namespace) -> None:
    """Run the portal, the admin API and the session ticker."""
    setup_logging(args.verbose, args.log_file)

    config_path: Path = args.config
    if not config_path.exists():
        logger.error("Configuration file not found: %s", config_path)
        sys.exit(1)

    try:
        config = load_config(config_path)
    except ValueError as e:
        logger.error("Invalid configuration in %s: %s", args.config, e)
        sys.exit(1)

    if config.session.jwt_secret == "change-me":
        logger.warning("session.jwt_secret is the default value; set a real secret")

    try:
        store = RecordStore(config.storage.data_dir)
    except (StoreError, OSError) as e:
        logger.error("Cannot open data directory %s: %s", config.storage.data_dir, e)
        sys.exit(1)
    logger.info("Loaded data from %s", config.storage.data_dir)

    auth = AuthService(store, TokenIssuer(config.session.jwt_secret, config.session.jwt_expiry_hours))
    auth.initialize_admin(
        config.defaults.admin_username,
        config.defaults.admin_password,
        config.defaults.force_password_change,
    )

    dnsmasq = DnsmasqConfigurator(
        store,
        config.dnsmasq.conf_dir,
        config.dnsmasq.restart_cmd,
        upstream_dns=config.dnsmasq.upstream_dns,
    )
    try:
        dnsmasq.regenerate()
    except DnsmasqError as e:
        logger.warning("Could not regenerate DNS filters: %s", e)

    controller = NDSCtl(config.opennds.ndsctl_path, config.opennds.command_timeout_seconds)
    if not controller.is_running():
        logger.warning("openNDS does not respond; sessions will not be enforced until it does")

    app = create_app(config, store, controller)
    logger.info("Starting Parenta %s on %s:%d", __version__, config.server.host, config.server.port)
    uvicorn.run(app, host=config.server.host, port=config.server.port, log_config=None)


def cmd_hash_password(args: argparse.Namespace) -> None:
    """Print a password hash for pasting into a data file."""
    password = args.password or getpass.getpass("Password: ")
    print(hash_password(password))


def main() -> None:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="Parenta captive portal and parental control service",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  parenta                          Run with ./config.json
  parenta run -c /etc/parenta.json Run with a specific config
  parenta hash-password            Hash a password interactively
""",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")

    subparsers = parser.add_subparsers(dest="command")

    run_parser = subparsers.add_parser("run", help="Run the service")
    run_parser.set_defaults(func=cmd_run)

    hash_parser = subparsers.add_parser("hash-password", help="Hash a password")
    hash_parser.add_argument("password", nargs="?", help="Password (prompted if omitted)")
    hash_parser.set_defaults(func=cmd_hash_password)

    # Shared by "run" and the default invocation
    for p in (parser, run_parser):
        p.add_argument(
            "--config", "-c",
            type=Path,
            default=Path("config.json"),
            help="Path to configuration file",
        )
        p.add_argument(
            "--verbose", "-v",
            action="store_true",
            help="Enable verbose logging",
        )
        p.add_argument(
            "--log-file",
            type=Path,
            default=None,
            help="Also write logs to this file",
        )

    args = parser.parse_args()

    if args.command is None:
        cmd_run(args)
    else:
        args.func(args)


if __name__ == "__main__":
    main()
