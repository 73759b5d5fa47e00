#!/usr/bin/env python3
"""Command-line entry point for netsync."""

from __future__ import annotations

import argparse
import logging
import os
import sys
from typing import Optional

import config_editor
import proxy_template
import sync_service
from config_model import (
    DEFAULT_CONFIG_FILE,
    DEFAULT_INITIAL_CONFIG,
    ENV_CONFIG_FILE,
    ENV_INITIAL_CONFIG,
    NetSyncConfig,
    dump_config,
    load_config,
    load_or_create,
)
from errors import NetSyncError, ConfigValidationError, RunLockedError
from host_manager import HostManager, NetworkIdentity
from pipeline import EXIT_ABORTED, EXIT_CONFIG, EXIT_LOCKED, EXIT_OK, exit_code_for

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

logger = logging.getLogger("netsync")


def setup_logging(verbose: bool = False, log_file: Optional[str] = None) -> None:
    logging.basicConfig(level=logging.DEBUG if verbose else logging.INFO, format=LOG_FORMAT)
    if log_file:
        handler = logging.FileHandler(log_file)
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        logging.getLogger().addHandler(handler)


def config_path(args: argparse.Namespace) -> str:
    if args.config_file:
        return args.config_file
    return os.environ.get(ENV_CONFIG_FILE, DEFAULT_CONFIG_FILE)


def identity_for(cfg: NetSyncConfig, ip: Optional[str]) -> NetworkIdentity:
    """Use the given IP, or probe the host for it."""
    if ip:
        return NetworkIdentity(interface=cfg.network.interface or "manual", ipv4=ip)
    return HostManager.probe(cfg.network.interface)


def cmd_run(args: argparse.Namespace, cfg: NetSyncConfig) -> int:
    """Run the full network update."""
    result = sync_service.NetworkSyncService(cfg).sync_now(notify=not args.no_notify)
    if result.succeeded:
        print("Network update complete!")
        print("-" * 42)
        print(result.detail)
        print("-" * 42)
    else:
        print(f"Network update failed at stage '{result.stage}': {result.detail}", file=sys.stderr)
    return exit_code_for(result)


def cmd_probe(args: argparse.Namespace, cfg: NetSyncConfig) -> int:
    """Print the active interface and IPv4 address."""
    identity = HostManager.probe(cfg.network.interface)
    print(f"{identity.interface} {identity.ipv4}")
    return EXIT_OK


def cmd_allowed_hosts(args: argparse.Namespace, cfg: NetSyncConfig) -> int:
    """Only rewrite the allow-list assignment."""
    identity = identity_for(cfg, args.ip)
    line = sync_service.allowed_hosts_line(cfg, identity)
    changed = config_editor.replace_directive(str(cfg.project.settings_file), cfg.allowed_hosts.key, line)
    print(line if changed else f"{cfg.allowed_hosts.key} already up to date")
    return EXIT_OK


def cmd_render(args: argparse.Namespace, cfg: NetSyncConfig) -> int:
    """Print the reverse-proxy config that a run would write."""
    identity = identity_for(cfg, args.ip)
    templates = sync_service.proxy_templates(cfg, identity, sync_service.public_site_enabled(cfg))
    sys.stdout.write(proxy_template.render_all(templates))
    return EXIT_OK


def cmd_show_config(args: argparse.Namespace, cfg: NetSyncConfig) -> int:
    """Print the effective configuration, derived defaults included."""
    sys.stdout.write(dump_config(cfg))
    return EXIT_OK


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="netsync", description="Re-sync a web deployment to the host's current network address")

    parser.add_argument(
        "--config-file",
        help=f"Path to config file (default: ${ENV_CONFIG_FILE} or {DEFAULT_CONFIG_FILE})",
        default=None,
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    parser_run = subparsers.add_parser("run", help="Probe the network and re-sync allow-list, certificates and Nginx")
    parser_run.add_argument("--no-notify", action="store_true", help="Do not send the run report")

    subparsers.add_parser("probe", help="Show the active interface and IPv4 address")

    parser_hosts = subparsers.add_parser("allowed-hosts", help="Only rewrite the allow-list assignment")
    parser_hosts.add_argument("--ip", help="Use this address instead of probing")

    parser_render = subparsers.add_parser("render", help="Print the Nginx site config without writing it")
    parser_render.add_argument("--ip", help="Use this address instead of probing")

    subparsers.add_parser("show-config", help="Print the effective configuration")
    subparsers.add_parser("init-config", help="Create the config file from $INITIAL_CONFIG or defaults if missing")
    return parser


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return EXIT_ABORTED

    setup_logging(args.verbose)
    path = config_path(args)

    try:
        if args.command == "init-config":
            fallback = os.environ.get(ENV_INITIAL_CONFIG)
            if fallback is None or fallback.strip() == "":
                fallback = DEFAULT_INITIAL_CONFIG
            load_or_create(path, fallback)
            print(f"Config file: {os.path.abspath(path)}")
            return EXIT_OK
        cfg = load_config(path)
    except ConfigValidationError as e:
        logger.error("%s", e)
        return EXIT_CONFIG

    if cfg.runtime.log_file:
        setup_logging(args.verbose, cfg.runtime.log_file)

    command_map = {
        "run": cmd_run,
        "probe": cmd_probe,
        "allowed-hosts": cmd_allowed_hosts,
        "render": cmd_render,
        "show-config": cmd_show_config,
    }

    try:
        return command_map[args.command](args, cfg)
    except RunLockedError as e:
        logger.error("%s", e)
        return EXIT_LOCKED
    except NetSyncError as e:
        logger.error("%s", e)
        return EXIT_ABORTED


if __name__ == "__main__":
    sys.exit(main())
