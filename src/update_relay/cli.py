"""CLI entry point for update-relay.

Usage:
    update-relay --catalog catalog.yaml catalog
    update-relay --catalog catalog.yaml call updates/check slug=service-box version=1.9.0
    update-relay --catalog catalog.yaml --licenses licenses.yaml \\
        call license/check extension=service-box license_key=SB-1 site_url=https://a.test
    update-relay --config relay.yaml status
    update-relay --version
"""

import argparse
import json
import logging
import sys
from typing import Optional, Sequence

import yaml

from update_relay import __version__
from update_relay.config import load_config
from update_relay.service import UpdateService
from update_relay.stores import InMemoryCatalog, InMemoryLicenseStore


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="update-relay",
        description="Update Relay - License and update distribution service",
    )
    parser.add_argument(
        "--version",
        "-V",
        action="version",
        version=f"%(prog)s {__version__}",
    )
    parser.add_argument("--config", type=str, help="YAML config file (default: $UPDATE_RELAY_CONFIG)")
    parser.add_argument("--catalog", type=str, help="YAML extension catalog")
    parser.add_argument("--licenses", type=str, help="YAML license records")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")
    subparsers = parser.add_subparsers(dest="command")

    call_parser = subparsers.add_parser(
        "call",
        help="Run one operation through the service and print the response",
    )
    call_parser.add_argument("operation", help="Operation name, e.g. updates/check")
    call_parser.add_argument(
        "params",
        nargs="*",
        metavar="key=value",
        help="Operation parameters",
    )
    call_parser.add_argument(
        "--identity",
        type=str,
        default="cli",
        help="Caller identity used for rate limiting (default: cli)",
    )

    subparsers.add_parser("catalog", help="List catalog extensions")
    subparsers.add_parser("status", help="Show configuration and component statistics")

    return parser


def parse_params(pairs: Sequence[str]) -> dict:
    """Parse ``key=value`` arguments into a parameter mapping."""
    params = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key:
            raise ValueError(f"Expected key=value, got {pair!r}")
        params[key.strip()] = value
    return params


def create_service(args: argparse.Namespace) -> UpdateService:
    """Build a service from CLI arguments and configuration."""
    config = load_config(args.config)

    catalog_path = args.catalog or config.catalog_path
    licenses_path = args.licenses or config.licenses_path

    catalog = InMemoryCatalog.from_yaml(catalog_path) if catalog_path else InMemoryCatalog()
    licenses = (
        InMemoryLicenseStore.from_yaml(licenses_path) if licenses_path else InMemoryLicenseStore()
    )
    return UpdateService.build(config, catalog=catalog, licenses=licenses)


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Main CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )

    if args.command is None:
        parser.print_help()
        return 1

    try:
        service = create_service(args)
    except (OSError, ValueError, KeyError, yaml.YAMLError) as e:
        print(f"Error: failed to load service data: {e}", file=sys.stderr)
        return 1

    try:
        if args.command == "call":
            return run_call(service, args)
        if args.command == "catalog":
            return list_catalog(service)
        if args.command == "status":
            print(json.dumps(service.get_status(), indent=2))
            return 0
    finally:
        service.close()

    parser.print_help()
    return 1


def run_call(service: UpdateService, args: argparse.Namespace) -> int:
    """Run one operation and print its response envelope."""
    try:
        params = parse_params(args.params)
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    response = service.handle(args.operation, params, identity=args.identity)
    print(
        json.dumps(
            {"status": response.status, "headers": response.headers, "body": response.body},
            indent=2,
        )
    )
    return 0 if response.ok else 1


def list_catalog(service: UpdateService) -> int:
    """Print catalog slugs with latest version and gating flag."""
    extensions = list(service.catalog.list_extensions())
    if not extensions:
        print("No extensions in catalog.")
        return 0

    print("Extensions:")
    for extension in extensions:
        gate = " [licensed]" if extension.is_gated else ""
        print(f"  - {extension.slug} {extension.latest_version}{gate}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
