"""CLI utilities for probing a service endpoint."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os

from pydantic import ValidationError

from .client import AsyncResilientClient
from .config import ClientConfig


BASE_URL_ENV_VAR = "RESILIENT_CLIENT_BASE_URL"


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="resilient-client")
    subcommands = parser.add_subparsers(dest="command", required=True)

    probe = subcommands.add_parser("probe", help="Run a health check and print client metrics")
    probe.add_argument("--base-url", default=os.getenv(BASE_URL_ENV_VAR))
    probe.add_argument("--path", default="/health")
    probe.add_argument("--timeout", type=float, default=5.0)
    probe.add_argument("--service", default="api")
    probe.add_argument("--verbose", action="store_true")
    return parser


async def _probe(config: ClientConfig) -> dict[str, object]:
    async with AsyncResilientClient(config) as client:
        status = await client.health_check()
        return {
            "health": status.model_dump(),
            "metrics": client.get_metrics().model_dump(),
        }


def _main(argv: list[str] | None = None) -> int:
    args = _build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if not args.base_url:
        print(f"A base URL is required (--base-url or {BASE_URL_ENV_VAR})")
        return 2

    try:
        config = ClientConfig(
            base_url=args.base_url,
            service_name=args.service,
            health_path=args.path,
            health_timeout=args.timeout,
        )
    except ValidationError as exc:
        print(f"Invalid configuration: {exc}")
        return 2

    report = asyncio.run(_probe(config))
    print(json.dumps(report, indent=2, default=str))
    return 0 if report["health"]["status"] == "healthy" else 1


def main() -> None:
    raise SystemExit(_main())
