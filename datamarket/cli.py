"""Datamarket command line.

Commands:
    datamarket serve                      Start buyer and seller services
    datamarket demo                       Interactive LLM negotiation demo
    datamarket negotiate --resource ID    Deterministic purchase, no LLM
    datamarket catalog                    Show catalogue and configuration
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from decimal import Decimal, InvalidOperation
from typing import Optional

import httpx

from .agent import SellerAgent, create_seller
from .buyer import Buyer, create_buyer
from .client import Client
from .config import Settings
from .errors import ConfigError, MarketError
from .log import _C, configure_logging, log
from .server import banner, create_app, serve_many


def _print(color: str, text: str):
    print(f"{color}{text}{_C.RESET}")


def _agents(settings: Settings) -> tuple[Buyer, SellerAgent]:
    return create_buyer(settings), create_seller(settings)


async def _serve(settings: Settings, buyer: Buyer, seller: SellerAgent):
    banner(buyer.name, settings.buyer_url, {
        "Budget": f"${settings.buyer_budget}",
        "Model": settings.model,
    })
    banner(seller.name, settings.seller_url, {
        "Items": f"{len(seller.catalog)} resources",
        "Release": f"{settings.resolver} resolver, {settings.settlement} settlement",
    })
    log.section("Agents")
    log.server("Buyer", settings.buyer_url)
    log.server("Seller", settings.seller_url)

    async with buyer:
        await serve_many([
            (create_app(buyer, decode_jwt=settings.decode_jwt), settings.host, settings.buyer_port),
            (create_app(seller, decode_jwt=settings.decode_jwt), settings.host, settings.seller_port),
        ])


def cmd_serve(settings: Settings, args: argparse.Namespace) -> int:
    buyer, seller = _agents(settings)
    asyncio.run(_serve(settings, buyer, seller))
    return 0


def _welcome(settings: Settings):
    minimums = ", ".join(f"{k.replace('_', ' ').title()} ${v}" for k, v in settings.min_prices.items())
    _print(_C.CYAN, "\n=== Data Negotiation Demo ===")
    _print(_C.YELLOW, "Marketplace buyer negotiates with seller for data resources")
    _print(_C.GRAY, f"Buyer budget: ${settings.buyer_budget}")
    _print(_C.GRAY, f"Minimum prices: {minimums}")
    _print(_C.GRAY, "Type /exit to quit\n")


def _result(text: str):
    print(f"{_C.GREEN}\n>>> Result:{_C.RESET} {text}")
    _print(_C.GRAY, "\n" + "=" * 50 + "\n")


async def _stop(task: asyncio.Task):
    """Cancel the server task and report how it ended."""
    if not task.done():
        task.cancel()
    (outcome,) = await asyncio.gather(task, return_exceptions=True)
    if isinstance(outcome, Exception):
        log.error("Agent services stopped with an error", outcome)


async def _demo(settings: Settings, start_servers: bool) -> int:
    server_task: Optional[asyncio.Task] = None
    if start_servers:
        buyer, seller = _agents(settings)
        server_task = asyncio.create_task(_serve(settings, buyer, seller))

    try:
        async with Client(settings.seller_url, timeout=300.0) as client:
            health = settings.health
            ready = await client.wait_for_agents(
                {"Buyer": settings.buyer_url, "Seller": settings.seller_url},
                retries=health.max_retries,
                delay=health.retry_delay,
                timeout=health.timeout,
            )
            if not ready:
                if server_task is not None and server_task.done():
                    log.error("Agent services exited before becoming ready")
                else:
                    log.error("Agents are not running!", "Start them first with: datamarket serve")
                return 1

            _welcome(settings)
            _print(_C.GREEN, "\n>>> Starting negotiation...")
            _result(await client.chat("Start looking for data resources", url=settings.buyer_url))

            while True:
                line = await asyncio.to_thread(input, f"{_C.CYAN}Enter command (or /exit to quit): {_C.RESET}")
                if line.strip().lower() == "/exit":
                    _print(_C.BLUE, "Goodbye!")
                    return 0

                print(f"{_C.GREEN}\n>>> Processing:{_C.RESET} {line}")
                try:
                    _result(await client.chat(line, url=settings.buyer_url))
                except MarketError as e:
                    log.error("Error", e.message)
    finally:
        if server_task is not None:
            await _stop(server_task)


def cmd_demo(settings: Settings, args: argparse.Namespace) -> int:
    try:
        return asyncio.run(_demo(settings, start_servers=not args.no_serve))
    except (KeyboardInterrupt, EOFError):
        return 0


async def _negotiate(settings: Settings, resource_id: str, seller_url: Optional[str]) -> int:
    if seller_url:
        http = httpx.AsyncClient(timeout=60.0)
    else:
        # In-process seller, no sockets
        seller = create_seller(settings)
        seller_url = "http://seller"
        http = httpx.AsyncClient(
            transport=httpx.ASGITransport(app=create_app(seller, decode_jwt=settings.decode_jwt)),
            base_url=seller_url,
        )

    buyer = create_buyer(settings, seller_url=seller_url)
    buyer._http = http

    async with http:
        log.section(f"Buying {resource_id} with a ${settings.buyer_budget} budget")
        result = await buyer.purchase(resource_id=resource_id)

    for step in result.history:
        log.info(f"Round {step['round']}: {step['party']} ${step['amount']}", step.get("action"))

    if not result.success:
        log.error("No deal", result.error)
        return 1

    log.transaction("Purchase complete", {
        "Resource": resource_id,
        "Final price": f"${result.final_price}",
        "Rounds": result.rounds,
        "Download": result.artifact["download_url"],
        "Valid until": result.artifact["access_details"]["valid_until"],
    })
    return 0


def cmd_negotiate(settings: Settings, args: argparse.Namespace) -> int:
    if args.budget is not None:
        settings.buyer_budget = args.budget
    return asyncio.run(_negotiate(settings, args.resource, args.seller_url))


def cmd_catalog(settings: Settings, args: argparse.Namespace) -> int:
    seller = create_seller(settings)
    log.section("Catalogue")
    for resource in seller.catalog:
        log.market(resource.name, {
            "id": resource.id,
            "Format": f"{resource.format}, {resource.size}",
            "List price": f"${resource.list_price}",
            "Minimum": f"${resource.minimum_price}",
        })

    log.section("Configuration")
    log.process("Settings", {
        "Buyer": settings.buyer_url,
        "Seller": settings.seller_url,
        "Budget": f"${settings.buyer_budget}",
        "Model": settings.model,
        "Resolver": settings.resolver,
        "Settlement": settings.settlement,
        "Artifact TTL": f"{settings.artifact_ttl_hours}h",
    })
    return 0


def _budget(value: str) -> Decimal:
    try:
        budget = Decimal(value)
    except InvalidOperation:
        raise argparse.ArgumentTypeError(f"not a number: {value}") from None
    if budget <= 0:
        raise argparse.ArgumentTypeError("budget must be positive")
    return budget


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="datamarket", description="Agent-to-agent data marketplace")
    parser.add_argument("-v", "--verbose", action="store_true", help="debug logging (decoded tokens, tracebacks)")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("serve", help="start buyer and seller services")
    p.set_defaults(func=cmd_serve)

    p = sub.add_parser("demo", help="interactive negotiation demo")
    p.add_argument("--no-serve", action="store_true", help="connect to already running agents")
    p.set_defaults(func=cmd_demo)

    p = sub.add_parser("negotiate", help="deterministic purchase without an LLM")
    p.add_argument("--resource", required=True, help="catalogue id, e.g. housing_inventory_2024")
    p.add_argument("--budget", type=_budget, help="override BUYER_BUDGET")
    p.add_argument("--seller-url", help="use a running seller instead of an in-process one")
    p.set_defaults(func=cmd_negotiate)

    p = sub.add_parser("catalog", help="show catalogue and configuration")
    p.set_defaults(func=cmd_catalog)

    return parser


def main(argv: Optional[list[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(logging.DEBUG if args.verbose else logging.INFO)

    try:
        settings = Settings.from_env()
    except ConfigError as e:
        log.error("Invalid configuration", e)
        return 2

    return args.func(settings, args)


if __name__ == "__main__":
    sys.exit(main())
