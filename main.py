import argparse
import asyncio
import os
import sys

from tabulate import tabulate

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "src")))

from vault_pricing.config.settings import config
from vault_pricing.conversion.multi_token import MultiTokenConversion
from vault_pricing.providers.price_service import build_price_service
from vault_pricing.utils.formatting import format_fixed_point, format_price, format_price_change
from vault_pricing.utils.logger import setup_logger
from vault_pricing.utils.scheduler import AsyncioScheduler


def _parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Live token prices and USD to token conversion.")
    parser.add_argument(
        "--log-level",
        default=config.log_level,
        help="Log level (default: LOG_LEVEL, currently %(default)s)",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    prices = sub.add_parser("prices", help="Show USD prices for tokens")
    prices.add_argument("symbols", nargs="*", help="Token symbols (default: BTC ETH AVAX USDC USDT)")

    convert = sub.add_parser("convert", help="Convert a USD amount to a token amount")
    convert.add_argument("amount", help="USD amount, e.g. 25 or 1,250.50")
    convert.add_argument("symbol", help="Token symbol, e.g. AVAX")
    return parser.parse_args(argv)


async def _show_prices(symbols) -> int:
    async with build_price_service(config) as service:
        quotes = await service.get_prices(symbols)

    rows = []
    for symbol in symbols:
        quote = quotes.get(symbol)
        if quote is None:
            rows.append([symbol.upper(), "n/a", "n/a", "-"])
            continue
        change = format_price_change(quote.change_24h) if quote.change_24h is not None else "n/a"
        rows.append([quote.symbol, f"${format_price(quote.price)}", change, quote.source])
    print(tabulate(rows, headers=["Token", "Price (USD)", "24h", "Source"], tablefmt="github"))
    return 0 if any(quotes.values()) else 1


async def _show_conversion(amount: str, symbol: str) -> int:
    async with build_price_service(config) as service:
        conversion = MultiTokenConversion(
            service,
            AsyncioScheduler(),
            symbols=[symbol],
            amount=amount,
        )
        async with conversion:
            result = conversion.for_token(symbol).result

    rows = [
        ["USD amount", f"${result.usd_amount:,.2f}"],
        ["Token price", f"${format_price(result.token_price)}" if result.token_price else "n/a"],
        ["Token amount", f"{result.formatted} {result.token_symbol}" if result.formatted else "n/a"],
    ]
    if result.fixed_point_amount is not None:
        rows.append(["Fixed-point", str(result.fixed_point_amount)])
        rows.append(["Exact amount", format_fixed_point(result.fixed_point_amount, config.token_decimals)])
    print(tabulate(rows, tablefmt="plain"))

    if result.validation_message:
        print(f"\n{result.validation_message}")
        return 1
    return 0


def main(argv=None) -> int:
    args = _parse_args(argv)
    setup_logger(level=args.log_level)

    if args.command == "prices":
        symbols = args.symbols or ["BTC", "ETH", "AVAX", "USDC", "USDT"]
        return asyncio.run(_show_prices(symbols))
    return asyncio.run(_show_conversion(args.amount, args.symbol))


if __name__ == "__main__":
    sys.exit(main())
