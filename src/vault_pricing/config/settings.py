import os
from decimal import Decimal, InvalidOperation
from typing import List, Optional

from dotenv import load_dotenv


class Config:
    """Loads pricing and conversion settings from the environment."""

    def __init__(self) -> None:
        load_dotenv()

        self.coingecko_api_key: Optional[str] = os.getenv("COINGECKO_API_KEY") or None
        self.coingecko_base_url: str = os.getenv(
            "COINGECKO_BASE_URL",
            "https://api.coingecko.com/api/v3",
        )

        self.price_cache_ttl_seconds: float = self._get_float("PRICE_CACHE_TTL_SECONDS", 60.0, minimum=1.0)
        self.price_poll_interval_seconds: float = self._get_float("PRICE_POLL_INTERVAL_SECONDS", 300.0, minimum=1.0)
        self.price_freshness_interval_seconds: float = self._get_float(
            "PRICE_FRESHNESS_INTERVAL_SECONDS", 1.0, minimum=0.1
        )
        self.price_request_timeout_seconds: float = self._get_float(
            "PRICE_REQUEST_TIMEOUT_SECONDS", 10.0, minimum=1.0
        )

        self.min_usd_amount: Decimal = self._get_decimal("MIN_USD_AMOUNT", Decimal("1"))
        self.min_token_amount: Decimal = self._get_decimal("MIN_TOKEN_AMOUNT", Decimal("0.001"))
        try:
            self.token_decimals: int = max(0, min(int(os.getenv("TOKEN_DECIMALS", "18")), 36))
        except ValueError:
            self.token_decimals = 18

        tokens = os.getenv("CONVERSION_TOKENS", "AVAX,ETH")
        self.conversion_tokens: List[str] = [t.strip().upper() for t in tokens.split(",") if t.strip()] or [
            "AVAX",
            "ETH",
        ]

        self.log_level: str = os.getenv("LOG_LEVEL", "DEBUG").upper()
        self.log_dir: Optional[str] = os.getenv("LOG_DIR") or None

    def _get_float(self, var_name: str, default: float, *, minimum: float) -> float:
        try:
            return max(minimum, float(os.getenv(var_name, str(default))))
        except ValueError:
            return default

    def _get_decimal(self, var_name: str, default: Decimal) -> Decimal:
        raw = os.getenv(var_name)
        if not raw:
            return default
        try:
            value = Decimal(raw.strip())
        except InvalidOperation:
            return default
        return value if value.is_finite() and value >= 0 else default


config = Config()
