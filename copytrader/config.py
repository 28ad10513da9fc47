"""Copy-trader configuration loaded from environment variables."""

import logging
import os
import re
import sys

from pythonjsonlogger import jsonlogger


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    return float(raw)


def _env_list(name: str) -> list[str]:
    """Comma-separated env var -> list of trimmed, non-empty entries."""
    raw = os.environ.get(name, "")
    return [part.strip() for part in raw.split(",") if part.strip()]


# ---------------------------------------------------------------------------
# Polymarket API base URLs
# ---------------------------------------------------------------------------
GAMMA_API_URL = os.environ.get("GAMMA_API_URL", "https://gamma-api.polymarket.com")
CLOB_API_URL = os.environ.get("CLOB_API_URL", "https://clob.polymarket.com")
DATA_API_URL = os.environ.get("DATA_API_URL", "https://data-api.polymarket.com")
WS_URL = os.environ.get("WS_URL", "wss://ws-subscriptions-clob.polymarket.com/ws/market")
HTTP_TIMEOUT = 30.0              # httpx timeout in seconds

# ---------------------------------------------------------------------------
# Tracked wallet / polling
# ---------------------------------------------------------------------------
TRACKED_WALLET = os.environ.get("TRACKED_WALLET", "")
WALLET_ADDRESS_RE = re.compile(r"^0x[a-fA-F0-9]{40}$")
POLL_INTERVAL_MS = int(os.environ.get("POLL_INTERVAL_MS", "15000"))
MIN_POLL_INTERVAL_MS = 5000
ACTIVITY_PAGE_LIMIT = 25
SEND_TRADES_ONLY = _env_bool("SEND_TRADES_ONLY", True)

# ---------------------------------------------------------------------------
# Copy-trade switches and filters
# ---------------------------------------------------------------------------
AUTO_TRADE_ENABLED = _env_bool("AUTO_TRADE_ENABLED", False)
COPY_TRADE_ENABLED = _env_bool("COPY_TRADE_ENABLED", True)
COPY_SELL_ORDERS = _env_bool("COPY_SELL_ORDERS", True)
AUTO_TRADE_USE_MARKET = _env_bool("AUTO_TRADE_USE_MARKET", False)
AUTO_TRADE_FILTER = _env_list("AUTO_TRADE_FILTER")
MIN_TRACKED_TRADE_SIZE_USD = _env_float("MIN_TRACKED_TRADE_SIZE_USD", 0.0)
MIN_TRACKED_CONFIDENCE_LEVEL = _env_float("MIN_TRACKED_CONFIDENCE_LEVEL", 0.0)
USE_OPTIMAL_CONFIDENCE_FILTER = _env_bool("USE_OPTIMAL_CONFIDENCE_FILTER", False)

# ---------------------------------------------------------------------------
# Sizing
# ---------------------------------------------------------------------------
AUTO_TRADE_AMOUNT_USD = _env_float("AUTO_TRADE_AMOUNT_USD", 10.0)
MIN_ORDER_VALUE_USD = 1.0        # Exchange minimum notional
MAX_ORDER_VALUE_USD = _env_float("MAX_ORDER_VALUE_USD", 100.0)
MAX_BET_AMOUNT_PER_MARKET_USD = _env_float("MAX_BET_AMOUNT_PER_MARKET_USD", 0.0)
USE_HALF_SIZE_INITIAL_TRADES = _env_bool("USE_HALF_SIZE_INITIAL_TRADES", False)

OPTIMAL_CONFIDENCE_ENABLED = _env_bool("OPTIMAL_CONFIDENCE_ENABLED", False)
OPTIMAL_CONFIDENCE_MIN = _env_float("OPTIMAL_CONFIDENCE_MIN", 0.60)
OPTIMAL_CONFIDENCE_MAX = _env_float("OPTIMAL_CONFIDENCE_MAX", 0.80)
OPTIMAL_CONFIDENCE_MULTIPLIER = _env_float("OPTIMAL_CONFIDENCE_MULTIPLIER", 1.5)

HIGH_CONFIDENCE_THRESHOLD_USD = _env_float("HIGH_CONFIDENCE_THRESHOLD_USD", 500.0)
LOW_CONFIDENCE_THRESHOLD_USD = _env_float("LOW_CONFIDENCE_THRESHOLD_USD", 50.0)

ADD_HIGH_CONFIDENCE_ENABLED = _env_bool("ADD_HIGH_CONFIDENCE_ENABLED", False)
ADD_HIGH_CONFIDENCE_MIN = _env_float("ADD_HIGH_CONFIDENCE_MIN", 0.90)
ADD_HIGH_CONFIDENCE_MAX = _env_float("ADD_HIGH_CONFIDENCE_MAX", 0.97)
ADD_HIGH_CONFIDENCE_SIZE_USD = _env_float("ADD_HIGH_CONFIDENCE_SIZE_USD", 5.0)

# ---------------------------------------------------------------------------
# Risk limits
# ---------------------------------------------------------------------------
MAX_POSITIONS = int(os.environ.get("MAX_POSITIONS", "10"))
MAX_TOTAL_EXPOSURE_USD = _env_float("MAX_TOTAL_EXPOSURE_USD", 0.0)

# ---------------------------------------------------------------------------
# Order execution
# ---------------------------------------------------------------------------
MAX_ORDER_RETRIES = int(os.environ.get("MAX_ORDER_RETRIES", "3"))
CLOUDFLARE_RETRY_DELAY_MS = int(os.environ.get("CLOUDFLARE_RETRY_DELAY_MS", "2000"))
LIQUIDITY_BUFFER = 1.3           # Book depth required per dollar ordered
BOOK_FRESHNESS_SECONDS = 5.0     # Older streamed books fall back to REST

# ---------------------------------------------------------------------------
# Stop loss
# ---------------------------------------------------------------------------
STOP_LOSS_ENABLED = _env_bool("STOP_LOSS_ENABLED", False)
STOP_LOSS_PERCENTAGE = _env_float("STOP_LOSS_PERCENTAGE", 10.0)
STOP_LOSS_MIN_TIME_SINCE_ENTRY_MS = int(
    os.environ.get("STOP_LOSS_MIN_TIME_SINCE_ENTRY_MS", "60000")
)
STOP_LOSS_CHECK_INTERVAL_MS = int(os.environ.get("STOP_LOSS_CHECK_INTERVAL_MS", "30000"))
STOP_LOSS_WEBSOCKET_MARKET_FILTER = _env_list("STOP_LOSS_WEBSOCKET_MARKET_FILTER")
STOP_LOSS_STATE_FILE = os.environ.get("STOP_LOSS_STATE_FILE", "data/stop_loss_positions.json")

# ---------------------------------------------------------------------------
# Orderbook stream
# ---------------------------------------------------------------------------
WS_PING_INTERVAL = 10.0          # Seconds between "PING" heartbeats
WS_MAX_RECONNECT_ATTEMPTS = 5
WS_RECONNECT_BASE_DELAY = 1.0    # Seconds, doubles per retry
WS_RECONNECT_MAX_DELAY = 30.0

# ---------------------------------------------------------------------------
# Paper trading
# ---------------------------------------------------------------------------
PAPER_TRADING_ENABLED = _env_bool("PAPER_TRADING_ENABLED", True)
PAPER_TRADING_INITIAL_BALANCE = _env_float("PAPER_TRADING_INITIAL_BALANCE", 1000.0)
PAPER_TRADING_STATE_FILE = os.environ.get("PAPER_TRADING_STATE_FILE", "data/paper_trading.json")
PAPER_HISTORY_LIMIT = 1000
SETTLEMENT_MAX_COOLDOWN_SECONDS = 300.0

# ---------------------------------------------------------------------------
# Credentials (live trading)
# ---------------------------------------------------------------------------
POLYMARKET_PRIVATE_KEY = os.environ.get("POLYMARKET_PRIVATE_KEY", "")
POLYMARKET_FUNDER = os.environ.get("POLYMARKET_FUNDER", "")
POLYMARKET_CHAIN_ID = int(os.environ.get("POLYMARKET_CHAIN_ID", "137"))
POLYMARKET_SIGNATURE_TYPE = int(os.environ.get("POLYMARKET_SIGNATURE_TYPE", "2"))

# ---------------------------------------------------------------------------
# Health check
# ---------------------------------------------------------------------------
HEALTH_CHECK_PORT = int(os.environ.get("HEALTH_CHECK_PORT", "8080"))

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()


def validate_config() -> None:
    """Fail fast on settings that would make the engine misbehave."""
    if not WALLET_ADDRESS_RE.match(TRACKED_WALLET):
        raise ValueError(f"TRACKED_WALLET is not a valid address: {TRACKED_WALLET!r}")
    if POLL_INTERVAL_MS < MIN_POLL_INTERVAL_MS:
        raise ValueError(
            f"POLL_INTERVAL_MS must be at least {MIN_POLL_INTERVAL_MS}, got {POLL_INTERVAL_MS}"
        )
    if MAX_ORDER_VALUE_USD < MIN_ORDER_VALUE_USD:
        raise ValueError("MAX_ORDER_VALUE_USD must be >= MIN_ORDER_VALUE_USD")
    if not 0 < STOP_LOSS_PERCENTAGE < 100:
        raise ValueError("STOP_LOSS_PERCENTAGE must be between 0 and 100")
    if not PAPER_TRADING_ENABLED and not POLYMARKET_PRIVATE_KEY:
        raise ValueError("POLYMARKET_PRIVATE_KEY is required when paper trading is disabled")


def setup_logging() -> None:
    """Configure structured JSON logging."""
    handler = logging.StreamHandler(sys.stdout)
    formatter = jsonlogger.JsonFormatter(
        fmt="%(asctime)s %(name)s %(levelname)s %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
    )
    handler.setFormatter(formatter)

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(LOG_LEVEL)

    # Quiet noisy libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("websockets").setLevel(logging.WARNING)
    logging.getLogger("apscheduler").setLevel(logging.WARNING)
