"""Seed prices and per-symbol parameters for the exchange simulator."""

# Realistic starting prices for common pairs
SEED_PRICES: dict[str, float] = {
    "BTC/USDT": 65000.00,
    "ETH/USDT": 3200.00,
    "SOL/USDT": 150.00,
    "BNB/USDT": 580.00,
    "XRP/USDT": 0.52,
    "DOGE/USDT": 0.15,
    "ADA/USDT": 0.45,
    "ETH/BTC": 0.049,
}

# Per-symbol GBM parameters
# sigma: annualized volatility (higher = more price movement)
# mu: annualized drift / expected return
SYMBOL_PARAMS: dict[str, dict[str, float]] = {
    "BTC/USDT": {"sigma": 0.55, "mu": 0.10},
    "ETH/USDT": {"sigma": 0.70, "mu": 0.10},
    "SOL/USDT": {"sigma": 0.95, "mu": 0.12},
    "BNB/USDT": {"sigma": 0.60, "mu": 0.08},
    "XRP/USDT": {"sigma": 0.85, "mu": 0.05},
    "DOGE/USDT": {"sigma": 1.10, "mu": 0.05},  # High volatility
    "ADA/USDT": {"sigma": 0.90, "mu": 0.05},
    "ETH/BTC": {"sigma": 0.40, "mu": 0.00},  # Ratio pair, no drift
}

# Default parameters for symbols not in the list above
DEFAULT_PARAMS: dict[str, float] = {"sigma": 0.80, "mu": 0.05}

# Crypto trades around the clock
SECONDS_PER_YEAR = 365 * 24 * 3600
