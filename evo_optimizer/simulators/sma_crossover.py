# evo_optimizer/simulators/sma_crossover.py
"""
Reference simulator: long-only moving-average crossover on a synthetic price path.

simulate(params, start, end, **settings) -> flat statistics map

Params:
- fast, slow (int): SMA lengths in bars (fast < slow, otherwise no trades)
- stop_loss (decimal, optional): fractional stop from entry, 0 disables

Settings:
- seed (int): price-path seed; the path is a fixed function of the seed so
  every window sees the same history
- starting_equity (float), fee_bps (float)
"""

from __future__ import annotations

import logging
from datetime import date
from typing import Any, Dict, List

import numpy as np
import pandas as pd

TRADING_DAYS = 252
PATH_ORIGIN = "2000-01-03"

logger = logging.getLogger("simulators.sma_crossover")


def synthetic_prices(end: date, seed: int = 7, drift: float = 0.0003, vol: float = 0.012) -> pd.Series:
    idx = pd.bdate_range(PATH_ORIGIN, pd.Timestamp(end))
    rng = np.random.default_rng(seed)
    rets = rng.normal(drift, vol, size=len(idx))
    return pd.Series(100.0 * np.exp(np.cumsum(rets)), index=idx, name="close")


def _sharpe(daily: pd.Series) -> float:
    r = daily.dropna().astype(float)
    sd = r.std(ddof=0)
    if len(r) == 0 or sd == 0:
        return 0.0
    return float(r.mean() / sd * np.sqrt(TRADING_DAYS))


def _max_drawdown(equity: pd.Series) -> float:
    if len(equity) == 0:
        return 0.0
    dd = equity / equity.cummax() - 1.0
    return float(-dd.min())


def _cagr(equity: pd.Series) -> float:
    if len(equity) < 2 or equity.iloc[0] <= 0:
        return 0.0
    days = (equity.index[-1] - equity.index[0]).days
    if days <= 0:
        return 0.0
    ratio = float(equity.iloc[-1] / equity.iloc[0])
    if ratio <= 0:
        return -1.0
    return float(ratio ** (365.25 / days) - 1.0)


def simulate(params: Dict[str, Any], start: date, end: date, **settings: Any) -> Dict[str, float]:
    fast = int(params.get("fast", 10))
    slow = int(params.get("slow", 30))
    stop_loss = float(params.get("stop_loss", 0) or 0)
    seed = int(settings.get("seed", 7))
    starting_equity = float(settings.get("starting_equity", 100_000.0))
    fee = float(settings.get("fee_bps", 1.0)) / 10_000.0

    close = synthetic_prices(end, seed=seed)
    fast_ma = close.rolling(max(1, fast)).mean()
    slow_ma = close.rolling(max(1, slow)).mean()
    signal = (fast_ma > slow_ma) & (fast < slow)

    window = close.loc[pd.Timestamp(start):pd.Timestamp(end)]
    if len(window) < 2:
        return {"SharpeRatio": 0.0, "TotalNetProfit": 0.0, "TotalNumberOfTrades": 0.0}

    position = 0
    entry_px = 0.0
    equity_val = starting_equity
    equity: List[float] = []
    trade_returns: List[float] = []
    fees = 0.0
    prev_px = float(window.iloc[0])
    stopped_out = False

    for ts, px in window.items():
        px = float(px)
        if position:
            equity_val *= px / prev_px
            if stop_loss > 0 and px <= entry_px * (1.0 - stop_loss):
                cost = equity_val * fee
                equity_val -= cost
                fees += cost
                trade_returns.append(px / entry_px - 1.0)
                position = 0
                stopped_out = True
        want = bool(signal.get(ts, False))
        if not want:
            stopped_out = False
        if want and not position and not stopped_out:
            cost = equity_val * fee
            equity_val -= cost
            fees += cost
            entry_px = px
            position = 1
        elif not want and position:
            cost = equity_val * fee
            equity_val -= cost
            fees += cost
            trade_returns.append(px / entry_px - 1.0)
            position = 0
        equity.append(equity_val)
        prev_px = px

    if position:
        trade_returns.append(float(window.iloc[-1]) / entry_px - 1.0)

    eq = pd.Series(equity, index=window.index, dtype=float)
    daily = eq.pct_change().fillna(0.0)
    trades = len(trade_returns)
    wins = sum(1 for r in trade_returns if r > 0)

    return {
        "SharpeRatio": _sharpe(daily),
        "TotalNetProfit": float(eq.iloc[-1] / starting_equity - 1.0),
        "CompoundingAnnualReturn": _cagr(eq),
        "Drawdown": _max_drawdown(eq),
        "TotalNumberOfTrades": float(trades),
        "WinRate": float(wins / trades) if trades else 0.0,
        "LossRate": float((trades - wins) / trades) if trades else 0.0,
        "TotalFees": float(fees),
    }


__all__ = ["simulate", "synthetic_prices"]
