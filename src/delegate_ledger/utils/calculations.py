from decimal import Decimal
from typing import Dict, Mapping

import pandas as pd

TOKEN_DECIMALS = 18


def total_voting_power(delegators: Mapping[str, int]) -> int:
    """Exact integer sum of delegator balances."""
    return sum(int(balance) for balance in delegators.values())


def to_token_units(wei: int, decimals: int = TOKEN_DECIMALS) -> Decimal:
    return Decimal(int(wei)) / (Decimal(10) ** decimals)


# --- Core statistical helpers --- #
def herfindahl_hirschman_index(percentages: pd.Series) -> float:
    """HHI = sum of squared shares (0-1 scale)."""
    return float((percentages**2).sum())


def top_n_share(percentages: pd.Series, n: int) -> float:
    """Top-N concentration as a fraction (0-1)."""
    return float(percentages.sort_values(ascending=False).head(n).sum())


def gini_coefficient(balances: pd.Series) -> float:
    if len(balances) < 2 or balances.sum() <= 0:
        return 0.0
    sorted_vals = balances.sort_values().reset_index(drop=True)
    n = len(sorted_vals)
    index = pd.Series(range(1, n + 1), dtype=float)
    numerator = float((index * sorted_vals).sum())
    return (2 * numerator) / (n * float(sorted_vals.sum())) - (n + 1) / n


def delegators_frame(delegators: Mapping[str, str]) -> pd.DataFrame:
    """
    Build a DataFrame of delegators with balances in whole tokens.

    Balances are converted through Decimal first; the float column is only
    used for ratios, never for totals.
    """
    rows = [
        {"address": addr, "balance": float(to_token_units(int(balance)))}
        for addr, balance in delegators.items()
    ]
    return pd.DataFrame(rows, columns=["address", "balance"])


def compute_concentration_metrics(delegators: Mapping[str, str]) -> Dict:
    """
    Concentration of the delegated voting power.
    Returns an empty dict when there is nothing delegated.
    """
    df = delegators_frame(delegators)
    if df.empty or df["balance"].sum() <= 0:
        return {}

    percentages = df["balance"] / df["balance"].sum()
    hhi = herfindahl_hirschman_index(percentages)

    return {
        "hhi_value": hhi,
        "gini_coefficient": gini_coefficient(df["balance"]),
        "top_1_percentage": top_n_share(percentages, 1) * 100,
        "top_5_percentage": top_n_share(percentages, 5) * 100,
        "total_delegators": len(df),
        "active_delegators": int((df["balance"] > 0).sum()),
        "effective_delegators": 1 / hhi if hhi > 0 else len(df),
    }
