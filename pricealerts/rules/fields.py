# -*- coding: utf-8 -*-
"""
Field resolver: computes the value of one named field for one item from its
market snapshot.

Every field has exactly one resolver function registered in FIELD_RESOLVERS.
Missing inputs produce a DataUnavailable value instead of an exception; the
evaluator treats it as a false leaf.
"""
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Tuple

from pricealerts.rules.conditions import FieldId
from pricealerts.rules.types import MarketSnapshot

PRICE_DROP_LOOKBACK_DAYS = 7
VOLUME_LOOKBACK_DAYS = 30
MOVING_AVERAGE_DAYS = 30


@dataclass(frozen=True)
class DataUnavailable:
    """Resolution result when the snapshot lacks the data a field needs."""
    field: FieldId
    reason: str

    def __bool__(self) -> bool:
        return False


def is_unavailable(value: Any) -> bool:
    return isinstance(value, DataUnavailable)


def _price(snapshot: MarketSnapshot) -> Any:
    best = snapshot.best_quote
    if best is None:
        return DataUnavailable(FieldId.PRICE, "no platform quotes")
    return best.total_cost


def _price_drop_percent(snapshot: MarketSnapshot) -> Any:
    # Same fee-free basis as the recorded price history
    now = snapshot.lowest_listing_price
    if now is None:
        return DataUnavailable(FieldId.PRICE_DROP_PERCENT, "no platform quotes")
    baseline = snapshot.price_7d_ago
    if not baseline:
        return DataUnavailable(
            FieldId.PRICE_DROP_PERCENT, f"no price from {PRICE_DROP_LOOKBACK_DAYS} days ago"
        )
    return abs((now - baseline) / baseline * 100)


def _recommendation(snapshot: MarketSnapshot) -> Any:
    if snapshot.recommendation is None:
        return DataUnavailable(FieldId.RECOMMENDATION, "no recommendation")
    return snapshot.recommendation


def _risk_level(snapshot: MarketSnapshot) -> Any:
    if snapshot.risk_level is None:
        return DataUnavailable(FieldId.RISK_LEVEL, "no risk level")
    return snapshot.risk_level


def _volume_change_percent(snapshot: MarketSnapshot) -> Any:
    if snapshot.volume is None or not snapshot.volume_30d_ago:
        return DataUnavailable(
            FieldId.VOLUME_CHANGE_PERCENT, f"no volume from {VOLUME_LOOKBACK_DAYS} days ago"
        )
    return (snapshot.volume - snapshot.volume_30d_ago) / snapshot.volume_30d_ago * 100


def _platform(snapshot: MarketSnapshot) -> Any:
    best = snapshot.best_quote
    if best is None:
        return DataUnavailable(FieldId.PLATFORM, "no platform quotes")
    return best.platform


def _price_vs_average(snapshot: MarketSnapshot) -> Any:
    now = snapshot.lowest_listing_price
    if now is None:
        return DataUnavailable(FieldId.PRICE_VS_AVERAGE, "no platform quotes")
    if not snapshot.moving_average_30d:
        return DataUnavailable(
            FieldId.PRICE_VS_AVERAGE, f"no {MOVING_AVERAGE_DAYS}-day moving average"
        )
    return now / snapshot.moving_average_30d * 100


def best_arbitrage(snapshot: MarketSnapshot) -> Optional[Tuple[float, str, str]]:
    """
    Best buy-here-sell-there trade across the item's platforms.

    Profit = sell price minus the seller fee on the selling platform, minus the
    total cost (price plus buyer fee) on the buying platform.

    Returns:
        (profit, buy_platform, sell_platform), or None with fewer than 2 platforms
    """
    best = None
    for buy in snapshot.quotes:
        for sell in snapshot.quotes:
            if buy.platform == sell.platform:
                continue
            profit = sell.net_proceeds - buy.total_cost
            if best is None or profit > best[0]:
                best = (profit, buy.platform, sell.platform)
    return best


def _arbitrage_opportunity(snapshot: MarketSnapshot) -> Any:
    best = best_arbitrage(snapshot)
    if best is None:
        return DataUnavailable(FieldId.ARBITRAGE_OPPORTUNITY, "fewer than 2 platforms")
    return round(best[0], 6)


FIELD_RESOLVERS: Dict[FieldId, Callable[[MarketSnapshot], Any]] = {
    FieldId.PRICE: _price,
    FieldId.PRICE_DROP_PERCENT: _price_drop_percent,
    FieldId.RECOMMENDATION: _recommendation,
    FieldId.RISK_LEVEL: _risk_level,
    FieldId.VOLUME_CHANGE_PERCENT: _volume_change_percent,
    FieldId.PLATFORM: _platform,
    FieldId.PRICE_VS_AVERAGE: _price_vs_average,
    FieldId.ARBITRAGE_OPPORTUNITY: _arbitrage_opportunity,
}


def resolve(field: FieldId, snapshot: MarketSnapshot) -> Any:
    """
    Resolve one field for the snapshot's item.

    Returns:
        The field value (float or str), or DataUnavailable
    """
    resolver = FIELD_RESOLVERS.get(field)
    if resolver is None:
        return DataUnavailable(field, "no resolver registered")
    return resolver(snapshot)
