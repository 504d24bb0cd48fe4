"""
Market data provider backed by the price tables.

Builds one MarketSnapshot per item from the current marketplace listings plus
a pandas pass over the recent price history (7-day baseline, 30-day moving
average of the daily lowest price, volume 30 days ago).
"""
from collections import defaultdict
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Sequence

import pandas as pd
from loguru import logger
from sqlalchemy import select
from sqlalchemy.orm import sessionmaker

from pricealerts.interfaces import MarketDataProvider
from pricealerts.rules.fields import MOVING_AVERAGE_DAYS, PRICE_DROP_LOOKBACK_DAYS, VOLUME_LOOKBACK_DAYS
from pricealerts.rules.types import MarketSnapshot, PlatformQuote
from pricealerts.storage.db import SessionLocal
from pricealerts.storage.models import Item, MarketplacePrice, PriceHistory
from pricealerts.storage.repo import to_db_time

HISTORY_WINDOW_DAYS = max(PRICE_DROP_LOOKBACK_DAYS, VOLUME_LOOKBACK_DAYS, MOVING_AVERAGE_DAYS) + 1

HISTORY_COLUMNS = ["item_id", "platform", "price", "volume", "recorded_at"]


def daily_lowest(history: pd.DataFrame) -> pd.DataFrame:
    """
    Collapse raw history to one row per item and UTC day.

    Takes the last observation of each platform on each day, then the lowest
    price across platforms and the summed volume.

    Args:
        history: DataFrame with HISTORY_COLUMNS

    Returns:
        DataFrame with columns item_id, day, price, volume
    """
    if history.empty:
        return pd.DataFrame(columns=["item_id", "day", "price", "volume"])

    df = history.copy()
    df["recorded_at"] = pd.to_datetime(df["recorded_at"])
    df["day"] = df["recorded_at"].dt.floor("D")

    last_per_platform = df.sort_values("recorded_at").groupby(["item_id", "platform", "day"]).tail(1)

    return last_per_platform.groupby(["item_id", "day"], as_index=False).agg(
        price=("price", "min"),
        volume=("volume", lambda s: s.sum(min_count=1)),
    )


def _last(series: pd.Series) -> Optional[float]:
    series = series.dropna()
    if series.empty:
        return None
    return float(series.iloc[-1])


def history_stats(daily: pd.DataFrame, as_of: datetime) -> Dict[str, Dict[str, Optional[float]]]:
    """
    Baselines per item from daily_lowest() output.

    Returns:
        {item_id: {"price_7d_ago", "moving_average_30d", "volume_30d_ago"}}
        Values are None where the history does not reach back far enough.
    """
    now = pd.Timestamp(to_db_time(as_of))
    week_ago = (now - pd.Timedelta(days=PRICE_DROP_LOOKBACK_DAYS)).floor("D")
    month_ago = (now - pd.Timedelta(days=VOLUME_LOOKBACK_DAYS)).floor("D")
    average_from = (now - pd.Timedelta(days=MOVING_AVERAGE_DAYS)).floor("D")

    stats = {}
    for item_id, rows in daily.groupby("item_id"):
        rows = rows.sort_values("day")
        window = rows[(rows["day"] > average_from) & (rows["day"] <= now)]
        average = window["price"].mean() if not window.empty else None

        stats[item_id] = {
            "price_7d_ago": _last(rows.loc[rows["day"] <= week_ago, "price"]),
            "moving_average_30d": float(average) if average is not None and pd.notna(average) else None,
            "volume_30d_ago": _last(rows.loc[rows["day"] <= month_ago, "volume"]),
        }
    return stats


class SqlMarketDataProvider(MarketDataProvider):

    def __init__(self, session_factory: sessionmaker = SessionLocal):
        self.session_factory = session_factory

    def snapshot(self, item_ids: Sequence[str], as_of: Optional[datetime] = None) -> List[MarketSnapshot]:
        if not item_ids:
            return []

        as_of = as_of or datetime.now(timezone.utc)
        if as_of.tzinfo is None:
            as_of = as_of.replace(tzinfo=timezone.utc)
        now = to_db_time(as_of)
        ids = list(dict.fromkeys(item_ids))

        with self.session_factory() as session:
            items = {item.id: item for item in session.scalars(select(Item).where(Item.id.in_(ids)))}
            prices = session.scalars(
                select(MarketplacePrice)
                .where(MarketplacePrice.item_id.in_(ids))
                .order_by(MarketplacePrice.item_id, MarketplacePrice.platform)
            ).all()
            history = pd.read_sql(
                select(
                    PriceHistory.item_id,
                    PriceHistory.platform,
                    PriceHistory.price,
                    PriceHistory.volume,
                    PriceHistory.recorded_at,
                ).where(
                    PriceHistory.item_id.in_(ids),
                    PriceHistory.recorded_at >= now - timedelta(days=HISTORY_WINDOW_DAYS),
                    PriceHistory.recorded_at <= now,
                ),
                session.connection(),
                parse_dates=["recorded_at"],
            )

        quotes = defaultdict(list)
        volumes = defaultdict(list)
        for row in prices:
            quotes[row.item_id].append(
                PlatformQuote(
                    platform=row.platform,
                    price=row.price,
                    buyer_fee_percent=row.buyer_fee_percent,
                    seller_fee_percent=row.seller_fee_percent,
                    listing_url=row.listing_url,
                )
            )
            if row.volume is not None:
                volumes[row.item_id].append(row.volume)

        stats = history_stats(daily_lowest(history), as_of)

        snapshots = []
        for item_id in ids:
            item = items.get(item_id)
            if item is None:
                continue
            item_stats = stats.get(item_id, {})
            snapshots.append(
                MarketSnapshot(
                    item_id=item_id,
                    name=item.name,
                    category=item.category,
                    image_url=item.image_url,
                    quotes=tuple(quotes[item_id]),
                    price_7d_ago=item_stats.get("price_7d_ago"),
                    moving_average_30d=item_stats.get("moving_average_30d"),
                    volume=sum(volumes[item_id]) if volumes[item_id] else None,
                    volume_30d_ago=item_stats.get("volume_30d_ago"),
                    recommendation=item.recommendation,
                    risk_level=item.risk_level,
                    captured_at=as_of,
                )
            )

        missing = len(ids) - len(snapshots)
        if missing:
            logger.debug(f"Market snapshot: {missing} unknown item id(s) skipped")
        return snapshots
