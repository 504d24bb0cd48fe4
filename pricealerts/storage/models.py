from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import JSON, Boolean, DateTime, Float, ForeignKey, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# All DateTime columns hold naive UTC.


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Base(DeclarativeBase):
    pass


class User(Base):
    __tablename__ = "users"
    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    email: Mapped[Optional[str]] = mapped_column(String(255), unique=True)
    phone: Mapped[Optional[str]] = mapped_column(String(32))                  # E.164, ex: +15551234567
    telegram_chat_id: Mapped[Optional[str]] = mapped_column(String(64))
    timezone: Mapped[Optional[str]] = mapped_column(String(64))              # IANA, ex: America/New_York
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=_utcnow)


class Item(Base):
    __tablename__ = "items"
    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    category: Mapped[Optional[str]] = mapped_column(String(64))              # ex: rifle, knife, gloves
    image_url: Mapped[Optional[str]] = mapped_column(String(512))
    recommendation: Mapped[Optional[str]] = mapped_column(String(32))        # ex: Strong Buy
    risk_level: Mapped[Optional[str]] = mapped_column(String(16))            # low / medium / high

    __table_args__ = (
        Index("ix_item_category", "category"),
    )


class MarketplacePrice(Base):
    """Current listing per item and platform."""
    __tablename__ = "marketplace_prices"
    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    item_id: Mapped[str] = mapped_column(ForeignKey("items.id"), nullable=False)
    platform: Mapped[str] = mapped_column(String(32), nullable=False)        # ex: steam, csfloat
    price: Mapped[float] = mapped_column(Float, nullable=False)              # USD
    buyer_fee_percent: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    seller_fee_percent: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    listing_url: Mapped[Optional[str]] = mapped_column(String(512))
    volume: Mapped[Optional[float]] = mapped_column(Float)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=_utcnow)

    __table_args__ = (
        UniqueConstraint("item_id", "platform", name="uq_price_item_platform"),
        Index("ix_price_item", "item_id"),
    )


class PriceHistory(Base):
    __tablename__ = "price_history"
    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    item_id: Mapped[str] = mapped_column(ForeignKey("items.id"), nullable=False)
    platform: Mapped[str] = mapped_column(String(32), nullable=False)
    price: Mapped[float] = mapped_column(Float, nullable=False)
    volume: Mapped[Optional[float]] = mapped_column(Float)
    recorded_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    __table_args__ = (
        Index("ix_history_item_time", "item_id", "recorded_at"),
    )


class AlertRuleRow(Base):
    __tablename__ = "alert_rules"
    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    conditions: Mapped[dict] = mapped_column(JSON, nullable=False)          # condition tree
    item_ids: Mapped[Optional[list]] = mapped_column(JSON)
    categories: Mapped[Optional[list]] = mapped_column(JSON)
    max_price: Mapped[Optional[float]] = mapped_column(Float)
    priority: Mapped[str] = mapped_column(String(16), nullable=False, default="medium")
    delivery_channels: Mapped[list] = mapped_column(JSON, nullable=False, default=lambda: ["email"])
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    is_one_time: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    max_alerts_per_day: Mapped[Optional[int]] = mapped_column(Integer)   # NULL = unlimited
    cooldown_hours: Mapped[float] = mapped_column(Float, nullable=False, default=24.0)
    quiet_hours_start: Mapped[Optional[str]] = mapped_column(String(5))     # HH:MM
    quiet_hours_end: Mapped[Optional[str]] = mapped_column(String(5))
    quiet_hours_timezone: Mapped[Optional[str]] = mapped_column(String(64))
    last_triggered_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    trigger_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        Index("ix_rule_active", "is_active"),
    )


class TriggeredAlertRow(Base):
    __tablename__ = "triggered_alerts"
    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    rule_id: Mapped[int] = mapped_column(ForeignKey("alert_rules.id"), nullable=False)
    item_id: Mapped[str] = mapped_column(String(64), nullable=False)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False)
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    trigger_values: Mapped[dict] = mapped_column(JSON, nullable=False)
    priority: Mapped[str] = mapped_column(String(16), nullable=False)
    delivered_via: Mapped[dict] = mapped_column(JSON, nullable=False)       # {"email": "success", ...}
    delivery_details: Mapped[Optional[list]] = mapped_column(JSON)          # attempts / errors per channel
    listing_url: Mapped[Optional[str]] = mapped_column(String(512))
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    # Engagement, written by the feedback sink only
    clicked: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    clicked_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    purchased: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    purchased_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    dismissed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    dismissed_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    usefulness: Mapped[Optional[int]] = mapped_column(Integer)             # 1-5

    __table_args__ = (
        Index("ix_triggered_rule_item_time", "rule_id", "item_id", "created_at"),
        Index("ix_triggered_time", "created_at"),
    )


class PushSubscription(Base):
    __tablename__ = "push_subscriptions"
    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    endpoint: Mapped[str] = mapped_column(String(1024), nullable=False, unique=True)
    p256dh: Mapped[str] = mapped_column(String(255), nullable=False)
    auth: Mapped[str] = mapped_column(String(255), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=_utcnow)


class EmailSuppression(Base):
    __tablename__ = "email_suppressions"
    email: Mapped[str] = mapped_column(String(255), primary_key=True)     # lowercase
    reason: Mapped[str] = mapped_column(String(32), nullable=False)       # bounce / complaint / unsubscribe
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=_utcnow)


class AlertMetricsRow(Base):
    __tablename__ = "alert_metrics"
    rule_id: Mapped[int] = mapped_column(ForeignKey("alert_rules.id"), primary_key=True)
    triggers: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    clicks: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    purchases: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    dismissals: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    click_through_rate: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    conversion_rate: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    avg_usefulness: Mapped[Optional[float]] = mapped_column(Float)
    computed_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
