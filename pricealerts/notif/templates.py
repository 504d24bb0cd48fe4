# -*- coding: utf-8 -*-
"""
Message templates for triggered alerts.

The reason string is built by walking the leaves that satisfied the rule,
e.g. "price dropped 22% to $7.50; Strong Buy rating". Channel texts (email,
push, SMS, Telegram) are derived from one NotificationPayload.
"""
from datetime import datetime
from html import escape
from typing import Dict, List, Optional

from pricealerts.notif.channels.base import NotificationPayload
from pricealerts.notif.formatter import format_datetime, format_percent, format_price, format_value
from pricealerts.rules.conditions import FieldId, Leaf, Operator
from pricealerts.rules.evaluator import EvaluationResult, LeafMatch
from pricealerts.rules.fields import best_arbitrage
from pricealerts.rules.types import AlertRule, MarketSnapshot, Priority

FIELD_LABELS = {
    FieldId.PRICE: "price",
    FieldId.PRICE_DROP_PERCENT: "7-day price change",
    FieldId.RECOMMENDATION: "rating",
    FieldId.RISK_LEVEL: "risk",
    FieldId.VOLUME_CHANGE_PERCENT: "30-day volume change",
    FieldId.PLATFORM: "best platform",
    FieldId.PRICE_VS_AVERAGE: "price vs 30-day average",
    FieldId.ARBITRAGE_OPPORTUNITY: "arbitrage profit",
}

PRIORITY_MARKERS = {
    Priority.CRITICAL: "🚨",
    Priority.HIGH: "🔔",
    Priority.MEDIUM: "🔔",
    Priority.LOW: "ℹ️",
}


def describe_match(match: LeafMatch, snapshot: MarketSnapshot) -> str:
    """Human-readable phrase for one satisfying leaf."""
    if match.negated:
        return _describe_negated(match.leaf)

    field = match.leaf.field
    value = match.value

    if field == FieldId.PRICE:
        return f"price {format_price(value)}"

    if field == FieldId.PRICE_DROP_PERCENT:
        now = snapshot.lowest_listing_price
        direction = "rose" if (now is not None and snapshot.price_7d_ago and now > snapshot.price_7d_ago) else "dropped"
        if now is None:
            return f"price {direction} {format_percent(value)}"
        return f"price {direction} {format_percent(value)} to {format_price(now)}"

    if field == FieldId.RECOMMENDATION:
        return f"{value} rating"

    if field == FieldId.RISK_LEVEL:
        return f"{value} risk"

    if field == FieldId.VOLUME_CHANGE_PERCENT:
        direction = "up" if value >= 0 else "down"
        return f"volume {direction} {format_percent(abs(value))} over 30 days"

    if field == FieldId.PLATFORM:
        return f"best price on {value}"

    if field == FieldId.PRICE_VS_AVERAGE:
        return f"at {format_percent(value)} of 30-day average"

    if field == FieldId.ARBITRAGE_OPPORTUNITY:
        best = best_arbitrage(snapshot)
        if best is None:
            return f"{format_price(value)} arbitrage"
        _, buy, sell = best
        return f"{format_price(value)} arbitrage (buy on {buy}, sell on {sell})"

    return f"{field.value} {format_value(field.value, value)}"


def _describe_negated(node: Leaf) -> str:
    label = FIELD_LABELS.get(node.field, node.field.value)
    literal = _format_literal(node)
    if node.operator == Operator.EQ:
        return f"{label} is not {literal}"
    if node.operator == Operator.NE:
        return f"{label} is {literal}"
    if node.operator == Operator.IN:
        return f"{label} not in {literal}"
    return f"{label} not {node.operator.value} {literal}"


def _format_literal(node: Leaf) -> str:
    if isinstance(node.value, frozenset):
        return "{" + ", ".join(sorted(str(v) for v in node.value)) + "}"
    return format_value(node.field.value, node.value)


def build_reason(result: EvaluationResult, snapshot: MarketSnapshot) -> str:
    """Join the phrases of all satisfying leaves, without duplicates."""
    phrases: List[str] = []
    for match in result.satisfied:
        phrase = describe_match(match, snapshot)
        if phrase not in phrases:
            phrases.append(phrase)
    if not phrases:
        return "alert conditions met"
    return "; ".join(phrases)


def build_payload(
    rule: AlertRule,
    snapshot: MarketSnapshot,
    reason: str,
    created_at: Optional[datetime] = None,
) -> NotificationPayload:
    best = snapshot.best_quote
    price = best.total_cost if best else None
    title = f"Price Alert: {snapshot.display_name}"
    return NotificationPayload(
        rule_id=rule.id,
        rule_name=rule.name,
        item_id=snapshot.item_id,
        item_name=snapshot.display_name,
        title=title,
        body=reason,
        priority=rule.priority,
        price=price,
        url=best.listing_url if best else None,
        icon=snapshot.image_url,
        created_at=created_at,
    )


def email_subject(payload: NotificationPayload) -> str:
    marker = PRIORITY_MARKERS.get(payload.priority, "🔔")
    if payload.price is not None:
        return f"{marker} Price Alert: {payload.item_name} is now {format_price(payload.price)}"
    return f"{marker} Price Alert: {payload.item_name}"


def email_html(payload: NotificationPayload, manage_url: str, unsubscribe_url: str, tz_name: str = "UTC") -> str:
    price_line = f"<p><strong>Current price:</strong> {escape(format_price(payload.price))}</p>" if payload.price is not None else ""
    listing = f'<p><a href="{escape(payload.url)}">View listing</a></p>' if payload.url else ""
    return f"""<html>
<body>
  <h2>{escape(payload.title)}</h2>
  <p>Your alert <strong>{escape(payload.rule_name)}</strong> matched:</p>
  <p>{escape(payload.body)}</p>
  {price_line}
  {listing}
  <p style="color:#888">{escape(format_datetime(payload.created_at, tz_name))}</p>
  <hr>
  <p style="font-size:12px"><a href="{escape(manage_url)}">Manage alerts</a> ·
     <a href="{escape(unsubscribe_url)}">Unsubscribe from this alert</a></p>
</body>
</html>"""


def push_message(payload: NotificationPayload) -> Dict[str, object]:
    """Web push notification body (title, body, icon, click-through URL)."""
    return {
        "title": payload.title,
        "body": payload.body,
        "icon": payload.icon or "",
        "data": {"url": payload.url or ""},
    }


def sms_text(payload: NotificationPayload) -> str:
    text = f"{payload.rule_name}: {payload.item_name} - {payload.body}"
    if payload.url:
        text = f"{text} {payload.url}"
    # Keep within two SMS segments
    return text if len(text) <= 306 else text[:303] + "..."


def telegram_text(payload: NotificationPayload, tz_name: str = "UTC") -> str:
    marker = PRIORITY_MARKERS.get(payload.priority, "🔔")
    lines = [
        f"{marker} <b>{escape(payload.title)}</b>",
        "",
        escape(payload.body),
    ]
    if payload.price is not None:
        lines.append(f"💰 {escape(format_price(payload.price))}")
    if payload.url:
        lines.append(f'<a href="{escape(payload.url)}">View listing</a>')
    lines.append("")
    lines.append(f"⏰ {escape(format_datetime(payload.created_at, tz_name))}")
    return "\n".join(lines)
