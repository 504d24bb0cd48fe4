"""
Per-rule engagement metrics, recomputed from triggered-alert history.
Nothing in the evaluation path reads these; they feed dashboards and rule tuning.
"""
from datetime import datetime, timezone

import pandas as pd
from loguru import logger
from sqlalchemy import delete, select
from sqlalchemy.orm import sessionmaker

from .db import SessionLocal
from .models import AlertMetricsRow, TriggeredAlertRow


def summarize_engagement(alerts: pd.DataFrame) -> pd.DataFrame:
    """
    Aggregate engagement per rule.

    Args:
        alerts: DataFrame with rule_id, clicked, purchased, dismissed, usefulness

    Returns:
        DataFrame indexed by rule_id with triggers, clicks, purchases, dismissals,
        click_through_rate, conversion_rate, avg_usefulness
    """
    if alerts.empty:
        return pd.DataFrame(
            columns=["triggers", "clicks", "purchases", "dismissals",
                     "click_through_rate", "conversion_rate", "avg_usefulness"]
        )

    df = alerts.copy()
    for flag in ("clicked", "purchased", "dismissed"):
        df[flag] = df[flag].fillna(False).astype(int)

    summary = df.groupby("rule_id").agg(
        triggers=("rule_id", "size"),
        clicks=("clicked", "sum"),
        purchases=("purchased", "sum"),
        dismissals=("dismissed", "sum"),
        avg_usefulness=("usefulness", "mean"),
    )
    summary["click_through_rate"] = summary["clicks"] / summary["triggers"]
    summary["conversion_rate"] = summary["purchases"] / summary["triggers"]
    return summary


def recompute_alert_metrics(session_factory: sessionmaker = SessionLocal) -> int:
    """
    Rebuild the alert_metrics table from triggered_alerts.

    Returns:
        Number of rules with metrics
    """
    computed_at = datetime.now(timezone.utc).replace(tzinfo=None)

    with session_factory() as session:
        alerts = pd.read_sql(
            select(
                TriggeredAlertRow.rule_id,
                TriggeredAlertRow.clicked,
                TriggeredAlertRow.purchased,
                TriggeredAlertRow.dismissed,
                TriggeredAlertRow.usefulness,
            ),
            session.connection(),
        )
        summary = summarize_engagement(alerts)

        session.execute(delete(AlertMetricsRow))
        for rule_id, row in summary.iterrows():
            session.add(
                AlertMetricsRow(
                    rule_id=int(rule_id),
                    triggers=int(row["triggers"]),
                    clicks=int(row["clicks"]),
                    purchases=int(row["purchases"]),
                    dismissals=int(row["dismissals"]),
                    click_through_rate=round(float(row["click_through_rate"]), 4),
                    conversion_rate=round(float(row["conversion_rate"]), 4),
                    avg_usefulness=round(float(row["avg_usefulness"]), 2) if pd.notna(row["avg_usefulness"]) else None,
                    computed_at=computed_at,
                )
            )
        session.commit()

    logger.info(f"Alert metrics recomputed for {len(summary)} rule(s)")
    return len(summary)
