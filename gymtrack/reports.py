from typing import Any, Dict

import pandas as pd

from .database_manager import DatabaseManager


def revenue_summary(db_manager: DatabaseManager, start_date: str, end_date: str) -> Dict[str, Any]:
    """
    Totals completed payments between two timestamps.

    Returns a dict with the overall total plus breakdowns by calendar month
    and by payment method, each as a list of records.
    """
    rows = db_manager.get_payment_rows_for_report(start_date, end_date)
    df = pd.DataFrame(rows, columns=["payment_date", "amount", "method", "member_id", "plan_name"])
    if df.empty:
        return {
            "total_revenue": 0,
            "payment_count": 0,
            "by_month": [],
            "by_method": [],
        }

    df["month"] = pd.to_datetime(df["payment_date"]).dt.strftime("%Y-%m")
    by_month = (
        df.groupby("month", as_index=False)
        .agg(revenue=("amount", "sum"), payments=("amount", "count"))
        .sort_values("month")
    )
    by_method = (
        df.groupby("method", as_index=False)
        .agg(revenue=("amount", "sum"), payments=("amount", "count"))
        .sort_values("revenue", ascending=False)
    )
    return {
        "total_revenue": int(df["amount"].sum()),
        "payment_count": int(len(df)),
        "by_month": [
            {"month": r.month, "revenue": int(r.revenue), "payments": int(r.payments)}
            for r in by_month.itertuples(index=False)
        ],
        "by_method": [
            {"method": r.method, "revenue": int(r.revenue), "payments": int(r.payments)}
            for r in by_method.itertuples(index=False)
        ],
    }
