#!/usr/bin/env python3
"""Proxy traffic history: display an identity's recorded days in a table."""

from __future__ import annotations

import logging
import os
import sys
from datetime import datetime
from zoneinfo import ZoneInfo

import pandas as pd

from traffic import (
    DATA_DIR,
    SETTINGS_PATH,
    IdentityHistory,
    PersistenceError,
    history_path,
    load_history,
    load_settings,
    setup_logging,
)

DEFAULT_LIMIT = 14

HISTORY_COLUMNS = [
    "day",
    "polls",
    "first_time",
    "last_time",
    "cumulative_gb",
    "day_used_gb",
    "threshold_gb",
    "refresh_days",
]

logger = logging.getLogger(__name__)


# ── Data ─────────────────────────────────────────────────────────────────────


def history_frame(history: IdentityHistory) -> pd.DataFrame:
    """One row per recorded day.

    cumulative_gb is the day's first sample. day_used_gb is the latest
    same-day sample, which already holds usage since that first sample.
    next_day_gb is how much the first sample grew by the following day.
    """
    rows = []
    for bucket in history.daily:
        if not bucket.samples:
            continue
        rows.append({
            "day": bucket.day,
            "polls": len(bucket.samples),
            "first_time": bucket.samples[0].time,
            "last_time": bucket.samples[-1].time,
            "cumulative_gb": float(bucket.samples[0].used_traffic_gb),
            "day_used_gb": (
                float(bucket.samples[-1].used_traffic_gb)
                if len(bucket.samples) > 1 else 0.0
            ),
            "threshold_gb": float(bucket.threshold_gb),
            "refresh_days": bucket.refresh_days,
        })
    if not rows:
        return pd.DataFrame(columns=HISTORY_COLUMNS + ["next_day_gb"])

    df = pd.DataFrame(rows, columns=HISTORY_COLUMNS)
    df["next_day_gb"] = df["cumulative_gb"].diff().shift(-1).round(2)
    return df


def fmt_last_poll(last_time: str, now: datetime, tz: ZoneInfo) -> str:
    """Relative time of a stored 'YYYY-MM-DD HH:MM' sample, e.g. '3 hours ago'."""
    import humanize

    try:
        polled = datetime.strptime(last_time, "%Y-%m-%d %H:%M").replace(tzinfo=tz)
    except ValueError:
        return last_time
    return humanize.naturaltime(now.astimezone(tz) - polled)


def over_threshold_style(used: float, threshold: float) -> str:
    """Return a rich style string when a day's usage passes its threshold."""
    if threshold <= 0:
        return ""
    if used > threshold:
        return "red"
    if used >= threshold * 0.8:
        return "yellow"
    return ""


# ── Table rendering ─────────────────────────────────────────────────────────


def render_table(
    history: IdentityHistory,
    df: pd.DataFrame,
    tz: ZoneInfo,
    color: bool,
    limit: int,
) -> None:
    """Render recorded days, most recent first."""
    from rich.console import Console
    from rich.table import Table
    from rich.text import Text

    console = Console(force_terminal=color, no_color=not color, width=120)

    ordered = df.iloc[::-1]
    total = len(ordered)
    if limit > 0 and total > limit:
        ordered = ordered.head(limit)
        title = f"[bold]{history.name}[/]  [dim]({limit} of {total} days)[/]"
    else:
        title = f"[bold]{history.name}[/]  [dim]({total} days)[/]"

    table = Table(
        title=title,
        title_justify="left",
        show_header=True,
        show_edge=False,
        pad_edge=False,
        box=None,
        padding=(0, 1),
    )
    table.add_column("Day", style="cyan", no_wrap=True)
    table.add_column("Polls", justify="right", no_wrap=True)
    table.add_column("Cumulative", justify="right", no_wrap=True)
    table.add_column("Used", justify="right", no_wrap=True)
    table.add_column("Next day", justify="right", no_wrap=True)
    table.add_column("Threshold", style="dim", justify="right", no_wrap=True)
    table.add_column("Refresh", justify="right", no_wrap=True)

    for _, row in ordered.iterrows():
        used = Text(
            f"{row['day_used_gb']:.2f} GB",
            style=over_threshold_style(row["day_used_gb"], row["threshold_gb"]),
        )
        next_day = "" if pd.isna(row["next_day_gb"]) else f"{row['next_day_gb']:.2f} GB"
        table.add_row(
            row["day"],
            str(row["polls"]),
            f"{row['cumulative_gb']:.2f} GB",
            used,
            next_day,
            f"{row['threshold_gb']:.2f} GB",
            f"{row['refresh_days']}d",
        )

    console.print(table)
    last = df.iloc[-1]
    console.print(
        f"[dim]Last poll {fmt_last_poll(last['last_time'], datetime.now(tz), tz)}"
        f"    Expires {history.expire}[/]"
    )


# ── CLI ──────────────────────────────────────────────────────────────────────


def main(argv: list[str] | None = None) -> int:
    args = sys.argv[1:] if argv is None else argv
    dev = "--dev" in args
    show_all = "--all" in args

    limit = DEFAULT_LIMIT
    if show_all:
        limit = 0
    elif "--limit" in args:
        try:
            idx = args.index("--limit")
            limit = int(args[idx + 1])
        except (IndexError, ValueError):
            print("history: --limit requires an integer argument", file=sys.stderr)
            return 1

    positional = [
        a for i, a in enumerate(args)
        if not a.startswith("--") and not (i > 0 and args[i - 1] == "--limit")
    ]
    if not positional:
        print("usage: history.py NAME [--dev] [--all | --limit N]")
        return 0

    setup_logging()
    settings_path = os.path.join(DATA_DIR, "dev", "settings.json") if dev else SETTINGS_PATH
    settings = load_settings(settings_path)

    name = positional[0]
    try:
        history = load_history(history_path(name, settings.data_dir))
    except PersistenceError as e:
        logger.error("%s", e)
        return 1

    if history is None:
        print(f"No history recorded for {name}.")
        return 0

    df = history_frame(history)
    if df.empty:
        print(f"No history recorded for {name}.")
        return 0

    render_table(history, df, settings.tz, sys.stdout.isatty(), limit)
    return 0


if __name__ == "__main__":
    sys.exit(main())
