"""Shared test helpers."""

from __future__ import annotations

from datetime import datetime, timezone

from traffic import GB, DailyBucket, TrafficSample, UsageRecord


def make_record(
    observed_at: datetime = datetime(2026, 10, 19, 1, 0, tzinfo=timezone.utc),
    upload: int = 10 * GB,
    download: int = 20 * GB,
    total: int = 100 * GB,
    expire: int | None = int(datetime(2026, 11, 2, 0, 0, tzinfo=timezone.utc).timestamp()),
) -> UsageRecord:
    """Build a UsageRecord with sensible defaults (09:00 Shanghai, 30 of 100 GB used)."""
    return UsageRecord(
        time=observed_at,
        upload_bytes=upload,
        download_bytes=download,
        total_bytes=total,
        expire_epoch_seconds=expire,
        observed_at_ms=int(observed_at.timestamp() * 1000),
    )


def make_bucket(
    day: str = "2026-10-19",
    used: str = "100.00",
    time: str | None = None,
    threshold: str = "5.00",
    refresh_days: int = 14,
) -> DailyBucket:
    """Build a single-sample observation bucket."""
    return DailyBucket(
        day=day,
        threshold_gb=threshold,
        refresh_days=refresh_days,
        samples=[TrafficSample(time=time or f"{day} 09:00", used_traffic_gb=used)],
    )


def userinfo(
    upload: int = 10 * GB, download: int = 20 * GB, total: int = 100 * GB,
    expire: int = 1793577600,
) -> str:
    return f"upload={upload}; download={download}; total={total}; expire={expire}"
