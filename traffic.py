#!/usr/bin/env python3
"""Proxy traffic ledger: poll a subscription, record daily usage, report deltas."""

from __future__ import annotations

import calendar
import fcntl
import json
import logging
import os
import re
import sys
import tempfile
import time
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import IO
from zoneinfo import ZoneInfo

from errors import (  # noqa: F401
    InvalidInputDate,
    MalformedHeader,
    MissingUsageHeader,
    NetworkError,
    PersistenceError,
    TrafficError,
)

SCRIPT_DIR = os.path.dirname(os.path.realpath(__file__))
DATA_DIR = os.path.join(SCRIPT_DIR, "data")
SETTINGS_PATH = os.path.join(DATA_DIR, "settings.json")
RUN_LOG_NAME = "runs.jsonl"

SHANGHAI = ZoneInfo("Asia/Shanghai")
GB = 1024**3
TWO_PLACES = Decimal("0.01")

# ANSI colors
CYAN = "\033[36m"
BOLD = "\033[1m"
RESET = "\033[0m"

logger = logging.getLogger(__name__)


# ── Settings ─────────────────────────────────────────────────────────────────


@dataclass
class Settings:
    tz: ZoneInfo = field(default_factory=lambda: SHANGHAI)
    timeout: float = 15.0
    user_agent: str | None = None
    telegram_api: str = "https://api.telegram.org"
    data_dir: str = DATA_DIR


def load_settings(path: str = SETTINGS_PATH) -> Settings:
    """Load settings from JSON file. Returns defaults on any error."""
    s = Settings(data_dir=os.path.dirname(path) or ".")
    try:
        with open(path) as f:
            raw = json.load(f)
    except (OSError, json.JSONDecodeError):
        return s
    if not isinstance(raw, dict):
        return s

    tz_name = raw.get("timezone")
    if isinstance(tz_name, str):
        try:
            s.tz = ZoneInfo(tz_name)
        except (KeyError, ValueError):
            logger.warning("unknown timezone %r, keeping %s", tz_name, s.tz)

    timeout = raw.get("timeout")
    if timeout is not None:
        try:
            s.timeout = float(timeout)
        except (TypeError, ValueError):
            logger.warning("bad timeout %r, keeping %ss", timeout, s.timeout)
        if s.timeout <= 0:
            logger.warning("timeout must be positive, using 15s")
            s.timeout = 15.0

    if isinstance(raw.get("user_agent"), str):
        s.user_agent = raw["user_agent"]
    if isinstance(raw.get("telegram_api"), str):
        s.telegram_api = raw["telegram_api"].rstrip("/")
    if isinstance(raw.get("data_dir"), str):
        s.data_dir = raw["data_dir"]

    return s


# ── Header parsing ───────────────────────────────────────────────────────────


def parse_userinfo(raw: str) -> dict[str, str | None]:
    """Split 'k=v; k=v' into a mapping of raw string values.

    A segment without '=' keeps its key with a None value instead of
    aborting the parse.
    """
    fields: dict[str, str | None] = {}
    for part in re.split(r";\s*", raw.strip()):
        part = part.strip()
        if not part:
            continue
        key, sep, value = part.partition("=")
        if not sep:
            logger.warning("%s", MalformedHeader(f"segment {part!r} has no '='"))
            fields[key] = None
            continue
        fields[key.strip()] = value.lstrip()
    return fields


def _to_int(fields: dict[str, str | None], key: str) -> int | None:
    value = fields.get(key)
    if value is None:
        return None
    try:
        # Some providers send counters as floats ("1.23e10")
        return int(Decimal(value))
    except (ArithmeticError, ValueError):
        return None


@dataclass(frozen=True)
class UsageRecord:
    time: datetime
    upload_bytes: int
    download_bytes: int
    total_bytes: int
    expire_epoch_seconds: int | None
    observed_at_ms: int

    @property
    def used_bytes(self) -> int:
        return self.upload_bytes + self.download_bytes

    @property
    def remaining_bytes(self) -> int:
        return self.total_bytes - self.used_bytes

    @classmethod
    def from_userinfo(
        cls, fields: dict[str, str | None], observed_at: datetime
    ) -> UsageRecord:
        """Build a record from parsed userinfo. Missing counters count as 0."""
        counters: dict[str, int] = {}
        for key in ("upload", "download", "total"):
            value = _to_int(fields, key)
            if value is None:
                logger.warning("userinfo field %r missing or invalid, using 0", key)
                value = 0
            counters[key] = value
        return cls(
            time=observed_at,
            upload_bytes=counters["upload"],
            download_bytes=counters["download"],
            total_bytes=counters["total"],
            expire_epoch_seconds=_to_int(fields, "expire"),
            observed_at_ms=int(observed_at.timestamp() * 1000),
        )


# ── Unit conversion ──────────────────────────────────────────────────────────


def quantize(value: Decimal) -> Decimal:
    return value.quantize(TWO_PLACES, rounding=ROUND_HALF_UP)


def bytes_to_gb(n: int | Decimal) -> str:
    """Convert a byte count to GB as a string with exactly two decimals."""
    return str(quantize(Decimal(n) / GB))


def days_until(day_of_month: int, today: date | None = None) -> int:
    """Days from today until the next occurrence of day_of_month.

    Wrapping to next month uses the length of the *current* month, and
    31 is accepted for every month.
    """
    if not 1 <= day_of_month <= 31:
        raise InvalidInputDate(
            f"refresh day must be between 1 and 31, got {day_of_month}"
        )
    if today is None:
        today = datetime.now(SHANGHAI).date()
    if day_of_month == today.day:
        return 0
    if day_of_month > today.day:
        return day_of_month - today.day
    days_in_month = calendar.monthrange(today.year, today.month)[1]
    return days_in_month - today.day + day_of_month


def format_timestamp(epoch_ms: int, mode: str = "full", tz: ZoneInfo = SHANGHAI) -> str:
    """Format epoch milliseconds in a fixed timezone, 24-hour clock.

    mode: "date" → 2026-10-19, "time" → 14:05, anything else → both.
    """
    dt = datetime.fromtimestamp(epoch_ms / 1000, tz=timezone.utc).astimezone(tz)
    if mode == "date":
        return dt.strftime("%Y-%m-%d")
    if mode == "time":
        return dt.strftime("%H:%M")
    return dt.strftime("%Y-%m-%d %H:%M")


# ── History model ────────────────────────────────────────────────────────────


@dataclass
class TrafficSample:
    time: str
    used_traffic_gb: str

    def to_dict(self) -> dict:
        return {"time": self.time, "usedTrafficGB": self.used_traffic_gb}

    @classmethod
    def from_dict(cls, raw: dict) -> TrafficSample:
        used = str(raw["usedTrafficGB"])
        if not Decimal(used).is_finite():
            raise ValueError(f"usedTrafficGB {used!r} is not a number")
        return cls(time=str(raw["time"]), used_traffic_gb=used)


@dataclass
class DailyBucket:
    day: str
    threshold_gb: str
    refresh_days: int
    samples: list[TrafficSample] = field(default_factory=list)

    @property
    def first(self) -> TrafficSample:
        return self.samples[0]

    def to_dict(self) -> dict:
        return {
            "day": self.day,
            "thresholdGB": self.threshold_gb,
            "refreshDays": self.refresh_days,
            "samples": [s.to_dict() for s in self.samples],
        }

    @classmethod
    def from_dict(cls, raw: dict) -> DailyBucket:
        bucket = cls(
            day=str(raw["day"]),
            threshold_gb=str(raw["thresholdGB"]),
            refresh_days=int(raw["refreshDays"]),
            samples=[TrafficSample.from_dict(s) for s in raw.get("samples", [])],
        )
        if not bucket.samples:
            raise ValueError(f"day {bucket.day} has no samples")
        return bucket


@dataclass
class IdentityHistory:
    """Daily buckets for one identity.

    `daily` is append-only and chronological; only the tail is ever looked up.
    """

    name: str
    expire: str
    daily: list[DailyBucket] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "expire": self.expire,
            "dailyDate": [b.to_dict() for b in self.daily],
        }

    @classmethod
    def from_dict(cls, raw: dict) -> IdentityHistory:
        return cls(
            name=str(raw["name"]),
            expire=str(raw.get("expire", "")),
            daily=[DailyBucket.from_dict(b) for b in raw.get("dailyDate", [])],
        )


@dataclass(frozen=True)
class Deltas:
    day_used_gb: Decimal = Decimal(0)
    yesterday_used_gb: Decimal = Decimal(0)


def expiry_datetime(record: UsageRecord, tz: ZoneInfo = SHANGHAI) -> datetime | None:
    """Expiry in tz, or None when unknown or beyond what datetime can hold."""
    if record.expire_epoch_seconds is None:
        return None
    try:
        return datetime.fromtimestamp(record.expire_epoch_seconds, tz=tz)
    except (OverflowError, OSError, ValueError):
        logger.warning("expire %s is out of range, treating as unknown",
                       record.expire_epoch_seconds)
        return None


def build_bucket(record: UsageRecord, tz: ZoneInfo = SHANGHAI) -> DailyBucket:
    """Turn one observation into a single-sample bucket for its calendar day."""
    refresh_days = 0
    expiry = expiry_datetime(record, tz)
    if expiry is not None:
        today = datetime.fromtimestamp(record.observed_at_ms / 1000, tz=tz).date()
        refresh_days = days_until(expiry.day, today)

    remaining = Decimal(record.remaining_bytes)
    threshold = remaining / refresh_days if refresh_days else remaining
    return DailyBucket(
        day=format_timestamp(record.observed_at_ms, "date", tz),
        threshold_gb=bytes_to_gb(threshold),
        refresh_days=refresh_days,
        samples=[TrafficSample(
            time=format_timestamp(record.observed_at_ms, tz=tz),
            used_traffic_gb=bytes_to_gb(record.used_bytes),
        )],
    )


def format_expire(record: UsageRecord, tz: ZoneInfo = SHANGHAI) -> str:
    expiry = expiry_datetime(record, tz)
    if expiry is None:
        return "unknown"
    return expiry.strftime("%Y-%m-%d %H:%M")


# ── Persistence ──────────────────────────────────────────────────────────────


def history_path(name: str, data_dir: str = DATA_DIR) -> str:
    """Path of the history file for an identity, with the name made file-safe."""
    safe = re.sub(r"[^\w.-]", "_", name) or "_"
    return os.path.join(data_dir, f"{safe}.json")


def load_history(path: str) -> IdentityHistory | None:
    """Read a history file. Returns None when it does not exist yet."""
    if not os.path.exists(path):
        return None
    try:
        with open(path, encoding="utf-8") as f:
            return IdentityHistory.from_dict(json.load(f))
    except (OSError, ArithmeticError, KeyError, TypeError, ValueError) as e:
        raise PersistenceError(f"cannot read {path}: {e}") from e


def save_history(path: str, history: IdentityHistory) -> None:
    """Write history atomically via tempfile + rename."""
    directory = os.path.dirname(path) or "."
    try:
        os.makedirs(directory, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=directory, suffix=".json.tmp")
    except OSError as e:
        raise PersistenceError(f"cannot write {path}: {e}") from e
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(history.to_dict(), f, ensure_ascii=False, indent=2)
        os.replace(tmp_path, path)
    except BaseException as e:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        if isinstance(e, OSError):
            raise PersistenceError(f"cannot write {path}: {e}") from e
        raise


def acquire_lock(lock_path: str, timeout: float = 1.0) -> IO[str] | None:
    """Try to acquire an exclusive lock, polling every 100ms up to timeout.

    Returns the open file object (caller holds lock) or None on timeout.
    """
    try:
        os.makedirs(os.path.dirname(lock_path) or ".", exist_ok=True)
        f = open(lock_path, "w")  # noqa: SIM115
    except OSError as e:
        raise PersistenceError(f"cannot create lock {lock_path}: {e}") from e
    deadline = time.monotonic() + timeout
    while True:
        try:
            fcntl.flock(f, fcntl.LOCK_EX | fcntl.LOCK_NB)
            return f
        except OSError:
            if time.monotonic() >= deadline:
                f.close()
                return None
            time.sleep(0.1)


def merge_observation(
    name: str, expire: str, bucket: DailyBucket, data_dir: str = DATA_DIR
) -> Deltas:
    """Merge a single-sample bucket into the stored history and persist it.

    Same day: the sample is rewritten to usage since the day's first sample
    and appended to the tail bucket. New day: the bucket is appended and
    yesterday's usage is the difference between the first samples of the
    last two buckets.
    """
    path = history_path(name, data_dir)
    history = load_history(path)

    if history is None:
        save_history(path, IdentityHistory(name=name, expire=expire, daily=[bucket]))
        logger.info("%s: first observation on %s", name, bucket.day)
        return Deltas()

    history.expire = expire
    tail = history.daily[-1] if history.daily else None

    if tail is not None and tail.day == bucket.day:
        used = quantize(
            Decimal(bucket.first.used_traffic_gb) - Decimal(tail.first.used_traffic_gb)
        )
        tail.samples.append(TrafficSample(time=bucket.first.time, used_traffic_gb=str(used)))
        save_history(path, history)
        logger.info("%s: %s GB used so far on %s", name, used, bucket.day)
        return Deltas(day_used_gb=used)

    if tail is not None and bucket.day < tail.day:
        logger.warning("%s: observation for %s is older than recorded day %s, skipping",
                       name, bucket.day, tail.day)
        return Deltas()

    history.daily.append(bucket)
    deltas = Deltas()
    if len(history.daily) >= 2:
        last, previous = history.daily[-1], history.daily[-2]
        deltas = Deltas(yesterday_used_gb=quantize(
            Decimal(last.first.used_traffic_gb) - Decimal(previous.first.used_traffic_gb)
        ))
    save_history(path, history)
    logger.info("%s: new day %s, yesterday used %s GB",
                name, bucket.day, deltas.yesterday_used_gb)
    return deltas


# ── Report ───────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class Report:
    lines: tuple[tuple[str, str], ...]

    @property
    def text(self) -> str:
        return "\n".join(f"{label}: {value}" for label, value in self.lines)


def compose_report(
    name: str,
    record: UsageRecord,
    bucket: DailyBucket,
    deltas: Deltas,
    expire: str,
) -> Report | None:
    """Build the notification report, or None on a zero-usage day."""
    if str(deltas.day_used_gb) == "0":
        return None
    return Report(lines=(
        ("Identity", name),
        ("Today's threshold", f"{bucket.threshold_gb} GB"),
        ("Used today", f"{deltas.day_used_gb} GB"),
        ("Used yesterday", f"{deltas.yesterday_used_gb} GB"),
        ("Remaining", f"{bytes_to_gb(record.remaining_bytes)} GB"),
        ("Refresh in", f"{bucket.refresh_days} days"),
        ("Expires", expire),
    ))


def render_terminal(report: Report, color: bool = True) -> str:
    """Render the report with aligned labels for terminal output."""
    c = CYAN if color else ""
    b = BOLD if color else ""
    x = RESET if color else ""
    width = max(len(label) for label, _ in report.lines)
    lines = [f"{b}Traffic Report{x}", "─" * 40]
    for label, value in report.lines:
        lines.append(f"  {c}{label.ljust(width)}{x}  {value}")
    return "\n".join(lines)


# ── Run log ──────────────────────────────────────────────────────────────────


def log_run(data_dir: str, entry: dict) -> str | None:
    """Append a JSON line to the run log. Returns error string on failure."""
    try:
        os.makedirs(data_dir, exist_ok=True)
        line = {"timestamp": datetime.now(timezone.utc).isoformat(), **entry}
        with open(os.path.join(data_dir, RUN_LOG_NAME), "a") as f:
            f.write(json.dumps(line, ensure_ascii=False) + "\n")
    except Exception as e:
        return str(e)
    return None


# ── CLI ──────────────────────────────────────────────────────────────────────

USAGE = """\
Records daily proxy traffic usage from a subscription link.

usage: traffic.py NAME URL [API_KEY CHAT_ID] [--dev]

  NAME     identity name, used as the history file name
  URL      subscription link
  API_KEY  Telegram bot token (optional)
  CHAT_ID  Telegram chat to notify (optional)
"""


def setup_logging(verbose: bool = False) -> None:
    from rich.console import Console
    from rich.logging import RichHandler

    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        force=True,
    )


def run(
    name: str,
    url: str,
    settings: Settings,
    api_key: str | None = None,
    chat_id: str | None = None,
) -> int:
    """One poll: fetch, merge, report, notify. Returns a process exit code."""
    import remote

    try:
        response = remote.fetch_subscription_info(
            url, timeout=settings.timeout, user_agent=settings.user_agent
        )
        raw = remote.require_userinfo(response)
    except TrafficError as e:
        logger.error("%s: %s", name, e)
        log_run(settings.data_dir, {"name": name, "status": "fetch_failed", "error": str(e)})
        return 1

    record = UsageRecord.from_userinfo(parse_userinfo(raw), response.observed_at)
    bucket = build_bucket(record, settings.tz)
    expire = format_expire(record, settings.tz)

    try:
        lock = acquire_lock(history_path(name, settings.data_dir) + ".lock")
        if lock is None:
            logger.warning("%s: another run holds the history lock, skipping", name)
            return 0
        try:
            deltas = merge_observation(name, expire, bucket, settings.data_dir)
        finally:
            lock.close()
    except PersistenceError as e:
        logger.error("%s: %s", name, e)
        log_run(settings.data_dir, {"name": name, "status": "persist_failed", "error": str(e)})
        return 1

    entry = {
        "name": name,
        "status": "ok",
        "day": bucket.day,
        "used_gb": bucket.first.used_traffic_gb,
        "day_used_gb": str(deltas.day_used_gb),
        "yesterday_used_gb": str(deltas.yesterday_used_gb),
    }

    report = compose_report(name, record, bucket, deltas, expire)
    if report is None:
        logger.info("%s: no same-day usage to report", name)
        log_run(settings.data_dir, entry)
        return 0

    print(render_terminal(report, color=sys.stdout.isatty()))

    rc = 0
    if api_key and chat_id:
        try:
            remote.send_notification(
                api_key, chat_id, report.text,
                timeout=settings.timeout, api_base=settings.telegram_api,
            )
            entry["notified"] = True
        except NetworkError as e:
            logger.error("%s: notification failed: %s", name, e)
            entry.update(status="notify_failed", error=str(e))
            rc = 1

    err = log_run(settings.data_dir, entry)
    if err:
        logger.warning("could not write run log: %s", err)
    return rc


def main(argv: list[str] | None = None) -> int:
    args = sys.argv[1:] if argv is None else argv
    flags = {a for a in args if a.startswith("--")}
    positional = [a for a in args if not a.startswith("--")]

    if "--help" in flags or len(positional) < 2:
        print(USAGE)
        return 0

    setup_logging("--verbose" in flags)

    settings_path = SETTINGS_PATH
    if "--dev" in flags:
        settings_path = os.path.join(DATA_DIR, "dev", "settings.json")
    settings = load_settings(settings_path)

    name, url = positional[0], positional[1]
    api_key = positional[2] if len(positional) > 2 else None
    chat_id = positional[3] if len(positional) > 3 else None
    if api_key and not chat_id:
        logger.warning("API_KEY given without CHAT_ID, notification disabled")

    return run(name, url, settings, api_key, chat_id)


if __name__ == "__main__":
    sys.exit(main())
