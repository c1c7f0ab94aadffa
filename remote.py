"""HTTP collaborators: fetch subscription userinfo, deliver Telegram notifications."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime

import requests

from errors import MissingUsageHeader, NetworkError

USERINFO_HEADER = "subscription-userinfo"

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SubscriptionResponse:
    headers: dict[str, str]
    status_code: int
    date_header: str | None

    @property
    def observed_at(self) -> datetime:
        """Server time of the response, falling back to local time."""
        if self.date_header:
            try:
                dt = parsedate_to_datetime(self.date_header)
            except (TypeError, ValueError):
                logger.warning("unparseable Date header %r", self.date_header)
            else:
                if dt.tzinfo is None:
                    dt = dt.replace(tzinfo=timezone.utc)
                return dt
        return datetime.now(timezone.utc)


def fetch_subscription_info(
    url: str, timeout: float = 15.0, user_agent: str | None = None
) -> SubscriptionResponse:
    """GET the subscription link and keep only its headers."""
    headers = {"User-Agent": user_agent} if user_agent else {}
    try:
        response = requests.get(url, headers=headers, timeout=timeout, stream=True)
        response.close()
    except requests.RequestException as e:
        raise NetworkError(f"request failed: {e}") from e

    if not 200 <= response.status_code < 300:
        raise NetworkError(f"subscription returned HTTP {response.status_code}")

    # Lower-case keys so lookups match regardless of server casing
    lowered = {k.lower(): v for k, v in response.headers.items()}
    return SubscriptionResponse(
        headers=lowered,
        status_code=response.status_code,
        date_header=lowered.get("date"),
    )


def require_userinfo(response: SubscriptionResponse) -> str:
    value = response.headers.get(USERINFO_HEADER)
    if not value:
        raise MissingUsageHeader("response has no subscription-userinfo header")
    return value


def send_notification(
    api_key: str,
    chat_id: str,
    text: str,
    timeout: float = 15.0,
    api_base: str = "https://api.telegram.org",
) -> dict:
    """Send a message through the Telegram Bot API. Returns the sent message."""
    url = f"{api_base}/bot{api_key}/sendMessage"
    payload = {"chat_id": chat_id, "text": text}
    try:
        response = requests.post(url, json=payload, timeout=timeout)
    except requests.RequestException as e:
        raise NetworkError(f"notification request failed: {e}") from e

    try:
        data = response.json()
    except ValueError:
        data = {}

    if response.status_code != 200 or not data.get("ok"):
        description = data.get("description") or f"HTTP {response.status_code}"
        raise NetworkError(f"notification rejected: {description}")
    return data.get("result", {})
