"""Tests for history.py."""

from __future__ import annotations

from datetime import datetime
from pathlib import Path
from zoneinfo import ZoneInfo

import pytest

import history
from conftest import make_bucket
from history import fmt_last_poll, history_frame, over_threshold_style
from traffic import DailyBucket, IdentityHistory, TrafficSample, history_path, save_history

SHANGHAI = ZoneInfo("Asia/Shanghai")


def make_history() -> IdentityHistory:
    return IdentityHistory(
        name="nf",
        expire="2026-11-02 08:00",
        daily=[
            make_bucket("2026-10-17", "40.00", threshold="4.00", refresh_days=16),
            DailyBucket("2026-10-18", "4.20", 15, [
                TrafficSample("2026-10-18 09:00", "50.00"),
                TrafficSample("2026-10-18 21:00", "6.50"),
            ]),
            make_bucket("2026-10-19", "58.25"),
        ],
    )


class TestHistoryFrame:
    def test_one_row_per_day(self) -> None:
        df = history_frame(make_history())
        assert list(df["day"]) == ["2026-10-17", "2026-10-18", "2026-10-19"]
        assert list(df["polls"]) == [1, 2, 1]

    def test_day_used_is_latest_same_day_sample(self) -> None:
        df = history_frame(make_history())
        assert list(df["day_used_gb"]) == [0.0, 6.5, 0.0]
        assert df.iloc[1]["last_time"] == "2026-10-18 21:00"

    def test_next_day_growth(self) -> None:
        df = history_frame(make_history())
        assert df.iloc[0]["next_day_gb"] == pytest.approx(10.0)
        assert df.iloc[1]["next_day_gb"] == pytest.approx(8.25)
        assert df["next_day_gb"].isna().iloc[-1]

    def test_empty_history(self) -> None:
        df = history_frame(IdentityHistory(name="nf", expire="", daily=[]))
        assert df.empty
        assert "next_day_gb" in df.columns


class TestFormatting:
    def test_fmt_last_poll(self) -> None:
        now = datetime(2026, 10, 19, 12, 0, tzinfo=SHANGHAI)
        assert fmt_last_poll("2026-10-19 09:00", now, SHANGHAI) == "3 hours ago"

    def test_fmt_last_poll_unparseable(self) -> None:
        now = datetime(2026, 10, 19, 12, 0, tzinfo=SHANGHAI)
        assert fmt_last_poll("sometime", now, SHANGHAI) == "sometime"

    def test_over_threshold_style(self) -> None:
        assert over_threshold_style(6.0, 5.0) == "red"
        assert over_threshold_style(4.5, 5.0) == "yellow"
        assert over_threshold_style(1.0, 5.0) == ""
        assert over_threshold_style(1.0, 0.0) == ""


class TestMainCli:
    @pytest.fixture(autouse=True)
    def _settings(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr(history, "setup_logging", lambda *a, **k: None)
        monkeypatch.setattr(history, "SETTINGS_PATH", str(tmp_path / "settings.json"))

    def test_no_args_prints_usage(self, capsys) -> None:
        assert history.main([]) == 0
        assert "usage: history.py NAME" in capsys.readouterr().out

    def test_unknown_identity(self, capsys) -> None:
        assert history.main(["ghost"]) == 0
        assert "No history recorded for ghost." in capsys.readouterr().out

    def test_renders_days_newest_first(self, tmp_path: Path, capsys) -> None:
        save_history(history_path("nf", str(tmp_path)), make_history())
        assert history.main(["nf"]) == 0
        out = capsys.readouterr().out
        assert "nf" in out
        assert out.index("2026-10-19") < out.index("2026-10-17")
        assert "6.50 GB" in out
        assert "Expires 2026-11-02 08:00" in out

    def test_limit(self, tmp_path: Path, capsys) -> None:
        save_history(history_path("nf", str(tmp_path)), make_history())
        assert history.main(["nf", "--limit", "1"]) == 0
        out = capsys.readouterr().out
        assert "1 of 3 days" in out
        assert "2026-10-17" not in out

    def test_bad_limit(self, capsys) -> None:
        assert history.main(["nf", "--limit", "many"]) == 1
        assert "--limit requires an integer" in capsys.readouterr().err

    def test_corrupt_history(self, tmp_path: Path) -> None:
        Path(history_path("nf", str(tmp_path))).write_text("nope")
        assert history.main(["nf"]) == 1
