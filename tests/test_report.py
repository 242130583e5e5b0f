import pytest

from funding_arb.backtest import run_backtest
from funding_arb.config import BotConfig
from funding_arb.errors import FeedError
from funding_arb.models import MS_PER_HOUR, FundingSnapshot, TradeEvent
from funding_arb.report import (
    TRADE_LOG_HEADER,
    format_row,
    iso_ms,
    load_series_csv,
    summarize,
    write_series_csv,
    write_trade_log,
)

T0 = 1_704_067_200_000


def test_iso_timestamp_format():
    assert iso_ms(T0) == "2024-01-01T00:00:00.000Z"
    assert iso_ms(T0 + 1_234) == "2024-01-01T00:00:01.234Z"


def test_trade_log_rows(tmp_path):
    events = [
        TradeEvent(ts=T0, market="SOL-PERP", kind="SINGLE", action="ENTER", side_a="SHORT", spot_side="BUY", apr_a=12.264),
        TradeEvent(
            ts=T0 + MS_PER_HOUR,
            market="SOL-PERP",
            kind="CROSS",
            action="EXIT",
            side_a="SHORT",
            side_b="LONG",
            apr_a=17.52,
            apr_b=-13.14,
            net_apr=30.66,
            pnl=0.0176,
        ),
    ]
    path = write_trade_log(events, tmp_path / "out" / "trade_log.csv")
    lines = path.read_text(encoding="utf-8").splitlines()

    assert lines[0] == ",".join(TRADE_LOG_HEADER)
    assert lines[0] == "timestamp,market,kind,action,side_a,side_b,spot_side,apr_a(%),apr_b(%),net_apr(%),pnl"
    assert lines[1] == "2024-01-01T00:00:00.000Z,SOL-PERP,SINGLE,ENTER,SHORT,,BUY,12.26,,,0.00"
    assert lines[2] == "2024-01-01T01:00:00.000Z,SOL-PERP,CROSS,EXIT,SHORT,LONG,,17.52,-13.14,30.66,0.02"


def test_format_row_leaves_absent_fields_empty():
    row = format_row(TradeEvent(ts=T0, market="ETH-PERP", kind="SINGLE", action="EXIT"))
    assert row[4:] == ["", "", "", "", "", "", "0.00"]


def test_load_series_csv_groups_by_market(tmp_path):
    p = tmp_path / "series.csv"
    p.write_text(
        "venue,market,hourly_pct,ts\n"
        f"Hyperliquid,sol-perp,0.0014,{T0}\n"
        f"hyperliquid,ETH-PERP,-0.001,{T0}\n"
        f"hyperliquid,SOL-PERP,0.0012,{T0 + MS_PER_HOUR}\n",
        encoding="utf-8",
    )
    series = load_series_csv(p)

    assert list(series) == ["SOL-PERP", "ETH-PERP"]
    assert [s.ts for s in series["SOL-PERP"]] == [T0, T0 + MS_PER_HOUR]
    assert series["SOL-PERP"][0].venue == "hyperliquid"
    assert series["SOL-PERP"][0].apr_pct == pytest.approx(12.264)


def test_load_series_csv_rejects_bad_row(tmp_path):
    p = tmp_path / "series.csv"
    p.write_text("venue,market,hourly_pct,ts\nhyperliquid,SOL-PERP,abc,1\n", encoding="utf-8")
    with pytest.raises(FeedError, match="series.csv:2"):
        load_series_csv(p)


def test_load_series_csv_rejects_missing_columns(tmp_path):
    p = tmp_path / "series.csv"
    p.write_text("market,hourly_pct\nSOL-PERP,0.001\n", encoding="utf-8")
    with pytest.raises(FeedError, match="missing columns"):
        load_series_csv(p)


def test_summary_counts_entries_and_flips():
    cfg = BotConfig(markets=("SOL-PERP",), cooldown_seconds=0.0, cross_venue_enabled=True, secondary_venue="dydx")
    primary = {"SOL-PERP": [FundingSnapshot.from_hourly("hyperliquid", "SOL-PERP", h, T0 + i * MS_PER_HOUR) for i, h in enumerate([0.002, -0.002])]}
    secondary = {"SOL-PERP": [FundingSnapshot.from_hourly("dydx", "SOL-PERP", h, T0 + i * MS_PER_HOUR) for i, h in enumerate([-0.0015, 0.0015])]}
    result = run_backtest(cfg, primary, secondary)

    summary = summarize(result)
    assert summary.trades == 2
    assert summary.cross_entries == 2
    assert summary.single_entries == 0
    assert summary.avg_entry_net_apr == pytest.approx(30.66)
    assert summary.total_pnl == pytest.approx(result.pnl_series[-1].cumulative_pnl)


def test_collected_series_can_be_replayed_from_csv(tmp_path):
    original = {"SOL-PERP": [FundingSnapshot.from_hourly("drift", "SOL-PERP", 0.00123, T0 + i * MS_PER_HOUR) for i in range(3)]}
    path = write_series_csv(original, tmp_path / "collected.csv")
    assert load_series_csv(path) == original
