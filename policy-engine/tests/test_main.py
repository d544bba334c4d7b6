"""Tests for the command-line entry point."""

from pathlib import Path

import pytest

from conftest import CHILD
from welltime_policy.config import Config
from welltime_policy.main import build_engine, build_parser, cmd_decide, cmd_grant, cmd_request, cmd_streak
from welltime_policy.store import InMemoryPolicyStore
from welltime_shared import AppLimit, DailyUsage, OverrideStatus


@pytest.fixture
def config(tmp_path: Path) -> Config:
    return Config(
        child_id=CHILD,
        device_id="tablet",
        firebase_credentials_path=tmp_path / "creds.json",
        cache_dir=tmp_path / "cache",
        usage_export_path=tmp_path / "usage-export.json",
    )


def test_parser_grant_requires_duration() -> None:
    parser = build_parser()

    with pytest.raises(SystemExit):
        parser.parse_args(["grant", "req-1", "--parent", "p"])

    args = parser.parse_args(["grant", "req-1", "--parent", "p", "--until-end-of-day"])
    assert args.until_end_of_day
    assert args.minutes is None


def test_decide_exits_when_blocked(config: Config, store: InMemoryPolicyStore, capsys) -> None:
    store.save_app_limit(AppLimit(child_id=CHILD, package_name="com.game", limit_seconds=60))
    store.upsert_daily_usage(
        [
            DailyUsage(
                child_id=CHILD,
                package_name="com.game",
                usage_date=config.now().date(),
                total_seconds=120,
            )
        ]
    )
    engine = build_engine(config, store)
    args = build_parser().parse_args(["decide", "com.game"])

    with pytest.raises(SystemExit) as exc_info:
        cmd_decide(engine, args)

    assert exc_info.value.code == 3
    assert '"app_limit"' in capsys.readouterr().out


def test_request_then_grant(config: Config, store: InMemoryPolicyStore, capsys) -> None:
    engine = build_engine(config, store)
    parser = build_parser()

    cmd_request(engine, parser.parse_args(["request", "com.game", "--app-name", "Game"]))
    request_id = capsys.readouterr().out.strip()

    cmd_grant(engine, parser.parse_args(["grant", request_id, "--parent", "parent-1", "--minutes", "15"]))

    (override,) = store.list_overrides(child_id=CHILD)
    assert override.status == OverrideStatus.ACTIVE
    assert override.duration_minutes == 15


def test_streak_prints_status(config: Config, store: InMemoryPolicyStore, capsys) -> None:
    store.save_app_limit(AppLimit(child_id=CHILD, package_name="com.game", limit_seconds=1800))
    engine = build_engine(config, store)

    cmd_streak(engine, build_parser().parse_args(["streak", "com.game"]))

    out = capsys.readouterr().out
    assert '"streak_days"' in out
    assert '"earned":false' in out
