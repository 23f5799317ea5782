from pathlib import Path

import pytest
from typer import Option

from burnrate.collector import (
    BATTERY_ENV_VAR,
    BatteryReading,
    SampleLogError,
    find_battery,
    load_samples,
    read_battery,
    resolve_battery_path,
    watch_loop,
)
from burnrate.estimator import BurnRateEstimator, EstimatorConfig


def make_supply(root: Path, name: str, **attrs: str) -> Path:
    supply = root / name
    supply.mkdir(parents=True)
    for key, value in attrs.items():
        (supply / key).write_text(f"{value}\n")
    return supply


def test_resolve_battery_path_handles_optioninfo(monkeypatch, tmp_path: Path):
    monkeypatch.delenv(BATTERY_ENV_VAR, raising=False)
    monkeypatch.setattr("burnrate.collector.POWER_SUPPLY_ROOT", tmp_path)
    battery = make_supply(tmp_path, "BAT0", type="Battery")

    option_default_none = Option(None)

    assert resolve_battery_path(option_default_none) == battery


def test_resolve_battery_path_without_any_battery(monkeypatch, tmp_path: Path):
    monkeypatch.delenv(BATTERY_ENV_VAR, raising=False)
    monkeypatch.setattr("burnrate.collector.POWER_SUPPLY_ROOT", tmp_path / "none")

    assert resolve_battery_path(None) is None


def test_resolve_battery_path_handles_optioninfo_with_default(
    monkeypatch, tmp_path: Path
):
    monkeypatch.delenv(BATTERY_ENV_VAR, raising=False)

    target = tmp_path / "BAT1"
    option_with_default = Option(str(target))

    assert resolve_battery_path(option_with_default) == target


def test_resolve_battery_path_uses_env(monkeypatch, tmp_path: Path):
    target = tmp_path / "BAT0"
    monkeypatch.setenv(BATTERY_ENV_VAR, str(target))

    assert resolve_battery_path(None) == target
    assert resolve_battery_path(Option(None)) == target


def test_find_battery_skips_mains(tmp_path: Path):
    make_supply(tmp_path, "AC", type="Mains", online="1")
    battery = make_supply(tmp_path, "BAT0", type="Battery", capacity="50")

    assert find_battery(tmp_path) == battery
    assert find_battery(tmp_path / "missing") is None


def test_read_battery_capacity_and_status(tmp_path: Path):
    battery = make_supply(tmp_path, "BAT0", capacity="87", status="Discharging")

    reading = read_battery(battery)

    assert reading == BatteryReading(
        percentage=87.0, charging=False, source_path=str(battery)
    )


@pytest.mark.parametrize(
    "status, expected",
    [
        ("Charging", True),
        ("Full", True),
        ("Discharging", False),
        ("Not charging", False),
        ("Unknown", None),
    ],
)
def test_read_battery_status_mapping(tmp_path: Path, status, expected):
    battery = make_supply(tmp_path, "BAT0", capacity="50", status=status)

    assert read_battery(battery).charging is expected


def test_read_battery_falls_back_to_energy_ratio(tmp_path: Path):
    battery = make_supply(
        tmp_path, "BAT0", energy_now="30000000", energy_full="60000000"
    )

    reading = read_battery(battery)

    assert round(reading.percentage, 2) == 50.0
    assert reading.charging is None


def test_read_battery_missing_everything(tmp_path: Path):
    battery = make_supply(tmp_path, "BAT0", capacity="garbage")

    reading = read_battery(battery)

    assert reading.percentage is None
    assert reading.charging is None


def test_watch_loop_feeds_estimator(tmp_path: Path):
    battery = make_supply(tmp_path, "BAT0", capacity="90", status="Discharging")
    estimator = BurnRateEstimator(0, EstimatorConfig())
    seen = []
    ticks = iter(range(0, 10_000_000, 360_000))
    sleeps = []

    def on_update(reading, est):
        seen.append(est.data_point_count())
        # Battery drains 1% between reads.
        level = int((battery / "capacity").read_text()) - 1
        (battery / "capacity").write_text(f"{level}\n")

    iterations = watch_loop(
        battery,
        estimator,
        interval_seconds=360,
        on_update=on_update,
        clock=lambda: 0,
        ms_clock=lambda: next(ticks),
        sleep=sleeps.append,
        max_iterations=4,
    )

    assert iterations == 4
    assert seen == [0, 1, 2, 3]
    assert sleeps == [360, 360, 360]


def test_load_samples(tmp_path: Path):
    log = tmp_path / "log.csv"
    log.write_text(
        "time,level,charging\n"
        "1000,80,0\n"
        "1060,unknown,false\n"
        "1120,79.5%,\n"
        "1180,79,charging\n"
    )

    samples = load_samples(log)

    assert [s.time for s in samples] == [1000, 1060, 1120, 1180]
    assert [s.level for s in samples] == [80.0, None, 79.5, 79.0]
    assert [s.charging for s in samples] == [False, False, None, True]
    assert [s.ms for s in samples] == [0, 60_000, 120_000, 180_000]


def test_load_samples_with_ms_column(tmp_path: Path):
    log = tmp_path / "log.csv"
    log.write_text("time,level,charging,ms\n10,50,1,123\n11,49,1,1123\n")

    assert [s.ms for s in load_samples(log)] == [123, 1123]


@pytest.mark.parametrize(
    "content",
    [
        "time,level\n1,2\n",
        "time,level,charging\nabc,50,1\n",
        "time,level,charging\n1,50,maybe\n",
    ],
)
def test_load_samples_rejects_malformed(tmp_path: Path, content):
    log = tmp_path / "log.csv"
    log.write_text(content)

    with pytest.raises(SampleLogError):
        load_samples(log)


def test_load_samples_missing_file(tmp_path: Path):
    with pytest.raises(SampleLogError):
        load_samples(tmp_path / "nope.csv")


def test_load_samples_wraps_csv_errors(tmp_path: Path):
    log = tmp_path / "log.csv"
    log.write_text("time,level,charging\n1," + "9" * 200_000 + ",1\n")

    with pytest.raises(SampleLogError):
        load_samples(log)


@pytest.mark.parametrize(
    "content",
    [
        "time,level,charging,ms\n10,50,1,123\n11,49,1,\n",
        "time,level,charging,ms\n10,50,1,\n11,49,1,1123\n",
    ],
)
def test_load_samples_rejects_partial_ms_column(tmp_path: Path, content):
    log = tmp_path / "log.csv"
    log.write_text(content)

    with pytest.raises(SampleLogError, match="every row or on none"):
        load_samples(log)


def test_load_samples_blank_ms_column_derives_from_time(tmp_path: Path):
    log = tmp_path / "log.csv"
    log.write_text("time,level,charging,ms\n10,50,1,\n11,49,1,\n")

    assert [s.ms for s in load_samples(log)] == [0, 1000]
