from __future__ import annotations

import csv
import logging
import os
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterator, NamedTuple, Optional, Union

from typer.models import OptionInfo

from .estimator import BurnRateEstimator

logger = logging.getLogger(__name__)

POWER_SUPPLY_ROOT = Path("/sys/class/power_supply")
BATTERY_ENV_VAR = "BURNRATE_BATTERY"

_CHARGING_STATUSES = {"charging": True, "full": True}
_DISCHARGING_STATUSES = {"discharging": False, "not charging": False}
_TRUE_CELLS = {"1", "true", "yes", "charging"}
_FALSE_CELLS = {"0", "false", "no", "discharging"}
_UNKNOWN_CELLS = {"", "unknown", "none", "null"}


class SampleLogError(ValueError):
    """Raised when a CSV sample log cannot be parsed."""


@dataclass
class BatteryReading:
    percentage: Optional[float]
    charging: Optional[bool]
    source_path: str


class LoggedSample(NamedTuple):
    time: int
    level: Optional[float]
    charging: Optional[bool]
    ms: int


def find_battery(root: Optional[Path] = None) -> Optional[Path]:
    """Return the first power supply of type Battery under ``root``."""
    root = root or POWER_SUPPLY_ROOT
    if not root.is_dir():
        return None
    for entry in sorted(root.iterdir()):
        if _read_attr(entry, "type") == "Battery":
            return entry
    return None


def resolve_battery_path(
    path: Union[Path, str, OptionInfo, None] = None,
) -> Optional[Path]:
    # typer.run passes the OptionInfo itself when the command is called directly
    if isinstance(path, OptionInfo):
        path = path.default
    if path:
        return Path(path)
    env_path = os.environ.get(BATTERY_ENV_VAR)
    if env_path:
        return Path(env_path)
    return find_battery()


def read_battery(path: Path) -> BatteryReading:
    """
    Read charge percentage and charging flag from a sysfs power supply.

    Unreadable or missing attributes come back as None rather than raising,
    the estimator treats those as unknown.
    """
    percentage = _read_float(path, "capacity")
    if percentage is None:
        percentage = _ratio(path, "energy_now", "energy_full")
    if percentage is None:
        percentage = _ratio(path, "charge_now", "charge_full")

    status = (_read_attr(path, "status") or "").lower()
    if status in _CHARGING_STATUSES:
        charging: Optional[bool] = _CHARGING_STATUSES[status]
    elif status in _DISCHARGING_STATUSES:
        charging = _DISCHARGING_STATUSES[status]
    else:
        charging = None

    return BatteryReading(
        percentage=percentage, charging=charging, source_path=str(path)
    )


def _read_attr(path: Path, name: str) -> Optional[str]:
    try:
        return (path / name).read_text().strip()
    except OSError as exc:
        logger.debug("Cannot read %s/%s: %s", path, name, exc)
        return None


def _read_float(path: Path, name: str) -> Optional[float]:
    raw = _read_attr(path, name)
    if raw is None:
        return None
    try:
        return float(raw)
    except ValueError:
        logger.debug("Ignoring non-numeric %s/%s: %r", path, name, raw)
        return None


def _ratio(path: Path, now_name: str, full_name: str) -> Optional[float]:
    now = _read_float(path, now_name)
    full = _read_float(path, full_name)
    if now is None or not full:
        return None
    return now / full * 100.0


def monotonic_ms() -> int:
    return int(time.monotonic() * 1000)


def feed(
    estimator: BurnRateEstimator, reading: BatteryReading, now_time: int, now_ms: int
) -> None:
    estimator.update(reading.percentage, reading.charging, now_time, now_ms)


def watch_loop(
    battery_path: Path,
    estimator: BurnRateEstimator,
    interval_seconds: float = 1.0,
    on_update: Optional[Callable[[BatteryReading, BurnRateEstimator], None]] = None,
    clock: Optional[Callable[[], float]] = None,
    ms_clock: Optional[Callable[[], int]] = None,
    sleep: Optional[Callable[[float], None]] = None,
    max_iterations: Optional[int] = None,
) -> int:
    """Poll the battery and feed the estimator until interrupted."""
    clock = clock or time.time
    ms_clock = ms_clock or monotonic_ms
    sleep = sleep or time.sleep
    logger.info(
        "Watching %s every %ss (window=%d, timeout=%dms)",
        battery_path,
        interval_seconds,
        estimator.config.window_size,
        estimator.config.sample_timeout_ms,
    )
    iterations = 0
    while max_iterations is None or iterations < max_iterations:
        reading = read_battery(battery_path)
        feed(estimator, reading, int(clock()), ms_clock())
        if on_update is not None:
            on_update(reading, estimator)
        iterations += 1
        if max_iterations is None or iterations < max_iterations:
            sleep(interval_seconds)
    return iterations


def load_samples(path: Path) -> list[LoggedSample]:
    """
    Load a CSV sample log with columns ``time,level,charging[,ms]``.

    Blank or ``unknown`` level/charging cells become None. Without an ``ms``
    column the interval clock is derived from ``time``; when present, every
    row must carry a value.
    """
    try:
        with path.open(newline="") as handle:
            return list(_parse_rows(csv.DictReader(handle), path))
    except (OSError, UnicodeDecodeError, csv.Error) as exc:
        raise SampleLogError(f"Cannot read {path}: {exc}") from exc


def _parse_rows(reader: csv.DictReader, path: Path) -> Iterator[LoggedSample]:
    fields = reader.fieldnames or []
    missing = {"time", "level", "charging"} - set(fields)
    if missing:
        raise SampleLogError(f"{path}: missing columns {', '.join(sorted(missing))}")

    first_time: Optional[int] = None
    has_ms: Optional[bool] = None
    for line_no, row in enumerate(reader, start=2):
        try:
            ts = int(float(row["time"]))
            level = _parse_level(row["level"])
            charging = _parse_charging(row["charging"])
            ms_cell = (row.get("ms") or "").strip()
        except (TypeError, ValueError) as exc:
            raise SampleLogError(f"{path}:{line_no}: {exc}") from exc

        if first_time is None:
            first_time = ts
            has_ms = bool(ms_cell)
        elif has_ms != bool(ms_cell):
            raise SampleLogError(
                f"{path}:{line_no}: ms must be given on every row or on none"
            )
        if ms_cell:
            try:
                ms = int(float(ms_cell))
            except ValueError as exc:
                raise SampleLogError(f"{path}:{line_no}: {exc}") from exc
        else:
            ms = (ts - first_time) * 1000
        yield LoggedSample(time=ts, level=level, charging=charging, ms=ms)


def _parse_level(cell: Optional[str]) -> Optional[float]:
    value = (cell or "").strip()
    if value.lower() in _UNKNOWN_CELLS:
        return None
    return float(value.rstrip("%"))


def _parse_charging(cell: Optional[str]) -> Optional[bool]:
    value = (cell or "").strip().lower()
    if value in _TRUE_CELLS:
        return True
    if value in _FALSE_CELLS:
        return False
    if value in _UNKNOWN_CELLS:
        return None
    raise ValueError(f"unrecognised charging value {cell!r}")
