from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import Optional

import typer
from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from .collector import (
    BatteryReading,
    LoggedSample,
    SampleLogError,
    load_samples,
    monotonic_ms,
    resolve_battery_path,
    watch_loop,
)
from .estimator import BurnRateEstimator, EstimatorConfig

app = typer.Typer(
    add_completion=False,
    context_settings={"help_option_names": ["-h", "--help"]},
)
console = Console()

CALCULATING = "calculating"


def configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO, format="%(message)s"
    )


def _build_config(window: int, timeout: int) -> EstimatorConfig:
    try:
        return EstimatorConfig(window_size=window, sample_timeout_ms=timeout)
    except ValueError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=2)


@app.command("watch")
def watch_command(
    battery: Optional[Path] = typer.Option(
        None, help="Power supply directory (or set BURNRATE_BATTERY)"
    ),
    interval: float = typer.Option(1.0, help="Seconds between battery reads"),
    window: int = typer.Option(16, help="Regression window size (power of two)"),
    timeout: int = typer.Option(
        300_000, help="Force a data point after this many ms without change"
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    """Follow the battery and print the burn rate as it changes."""
    configure_logging(verbose)
    config = _build_config(window, timeout)
    resolved = resolve_battery_path(battery)
    if resolved is None:
        console.print("No battery found; pass --battery or set BURNRATE_BATTERY.")
        raise typer.Exit(code=1)

    estimator = BurnRateEstimator(int(time.time()), config, now_ms=monotonic_ms())
    last_line: list[str] = []

    def show(reading: BatteryReading, est: BurnRateEstimator) -> None:
        line = status_line(reading.percentage, est)
        if not last_line or last_line[-1] != line:
            console.print(line)
            last_line[:] = [line]

    try:
        watch_loop(resolved, estimator, interval_seconds=interval, on_update=show)
    except KeyboardInterrupt:
        console.print(f"Stopped after {estimator.data_point_count()} data points.")


@app.command("replay")
def replay_command(
    log: Path = typer.Argument(..., help="CSV with time,level,charging[,ms] columns"),
    window: int = typer.Option(16, help="Regression window size (power of two)"),
    timeout: int = typer.Option(
        300_000, help="Force a data point after this many ms without change"
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    """Run a recorded sample log through the estimator."""
    configure_logging(verbose)
    config = _build_config(window, timeout)
    try:
        samples = load_samples(log)
    except SampleLogError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=1)
    if not samples:
        console.print("No samples in log.")
        raise typer.Exit(code=1)

    estimator, rows = replay(samples, config)
    console.print(_estimates_table(samples[0].time, rows))
    console.print(_summary_panel(samples, estimator))


def replay(
    samples: list[LoggedSample], config: EstimatorConfig = EstimatorConfig()
) -> tuple[BurnRateEstimator, list[tuple[LoggedSample, int, float]]]:
    """Feed samples in order; return the estimator and each change in estimate."""
    estimator = BurnRateEstimator(samples[0].time, config, now_ms=samples[0].ms)
    rows: list[tuple[LoggedSample, int, float]] = []
    last = (0, 0.0)
    for sample in samples:
        estimator.update(sample.level, sample.charging, sample.time, sample.ms)
        current = (estimator.data_point_count(), estimator.burn_rate())
        if current != last:
            rows.append((sample, current[0], current[1]))
            last = current
    return estimator, rows


def rate_label(estimator: BurnRateEstimator) -> str:
    return "Charge/h" if estimator.burn_rate() > 0 else "Burn/h"


def format_burn_rate(estimator: BurnRateEstimator) -> str:
    rate = estimator.burn_rate()
    if estimator.data_point_count() < 2 or rate == 0.0:
        return CALCULATING
    return f"{abs(rate):.1f}%"


def status_line(percentage: Optional[float], estimator: BurnRateEstimator) -> str:
    return (
        f"{_format_pct(percentage)} {_format_charging(estimator.is_charging())} "
        f"{rate_label(estimator)}: {format_burn_rate(estimator)}"
    )


def _format_pct(value: Optional[float]) -> str:
    return f"{value:.1f}%" if value is not None else "--"


def _format_charging(charging: Optional[bool]) -> str:
    if charging is None:
        return "unknown"
    return "charging" if charging else "discharging"


def _format_elapsed(seconds: int) -> str:
    sign = "-" if seconds < 0 else "+"
    minutes, secs = divmod(abs(seconds), 60)
    hours, minutes = divmod(minutes, 60)
    return f"{sign}{hours:d}:{minutes:02d}:{secs:02d}"


def _estimates_table(
    start_time: int, rows: list[tuple[LoggedSample, int, float]]
) -> Table:
    table = Table(
        title="Estimate changes",
        show_lines=False,
        box=box.SIMPLE,
        header_style="bold",
    )
    table.add_column("Elapsed", no_wrap=True)
    table.add_column("Level", justify="right")
    table.add_column("Status", no_wrap=True)
    table.add_column("Points", justify="right")
    table.add_column("Rate %/h", justify="right")

    for sample, points, rate in rows:
        table.add_row(
            _format_elapsed(sample.time - start_time),
            _format_pct(sample.level),
            _format_charging(sample.charging),
            str(points),
            f"{rate:+.2f}",
        )
    return table


def _summary_panel(samples: list[LoggedSample], estimator: BurnRateEstimator) -> Panel:
    levels = [s.level for s in samples if s.level is not None]
    body = f"{rate_label(estimator)}: {format_burn_rate(estimator)}"
    if levels:
        body += "\n" + _sparkline(_downsample(levels, target=60))
    return Panel.fit(
        body,
        title=f"Replay ({len(samples)} samples)",
        subtitle=f"{estimator.data_point_count()} points in current window epoch",
        box=box.SIMPLE,
    )


def _downsample(values: list[float], target: int) -> list[float]:
    if len(values) <= target:
        return values
    step = len(values) / target
    return [values[int(i * step)] for i in range(target)]


def _sparkline(values: list[float]) -> str:
    chars = " .:-=+*#%@"
    min_v = min(values)
    max_v = max(values)
    span = max(max_v - min_v, 1e-9)

    def to_char(val: float) -> str:
        idx = int((val - min_v) / span * (len(chars) - 1))
        return chars[min(idx, len(chars) - 1)]

    line = "".join(to_char(v) for v in values)
    return f"{min_v:.0f}% {line} {max_v:.0f}%"


def main() -> None:
    app()


if __name__ == "__main__":  # pragma: no cover
    main()


def main_watch() -> None:  # pragma: no cover - thin Typer wrapper
    typer.run(watch_command)


def main_replay() -> None:  # pragma: no cover - thin Typer wrapper
    typer.run(replay_command)
