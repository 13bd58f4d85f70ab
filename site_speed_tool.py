# /// script
# requires-python = ">=3.11"
# dependencies = [
#   "httpx",
#   "pandas",
#   "rich",
# ]
# ///
"""Site Speed Measurement CLI Tool.

Reads a list of sites, queries Google PageSpeed Insights for each of them
with a fixed stagger between requests, and writes the four loading-speed
metrics of every site as a YAML document (or CSV/JSON).
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import os
import re
import sys
import tomllib
from dataclasses import asdict, dataclass
from datetime import date
from pathlib import Path

import httpx
import pandas as pd
from rich.console import Console

__version__ = "0.1.0"

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

PAGESPEED_API_URL = "https://www.googleapis.com/pagespeedonline/v5/runPagespeed"

VALID_OUTPUT_FORMATS = ("yaml", "csv", "json")

DEFAULT_DURATION = "1.5s"
DEFAULT_OUTPUT_FORMAT = "yaml"

REQUEST_TIMEOUT = 120
RETRY_DELAY = 1e-9

SITE_SEPARATOR = ",\n"
SITE_TRASH_CHARS = ('"', "\n", "\r")
DISPLAY_VALUE_SUFFIX = "\u00a0s"
DISPLAY_NUMBER_PATTERN = re.compile(r"[+-]?(?:(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?|inf|infinity|nan)", re.IGNORECASE)

REQUEST_ERRORS = (httpx.HTTPError, httpx.InvalidURL)

CONFIG_FILENAME = "site_speed.toml"
CONFIG_SEARCH_PATHS = [
    Path.cwd(),
    Path.home() / ".config" / "site-speed",
]

# Settings a config file may supply, with their built-in defaults
SETTING_DEFAULTS = {
    "api_key": None,
    "sites": None,
    "duration": DEFAULT_DURATION,
    "output": None,
    "output_format": DEFAULT_OUTPUT_FORMAT,
    "workers": None,
    "no_logs": False,
}

# Metrics: (audit_id, measurement_field, report_key)
METRICS = [
    ("first-meaningful-paint", "first_meaningful_paint", "firstMeaningfulPaint"),
    ("interactive", "time_to_interactive", "timeToInteractive"),
    ("speed-index", "speed_index", "speedIndex"),
    ("first-contentful-paint", "first_contentful_paint", "firstContentfulPaint"),
]

REPORT_COLUMNS = ["date", "url", *(report_key for _, _, report_key in METRICS)]

DURATION_UNITS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "μs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}
_DURATION_NUMBER = r"(\d+\.?\d*|\.\d+)"
_DURATION_UNIT = r"(ns|us|µs|μs|ms|s|m|h)"
DURATION_PATTERN = re.compile(rf"[-+]?(?:{_DURATION_NUMBER}{_DURATION_UNIT})+")
DURATION_TOKEN_PATTERN = re.compile(_DURATION_NUMBER + _DURATION_UNIT)


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class SiteSpeedError(Exception):
    """Raised when a PageSpeed request fails on both the first try and the retry."""


# ---------------------------------------------------------------------------
# Data Model
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Measurement:
    """Loading-speed metrics of one site, in seconds (0.0 when unavailable)."""

    date: str
    url: str
    first_meaningful_paint: float = 0.0
    time_to_interactive: float = 0.0
    speed_index: float = 0.0
    first_contentful_paint: float = 0.0

    def as_report_row(self) -> dict:
        """Return the measurement keyed by report field names, in report order."""
        values = asdict(self)
        row: dict[str, object] = {"date": self.date, "url": self.url}
        for _, field_name, report_key in METRICS:
            row[report_key] = values[field_name]
        return row


@dataclass(frozen=True)
class AuditDisplayValues:
    """The displayValue strings of the audits a Measurement is built from."""

    first_meaningful_paint: str | None = None
    time_to_interactive: str | None = None
    speed_index: str | None = None
    first_contentful_paint: str | None = None

    @classmethod
    def from_payload(cls, payload: object) -> AuditDisplayValues:
        """Read lighthouseResult.audits.<audit>.displayValue for every metric.

        Anything that is not a string at the expected place is treated as
        missing.
        """
        audits = _dig(payload, "lighthouseResult", "audits")
        values: dict[str, str | None] = {}
        for audit_id, field_name, _ in METRICS:
            display_value = _dig(audits, audit_id, "displayValue")
            values[field_name] = display_value if isinstance(display_value, str) else None
        return cls(**values)


def _dig(data: object, *keys: str) -> object:
    for key in keys:
        if not isinstance(data, dict):
            return None
        data = data.get(key)
    return data


# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------


def make_logger(no_logs: bool = False) -> Console:
    """Build the diagnostics console. With no_logs everything is discarded."""
    return Console(
        stderr=True,
        quiet=no_logs,
        markup=False,
        highlight=False,
        emoji=False,
        log_path=False,
    )


# ---------------------------------------------------------------------------
# Config & Profile
# ---------------------------------------------------------------------------


def find_config_file(search_paths: list[Path] | None = None) -> Path | None:
    """Return the first site_speed.toml found in the search paths."""
    candidates = (directory / CONFIG_FILENAME for directory in (search_paths or CONFIG_SEARCH_PATHS))
    return next((path for path in candidates if path.is_file()), None)


def read_config(config_path: Path | None) -> dict:
    if config_path is None:
        return {}
    try:
        return tomllib.loads(config_path.read_text(encoding="utf-8"))
    except (OSError, tomllib.TOMLDecodeError) as exc:
        print(f"Error: cannot load config file {config_path}: {exc}", file=sys.stderr)
        sys.exit(1)


def resolve_settings(args: argparse.Namespace, config: dict, profile_name: str | None) -> argparse.Namespace:
    """Fill in every setting the command line left unset.

    A flag given on the command line wins, then the named profile, then the
    [settings] table, then the built-in default. A missing API key finally
    falls back to PAGESPEED_API_KEY.
    """
    layers = [config.get("settings", {})]
    if profile_name:
        profiles = config.get("profiles", {})
        if profile_name not in profiles:
            available = ", ".join(profiles) or "(none)"
            print(f"Error: profile '{profile_name}' not found in config. Available: {available}", file=sys.stderr)
            sys.exit(1)
        layers.insert(0, profiles[profile_name])

    for name, default in SETTING_DEFAULTS.items():
        if getattr(args, name, None) is not None:
            continue
        setattr(args, name, next((layer[name] for layer in layers if name in layer), default))

    if not args.api_key:
        args.api_key = os.environ.get("PAGESPEED_API_KEY")
    return args


def parse_duration(text: str) -> float:
    """Parse a duration string such as "300ms", "1.5s" or "2h45m" into seconds.

    Accepts an optional sign followed by one or more number+unit pairs, with
    units ns, us (or µs), ms, s, m and h. A bare "0" is also accepted.
    """
    if text in ("0", "+0", "-0"):
        return 0.0
    if not DURATION_PATTERN.fullmatch(text):
        raise ValueError(f"invalid duration {text!r}")
    seconds = sum(float(number) * DURATION_UNITS[unit] for number, unit in DURATION_TOKEN_PATTERN.findall(text))
    return -seconds if text.startswith("-") else seconds


# ---------------------------------------------------------------------------
# CLI Argument Parser
# ---------------------------------------------------------------------------


def build_argument_parser() -> argparse.ArgumentParser:
    """Build the CLI argument parser.

    Settings default to None so that resolve_settings can tell unset flags
    from explicit ones.
    """
    parser = argparse.ArgumentParser(
        prog="site-speed",
        description="Measure site loading speed with Google PageSpeed Insights",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("-s", "--sites", dest="sites", default=None, help='(required) File with sites: one site per row, each row ending with a comma and optionally wrapped in double quotes (")')
    parser.add_argument("--api-key", dest="api_key", default=None, help="(required) Google PageSpeed API key (or set PAGESPEED_API_KEY env var)")
    parser.add_argument("-d", "--duration", dest="duration", default=None, help=f'Pause between requests, e.g. "300ms", "1.5s", "2h45m" (default: {DEFAULT_DURATION})')
    parser.add_argument("-o", "--output", dest="output", default=None, help="Output file path (default: stdout)")
    parser.add_argument("--output-format", dest="output_format", default=None, choices=VALID_OUTPUT_FORMATS, help=f"Output format: yaml, csv, or json (default: {DEFAULT_OUTPUT_FORMAT})")
    parser.add_argument("-w", "--workers", dest="workers", type=int, default=None, help="Max requests in flight (default: unbounded)")
    parser.add_argument("--no-logs", dest="no_logs", action="store_true", default=None, help="Suppress diagnostic output")
    parser.add_argument("-c", "--config", dest="config", default=None, help=f"Path to config TOML file (default: first {CONFIG_FILENAME} in ./ or ~/.config/site-speed/)")
    parser.add_argument("-p", "--profile", dest="profile", default=None, help="Named profile from config file")
    return parser


# ---------------------------------------------------------------------------
# Site List Loader
# ---------------------------------------------------------------------------


def load_sites(file_path: str) -> list[str]:
    """Load sites from a file whose records are terminated by a comma and newline.

    Quotes and line breaks are stripped from every record. Records that do
    not end with exactly ",\\n" are not split apart, so a file with CRLF line
    endings is one record. Line endings are read untranslated, and bytes that
    are not UTF-8 become U+FFFD.
    """
    try:
        with open(file_path, encoding="utf-8", errors="replace", newline="") as fh:
            content = fh.read()
    except OSError as exc:
        print(f"Error: cannot read sites file {file_path}: {exc}", file=sys.stderr)
        sys.exit(1)

    fragments = content.split(SITE_SEPARATOR)
    if fragments and fragments[-1] == "":
        fragments.pop()

    sites: list[str] = []
    for fragment in fragments:
        for trash in SITE_TRASH_CHARS:
            fragment = fragment.replace(trash, "")
        sites.append(fragment)
    return sites


# ---------------------------------------------------------------------------
# Speed Fetcher
# ---------------------------------------------------------------------------


def build_request_url(api_key: str, url: str) -> str:
    return f"{PAGESPEED_API_URL}?key={api_key}&url={url}"


def strip_display_suffix(display_value: str) -> str:
    return display_value.replace(DISPLAY_VALUE_SUFFIX, "")


def parse_display_value(display_value: str | None, report_key: str, url: str, logger: Console) -> float:
    """Turn a display value like "2.1 s" into seconds, or 0.0 with a diagnostic.

    Only a bare decimal number (optionally with exponent), inf or nan is
    accepted; surrounding whitespace and digit separators are not.
    """
    number = strip_display_suffix(display_value or "")
    if not DISPLAY_NUMBER_PATTERN.fullmatch(number):
        logger.log(f"Error while parsing {report_key} for url={url}: assigned 0")
        return 0.0
    return float(number)


def format_measurement_date(day: date) -> str:
    return f"{day.year}-{day.month}-{day.day}"


def parse_site_speed(payload: object, url: str, logger: Console, today: date | None = None) -> Measurement:
    """Build a Measurement from a decoded PageSpeed response."""
    display_values = AuditDisplayValues.from_payload(payload)
    metrics: dict[str, float] = {}
    for _, field_name, report_key in METRICS:
        metrics[field_name] = parse_display_value(getattr(display_values, field_name), report_key, url, logger)

    return Measurement(
        date=format_measurement_date(today or date.today()),
        url=url,
        **metrics,
    )


async def fetch_pagespeed_payload(
    url: str,
    api_key: str,
    client: httpx.AsyncClient,
    logger: Console,
) -> dict:
    """GET the PageSpeed result for one site and decode the JSON body.

    A transport failure or a URL httpx refuses is retried once after
    RETRY_DELAY; a second failure
    raises SiteSpeedError. HTTP error statuses are not failures here. A body
    that is not a JSON object decodes to an empty dict.
    """
    request_url = build_request_url(api_key, url)
    try:
        response = await client.get(request_url)
        failed = False
    except REQUEST_ERRORS:
        failed = True
    logger.log(f"Performed GET request to url={request_url}")

    if failed:
        logger.log(f"Error occurred while getting results for url={url}, retrying...")
        await asyncio.sleep(RETRY_DELAY)
        try:
            response = await client.get(request_url)
        except REQUEST_ERRORS as exc:
            raise SiteSpeedError(f"Error occurred while getting results for url={url}: {exc}") from exc

    try:
        payload = response.json()
    except ValueError:
        return {}
    return payload if isinstance(payload, dict) else {}


async def measure_loading_speed(
    url: str,
    api_key: str,
    client: httpx.AsyncClient,
    logger: Console,
    semaphore: asyncio.Semaphore | None = None,
) -> Measurement:
    """Fetch and parse the loading speed of a single site."""
    logger.log(f"Measuring loading speed for url={url}")
    async with semaphore or contextlib.nullcontext():
        payload = await fetch_pagespeed_payload(url, api_key, client, logger)
    measurement = parse_site_speed(payload, url, logger)
    logger.log(f"Measured load speed for url={url}")
    return measurement


# ---------------------------------------------------------------------------
# Batch Dispatcher
# ---------------------------------------------------------------------------


async def dispatch_measurements(
    sites: list[str],
    api_key: str,
    delay: float,
    logger: Console,
    workers: int | None = None,
    client: httpx.AsyncClient | None = None,
) -> list[Measurement]:
    """Measure every site, launching one task per site `delay` seconds apart.

    Results are returned in completion order. The first SiteSpeedError
    cancels the remaining tasks and propagates.
    """
    semaphore = asyncio.Semaphore(workers) if workers else None
    owns_client = client is None
    if owns_client:
        client = httpx.AsyncClient(timeout=REQUEST_TIMEOUT)

    tasks: list[asyncio.Task] = []
    try:
        for site in sites:
            tasks.append(asyncio.create_task(measure_loading_speed(site, api_key, client, logger, semaphore)))
            await asyncio.sleep(max(delay, 0.0))

        measurements: list[Measurement] = []
        for next_done in asyncio.as_completed(tasks):
            measurements.append(await next_done)
        return measurements
    finally:
        for task in tasks:
            if not task.done():
                task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        if owns_client:
            await client.aclose()


# ---------------------------------------------------------------------------
# Report Formatter
# ---------------------------------------------------------------------------


def format_measurement_yaml(measurement: Measurement) -> str:
    lines = [
        f"- date: {measurement.date}",
        f"  url: {measurement.url}",
    ]
    for _, field_name, report_key in METRICS:
        lines.append(f"  {report_key}: {getattr(measurement, field_name):f}")
    return "\n".join(lines)


def format_report(measurements: list[Measurement]) -> str:
    """Render measurements as a YAML document, one blank-line separated block each."""
    document = "---\n"
    for measurement in measurements:
        document += format_measurement_yaml(measurement) + "\n\n"
    return document


def measurements_to_dataframe(measurements: list[Measurement]) -> pd.DataFrame:
    return pd.DataFrame([m.as_report_row() for m in measurements], columns=REPORT_COLUMNS)


def render_report(measurements: list[Measurement], output_format: str = DEFAULT_OUTPUT_FORMAT) -> str:
    """Render measurements in the requested output format."""
    if output_format == "csv":
        return measurements_to_dataframe(measurements).to_csv(index=False)
    if output_format == "json":
        return measurements_to_dataframe(measurements).to_json(orient="records", indent=2)
    return format_report(measurements)


def output_site_speeds(
    measurements: list[Measurement],
    output_path: str | None = None,
    output_format: str = DEFAULT_OUTPUT_FORMAT,
) -> None:
    """Print the report to stdout, or overwrite output_path with it."""
    document = render_report(measurements, output_format)
    if not output_path:
        print(document)
        return
    try:
        Path(output_path).write_text(document, encoding="utf-8")
    except OSError as exc:
        print(f"Error: cannot write output file {output_path}: {exc}", file=sys.stderr)
        sys.exit(1)


# ---------------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------------


def main(argv: list[str] | None = None) -> None:
    parser = build_argument_parser()
    args = parser.parse_args(argv)

    config_path = Path(args.config) if args.config else find_config_file()
    config = read_config(config_path)
    args = resolve_settings(args, config, args.profile)

    if not args.sites:
        print("Error: a sites file is required (--sites).", file=sys.stderr)
        sys.exit(1)
    if not args.api_key:
        print("Error: an API key is required (--api-key or PAGESPEED_API_KEY).", file=sys.stderr)
        sys.exit(1)
    try:
        delay = parse_duration(str(args.duration))
    except ValueError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(1)
    if args.workers is not None and args.workers < 1:
        print("Error: --workers must be at least 1", file=sys.stderr)
        sys.exit(1)

    logger = make_logger(args.no_logs)
    sites = load_sites(args.sites)
    logger.log(f"Measuring {len(sites)} site(s), {args.duration} between requests")

    try:
        measurements = asyncio.run(
            dispatch_measurements(
                sites=sites,
                api_key=args.api_key,
                delay=delay,
                logger=logger,
                workers=args.workers,
            )
        )
    except SiteSpeedError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(1)

    output_site_speeds(measurements, args.output, args.output_format)


if __name__ == "__main__":
    main()
