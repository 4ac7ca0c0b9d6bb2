"""Configuration: daemon settings from /etc/default/nvidia-fan-control and CLI
arguments, and the fan policy document (JSON or YAML)."""

import argparse
import json
import logging
import math
import os
from dataclasses import dataclass

import yaml
from dotenv import dotenv_values

from nvidia_fan_control.policy import DEFAULT_SAMPLE_INTERVAL, PolicyTable, TemperatureBand

DEFAULT_CONFIG_PATH = "/etc/default/nvidia-fan-control"
DEFAULT_POLICY_PATH = "/etc/nvidia-fan-control/config.json"
VALID_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")

_BAND_FIELDS = ("min_temperature", "max_temperature", "fan_speed", "hysteresis")

log = logging.getLogger(__name__)


def _parse_cli_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(
        prog="nvidia-fan-control",
        description="Temperature-banded fan control for NVIDIA GPUs",
    )
    parser.add_argument(
        "--config",
        help="Fan policy file, JSON or YAML (overrides config file)",
    )
    parser.add_argument(
        "--poll-interval",
        type=float,
        help="Temperature polling interval in seconds (overrides time_to_update)",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        default=None,
        help="Enable debug logging",
    )
    parser.add_argument(
        "--log-level",
        choices=VALID_LOG_LEVELS,
        help="Log level (overrides config file)",
    )
    parser.add_argument(
        "--log-file",
        help="Append log records to this file instead of stderr",
    )
    parser.add_argument(
        "--no-restore",
        action="store_true",
        default=None,
        help="Leave fans in manual mode on exit",
    )
    return parser.parse_args(argv)


@dataclass
class Config:
    """Daemon settings."""

    policy_path: str = DEFAULT_POLICY_PATH
    poll_interval: float | None = None
    log_level: str = "INFO"
    debug: bool = False
    log_file: str | None = None
    restore_on_exit: bool = True

    def __post_init__(self) -> None:
        if not self.policy_path:
            raise ValueError("Policy path must not be empty")

        if self.poll_interval is not None and not (
            math.isfinite(self.poll_interval) and self.poll_interval > 0
        ):
            raise ValueError(f"Poll interval must be positive, got {self.poll_interval}")

        if self.debug:
            self.log_level = "DEBUG"

        if self.log_level not in VALID_LOG_LEVELS:
            raise ValueError(
                f"Invalid log level '{self.log_level}'. "
                f"Must be one of: {', '.join(VALID_LOG_LEVELS)}"
            )

    @classmethod
    def load(cls, argv: list[str] | None = None) -> "Config":
        """Load settings from environment file, env vars, and CLI args.

        Priority (highest to lowest):
        1. CLI arguments
        2. Environment variables (set by systemd EnvironmentFile)
        3. /etc/default/nvidia-fan-control file
        4. Dataclass defaults
        """
        file_env = {k: v for k, v in dotenv_values(DEFAULT_CONFIG_PATH).items() if v is not None}

        def env(key: str) -> str | None:
            if key in os.environ:
                return os.environ[key]
            return file_env.get(key)

        kwargs: dict[str, object] = {}

        if (v := env("CONFIG_PATH")) is not None:
            kwargs["policy_path"] = v

        if (v := env("POLL_INTERVAL")) is not None:
            try:
                kwargs["poll_interval"] = float(v)
            except ValueError:
                pass

        if (v := env("LOG_LEVEL")) is not None:
            kwargs["log_level"] = v.upper()

        if (v := env("DEBUG")) is not None:
            kwargs["debug"] = v.lower() in ("true", "1", "yes")

        if (v := env("LOG_FILE")) is not None:
            kwargs["log_file"] = v or None

        if (v := env("RESTORE_ON_EXIT")) is not None:
            kwargs["restore_on_exit"] = v.lower() not in ("false", "0", "no")

        # CLI arguments override everything
        args = _parse_cli_args(argv)

        if args.config is not None:
            kwargs["policy_path"] = args.config

        if args.poll_interval is not None:
            kwargs["poll_interval"] = args.poll_interval

        if args.log_level is not None:
            kwargs["log_level"] = args.log_level

        if args.debug is True:
            kwargs["debug"] = True

        if args.log_file is not None:
            kwargs["log_file"] = args.log_file

        if args.no_restore is True:
            kwargs["restore_on_exit"] = False

        return cls(**kwargs)

    def setup_logging(self) -> None:
        """Configure logging based on this config."""
        logging.basicConfig(
            level=getattr(logging, self.log_level),
            format="[%(asctime)s] [%(levelname)s] [%(name)s] %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
            filename=self.log_file,
        )


def _sample_interval(raw: object, logger: logging.Logger) -> float:
    """Validate time_to_update, falling back to the default with a warning."""
    if (
        isinstance(raw, (int, float))
        and not isinstance(raw, bool)
        and math.isfinite(raw)
        and raw > 0
    ):
        return float(raw)
    logger.warning(
        "time_to_update (%r) is invalid, defaulting to %.0f seconds",
        raw, DEFAULT_SAMPLE_INTERVAL,
    )
    return DEFAULT_SAMPLE_INTERVAL


def _reject_constant(name: str) -> None:
    raise ValueError(f"{name} is not a valid JSON number")


def _parse_band(index: int, raw: object) -> TemperatureBand:
    if not isinstance(raw, dict):
        raise ValueError(f"temperature_ranges[{index}] must be a mapping, got {raw!r}")
    missing = [name for name in _BAND_FIELDS if name not in raw]
    if missing:
        raise ValueError(f"temperature_ranges[{index}] is missing {', '.join(missing)}")
    try:
        return TemperatureBand(**{name: raw[name] for name in _BAND_FIELDS})
    except ValueError as e:
        raise ValueError(f"temperature_ranges[{index}]: {e}") from e


def parse_policy(document: object, logger: logging.Logger | None = None) -> PolicyTable:
    """Build a PolicyTable from an already parsed policy document."""
    logger = logger or log

    if not isinstance(document, dict):
        raise ValueError("Policy document must be a mapping")

    ranges = document.get("temperature_ranges")
    if not isinstance(ranges, list) or not ranges:
        raise ValueError("temperature_ranges must be a non-empty list")

    table = PolicyTable(
        bands=tuple(_parse_band(i, raw) for i, raw in enumerate(ranges)),
        sample_interval=_sample_interval(document.get("time_to_update"), logger),
    )

    for problem in table.irregularities():
        logger.warning("Fan policy: %s", problem)

    return table


def load_policy(path: str, logger: logging.Logger | None = None) -> PolicyTable:
    """Read and validate the fan policy file (JSON by extension, YAML otherwise).

    Raises OSError if the file cannot be read and ValueError if it cannot be
    parsed or fails validation.
    """
    logger = logger or log
    with open(path) as f:
        try:
            if path.endswith(".json"):
                document = json.load(f, parse_constant=_reject_constant)
            else:
                document = yaml.safe_load(f)
        except (ValueError, yaml.YAMLError) as e:
            raise ValueError(f"Cannot parse {path}: {e}") from e

    table = parse_policy(document, logger)
    logger.info(
        "Configuration loaded from %s: %d temperature bands, update every %.1fs",
        path, len(table.bands), table.sample_interval,
    )
    return table
