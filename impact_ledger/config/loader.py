"""
Configuration management and loading.

Handles ledger settings read from a YAML file.
"""

from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Dict

import yaml

from impact_ledger.core.impact import DONATION_RATE, RATES_VERSION, TREES_PER_CURRENCY_UNIT, ImpactRates
from impact_ledger.storage.db import DEFAULT_DB_PATH

DEFAULT_SYSTEM_PROMPT = (
    "You are a helpful AI assistant whose usage helps plant trees. "
    "Be friendly and concise, and occasionally mention how the user's "
    "questions contribute to reforestation."
)

# Longest chat message accepted, in characters
DEFAULT_MAX_MESSAGE_CHARS = 4000

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


@dataclass(frozen=True)
class DatabaseConfig:
    """Where the ledger store lives."""
    path: str = DEFAULT_DB_PATH

    def __post_init__(self):
        """Validate the database path is usable."""
        if not self.path or not self.path.strip():
            raise ValueError("database path cannot be empty")


@dataclass(frozen=True)
class CompletionConfig:
    """Settings for calls to the AI completion service."""
    timeout_seconds: float = 30.0
    system_prompt: str = DEFAULT_SYSTEM_PROMPT
    expected_output_tokens: int = 150
    max_message_chars: int = DEFAULT_MAX_MESSAGE_CHARS

    def __post_init__(self):
        """Validate timeout and estimate sizes."""
        if self.timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be > 0")
        if self.timeout_seconds > 120:
            raise ValueError("timeout_seconds must be <= 120")
        if self.expected_output_tokens < 0:
            raise ValueError("expected_output_tokens cannot be negative")
        if self.max_message_chars <= 0:
            raise ValueError("max_message_chars must be > 0")


@dataclass(frozen=True)
class LedgerConfig:
    """Complete ledger configuration."""
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    rates: ImpactRates = field(default_factory=ImpactRates)
    completion: CompletionConfig = field(default_factory=CompletionConfig)
    log_level: str = "INFO"


def default_config() -> LedgerConfig:
    """Configuration used when no file is given."""
    return LedgerConfig()


def load_config(path: str) -> LedgerConfig:
    """Load and validate ledger configuration from YAML file.

    Strict validation ensures no silent misconfiguration of the rates that
    turn money into trees.

    Args:
        path: Path to YAML configuration file

    Returns:
        Validated LedgerConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Ledger config file not found: {path}")

    # Load YAML content
    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if not raw_config:
        raise ValueError("Configuration file is empty")
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration must be a mapping")

    # Validate top-level structure
    allowed_top_keys = {'database', 'impact', 'completion', 'logging'}
    unknown_keys = set(raw_config.keys()) - allowed_top_keys
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    # Impact rates are the one section that must be explicit
    if 'impact' not in raw_config:
        raise ValueError("Missing required 'impact' section")

    database_data = _section(raw_config, 'database', {'path'})
    impact_data = _section(raw_config, 'impact', {'donation_rate', 'trees_per_currency_unit', 'rates_version'})
    completion_data = _section(
        raw_config, 'completion',
        {'timeout_seconds', 'system_prompt', 'expected_output_tokens', 'max_message_chars'}
    )
    logging_data = _section(raw_config, 'logging', {'level'})

    database = DatabaseConfig(path=str(database_data.get('path', DEFAULT_DB_PATH)))

    rates = _parse_rates(impact_data)

    timeout = completion_data.get('timeout_seconds', 30.0)
    if isinstance(timeout, bool) or not isinstance(timeout, (int, float)):
        raise ValueError("'timeout_seconds' in completion must be a number")
    expected_output = completion_data.get('expected_output_tokens', 150)
    if isinstance(expected_output, bool) or not isinstance(expected_output, int):
        raise ValueError("'expected_output_tokens' in completion must be an integer")
    max_chars = completion_data.get('max_message_chars', DEFAULT_MAX_MESSAGE_CHARS)
    if isinstance(max_chars, bool) or not isinstance(max_chars, int):
        raise ValueError("'max_message_chars' in completion must be an integer")
    system_prompt = completion_data.get('system_prompt', DEFAULT_SYSTEM_PROMPT)
    if not isinstance(system_prompt, str) or not system_prompt.strip():
        raise ValueError("'system_prompt' in completion must be a non-empty string")

    completion = CompletionConfig(
        timeout_seconds=float(timeout),
        system_prompt=system_prompt,
        expected_output_tokens=expected_output,
        max_message_chars=max_chars
    )

    level = logging_data.get('level', 'INFO')
    if not isinstance(level, str) or level.upper() not in LOG_LEVELS:
        raise ValueError(f"'level' in logging must be one of: {list(LOG_LEVELS)}")

    return LedgerConfig(
        database=database,
        rates=rates,
        completion=completion,
        log_level=level.upper()
    )


def _section(raw_config: Dict, name: str, allowed_keys: set) -> Dict[str, Any]:
    """Return a validated sub-section, or {} when it is absent."""
    data = raw_config.get(name)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"'{name}' must be a dictionary")
    unknown_keys = set(data.keys()) - allowed_keys
    if unknown_keys:
        raise ValueError(f"Unknown keys in {name}: {unknown_keys}")
    return data


def _parse_rates(data: Dict) -> ImpactRates:
    """Parse and validate impact rates.

    Rates are read through str() so that 0.4 in YAML becomes exactly
    Decimal("0.4") rather than the nearest binary float.

    Raises:
        ValueError: If a rate is missing, non-numeric or out of range
    """
    for key in ('donation_rate', 'trees_per_currency_unit', 'rates_version'):
        if key not in data:
            raise ValueError(f"Missing required '{key}' in impact")

    donation_rate = _decimal(data['donation_rate'], 'donation_rate')
    trees_per_unit = _decimal(data['trees_per_currency_unit'], 'trees_per_currency_unit')

    if not Decimal("0") < donation_rate <= Decimal("1"):
        raise ValueError("'donation_rate' in impact must be > 0 and <= 1")
    if trees_per_unit <= 0:
        raise ValueError("'trees_per_currency_unit' in impact must be > 0")

    version = data['rates_version']
    if not isinstance(version, str) or not version.strip():
        raise ValueError("'rates_version' in impact must be a non-empty string")

    # Changing a rate without changing its version would blur history
    if (donation_rate, trees_per_unit) != (DONATION_RATE, TREES_PER_CURRENCY_UNIT) \
            and version == RATES_VERSION:
        raise ValueError(
            f"'rates_version' must change from {RATES_VERSION} when rates differ from the defaults"
        )

    return ImpactRates(
        donation_rate=donation_rate,
        trees_per_currency_unit=trees_per_unit,
        version=version.strip()
    )


def _decimal(value: Any, name: str) -> Decimal:
    if isinstance(value, bool) or not isinstance(value, (int, float, str)):
        raise ValueError(f"'{name}' in impact must be a number")
    try:
        return Decimal(str(value))
    except InvalidOperation:
        raise ValueError(f"'{name}' in impact must be a number")
