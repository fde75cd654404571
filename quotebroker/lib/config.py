"""
Broker configuration.

Loads broker.yaml from a config directory. If no config file exists,
returns defaults matching the marketplace's standing rules:

- Providers may quote up to 50% above the client's budget.
- A quote is valid for 7 days unless the provider says otherwise.
- A provider may have at most 20 quotes pending at once.
"""

import logging
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import yaml

from quotebroker.lib import validate

logger = logging.getLogger(__name__)


CONFIG_FILENAME = "broker.yaml"


def _default_lock_dir() -> str:
    return str(Path(tempfile.gettempdir()) / "quotebroker" / "locks")


DEFAULT_CONFIG = {
    "budget_tolerance": 1.5,
    "quote_validity_days": 7,
    "max_pending_quotes_per_provider": 20,
    "min_amount": 10,
    "max_amount": 10000,
    "accept_request_status": "in_negotiation",
    "lock_timeout": 30.0,
    "lock_poll_interval": 0.05,
}


@dataclass
class BrokerConfig:
    """Engine configuration from broker.yaml."""
    budget_tolerance: float = DEFAULT_CONFIG["budget_tolerance"]
    quote_validity_days: int = DEFAULT_CONFIG["quote_validity_days"]
    max_pending_quotes_per_provider: int = DEFAULT_CONFIG["max_pending_quotes_per_provider"]
    min_amount: float = DEFAULT_CONFIG["min_amount"]
    max_amount: float = DEFAULT_CONFIG["max_amount"]
    accept_request_status: str = DEFAULT_CONFIG["accept_request_status"]  # Request status after an accept
    lock_dir: Path = field(default_factory=lambda: Path(_default_lock_dir()))
    lock_timeout: float = DEFAULT_CONFIG["lock_timeout"]  # Seconds
    lock_poll_interval: float = DEFAULT_CONFIG["lock_poll_interval"]  # Seconds


def load_broker_config(config_dir: Optional[Path]) -> BrokerConfig:
    """Load broker.yaml and return BrokerConfig.

    If config_dir is None or the file doesn't exist, returns defaults.
    Unparsable YAML is logged and ignored. Well-formed YAML with bad values
    raises ValidationError rather than silently running with defaults.
    """
    if config_dir is None:
        return BrokerConfig()

    config_path = config_dir / CONFIG_FILENAME
    if not config_path.exists():
        return BrokerConfig()

    try:
        data = yaml.safe_load(config_path.read_text())
    except yaml.YAMLError as e:
        logger.warning(f"Failed to parse {config_path}: {e}")
        return BrokerConfig()

    if not data:
        return BrokerConfig()

    validate.validate(data, "broker_config")

    if data.get("min_amount", DEFAULT_CONFIG["min_amount"]) > data.get(
        "max_amount", DEFAULT_CONFIG["max_amount"]
    ):
        raise validate.ValidationError(
            "broker_config", "min_amount must not exceed max_amount", "min_amount"
        )

    values = {**DEFAULT_CONFIG, **data}
    values["lock_dir"] = Path(values.get("lock_dir") or _default_lock_dir())
    return BrokerConfig(**values)
