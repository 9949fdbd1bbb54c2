"""Pool configuration: every limit, cooldown and batch constant in one place.

Loaded from config/pool_params.json. The JSON file is grouped into five
sections (amounts, quotas, cooldowns_seconds, distribution, retries);
any key missing from the file keeps its default below.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, fields
from datetime import timedelta
from decimal import Decimal
from pathlib import Path
from typing import Any


PARAMS_FILENAME = "pool_params.json"

# JSON section -> {JSON key: PoolConfig field}
_SECTIONS: dict[str, dict[str, str]] = {
    "amounts": {
        "MIN_CONTRIBUTION": "min_contribution",
        "MAX_CONTRIBUTION": "max_contribution",
        "MAX_DAILY_CONTRIBUTION": "max_daily_contribution",
        "MIN_WITHDRAWAL": "min_withdrawal",
        "MIN_DISTRIBUTABLE": "min_distributable",
        "AMOUNT_UNIT": "amount_unit",
    },
    "quotas": {
        "MAX_TRANSACTIONS_PER_DAY": "max_transactions_per_day",
        "MAX_DAILY_RECEIVER_ENTRIES": "max_daily_receiver_entries",
        "MAX_DAILY_RECEIVER_EXITS": "max_daily_receiver_exits",
        "MAX_DAILY_WITHDRAWALS": "max_daily_withdrawals",
    },
    "cooldowns_seconds": {
        "ACTION_COOLDOWN": "action_cooldown_seconds",
        "RECEIVER_POOL_COOLDOWN": "receiver_pool_cooldown_seconds",
        "WITHDRAWAL_COOLDOWN": "withdrawal_cooldown_seconds",
        "RETRY_COOLDOWN": "retry_cooldown_seconds",
    },
    "distribution": {
        "DAY_LENGTH_SECONDS": "day_length_seconds",
        "WINDOW_START_SECONDS": "window_start_seconds",
        "WINDOW_LENGTH_SECONDS": "window_length_seconds",
        "BATCH_SIZE": "batch_size",
        "MAX_RECEIVERS": "max_receivers",
        "PAYOUT_RESOURCE_CEILING": "payout_resource_ceiling",
        "DISTRIBUTION_REQUIRES_ROLE": "distribution_requires_role",
        "WINDOW_OVERRIDE": "window_override",
    },
    "retries": {
        "MAX_RETRIES": "max_retries",
        "MAX_AUTO_RETRIES_PER_CALL": "max_auto_retries_per_call",
        "PREPASS_MAX_RETRIES": "prepass_max_retries",
    },
}


@dataclass(frozen=True)
class PoolConfig:
    """Immutable pool parameters.

    Monetary values are Decimal; durations are whole seconds. The
    payout resource ceiling is expressed in transport cost units and is
    deliberately far too small for a receiver to run anything heavy.
    """

    min_contribution: Decimal = Decimal("0.001")
    max_contribution: Decimal = Decimal("1")
    max_daily_contribution: Decimal = Decimal("5")
    min_withdrawal: Decimal = Decimal("0.001")
    min_distributable: Decimal = Decimal("0.001")
    amount_unit: Decimal = Decimal("0.000000000000000001")

    max_transactions_per_day: int = 10
    max_daily_receiver_entries: int = 2
    max_daily_receiver_exits: int = 1
    max_daily_withdrawals: int = 3

    action_cooldown_seconds: int = 3600
    receiver_pool_cooldown_seconds: int = 1800
    withdrawal_cooldown_seconds: int = 7200
    retry_cooldown_seconds: int = 3600

    day_length_seconds: int = 86400
    window_start_seconds: int = 82800
    window_length_seconds: int = 3600
    batch_size: int = 25
    max_receivers: int = 1000
    payout_resource_ceiling: int = 2300
    distribution_requires_role: bool = True
    window_override: bool = False

    max_retries: int = 5
    max_auto_retries_per_call: int = 5
    prepass_max_retries: int = 5

    def __post_init__(self) -> None:
        if self.min_contribution <= Decimal("0"):
            raise ValueError("min_contribution must be positive")
        if self.max_contribution < self.min_contribution:
            raise ValueError("max_contribution must be >= min_contribution")
        if self.max_daily_contribution < self.max_contribution:
            raise ValueError("max_daily_contribution must be >= max_contribution")
        if self.amount_unit <= Decimal("0"):
            raise ValueError("amount_unit must be positive")
        if self.day_length_seconds <= 0:
            raise ValueError("day_length_seconds must be positive")
        if not 0 <= self.window_start_seconds < self.day_length_seconds:
            raise ValueError("window_start_seconds must fall inside the day")
        if self.window_length_seconds <= 0:
            raise ValueError("window_length_seconds must be positive")
        if self.window_start_seconds + self.window_length_seconds > self.day_length_seconds:
            raise ValueError("distribution window must close before the day ends")
        if self.batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        if self.max_receivers < 1:
            raise ValueError("max_receivers must be at least 1")
        if self.max_auto_retries_per_call < 1:
            raise ValueError("max_auto_retries_per_call must be at least 1")

    @property
    def action_cooldown(self) -> timedelta:
        return timedelta(seconds=self.action_cooldown_seconds)

    @property
    def receiver_pool_cooldown(self) -> timedelta:
        return timedelta(seconds=self.receiver_pool_cooldown_seconds)

    @property
    def withdrawal_cooldown(self) -> timedelta:
        return timedelta(seconds=self.withdrawal_cooldown_seconds)

    @property
    def retry_cooldown(self) -> timedelta:
        return timedelta(seconds=self.retry_cooldown_seconds)

    @classmethod
    def from_dict(cls, params: dict[str, Any]) -> PoolConfig:
        """Build a config from the sectioned JSON layout.

        Unknown sections or keys are rejected so that a typo in the
        params file cannot silently fall back to a default.
        """
        types = {f.name: f.type for f in fields(cls)}
        kwargs: dict[str, Any] = {}
        for section, values in params.items():
            mapping = _SECTIONS.get(section)
            if mapping is None:
                raise ValueError(f"Unknown config section: {section}")
            for key, raw in values.items():
                name = mapping.get(key)
                if name is None:
                    raise ValueError(f"Unknown key in [{section}]: {key}")
                kwargs[name] = _coerce(raw, types[name])
        return cls(**kwargs)

    @classmethod
    def from_config_dir(cls, config_dir: Path) -> PoolConfig:
        """Load from <config_dir>/pool_params.json."""
        params = json.loads((config_dir / PARAMS_FILENAME).read_text())
        return cls.from_dict(params)

    def to_dict(self) -> dict[str, Any]:
        """Sectioned, JSON-serialisable view (inverse of from_dict)."""
        out: dict[str, Any] = {}
        for section, mapping in _SECTIONS.items():
            out[section] = {}
            for key, name in mapping.items():
                value = getattr(self, name)
                out[section][key] = str(value) if isinstance(value, Decimal) else value
        return out


def _coerce(raw: Any, type_name: Any) -> Any:
    # Field types are strings under `from __future__ import annotations`.
    if type_name == "Decimal":
        return Decimal(str(raw))
    if type_name == "bool":
        if not isinstance(raw, bool):
            raise ValueError(f"Expected boolean, got {raw!r}")
        return raw
    if type_name == "int":
        if isinstance(raw, bool) or int(raw) != raw:
            raise ValueError(f"Expected integer, got {raw!r}")
        return int(raw)
    return raw
