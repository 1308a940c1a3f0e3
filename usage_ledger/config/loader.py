"""
Configuration management and loading.

Handles the YAML config file and the equivalent environment variables.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, FrozenSet, List, Mapping, Optional

import yaml

from usage_ledger.core.periods import BudgetPeriod
from usage_ledger.core.policy import BudgetPolicy, CorruptLedgerAction, Role


DEFAULT_BASE_URL = "https://openrouter.ai/api/v1"
DEFAULT_STORAGE_DIR = "logs"
DEFAULT_TIMEOUT = 10.0


@dataclass(frozen=True)
class MeteringConfig:
    """Connection settings for the metered model API."""
    api_key: str = ""
    base_url: str = DEFAULT_BASE_URL
    timeout: float = DEFAULT_TIMEOUT
    model: str = ""

    def __post_init__(self):
        """Validate timeout is positive."""
        if self.timeout <= 0:
            raise ValueError("metering timeout must be > 0")


@dataclass(frozen=True)
class AppConfig:
    """Complete configuration."""
    policy: BudgetPolicy
    storage_dir: str = DEFAULT_STORAGE_DIR
    metering: MeteringConfig = field(default_factory=MeteringConfig)


def load_config(path: str) -> AppConfig:
    """Load and validate configuration from a YAML file.

    Strict validation ensures no silent misconfigurations: a typo in a
    budget key would otherwise leave a user without any limit.

    Args:
        path: Path to YAML configuration file

    Returns:
        Validated AppConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if not raw_config:
        raise ValueError("Configuration file is empty")
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration must be a dictionary")

    allowed_top_keys = {'budget', 'roles', 'storage', 'metering'}
    unknown_keys = set(raw_config.keys()) - allowed_top_keys
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    # Budget section is the only required one
    if 'budget' not in raw_config:
        raise ValueError("Missing required 'budget' section")
    budget_data = _section(raw_config, 'budget', {'period', 'guest', 'member'})
    for key in ('period', 'guest', 'member'):
        if key not in budget_data:
            raise ValueError(f"Missing required '{key}' in budget")

    roles_data = _section(raw_config, 'roles', {'admins', 'members', 'stats_min_role'})
    storage_data = _section(raw_config, 'storage', {'dir', 'on_corrupt_ledger'})
    metering_data = _section(raw_config, 'metering', {'api_key', 'base_url', 'timeout', 'model'})

    policy = BudgetPolicy(
        guest_budget=_parse_budget(budget_data['guest'], "budget.guest"),
        member_budget=_parse_budget(budget_data['member'], "budget.member"),
        period=_parse_period(budget_data['period']),
        admin_ids=_parse_ids(roles_data.get('admins', []), "roles.admins"),
        member_ids=_parse_ids(roles_data.get('members', []), "roles.members"),
        stats_min_role=_parse_stats_role(roles_data.get('stats_min_role', "ADMIN")),
        corrupt_ledger_action=_parse_corrupt_action(storage_data.get('on_corrupt_ledger', "allow")),
    )

    storage_dir = storage_data.get('dir', DEFAULT_STORAGE_DIR)
    if not isinstance(storage_dir, str) or not storage_dir.strip():
        raise ValueError("'storage.dir' must be a non-empty string")

    return AppConfig(
        policy=policy,
        storage_dir=storage_dir,
        metering=_parse_metering(metering_data),
    )


def load_config_from_env(environ: Mapping[str, str]) -> AppConfig:
    """Build configuration from environment variables.

    Recognized variables: BUDGET_PERIOD, GUEST_BUDGET, USER_BUDGET,
    ADMIN_IDS, ALLOWED_USER_IDS, STATS_MIN_ROLE, USAGE_DIR, API_KEY,
    BASE_URL, MODEL, API_TIMEOUT.

    Raises:
        ValueError: If a variable holds an invalid value
    """
    policy = BudgetPolicy(
        guest_budget=_parse_budget(environ.get("GUEST_BUDGET", "0"), "GUEST_BUDGET"),
        member_budget=_parse_budget(environ.get("USER_BUDGET", "0"), "USER_BUDGET"),
        period=_parse_period(environ.get("BUDGET_PERIOD", "monthly")),
        admin_ids=_parse_id_list(environ.get("ADMIN_IDS", "")),
        member_ids=_parse_id_list(environ.get("ALLOWED_USER_IDS", "")),
        stats_min_role=_parse_stats_role(environ.get("STATS_MIN_ROLE") or "ADMIN"),
        corrupt_ledger_action=_parse_corrupt_action(environ.get("ON_CORRUPT_LEDGER") or "allow"),
    )
    metering = MeteringConfig(
        api_key=environ.get("API_KEY", ""),
        base_url=(environ.get("BASE_URL") or DEFAULT_BASE_URL).rstrip("/"),
        timeout=_parse_timeout(environ.get("API_TIMEOUT", DEFAULT_TIMEOUT), "API_TIMEOUT"),
        model=environ.get("MODEL", ""),
    )
    return AppConfig(
        policy=policy,
        storage_dir=environ.get("USAGE_DIR") or DEFAULT_STORAGE_DIR,
        metering=metering,
    )


def describe_config(config: AppConfig) -> List[str]:
    """Render the configuration for startup logging, one field per line.

    The API key is masked.
    """
    policy = config.policy
    api_key = config.metering.api_key
    masked_key = f"{api_key[:4]}...{api_key[-2:]}" if len(api_key) > 8 else ("***" if api_key else "(unset)")
    return [
        f"budget_period: {policy.period.value}",
        f"guest_budget: {policy.guest_budget}",
        f"member_budget: {policy.member_budget}",
        f"admin_ids: {', '.join(sorted(policy.admin_ids)) or '(none)'}",
        f"member_ids: {', '.join(sorted(policy.member_ids)) or '(none)'}",
        f"stats_min_role: {policy.stats_min_role.value}",
        f"on_corrupt_ledger: {policy.corrupt_ledger_action.value}",
        f"storage_dir: {config.storage_dir}",
        f"base_url: {config.metering.base_url}",
        f"model: {config.metering.model or '(unset)'}",
        f"timeout: {config.metering.timeout}",
        f"api_key: {masked_key}",
    ]


def _section(raw_config: Dict, name: str, allowed_keys: set) -> Dict[str, Any]:
    """Return an optional config section after checking its keys.

    Raises:
        ValueError: If the section is not a dictionary or has unknown keys
    """
    data = raw_config.get(name)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"'{name}' must be a dictionary")
    unknown_keys = set(data.keys()) - allowed_keys
    if unknown_keys:
        raise ValueError(f"Unknown {name} keys: {unknown_keys}")
    return data


def _parse_budget(value: Any, path: str) -> float:
    if isinstance(value, bool):
        raise ValueError(f"'{path}' must be a number")
    try:
        return float(value)
    except (TypeError, ValueError):
        raise ValueError(f"'{path}' must be a number, got {value!r}")


def _parse_timeout(value: Any, path: str) -> float:
    timeout = _parse_budget(value, path)
    if timeout <= 0:
        raise ValueError(f"'{path}' must be > 0")
    return timeout


def _parse_period(value: Any) -> BudgetPeriod:
    if value is None:
        raise ValueError("budget period must be set")
    return BudgetPeriod.parse(str(value))


def _parse_stats_role(value: Any) -> Role:
    if not isinstance(value, str):
        raise ValueError("'stats_min_role' must be a string")
    try:
        role = Role(value.strip().upper())
    except ValueError:
        role = None
    if role not in (Role.ADMIN, Role.USER):
        raise ValueError(f"'stats_min_role' must be one of: ['ADMIN', 'USER'], got {value!r}")
    return role


def _parse_corrupt_action(value: Any) -> CorruptLedgerAction:
    if not isinstance(value, str):
        raise ValueError("'on_corrupt_ledger' must be a string")
    try:
        return CorruptLedgerAction(value.strip().lower())
    except ValueError:
        valid = [action.value for action in CorruptLedgerAction]
        raise ValueError(f"'on_corrupt_ledger' must be one of: {valid}")


def _parse_ids(values: Any, path: str) -> FrozenSet[str]:
    """Parse a YAML list of user ids. Numeric ids are kept as their string form."""
    if values is None:
        return frozenset()
    if not isinstance(values, list):
        raise ValueError(f"'{path}' must be a list")
    ids = set()
    for value in values:
        if isinstance(value, bool) or not isinstance(value, (str, int)):
            raise ValueError(f"'{path}' entries must be strings or integers, got {value!r}")
        text = str(value).strip()
        if not text:
            raise ValueError(f"'{path}' entries cannot be empty")
        ids.add(text)
    return frozenset(ids)


def _parse_id_list(value: Optional[str]) -> FrozenSet[str]:
    """Parse a comma-separated id list, skipping blank items."""
    if not value:
        return frozenset()
    return frozenset(item.strip() for item in value.split(",") if item.strip())


def _parse_metering(data: Dict[str, Any]) -> MeteringConfig:
    api_key = data.get('api_key', "") or ""
    base_url = data.get('base_url', DEFAULT_BASE_URL) or DEFAULT_BASE_URL
    model = data.get('model', "") or ""
    for key, value in (('api_key', api_key), ('base_url', base_url), ('model', model)):
        if not isinstance(value, str):
            raise ValueError(f"'metering.{key}' must be a string")
    return MeteringConfig(
        api_key=api_key,
        base_url=base_url.rstrip("/"),
        timeout=_parse_timeout(data.get('timeout', DEFAULT_TIMEOUT), "metering.timeout"),
        model=model,
    )
