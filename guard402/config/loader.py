"""
Configuration management and loading.

Loads budget policies from YAML files.
"""

import math
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from ..core.policies import Budget, BudgetPolicy, BudgetScope, PolicyConfig


def load_policy_config(path: str) -> PolicyConfig:
    """Load and validate policy configuration from a YAML file.

    Strict validation ensures no silent misconfigurations that could
    let spend through uncapped.

    Example:
        global:
          daily_usd_cap: 5
        services:
          api.example.com:
            daily_usd_cap: 0.03
        agents:
          research-bot:
            monthly_usd_cap: 20
        budgets:
          - id: monthly-limit
            window_ms: 2592000000
            max_usd_cents: 5000
            scope:
              subscription_id: pro-plan

    Args:
        path: Path to YAML configuration file

    Returns:
        Validated PolicyConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Policy config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if not raw_config:
        raise ValueError("Configuration file is empty")

    return parse_policy_config(raw_config)


def parse_policy_config(raw_config: Dict[str, Any]) -> PolicyConfig:
    """Validate an already-decoded configuration mapping.

    Raises:
        ValueError: If configuration is invalid
    """
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration must be a dictionary")

    allowed_top_keys = {'global', 'services', 'agents', 'budgets'}
    unknown_keys = set(raw_config.keys()) - allowed_top_keys
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    global_policy = None
    if raw_config.get('global') is not None:
        global_policy = _parse_budget_policy(raw_config['global'], "global")

    services = _parse_policy_map(raw_config.get('services'), "services")
    agents = _parse_policy_map(raw_config.get('agents'), "agents")
    budgets = _parse_budgets(raw_config.get('budgets'))

    return PolicyConfig(
        global_policy=global_policy,
        services=services,
        agents=agents,
        budgets=budgets,
    )


def _parse_policy_map(data: Any, path: str) -> Dict[str, BudgetPolicy]:
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"'{path}' must be a dictionary")
    return {
        str(name): _parse_budget_policy(policy, f"{path}.{name}")
        for name, policy in data.items()
    }


def _parse_cap(data: Dict, key: str, path: str) -> Optional[float]:
    if data.get(key) is None:
        return None
    value = data[key]
    is_number = isinstance(value, (int, float)) and not isinstance(value, bool)
    if not is_number or not math.isfinite(value) or value < 0:
        raise ValueError(f"'{key}' in {path} must be a finite number >= 0")
    return float(value)


def _parse_budget_policy(data: Any, path: str) -> BudgetPolicy:
    """Parse and validate a daily/monthly cap policy.

    Args:
        data: Policy data
        path: Path for error messages

    Returns:
        Validated BudgetPolicy

    Raises:
        ValueError: If configuration is invalid
    """
    if not isinstance(data, dict):
        raise ValueError(f"'{path}' must be a dictionary")

    allowed_keys = {'daily_usd_cap', 'monthly_usd_cap'}
    unknown_keys = set(data.keys()) - allowed_keys
    if unknown_keys:
        raise ValueError(f"Unknown keys in {path}: {unknown_keys}")

    return BudgetPolicy(
        daily_usd_cap=_parse_cap(data, 'daily_usd_cap', path),
        monthly_usd_cap=_parse_cap(data, 'monthly_usd_cap', path),
    )


def _parse_budgets(data: Any) -> List[Budget]:
    if data is None:
        return []
    if not isinstance(data, list):
        raise ValueError("'budgets' must be a list")

    budgets = []
    seen_ids = set()
    for index, item in enumerate(data):
        path = f"budgets[{index}]"
        if not isinstance(item, dict):
            raise ValueError(f"'{path}' must be a dictionary")

        allowed_keys = {'id', 'window_ms', 'max_usd_cents', 'scope'}
        unknown_keys = set(item.keys()) - allowed_keys
        if unknown_keys:
            raise ValueError(f"Unknown keys in {path}: {unknown_keys}")

        for key in ('id', 'window_ms', 'max_usd_cents'):
            if key not in item:
                raise ValueError(f"Missing required '{key}' in {path}")

        budget_id = item['id']
        if not isinstance(budget_id, str) or not budget_id:
            raise ValueError(f"'id' in {path} must be a non-empty string")
        if budget_id in seen_ids:
            raise ValueError(f"Duplicate budget id: {budget_id}")
        seen_ids.add(budget_id)

        window_ms = item['window_ms']
        if isinstance(window_ms, bool) or not isinstance(window_ms, int) or window_ms <= 0:
            raise ValueError(f"'window_ms' in {path} must be an integer > 0")

        max_cents = item['max_usd_cents']
        if isinstance(max_cents, bool) or not isinstance(max_cents, int) or max_cents < 0:
            raise ValueError(f"'max_usd_cents' in {path} must be an integer >= 0")

        budgets.append(Budget.from_window_ms(
            id=budget_id,
            window_ms=window_ms,
            max_usd_cents=max_cents,
            scope=_parse_scope(item.get('scope'), f"{path}.scope"),
        ))
    return budgets


def _parse_scope(data: Any, path: str) -> BudgetScope:
    if data is None:
        return BudgetScope()
    if not isinstance(data, dict):
        raise ValueError(f"'{path}' must be a dictionary")

    allowed_keys = {'service_id', 'agent_id', 'subscription_id'}
    unknown_keys = set(data.keys()) - allowed_keys
    if unknown_keys:
        raise ValueError(f"Unknown keys in {path}: {unknown_keys}")

    for key, value in data.items():
        if value is not None and not isinstance(value, str):
            raise ValueError(f"'{key}' in {path} must be a string")

    return BudgetScope(
        service_id=data.get('service_id'),
        agent_id=data.get('agent_id'),
        subscription_id=data.get('subscription_id'),
    )
