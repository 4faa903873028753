"""
Configuration management and loading.

Handles the YAML settings file and environment variable overrides.

Precedence (highest first):
1. Command-line flags (applied by the CLI)
2. AI_SESSION_METER_* environment variables
3. The YAML configuration file
4. Built-in defaults
"""

import ipaddress
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import Dict, Mapping, Optional, Tuple

import yaml

from ai_session_meter.core.limits import Budget, custom_budget, get_budget
from ai_session_meter.core.snapshot import SnapshotOptions

DEFAULT_CONFIG_PATH = Path.home() / ".config" / "ai-session-meter" / "config.yaml"
DEFAULT_TOKEN_FILE = Path.home() / ".config" / "ai-session-meter" / "api_token"
ENV_PREFIX = "AI_SESSION_METER_"
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


class PlanName(Enum):
    """Known subscription plans."""
    PRO = "pro"
    MAX5 = "max5"
    MAX20 = "max20"
    CUSTOM = "custom"


@dataclass(frozen=True)
class CustomLimits:
    """User-defined limits used when the plan is ``custom``."""
    tokens: int = 0
    cost: float = 0.0
    messages: int = 0

    def __post_init__(self):
        """Validate custom limits are non-negative."""
        if self.tokens < 0:
            raise ValueError("custom.tokens cannot be negative")
        if self.cost < 0:
            raise ValueError("custom.cost cannot be negative")
        if self.messages < 0:
            raise ValueError("custom.messages cannot be negative")


@dataclass(frozen=True)
class ApiConfig:
    """Settings for the optional local status endpoint."""
    enabled: bool = False
    port: int = 19840
    bind: str = "0.0.0.0"
    token: str = ""
    allow: Tuple[str, ...] = ()

    def __post_init__(self):
        """Validate port and CIDR ranges."""
        if not 1 <= self.port <= 65535:
            raise ValueError("api.port must be between 1 and 65535")
        for cidr in self.allow:
            try:
                ipaddress.ip_network(cidr, strict=False)
            except ValueError:
                raise ValueError(f"api.allow contains an invalid CIDR range: {cidr}")


@dataclass(frozen=True)
class MeterConfig:
    """Complete application configuration."""
    plan: PlanName = PlanName.MAX5
    custom: CustomLimits = field(default_factory=CustomLimits)
    data_path: Optional[str] = None
    hours_back: int = 24
    refresh_interval: int = 30
    api: ApiConfig = field(default_factory=ApiConfig)
    log_level: str = "INFO"

    def __post_init__(self):
        """Validate ranges."""
        if self.hours_back < 1:
            raise ValueError("data.hours_back must be at least 1")
        if not 1 <= self.refresh_interval <= 60:
            raise ValueError("refresh.interval_seconds must be between 1 and 60")
        if self.log_level not in LOG_LEVELS:
            raise ValueError(f"log_level must be one of: {list(LOG_LEVELS)}")

    @property
    def budget(self) -> Budget:
        """Effective budget; custom limits only apply when a token limit is set."""
        if self.plan == PlanName.CUSTOM and self.custom.tokens > 0:
            return custom_budget(self.custom.tokens, self.custom.cost, self.custom.messages)
        return get_budget(self.plan.value)

    def snapshot_options(self) -> SnapshotOptions:
        return SnapshotOptions(plan=self.plan.value, budget=self.budget)


def parse_plan(value: str) -> PlanName:
    """Parse a plan name, case-insensitively.

    Raises:
        ValueError: If the plan is unknown
    """
    try:
        return PlanName(str(value).lower())
    except ValueError:
        valid = [plan.value for plan in PlanName]
        raise ValueError(f"invalid plan: {value} (must be one of: {valid})")


def load_config(
    path: Optional[str] = None,
    environ: Optional[Mapping[str, str]] = None,
    token_file: Path = DEFAULT_TOKEN_FILE,
) -> MeterConfig:
    """Load and validate configuration from YAML and the environment.

    A missing file at the default location yields built-in defaults; an
    explicitly given path must exist. Unknown keys are rejected so typos
    never silently fall back to defaults.

    Args:
        path: Path to a YAML configuration file
        environ: Environment mapping (defaults to no overrides)
        token_file: File holding the API token when none is configured

    Returns:
        Validated MeterConfig object

    Raises:
        FileNotFoundError: If an explicit config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    config_path = Path(path) if path else DEFAULT_CONFIG_PATH
    if config_path.exists():
        config = _load_file(config_path)
    elif path:
        raise FileNotFoundError(f"Config file not found: {path}")
    else:
        config = MeterConfig()

    config = apply_env_overrides(config, environ or {})

    if not config.api.token:
        token = _read_token_file(token_file)
        if token:
            config = replace(config, api=replace(config.api, token=token))

    return config


def _load_file(config_path: Path) -> MeterConfig:
    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {config_path}: {e}")

    if not raw_config:
        raise ValueError("Configuration file is empty")
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration file must contain a mapping")

    _check_keys(raw_config, {'plan', 'custom', 'data', 'refresh', 'api', 'log_level'}, "configuration")

    kwargs = {}
    if 'plan' in raw_config:
        kwargs['plan'] = parse_plan(raw_config['plan'])

    if 'custom' in raw_config:
        custom = _section(raw_config, 'custom', {'tokens', 'cost', 'messages'})
        kwargs['custom'] = CustomLimits(
            tokens=int(custom.get('tokens', 0)),
            cost=float(custom.get('cost', 0.0)),
            messages=int(custom.get('messages', 0)),
        )

    if 'data' in raw_config:
        data = _section(raw_config, 'data', {'path', 'hours_back'})
        if 'path' in data:
            kwargs['data_path'] = str(data['path'])
        if 'hours_back' in data:
            kwargs['hours_back'] = int(data['hours_back'])

    if 'refresh' in raw_config:
        refresh = _section(raw_config, 'refresh', {'interval_seconds'})
        if 'interval_seconds' in refresh:
            kwargs['refresh_interval'] = int(refresh['interval_seconds'])

    if 'api' in raw_config:
        kwargs['api'] = _parse_api_config(
            _section(raw_config, 'api', {'enabled', 'port', 'bind', 'token', 'allow'})
        )

    if 'log_level' in raw_config:
        kwargs['log_level'] = str(raw_config['log_level']).upper()

    return MeterConfig(**kwargs)


def _parse_api_config(data: Dict) -> ApiConfig:
    allow = data.get('allow', [])
    if isinstance(allow, str):
        allow = _split_cidrs(allow)
    if not isinstance(allow, list):
        raise ValueError("'allow' in api must be a list of CIDR ranges")

    enabled = data.get('enabled', False)
    if not isinstance(enabled, bool):
        raise ValueError("'enabled' in api must be a boolean")

    return ApiConfig(
        enabled=enabled,
        port=int(data.get('port', 19840)),
        bind=str(data.get('bind', "0.0.0.0")),
        token=str(data.get('token') or ""),
        allow=tuple(str(cidr) for cidr in allow),
    )


def apply_env_overrides(config: MeterConfig, environ: Mapping[str, str]) -> MeterConfig:
    """Apply AI_SESSION_METER_API* environment variables on top of a config.

    Raises:
        ValueError: If an override has an invalid value
    """
    api = config.api

    enabled = environ.get(f"{ENV_PREFIX}API")
    if enabled is not None:
        api = replace(api, enabled=enabled.strip().lower() in ("1", "true", "yes"))

    port = environ.get(f"{ENV_PREFIX}API_PORT")
    if port:
        try:
            api = replace(api, port=int(port))
        except ValueError:
            raise ValueError(f"{ENV_PREFIX}API_PORT must be an integer, got {port!r}")

    bind = environ.get(f"{ENV_PREFIX}API_BIND")
    if bind:
        api = replace(api, bind=bind)

    token = environ.get(f"{ENV_PREFIX}API_TOKEN")
    if token:
        api = replace(api, token=token)

    allow = environ.get(f"{ENV_PREFIX}API_ALLOW")
    if allow:
        api = replace(api, allow=tuple(_split_cidrs(allow)))

    if api is config.api:
        return config
    return replace(config, api=api)


def _section(raw_config: Dict, name: str, allowed_keys: set) -> Dict:
    section = raw_config[name]
    if not isinstance(section, dict):
        raise ValueError(f"'{name}' must be a dictionary")
    _check_keys(section, allowed_keys, name)
    return section


def _check_keys(data: Dict, allowed_keys: set, path: str) -> None:
    unknown_keys = set(data.keys()) - allowed_keys
    if unknown_keys:
        raise ValueError(f"Unknown keys in {path}: {unknown_keys}")


def _split_cidrs(value: str) -> list:
    return [part.strip() for part in value.split(",") if part.strip()]


def _read_token_file(path: Path) -> str:
    try:
        return path.read_text(encoding="utf-8").strip()
    except OSError:
        return ""
