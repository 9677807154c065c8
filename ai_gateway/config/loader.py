"""
Configuration management and loading.

Handles the provider route table, the monthly budget policy and the
gateway settings file. Loaders validate strictly: unknown keys and
malformed values are rejected instead of silently ignored.
"""

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple
from urllib.parse import urlparse

import yaml

from ai_gateway.core.impact import ImpactTable, SeverityImpact
from ai_gateway.core.sandbox import SandboxLimits
from ai_gateway.core.token_counter import TokenFieldMap, TokenPath
from ai_gateway.core.verification import ExecutionThresholds, VerificationSettings
from ai_gateway.storage.models import Category, Severity

logger = logging.getLogger(__name__)

DEFAULT_SETTINGS_PATH = "gateway.yaml"
DEFAULT_PROVIDERS_PATH = "toknxr.config.json"
DEFAULT_POLICY_PATH = "toknxr.policy.json"
DEFAULT_INTERACTION_LOG = "interactions.log"
DEFAULT_ROTATE_BYTES = 5 * 1024 * 1024


def _read_yaml(path: str, label: str) -> Any:
    """Read a YAML document.

    Raises:
        FileNotFoundError: If the file doesn't exist
        yaml.YAMLError: If the content is not valid YAML
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"{label} file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            return yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in {label} file {path}: {e}")


def _read_document(path: str, label: str) -> Any:
    """Read a provider or policy file.

    ``.json`` files are parsed as strict JSON; anything else as YAML.

    Raises:
        FileNotFoundError: If the file doesn't exist
        ValueError: If a JSON file is malformed
        yaml.YAMLError: If a YAML file is malformed
    """
    config_path = Path(path)
    if config_path.suffix.lower() != ".json":
        return _read_yaml(path, label)
    if not config_path.exists():
        raise FileNotFoundError(f"{label} file not found: {path}")

    text = config_path.read_text(encoding='utf-8')
    if not text.strip():
        return None
    try:
        return json.loads(text)
    except json.JSONDecodeError as e:
        raise ValueError(f"Invalid JSON in {label} file {path}: {e}")


def _check_keys(data: Dict, allowed: set, where: str) -> None:
    unknown_keys = set(data.keys()) - allowed
    if unknown_keys:
        raise ValueError(f"Unknown keys in {where}: {unknown_keys}")


def _require_mapping(value: Any, where: str) -> Dict:
    if not isinstance(value, dict):
        raise ValueError(f"'{where}' must be a dictionary")
    return value


def _number(value: Any, where: str, minimum: float = 0.0) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"'{where}' must be a number")
    if value < minimum:
        raise ValueError(f"'{where}' must be >= {minimum:g}")
    return float(value)


# ---------------------------------------------------------------------------
# Provider routes
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ProviderRoute:
    """One upstream AI provider reachable under a route prefix."""
    name: str
    route_prefix: str
    target_url: str
    token_mapping: TokenFieldMap
    api_key_env_var: Optional[str] = None
    auth_header: str = "Authorization"
    auth_scheme: Optional[str] = None
    default_model: Optional[str] = None

    def target_for(self, path: str, query: str = "") -> str:
        """Upstream URL for an inbound path under this route."""
        # a root prefix keeps the whole path
        rest = path if self.route_prefix == "/" else path[len(self.route_prefix):]
        url = self.target_url.rstrip("/") + rest
        return f"{url}?{query}" if query else url


def _parse_provider(data: Any, index: int) -> ProviderRoute:
    where = f"providers[{index}]"
    data = _require_mapping(data, where)
    _check_keys(data, {
        'name', 'routePrefix', 'targetUrl', 'apiKeyEnvVar', 'authHeader',
        'authScheme', 'defaultModel', 'tokenMapping',
    }, where)

    for required in ('name', 'routePrefix', 'targetUrl', 'tokenMapping'):
        if required not in data:
            raise ValueError(f"Missing required '{required}' in {where}")

    name = data['name']
    if not isinstance(name, str) or not name.strip():
        raise ValueError(f"'name' in {where} must be a non-empty string")

    prefix = data['routePrefix']
    if not isinstance(prefix, str) or not prefix.startswith("/"):
        raise ValueError(f"'routePrefix' in {where} must start with '/'")

    target = data['targetUrl']
    parsed = urlparse(target) if isinstance(target, str) else None
    if parsed is None or parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise ValueError(f"'targetUrl' in {where} must be an http(s) URL")

    optional_strings = {}
    for key in ('apiKeyEnvVar', 'authHeader', 'authScheme', 'defaultModel'):
        value = data.get(key)
        if value is not None and (not isinstance(value, str) or not value.strip()):
            raise ValueError(f"'{key}' in {where} must be a non-empty string")
        optional_strings[key] = value

    mapping = _require_mapping(data['tokenMapping'], f"{where}.tokenMapping")
    _check_keys(mapping, {'prompt', 'completion', 'total'}, f"{where}.tokenMapping")
    for required in ('prompt', 'completion'):
        if required not in mapping:
            raise ValueError(f"Missing required '{required}' in {where}.tokenMapping")
    try:
        token_mapping = TokenFieldMap(
            prompt=TokenPath.parse(mapping['prompt']),
            completion=TokenPath.parse(mapping['completion']),
            total=TokenPath.parse(mapping['total']) if mapping.get('total') else None,
        )
    except ValueError as e:
        raise ValueError(f"Invalid token mapping in {where}: {e}")

    return ProviderRoute(
        name=name.strip(),
        route_prefix=prefix.rstrip("/") or "/",
        target_url=target,
        token_mapping=token_mapping,
        api_key_env_var=optional_strings['apiKeyEnvVar'],
        auth_header=optional_strings['authHeader'] or "Authorization",
        auth_scheme=optional_strings['authScheme'],
        default_model=optional_strings['defaultModel'],
    )


def load_provider_config(path: str) -> List[ProviderRoute]:
    """Load and validate the provider route table.

    Args:
        path: Path to the provider configuration file

    Returns:
        Validated provider routes, in file order

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If a YAML file cannot be parsed
        ValueError: If a JSON file cannot be parsed or configuration is invalid
    """
    raw_config = _read_document(path, "Provider config")
    if not raw_config:
        raise ValueError("Provider configuration file is empty")
    raw_config = _require_mapping(raw_config, "provider config")
    _check_keys(raw_config, {'providers'}, "provider config")

    providers = raw_config.get('providers')
    if not isinstance(providers, list) or not providers:
        raise ValueError("'providers' must be a non-empty list")

    routes = [_parse_provider(item, index) for index, item in enumerate(providers)]

    seen = set()
    for route in routes:
        if route.route_prefix in seen:
            raise ValueError(f"Duplicate routePrefix: {route.route_prefix}")
        seen.add(route.route_prefix)
    return routes


def match_route(routes: Sequence[ProviderRoute], path: str) -> Optional[ProviderRoute]:
    """Route with the longest prefix of the inbound path, if any."""
    best = None
    for route in routes:
        if path.startswith(route.route_prefix):
            if best is None or len(route.route_prefix) > len(best.route_prefix):
                best = route
    return best


# ---------------------------------------------------------------------------
# Budget policy
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class BudgetPolicy:
    """Monthly spend caps, re-read from disk for every request."""
    version: Optional[str] = None
    monthly_usd: Optional[float] = None
    per_provider_monthly_usd: Dict[str, float] = field(default_factory=dict)
    webhook_url: Optional[str] = None


def parse_budget_policy(raw: Any) -> BudgetPolicy:
    """Validate a decoded policy document.

    Raises:
        ValueError: If the policy is invalid
    """
    raw = _require_mapping(raw, "policy")
    _check_keys(raw, {'version', 'monthlyUSD', 'perProviderMonthlyUSD', 'webhookUrl'}, "policy")

    monthly = raw.get('monthlyUSD')
    if monthly is not None:
        monthly = _number(monthly, 'monthlyUSD')

    per_provider = {}
    caps = raw.get('perProviderMonthlyUSD') or {}
    for provider, cap in _require_mapping(caps, 'perProviderMonthlyUSD').items():
        per_provider[str(provider)] = _number(cap, f"perProviderMonthlyUSD.{provider}")

    webhook = raw.get('webhookUrl')
    if webhook is not None:
        parsed = urlparse(webhook) if isinstance(webhook, str) else None
        if parsed is None or parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ValueError("'webhookUrl' must be an http(s) URL")

    version = raw.get('version')
    return BudgetPolicy(
        version=str(version) if version is not None else None,
        monthly_usd=monthly,
        per_provider_monthly_usd=per_provider,
        webhook_url=webhook,
    )


def load_budget_policy(path: str) -> Optional[BudgetPolicy]:
    """Read the budget policy, returning None when enforcement is off.

    A missing file disables enforcement. An unreadable or invalid file is
    logged and also disables enforcement so a bad edit never takes the
    gateway down.
    """
    if not Path(path).exists():
        return None
    try:
        raw = _read_document(path, "Budget policy")
        if raw is None:
            return None
        return parse_budget_policy(raw)
    except (OSError, yaml.YAMLError, ValueError) as e:
        logger.error("Ignoring invalid budget policy %s: %s", path, e)
        return None


# ---------------------------------------------------------------------------
# Gateway settings
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ServerSettings:
    host: str = "127.0.0.1"
    port: int = 8787


@dataclass(frozen=True)
class PathSettings:
    providers: str = DEFAULT_PROVIDERS_PATH
    policy: str = DEFAULT_POLICY_PATH
    interaction_log: str = DEFAULT_INTERACTION_LOG


@dataclass(frozen=True)
class UpstreamSettings:
    """Upstream forwarding behaviour."""
    timeout_seconds: float = 20.0
    retry_backoff_ms: Tuple[int, ...] = (300, 600, 1200)

    def __post_init__(self):
        """Validate timeout and backoff values."""
        if self.timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be > 0")
        if any(delay < 0 for delay in self.retry_backoff_ms):
            raise ValueError("retry_backoff_ms entries cannot be negative")


@dataclass(frozen=True)
class LoggingSettings:
    level: str = "INFO"
    rotate_bytes: int = DEFAULT_ROTATE_BYTES


@dataclass(frozen=True)
class GatewaySettings:
    """Complete gateway configuration."""
    server: ServerSettings = field(default_factory=ServerSettings)
    paths: PathSettings = field(default_factory=PathSettings)
    upstream: UpstreamSettings = field(default_factory=UpstreamSettings)
    logging: LoggingSettings = field(default_factory=LoggingSettings)
    verification: VerificationSettings = field(default_factory=VerificationSettings)


_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


def _parse_server(data: Dict) -> ServerSettings:
    _check_keys(data, {'host', 'port'}, "server")
    port = data.get('port', 8787)
    if isinstance(port, bool) or not isinstance(port, int) or not 0 < port < 65536:
        raise ValueError("'server.port' must be an integer between 1 and 65535")
    return ServerSettings(host=str(data.get('host', "127.0.0.1")), port=port)


def _parse_paths(data: Dict, base: Path) -> PathSettings:
    _check_keys(data, {'providers', 'policy', 'interaction_log'}, "paths")

    def resolve(key: str, default: str) -> str:
        value = data.get(key, default)
        if not isinstance(value, str) or not value:
            raise ValueError(f"'paths.{key}' must be a non-empty string")
        candidate = Path(value)
        return str(candidate if candidate.is_absolute() else base / candidate)

    return PathSettings(
        providers=resolve('providers', DEFAULT_PROVIDERS_PATH),
        policy=resolve('policy', DEFAULT_POLICY_PATH),
        interaction_log=resolve('interaction_log', DEFAULT_INTERACTION_LOG),
    )


def _parse_upstream(data: Dict) -> UpstreamSettings:
    _check_keys(data, {'timeout_seconds', 'retry_backoff_ms'}, "upstream")
    backoff = data.get('retry_backoff_ms', [300, 600, 1200])
    if not isinstance(backoff, list):
        raise ValueError("'upstream.retry_backoff_ms' must be a list")
    return UpstreamSettings(
        timeout_seconds=_number(data.get('timeout_seconds', 20), 'upstream.timeout_seconds'),
        retry_backoff_ms=tuple(int(_number(delay, 'upstream.retry_backoff_ms[]')) for delay in backoff),
    )


def _parse_logging(data: Dict) -> LoggingSettings:
    _check_keys(data, {'level', 'rotate_bytes'}, "logging")
    level = str(data.get('level', "INFO")).upper()
    if level not in _LOG_LEVELS:
        raise ValueError(f"'logging.level' must be one of: {sorted(_LOG_LEVELS)}")
    rotate = data.get('rotate_bytes', DEFAULT_ROTATE_BYTES)
    if isinstance(rotate, bool) or not isinstance(rotate, int) or rotate <= 0:
        raise ValueError("'logging.rotate_bytes' must be a positive integer")
    return LoggingSettings(level=level, rotate_bytes=rotate)


def _parse_impact(data: Dict) -> ImpactTable:
    _check_keys(data, {'hourly_rate_usd', 'severity', 'category_multipliers'}, "verification.impact")
    defaults = ImpactTable()

    severity = dict(defaults.severity)
    for name, entry in _require_mapping(data.get('severity', {}), 'verification.impact.severity').items():
        try:
            level = Severity(name)
        except ValueError:
            raise ValueError(f"Unknown severity in verification.impact.severity: {name}")
        where = f"verification.impact.severity.{name}"
        entry = _require_mapping(entry, where)
        _check_keys(entry, {'hours', 'cost_multiplier', 'quality_points'}, where)
        base = severity[level]
        severity[level] = SeverityImpact(
            hours=_number(entry.get('hours', base.hours), f"{where}.hours"),
            cost_multiplier=_number(entry.get('cost_multiplier', base.cost_multiplier), f"{where}.cost_multiplier"),
            quality_points=int(_number(entry.get('quality_points', base.quality_points), f"{where}.quality_points")),
        )

    multipliers = dict(defaults.category_multipliers)
    raw_multipliers = _require_mapping(data.get('category_multipliers', {}), 'verification.impact.category_multipliers')
    for name, value in raw_multipliers.items():
        try:
            category = Category(name)
        except ValueError:
            raise ValueError(f"Unknown category in verification.impact.category_multipliers: {name}")
        multipliers[category] = _number(value, f"verification.impact.category_multipliers.{name}")

    return ImpactTable(
        hourly_rate_usd=_number(data.get('hourly_rate_usd', defaults.hourly_rate_usd), 'verification.impact.hourly_rate_usd'),
        severity=severity,
        category_multipliers=multipliers,
    )


def _parse_verification(data: Dict) -> VerificationSettings:
    _check_keys(data, {'execute', 'confidence_threshold', 'sandbox', 'thresholds', 'impact'}, "verification")

    execute = data.get('execute', True)
    if not isinstance(execute, bool):
        raise ValueError("'verification.execute' must be a boolean")

    sandbox_data = _require_mapping(data.get('sandbox', {}), 'verification.sandbox')
    _check_keys(sandbox_data, {'timeout_seconds', 'memory_limit_mb', 'max_code_bytes'}, "verification.sandbox")
    sandbox = SandboxLimits(
        timeout_seconds=_number(sandbox_data.get('timeout_seconds', 5), 'verification.sandbox.timeout_seconds'),
        memory_limit_mb=int(_number(sandbox_data.get('memory_limit_mb', 128), 'verification.sandbox.memory_limit_mb')),
        max_code_bytes=int(_number(sandbox_data.get('max_code_bytes', 100_000), 'verification.sandbox.max_code_bytes')),
    )

    threshold_data = _require_mapping(data.get('thresholds', {}), 'verification.thresholds')
    _check_keys(threshold_data, {'memory_mb', 'wall_time_ms', 'cpu_percent'}, "verification.thresholds")
    thresholds = ExecutionThresholds(
        memory_mb=_number(threshold_data.get('memory_mb', 64), 'verification.thresholds.memory_mb'),
        wall_time_ms=int(_number(threshold_data.get('wall_time_ms', 3000), 'verification.thresholds.wall_time_ms')),
        cpu_percent=_number(threshold_data.get('cpu_percent', 80), 'verification.thresholds.cpu_percent'),
    )

    return VerificationSettings(
        execute=execute,
        confidence_threshold=_number(data.get('confidence_threshold', 0.7), 'verification.confidence_threshold'),
        sandbox=sandbox,
        thresholds=thresholds,
        impact=_parse_impact(_require_mapping(data.get('impact', {}), 'verification.impact')),
    )


def load_gateway_settings(path: Optional[str] = None) -> GatewaySettings:
    """Load gateway settings, falling back to defaults.

    Relative paths inside the file are resolved against the file's
    directory. When no path is given and ``gateway.yaml`` is absent from
    the working directory, every default applies.

    Args:
        path: Settings file, or None for ``gateway.yaml`` if present

    Returns:
        Validated GatewaySettings

    Raises:
        FileNotFoundError: If an explicitly given file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    if path is None:
        if not Path(DEFAULT_SETTINGS_PATH).exists():
            return GatewaySettings()
        path = DEFAULT_SETTINGS_PATH

    raw_config = _read_yaml(path, "Gateway settings")
    if not raw_config:
        return GatewaySettings()
    raw_config = _require_mapping(raw_config, "gateway settings")

    allowed_top_keys = {'server', 'paths', 'upstream', 'logging', 'verification'}
    unknown_keys = set(raw_config.keys()) - allowed_top_keys
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    base = Path(path).resolve().parent
    return GatewaySettings(
        server=_parse_server(_require_mapping(raw_config.get('server', {}), 'server')),
        paths=_parse_paths(_require_mapping(raw_config.get('paths', {}), 'paths'), base),
        upstream=_parse_upstream(_require_mapping(raw_config.get('upstream', {}), 'upstream')),
        logging=_parse_logging(_require_mapping(raw_config.get('logging', {}), 'logging')),
        verification=_parse_verification(_require_mapping(raw_config.get('verification', {}), 'verification')),
    )
