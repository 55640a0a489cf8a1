"""
Configuration Validation Module

Validates app.yaml against Pydantic schemas and runs cross-field sanity
checks before the monitor starts.

Usage:
    from tools.config_validator import validate_app_config

    errors = validate_app_config("config")
    if errors:
        for error in errors:
            print(f"ERROR: {error}")
        sys.exit(1)
"""
import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, Field, field_validator, ValidationError

from core.exceptions import ConfigurationError

logger = logging.getLogger(__name__)

APP_CONFIG_FILE = "app.yaml"


# ===== App Schema =====
class AppSection(BaseModel):
    """Process-level settings"""
    name: str = Field(default="scalp-monitor", min_length=1, description="Instance name (lock file stem)")
    single_instance: bool = Field(default=True, description="Refuse to start while another run holds the lock")
    lock_dir: str = Field(default="data", description="Directory for the PID lock file")


class MonitorConfig(BaseModel):
    """Polling loop timing"""
    poll_interval_seconds: float = Field(default=5.0, gt=0, description="Target seconds between tick starts")
    max_runtime_seconds: float = Field(default=50.0, gt=0, description="Run budget below the host ceiling")
    headroom_seconds: float = Field(default=5.0, ge=0, description="Reserve kept free at the end of the budget")
    min_sleep_seconds: float = Field(default=1.0, ge=0, description="Sleep floor between ticks")
    price_cache_ttl_seconds: float = Field(default=3.0, gt=0, description="Token price cache TTL")
    stop_when_idle: bool = Field(default=False, description="End the run after a tick with no open positions")


class ExitsConfig(BaseModel):
    """Default thresholds for positions that carry none"""
    take_profit_pct: float = Field(default=50.0, gt=0, description="Primary take-profit %")
    stop_loss_pct: float = Field(default=35.0, gt=0, le=100, description="Stop-loss %")
    moon_bag_pct: float = Field(default=10.0, gt=0, lt=100, description="Share retained after take-profit")
    slippage_bps: int = Field(default=1500, ge=0, le=10000, description="Executor slippage tolerance")
    priority_fee_mode: str = Field(default="high", min_length=1, description="Executor priority fee mode")


class ExecutionConfig(BaseModel):
    """External trade executor"""
    url: Optional[str] = Field(default=None, description="Executor endpoint (supports ${VAR})")
    api_key_env: Optional[str] = Field(default="TRADE_EXECUTOR_API_KEY", description="Env var holding the bearer token")
    timeout_seconds: float = Field(default=4.0, gt=0, description="Per-attempt timeout, shorter than the headroom")
    max_retries: int = Field(default=2, ge=1, le=5)
    quote_decimals: int = Field(default=9, ge=0, le=18, description="Decimals of the executor's outAmount")


class PricesConfig(BaseModel):
    """Token and quote-asset price vendors"""
    primary_url: str = Field(default="https://api.jup.ag/price/v2")
    primary_api_key_env: Optional[str] = Field(default="JUPITER_API_KEY")
    batch_size: int = Field(default=100, gt=0)
    secondary_enabled: bool = Field(default=True)
    secondary_url: str = Field(default="https://api.dexscreener.com/latest/dex/tokens")
    quote_asset_id: str = Field(default="So11111111111111111111111111111111111111112")
    coingecko_enabled: bool = Field(default=True)
    coingecko_id: str = Field(default="solana")
    coingecko_url: str = Field(default="https://api.coingecko.com/api/v3/simple/price")
    coingecko_api_key_env: Optional[str] = Field(default="COINGECKO_API_KEY")
    timeout_seconds: float = Field(default=4.0, gt=0)

    @field_validator("primary_url", "secondary_url", "coingecko_url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        if not v.startswith(("http://", "https://")):
            raise ValueError(f"must be an http(s) URL, got {v!r}")
        return v


class StateConfig(BaseModel):
    """Position store"""
    backend: str = Field(default="json", pattern="^(json)$")
    file: str = Field(default="data/positions.json")


class AlertsConfig(BaseModel):
    """Exit notifications"""
    enabled: bool = Field(default=False)
    webhook_url: Optional[str] = Field(default=None)
    webhook_env: str = Field(default="ALERT_WEBHOOK_URL")
    recipient: Optional[str] = Field(default=None)
    min_severity: str = Field(default="info", pattern="^(info|success|warning|critical)$")
    dry_run: bool = Field(default=False)
    timeout_seconds: float = Field(default=3.0, gt=0)
    dedupe_seconds: float = Field(default=60.0, ge=0)


class MetricsConfig(BaseModel):
    """Prometheus exporter"""
    enabled: bool = Field(default=False)
    port: int = Field(default=9100, gt=0, lt=65536)


class AuditConfig(BaseModel):
    """JSONL audit trail"""
    enabled: bool = Field(default=True)
    file: str = Field(default="logs/exit_audit.jsonl")


class LoggingConfig(BaseModel):
    level: str = Field(default="INFO")
    file: str = Field(default="logs/scalp_monitor.log")

    @field_validator("level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        level = v.upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"unknown log level {v!r}")
        return level


class AppConfigSchema(BaseModel):
    """Complete app.yaml schema"""
    app: AppSection = Field(default_factory=AppSection)
    monitor: MonitorConfig = Field(default_factory=MonitorConfig)
    exits: ExitsConfig = Field(default_factory=ExitsConfig)
    execution: ExecutionConfig = Field(default_factory=ExecutionConfig)
    prices: PricesConfig = Field(default_factory=PricesConfig)
    state: StateConfig = Field(default_factory=StateConfig)
    alerts: AlertsConfig = Field(default_factory=AlertsConfig)
    metrics: MetricsConfig = Field(default_factory=MetricsConfig)
    audit: AuditConfig = Field(default_factory=AuditConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


# ===== Validation Functions =====
def _format_yaml_error(file_path: Path, error: yaml.YAMLError) -> str:
    """Return enriched message with line/column context for YAML errors."""
    message = f"Malformed YAML in {file_path}: {error}"
    mark = getattr(error, "problem_mark", None)
    if mark is None:
        return message
    problem = getattr(error, "problem", str(error))
    return f"Malformed YAML in {file_path}: line {mark.line + 1}, column {mark.column + 1}: {problem}"


def load_yaml_file(file_path: Path) -> Dict[str, Any]:
    """
    Load YAML file and return as dict.

    Raises:
        FileNotFoundError: If file doesn't exist
        yaml.YAMLError: If YAML is malformed
    """
    if not file_path.exists():
        raise FileNotFoundError(f"Config file not found: {file_path}")

    with open(file_path, "r") as f:
        try:
            return yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise yaml.YAMLError(_format_yaml_error(file_path, e))


def expand_env(value: Any) -> Any:
    """Expand ${VAR} placeholders in every string of a parsed YAML tree."""
    if isinstance(value, dict):
        return {key: expand_env(item) for key, item in value.items()}
    if isinstance(value, list):
        return [expand_env(item) for item in value]
    if isinstance(value, str) and "${" in value:
        return os.path.expandvars(value)
    return value


def _parse(config_dir: Path) -> AppConfigSchema:
    raw = load_yaml_file(config_dir / APP_CONFIG_FILE)
    if not isinstance(raw, dict):
        raise ValueError("top level must be a mapping")
    return AppConfigSchema(**expand_env(raw))


def validate_app_schema(config_dir: Path) -> List[str]:
    """
    Validate app.yaml against schema.

    Returns:
        List of error messages (empty if valid)
    """
    errors = []
    try:
        _parse(config_dir)
        logger.info("✅ app.yaml validation passed")
    except FileNotFoundError as e:
        errors.append(f"app.yaml: {e}")
    except yaml.YAMLError as e:
        errors.append(f"app.yaml: Invalid YAML - {e}")
    except ValidationError as e:
        for error in e.errors():
            field = " -> ".join(str(loc) for loc in error["loc"])
            errors.append(f"app.yaml: {field}: {error['msg']}")
    except ValueError as e:
        errors.append(f"app.yaml: {e}")
    return errors


def validate_sanity_checks(config: AppConfigSchema) -> List[str]:
    """
    Logical consistency checks the schema cannot express.

    Detects:
    - A budget too small for even one interval plus headroom
    - A sleep floor longer than the interval
    - Request timeouts (prices, execution, alerts) that would overrun the headroom
    - Missing executor endpoint
    """
    errors = []
    monitor = config.monitor

    if monitor.poll_interval_seconds + monitor.headroom_seconds > monitor.max_runtime_seconds:
        errors.append(
            f"monitor: poll_interval_seconds ({monitor.poll_interval_seconds}) + headroom_seconds "
            f"({monitor.headroom_seconds}) exceeds max_runtime_seconds ({monitor.max_runtime_seconds})"
        )

    if monitor.min_sleep_seconds > monitor.poll_interval_seconds:
        errors.append(
            f"monitor: min_sleep_seconds ({monitor.min_sleep_seconds}) is longer than "
            f"poll_interval_seconds ({monitor.poll_interval_seconds})"
        )

    timeouts = {
        "prices": config.prices.timeout_seconds,
        "execution": config.execution.timeout_seconds,
        "alerts": config.alerts.timeout_seconds,
    }
    for section, timeout in timeouts.items():
        if monitor.headroom_seconds and timeout >= monitor.headroom_seconds:
            errors.append(
                f"{section}: timeout_seconds ({timeout}) must be shorter than "
                f"monitor.headroom_seconds ({monitor.headroom_seconds})"
            )

    url = config.execution.url
    if not url or "${" in url:
        errors.append("execution: url is not set (define TRADE_EXECUTOR_URL or set execution.url)")

    if config.alerts.enabled and not config.alerts.dry_run:
        webhook = config.alerts.webhook_url or os.getenv(config.alerts.webhook_env, "")
        if not webhook or "${" in webhook:
            errors.append(f"alerts: enabled but no webhook (set alerts.webhook_url or {config.alerts.webhook_env})")

    if not errors:
        logger.info("✅ Configuration sanity checks passed")
    else:
        logger.warning(f"⚠️  {len(errors)} sanity check issue(s) found")

    return errors


def validate_app_config(config_dir: str = "config") -> List[str]:
    """
    Validate the monitor configuration.

    Performs:
    1. Schema validation (Pydantic type checks)
    2. Sanity checks (logical consistency)

    Returns:
        List of all error messages (empty if all valid)
    """
    config_path = Path(config_dir)
    all_errors = validate_app_schema(config_path)

    if not all_errors:
        all_errors.extend(validate_sanity_checks(_parse(config_path)))

    if not all_errors:
        logger.info("✅ All config files validated successfully")
    else:
        logger.error(f"❌ {len(all_errors)} validation error(s) found")

    return all_errors


def load_app_config(config_dir: str = "config") -> AppConfigSchema:
    """
    Validated configuration model.

    Raises:
        ConfigurationError: schema or sanity validation failed
    """
    errors = validate_app_config(config_dir)
    if errors:
        raise ConfigurationError(errors)
    return _parse(Path(config_dir))


if __name__ == "__main__":
    """Run validation from command line"""
    import sys

    logging.basicConfig(level=logging.INFO, format="%(levelname)s: %(message)s")

    config_dir = sys.argv[1] if len(sys.argv) > 1 else "config"

    errors = validate_app_config(config_dir)

    if errors:
        print("\n❌ Configuration Validation Failed:\n")
        for error in errors:
            print(f"  • {error}")
        print()
        sys.exit(1)
    else:
        print("\n✅ Configuration is valid!\n")
        sys.exit(0)
