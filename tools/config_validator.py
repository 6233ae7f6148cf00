"""
Configuration Validation Module

Validates config/app.yaml against Pydantic schemas.
Ensures the engine config is correct before startup.

Usage:
    from tools.config_validator import validate_config

    errors = validate_config("config")
    if errors:
        for error in errors:
            print(f"ERROR: {error}")
        sys.exit(1)
"""
import logging
import os
import re
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator, ValidationError

from core.chat_automation import template_error

logger = logging.getLogger(__name__)

APP_CONFIG_FILE = "app.yaml"

_ENV_REF = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")


# ===== App Schema =====
class ExchangeConfig(BaseModel):
    """Exchange endpoint parameters"""
    base_url: str = Field(default="https://api.bybit.com", pattern="^https?://", description="REST base URL")
    recv_window_ms: int = Field(default=5000, gt=0, le=60000, description="Signed request receive window (ms)")
    timeout_seconds: float = Field(default=20.0, gt=0, le=120, description="Per-call timeout (seconds)")


class AccountConfig(BaseModel):
    """One exchange account"""
    account_id: str = Field(min_length=1, description="Unique account id")
    api_key: str = Field(description="API key (may be ${ENV_VAR})")
    api_secret: str = Field(description="API secret (may be ${ENV_VAR})")
    is_active: bool = Field(default=True, description="Include in rotation")
    proxy: Optional[str] = Field(default=None, description="Outbound proxy URL")
    max_active_ads: int = Field(default=2, gt=0, le=50, description="Advertisement cap")


class ClockConfig(BaseModel):
    timeout_seconds: float = Field(default=5.0, gt=0, le=30, description="Server-time request timeout")
    resync_seconds: float = Field(default=60.0, gt=0, description="Minimum seconds between routine resyncs")


class RateLimitConfig(BaseModel):
    requests_per_second: float = Field(default=5.0, gt=0, description="Sustained per-account request rate")
    burst: float = Field(default=10.0, ge=1, description="Token bucket capacity")


class RetryConfig(BaseModel):
    max_attempts: int = Field(default=3, ge=1, le=10, description="Attempts per transient failure")
    base_delay_seconds: float = Field(default=1.0, gt=0, description="Backoff base")
    max_delay_seconds: float = Field(default=30.0, gt=0, description="Backoff cap")

    @field_validator('max_delay_seconds')
    @classmethod
    def validate_delays(cls, v: float, info) -> float:
        """Ensure the cap is not below the base"""
        base = info.data.get('base_delay_seconds', 0)
        if v < base:
            raise ValueError(f"max_delay_seconds ({v}) must be >= base_delay_seconds ({base})")
        return v


class AdvertisementsConfig(BaseModel):
    """Advertisement defaults"""
    asset: str = Field(default="USDT", min_length=1)
    fiat: str = Field(default="RUB", min_length=1)
    side: str = Field(default="SELL", pattern="^(BUY|SELL)$")
    price_mode: str = Field(default="FIXED", pattern="^(FIXED|FLOAT)$")
    float_offset_pct: float = Field(default=0.0, ge=-50, le=50, description="Premium over market (FLOAT)")
    quantity_buffer: float = Field(default=5.0, ge=0, description="Extra asset units on top of payout value")
    payment_methods: List[str] = Field(default_factory=lambda: ["SBP", "Tinkoff"], min_length=1)
    payment_period_minutes: int = Field(default=15, gt=0, le=120)
    remark: str = Field(default="")


class RatesConfig(BaseModel):
    mode: str = Field(default="constant", pattern="^(constant|automatic)$")
    constant_rate: float = Field(default=85.0, gt=0)
    cache_seconds: float = Field(default=300.0, ge=0)
    market_sample_size: int = Field(default=5, gt=0, description="Best prices averaged in automatic mode")


class OrdersConfig(BaseModel):
    order_timeout_minutes: float = Field(default=30.0, gt=0)
    max_workers: int = Field(default=8, gt=0, le=64)
    page_size: int = Field(default=30, gt=0, le=100)


class TemplateConfig(BaseModel):
    name: str = Field(min_length=1)
    message: str = Field(min_length=1)
    keywords: List[str] = Field(default_factory=list)
    priority: int = Field(default=0)
    is_active: bool = Field(default=True)


class ResponseGroupConfig(BaseModel):
    name: str = Field(min_length=1)
    description: str = Field(default="")
    templates: List[TemplateConfig] = Field(default_factory=list)


class ChatConfig(BaseModel):
    greeting_group: str = Field(default="greeting")
    greeting_text: Optional[str] = None
    payment_details_template: Optional[str] = None
    final_message: Optional[str] = None
    response_groups: List[ResponseGroupConfig] = Field(default_factory=list)

    @model_validator(mode="after")
    def validate_reply_templates(self) -> "ChatConfig":
        """Reply templates (outside the greeting group) need keywords; every text must render"""
        texts = [
            ("payment_details_template", self.payment_details_template),
            ("greeting_text", self.greeting_text),
            ("final_message", self.final_message),
        ]
        for group in self.response_groups:
            for template in group.templates:
                texts.append((f"template {group.name}/{template.name}", template.message))
                if group.name == self.greeting_group:
                    continue
                if template.is_active and not template.keywords:
                    raise ValueError(f"template {group.name}/{template.name} has no keywords")

        for label, text in texts:
            if text is None:
                continue
            error = template_error(text)
            if error:
                raise ValueError(f"{label} does not render ({error}); write literal braces as '{{{{' and '}}}}'")
        return self


class MatchingConfig(BaseModel):
    """Evidence matching parameters"""
    amount_tolerance: float = Field(default=1.0, ge=0, description="Absolute amount tolerance")
    window_minutes: float = Field(default=30.0, gt=0, description="Evidence window after payout creation")
    unmatched_policy: str = Field(default="discard", pattern="^(discard|retry)$")
    retry_attempts: int = Field(default=5, ge=0, le=100)
    retry_queue_size: int = Field(default=200, gt=0)
    release_on_match: bool = Field(default=False, description="Release exchange assets on a match")


class IntervalsConfig(BaseModel):
    """Polling intervals (seconds)"""
    orders_seconds: float = Field(default=10.0, gt=0)
    chat_seconds: float = Field(default=5.0, gt=0)
    evidence_seconds: float = Field(default=15.0, gt=0)
    clock_seconds: float = Field(default=60.0, gt=0)
    ads_seconds: float = Field(default=30.0, gt=0)
    reconcile_seconds: float = Field(default=300.0, gt=0)


class StoreConfig(BaseModel):
    state_file: Optional[str] = Field(default="data/p2p_state.json", description="null keeps state in memory")
    audit_file: str = Field(default="logs/reconcile_audit.jsonl")


class LoggingConfig(BaseModel):
    level: str = Field(default="INFO", pattern="^(DEBUG|INFO|WARNING|ERROR|CRITICAL)$")
    file: Optional[str] = Field(default="logs/p2p_engine.log")


class AlertsConfig(BaseModel):
    enabled: bool = Field(default=False)
    webhook_url: Optional[str] = None
    webhook_env: str = Field(default="ALERT_WEBHOOK_URL")
    min_severity: str = Field(default="warning", pattern="^(info|warning|critical)$")
    dry_run: bool = Field(default=False)
    timeout_seconds: float = Field(default=5.0, gt=0)
    dedupe_seconds: float = Field(default=300.0, ge=0)


class MonitoringConfig(BaseModel):
    metrics_enabled: bool = Field(default=False)
    metrics_port: int = Field(default=9100, gt=0, lt=65536)
    healthcheck_enabled: bool = Field(default=True)
    healthcheck_port: int = Field(default=8090, gt=0, lt=65536)
    alerts: AlertsConfig = Field(default_factory=AlertsConfig)


class AppSchema(BaseModel):
    """Complete engine configuration schema"""
    exchange: ExchangeConfig = Field(default_factory=ExchangeConfig)
    accounts: List[AccountConfig] = Field(min_length=1)
    clock: ClockConfig = Field(default_factory=ClockConfig)
    rate_limit: RateLimitConfig = Field(default_factory=RateLimitConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    advertisements: AdvertisementsConfig = Field(default_factory=AdvertisementsConfig)
    rates: RatesConfig = Field(default_factory=RatesConfig)
    orders: OrdersConfig = Field(default_factory=OrdersConfig)
    chat: ChatConfig = Field(default_factory=ChatConfig)
    matching: MatchingConfig = Field(default_factory=MatchingConfig)
    intervals: IntervalsConfig = Field(default_factory=IntervalsConfig)
    store: StoreConfig = Field(default_factory=StoreConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)

    @field_validator('accounts')
    @classmethod
    def validate_unique_accounts(cls, v: List[AccountConfig]) -> List[AccountConfig]:
        """Account ids must be unique"""
        seen = set()
        for account in v:
            if account.account_id in seen:
                raise ValueError(f"duplicate account_id {account.account_id}")
            seen.add(account.account_id)
        return v


# ===== Loading =====
def _format_yaml_error(file_path: Path, error: yaml.YAMLError) -> str:
    """Return message with line/column context for YAML errors."""
    mark = getattr(error, "problem_mark", None)
    if mark is None:
        return f"Malformed YAML in {file_path}: {error}"

    problem = getattr(error, "problem", str(error))
    try:
        raw_lines = file_path.read_text(encoding="utf-8").splitlines()
    except OSError:
        return f"Malformed YAML in {file_path}: line {mark.line + 1}, column {mark.column + 1}: {problem}"

    start = max(mark.line - 2, 0)
    end = min(mark.line + 3, len(raw_lines))
    snippet = "\n".join(
        f"{'▶' if idx == mark.line else ' '} {idx + 1:04d} | {raw_lines[idx]}"
        for idx in range(start, end)
    )
    return (
        f"Malformed YAML in {file_path}: line {mark.line + 1}, column {mark.column + 1}: {problem}\n"
        f"Context:\n{snippet}"
    )


def load_yaml_file(file_path: Path) -> Dict[str, Any]:
    """
    Load YAML file and return as dict.

    Raises:
        FileNotFoundError: If file doesn't exist
        yaml.YAMLError: If YAML is malformed
    """
    if not file_path.exists():
        raise FileNotFoundError(f"Config file not found: {file_path}")

    with open(file_path, 'r', encoding="utf-8") as f:
        try:
            return yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise yaml.YAMLError(_format_yaml_error(file_path, e))


def expand_env(value: Any) -> Any:
    """Recursively expand ${VAR} references in strings."""
    if isinstance(value, str) and "${" in value:
        return os.path.expandvars(value)
    if isinstance(value, dict):
        return {k: expand_env(v) for k, v in value.items()}
    if isinstance(value, list):
        return [expand_env(v) for v in value]
    return value


def _unresolved_secrets(config: Dict[str, Any]) -> List[str]:
    errors = []
    for idx, account in enumerate(config.get("accounts") or []):
        if not account.get("is_active", True):
            continue
        for key in ("api_key", "api_secret"):
            value = str(account.get(key) or "")
            missing = _ENV_REF.findall(value)
            if missing:
                errors.append(f"app.yaml: accounts -> {idx} -> {key}: environment variable {missing[0]} is not set")
            elif not value:
                errors.append(f"app.yaml: accounts -> {idx} -> {key}: empty credential on active account")
    return errors


def load_app_config(config_dir: str = "config") -> Dict[str, Any]:
    """
    Load app.yaml with ${ENV} references expanded and defaults applied.

    Raises:
        FileNotFoundError, yaml.YAMLError, ValidationError
    """
    raw = expand_env(load_yaml_file(Path(config_dir) / APP_CONFIG_FILE))
    return AppSchema(**raw).model_dump()


def validate_config(config_dir: str = "config", check_secrets: bool = True) -> List[str]:
    """
    Validate app.yaml.

    Performs:
    1. Schema validation (Pydantic type checks)
    2. Credential checks (unset ${ENV} references, empty keys)

    Args:
        config_dir: Path to config directory (string or Path)
        check_secrets: Also require account credentials to resolve

    Returns:
        List of all error messages (empty if valid)
    """
    errors: List[str] = []
    app_path = Path(config_dir) / APP_CONFIG_FILE

    try:
        config = expand_env(load_yaml_file(app_path))
        AppSchema(**config)
        if check_secrets:
            errors.extend(_unresolved_secrets(config))
    except FileNotFoundError as e:
        errors.append(f"app.yaml: {e}")
    except yaml.YAMLError as e:
        errors.append(f"app.yaml: Invalid YAML - {e}")
    except ValidationError as e:
        for error in e.errors():
            field = " -> ".join(str(loc) for loc in error['loc'])
            errors.append(f"app.yaml: {field}: {error['msg']}")
    except TypeError as e:
        errors.append(f"app.yaml: Unexpected structure - {e}")

    if not errors:
        logger.info("✅ app.yaml validated successfully")
    else:
        logger.error(f"❌ {len(errors)} validation error(s) found")

    return errors


if __name__ == "__main__":
    """Run validation from command line"""
    import sys

    logging.basicConfig(level=logging.INFO, format='%(levelname)s: %(message)s')

    config_dir = sys.argv[1] if len(sys.argv) > 1 else "config"

    errors = validate_config(config_dir)

    if errors:
        print("\n❌ Configuration Validation Failed:\n")
        for error in errors:
            print(f"  • {error}")
        print()
        sys.exit(1)
    else:
        print("\n✅ Configuration is valid!\n")
        sys.exit(0)
