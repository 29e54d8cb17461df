from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Mapping, Optional, Tuple

from dotenv import load_dotenv

from hl_copytrader.core.errors import ConfigError
from hl_copytrader.core.types import CopyMode, RiskConfig

# Same values as hyperliquid.utils.constants
BASE_URLS = {
    "mainnet": "https://api.hyperliquid.xyz",
    "testnet": "https://api.hyperliquid-testnet.xyz",
}

# Environment variable -> (section, key) in the JSON layout
ENV_OVERRIDES = {
    "HL_SECRET_KEY": ("credentials", "secret_key"),
    "HL_ENVIRONMENT": ("credentials", "environment"),
    "HL_BASE_URL": ("credentials", "base_url"),
    "LEADER_ADDRESS": ("accounts", "leader_address"),
    "FOLLOWER_PUBLIC_ADDRESS": ("accounts", "follower_address"),
    "FOLLOWER_VAULT_ADDRESS": ("accounts", "vault_address"),
    "COPY_MODE": ("copy", "mode"),
    "COPY_RATIO": ("copy", "ratio"),
    "MAX_LEVERAGE": ("risk", "max_leverage"),
    "MAX_NOTIONAL_USD": ("risk", "max_notional_usd"),
    "MAX_SLIPPAGE_BPS": ("risk", "max_slippage_bps"),
    "RECONCILE_INTERVAL_MS": ("timing", "reconcile_interval_ms"),
    "POLL_INTERVAL_MS": ("timing", "poll_interval_ms"),
}


@dataclass(frozen=True)
class Credentials:
    secret_key: str
    base_url: str
    environment: str = "testnet"

    def build_hl_clients(self, account_address: Optional[str] = None, vault_address: Optional[str] = None) -> Tuple[Any, Any, str]:
        """
        Build the SDK Info (with websocket) and Exchange clients.

        Returns (info, exchange, signer_address). Orders are signed by the key in
        `secret_key` on behalf of `account_address` (an API/agent wallet may sign
        for a different funded wallet).
        """
        from eth_account import Account
        from hyperliquid.exchange import Exchange
        from hyperliquid.info import Info

        wallet = Account.from_key(self.secret_key)
        info = Info(self.base_url, skip_ws=False)
        exchange = Exchange(
            wallet,
            self.base_url,
            account_address=account_address or wallet.address,
            vault_address=vault_address or None,
        )
        return info, exchange, str(wallet.address)


@dataclass(frozen=True)
class AccountParams:
    leader_address: str
    # Funded wallet whose positions are mirrored into; defaults to the signer
    follower_address: Optional[str] = None
    vault_address: Optional[str] = None


@dataclass(frozen=True)
class TimingParams:
    reconcile_interval_ms: int = 60_000
    poll_interval_ms: int = 5_000
    request_timeout_ms: int = 10_000

    @property
    def request_timeout_s(self) -> float:
        return self.request_timeout_ms / 1000.0


@dataclass(frozen=True)
class TelemetryParams:
    log_level: str = "INFO"
    metrics: bool = True
    log_file: str | None = None
    log_max_bytes: int | None = None
    log_backup_count: int | None = None
    disable_console_logging: bool | None = None


@dataclass(frozen=True)
class AppConfig:
    credentials: Credentials
    accounts: AccountParams
    risk: RiskConfig
    timing: TimingParams = field(default_factory=TimingParams)
    telemetry: TelemetryParams = field(default_factory=TelemetryParams)

    @property
    def environment(self) -> str:
        return self.credentials.environment


def _to_decimal(value: Any, name: str) -> Decimal:
    try:
        return Decimal(str(value))
    except InvalidOperation as e:
        raise ConfigError(f"{name} must be numeric, got {value!r}") from e


def _optional_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _apply_env_overrides(raw: Dict[str, Any], env: Mapping[str, str]) -> Dict[str, Any]:
    for var, (section, key) in ENV_OVERRIDES.items():
        value = env.get(var)
        if value is None or value == "":
            continue
        raw.setdefault(section, {})[key] = value
    return raw


def load_config(path: Optional[str] = None, *, env_file: Optional[str] = ".env", env: Optional[Mapping[str, str]] = None) -> AppConfig:
    """
    Load the JSON config at `path` (optional) and apply environment overrides.

    A `.env` file is read first when present; variables already set in the
    process environment win over it.
    """
    raw: Dict[str, Any] = {}
    if path is not None:
        try:
            with open(path, "r", encoding="utf-8") as f:
                raw = json.load(f)
        except OSError as e:
            raise ConfigError(f"cannot read config {path}: {e}") from e
        except json.JSONDecodeError as e:
            raise ConfigError(f"invalid JSON in {path}: {e}") from e
    if env is None:
        if env_file and os.path.exists(env_file):
            load_dotenv(env_file, override=False)
        env = os.environ
    raw = _apply_env_overrides(raw, env)

    creds = raw.get("credentials", {})
    accounts = raw.get("accounts", {})
    copy = raw.get("copy", {})
    risk = raw.get("risk", {})
    timing = raw.get("timing", {})
    tel = raw.get("telemetry", {"log_level": "INFO", "metrics": True})

    environment = str(creds.get("environment", "testnet")).lower()
    base_url = _optional_str(creds.get("base_url")) or BASE_URLS.get(environment, "")
    try:
        copy_mode = CopyMode(str(copy.get("mode", "ratio")).lower())
    except ValueError as e:
        raise ConfigError(f"copy.mode must be 'exact' or 'ratio', got {copy.get('mode')!r}") from e

    app = AppConfig(
        credentials=Credentials(
            secret_key=str(creds.get("secret_key", "")),
            base_url=base_url,
            environment=environment,
        ),
        accounts=AccountParams(
            leader_address=str(accounts.get("leader_address", "")),
            follower_address=_optional_str(accounts.get("follower_address")),
            vault_address=_optional_str(accounts.get("vault_address")),
        ),
        risk=RiskConfig(
            copy_mode=copy_mode,
            copy_ratio=_to_decimal(copy.get("ratio", 1), "copy.ratio"),
            max_leverage=_to_decimal(risk.get("max_leverage", 5), "risk.max_leverage"),
            max_notional_usd=_to_decimal(risk.get("max_notional_usd", 10_000), "risk.max_notional_usd"),
            max_slippage_bps=int(risk.get("max_slippage_bps", 50)),
            min_order_usd=_to_decimal(risk.get("min_order_usd", 10), "risk.min_order_usd"),
        ),
        timing=TimingParams(
            reconcile_interval_ms=int(timing.get("reconcile_interval_ms", 60_000)),
            poll_interval_ms=int(timing.get("poll_interval_ms", 5_000)),
            request_timeout_ms=int(timing.get("request_timeout_ms", 10_000)),
        ),
        telemetry=TelemetryParams(
            log_level=str(tel.get("log_level", "INFO")),
            metrics=bool(tel.get("metrics", True)),
            log_file=str(tel.get("log_file")) if tel.get("log_file") is not None else None,
            log_max_bytes=int(tel.get("log_max_bytes")) if tel.get("log_max_bytes") is not None else None,
            log_backup_count=int(tel.get("log_backup_count")) if tel.get("log_backup_count") is not None else None,
            disable_console_logging=bool(tel.get("disable_console_logging")) if tel.get("disable_console_logging") is not None else None,
        ),
    )
    _validate(app)
    return app


def _is_address(value: Optional[str]) -> bool:
    return bool(value) and value.startswith("0x") and len(value) == 42


def _validate(cfg: AppConfig) -> None:
    assert cfg.credentials.secret_key, "secret_key required"
    assert cfg.credentials.environment in BASE_URLS, "environment must be 'mainnet' or 'testnet'"
    assert cfg.credentials.base_url.startswith("http"), "base_url must be http(s)"
    assert _is_address(cfg.accounts.leader_address), "leader_address must be a 0x-prefixed 20-byte address"
    assert cfg.accounts.follower_address is None or _is_address(cfg.accounts.follower_address), "follower_address must be a 0x address"
    assert cfg.accounts.vault_address is None or _is_address(cfg.accounts.vault_address), "vault_address must be a 0x address"
    assert cfg.risk.copy_ratio > 0, "copy.ratio must be positive"
    assert cfg.risk.max_leverage > 0, "risk.max_leverage must be positive"
    assert cfg.risk.max_notional_usd > 0, "risk.max_notional_usd must be positive"
    assert 0 <= cfg.risk.max_slippage_bps < 10_000, "risk.max_slippage_bps must be within [0, 10000)"
    assert cfg.risk.min_order_usd >= 0
    assert cfg.timing.reconcile_interval_ms >= 1000, "timing.reconcile_interval_ms must be >= 1000"
    assert cfg.timing.poll_interval_ms >= 100
    assert cfg.timing.request_timeout_ms > 0
