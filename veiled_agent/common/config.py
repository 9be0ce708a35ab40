from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Mapping, Optional

DEFAULT_MARKET_API_URL = "https://api.coingecko.com/api/v3/simple/price?ids=ethereum&vs_currencies=usd"

TRUTHY = {"1", "true", "t", "yes", "y", "on"}


def env_str(name: str, default: str | None = None, *, env: Mapping[str, str] | None = None) -> str | None:
    e = env if env is not None else os.environ
    v = e.get(name)
    if v is None:
        return default
    s = str(v).strip()
    return s if s else default


def _parse_bool(value: object | None, *, default: bool = False) -> bool:
    if value is None:
        return default
    s = str(value).strip().lower()
    if not s:
        return default
    return s in TRUTHY


def _parse_float(value: str | None, default: float | None) -> float | None:
    if value is None or str(value).strip() == "":
        return default
    try:
        return float(value)
    except ValueError:
        return default


def _parse_int(value: str | None, default: int) -> int:
    if value is None or str(value).strip() == "":
        return int(default)
    try:
        return int(str(value).strip(), 0)
    except ValueError:
        return int(default)


@dataclass(frozen=True)
class PoolConfig:
    """
    Pool the agent settles against and reads its on-chain price from.

    `currency0` is the base asset (the one a `buy` receives); prices are
    always expressed as units of currency1 per unit of currency0.
    """

    manager_address: str | None
    currency0: str
    currency1: str
    fee: int = 3000
    tick_spacing: int = 60
    hooks: str = "0x0000000000000000000000000000000000000000"
    currency0_decimals: int = 18
    currency1_decimals: int = 6
    state_slot: int = 6


@dataclass(frozen=True)
class AgentConfig:
    # Settlement chain (EVM)
    settlement_rpc_url: str
    agent_private_key: str
    settlement_contract_address: str

    # Order-anchoring ledger
    ledger_package_id: str
    ledger_rpc_url: str

    # Blob storage
    blob_aggregator_url: str
    blob_publisher_url: str

    pool: PoolConfig

    # Ledger-side agent identity (ed25519 seed, hex or base64)
    agent_sui_private_key: str | None = None

    # Decryption capability
    decryption_mode: str = "seal"
    decryption_service_url: str | None = None
    agent_shared_secret: str | None = None

    # Price sources
    price_feed_address: str | None = None
    market_api_url: str | None = DEFAULT_MARKET_API_URL
    static_fallback_price: float | None = None

    # Scheduling
    tick_interval_s: float = 3.0
    ingestion_interval_s: float = 10.0
    ingestion_page_size: int = 50

    # Gateway
    gateway_host: str = "0.0.0.0"
    gateway_port: int = 8080

    # Persistence
    state_path: str = "agent_state.json"

    # Settlement policy
    slippage_bps: int = 100
    settlement_max_attempts: int = 3
    settlement_backoff_base_s: float = 5.0
    settlement_backoff_max_s: float = 120.0
    settlement_receipt_timeout_s: float = 120.0
    settlement_dry_run: bool = False

    # Ingestion policy
    decrypt_max_attempts: int = 3
    cancellation_check_enabled: bool = True

    # Legacy STRATEGY_UPDATE session orders carry no amount of their own.
    strategy_order_amount: float = 100.0

    extra: dict[str, str] = field(default_factory=dict)


def load_config(env: Mapping[str, str] | None = None) -> AgentConfig:
    """
    Build the agent config from env vars.

    Required values are checked by `config_contract.validate_or_exit` before
    this is called; a missing one here raises KeyError.
    """
    e: Mapping[str, str] = env if env is not None else os.environ

    def _s(name: str, default: str | None = None) -> str | None:
        return env_str(name, default, env=e)

    def _required(name: str) -> str:
        v = _s(name)
        if v is None:
            raise KeyError(f"missing required config value: {name}")
        return v

    settlement_address = _required("SETTLEMENT_CONTRACT_ADDRESS")

    pool = PoolConfig(
        manager_address=_s("POOL_MANAGER_ADDRESS"),
        currency0=_s("POOL_CURRENCY0", "0x0000000000000000000000000000000000000000") or "",
        currency1=_s("POOL_CURRENCY1", "0x0000000000000000000000000000000000000000") or "",
        fee=_parse_int(_s("POOL_FEE"), 3000),
        tick_spacing=_parse_int(_s("POOL_TICK_SPACING"), 60),
        hooks=_s("POOL_HOOKS", settlement_address) or settlement_address,
        currency0_decimals=_parse_int(_s("POOL_CURRENCY0_DECIMALS"), 18),
        currency1_decimals=_parse_int(_s("POOL_CURRENCY1_DECIMALS"), 6),
        state_slot=_parse_int(_s("POOL_STATE_SLOT"), 6),
    )

    market_api_url = _s("MARKET_API_URL", DEFAULT_MARKET_API_URL)
    if market_api_url and market_api_url.lower() in {"off", "none", "disabled"}:
        market_api_url = None

    return AgentConfig(
        settlement_rpc_url=_required("SETTLEMENT_RPC_URL"),
        agent_private_key=_required("AGENT_PRIVATE_KEY"),
        settlement_contract_address=settlement_address,
        ledger_package_id=_required("LEDGER_PACKAGE_ID"),
        ledger_rpc_url=_required("LEDGER_RPC_URL"),
        blob_aggregator_url=_required("BLOB_AGGREGATOR_URL").rstrip("/"),
        blob_publisher_url=_required("BLOB_PUBLISHER_URL").rstrip("/"),
        pool=pool,
        agent_sui_private_key=_s("AGENT_SUI_PRIVATE_KEY"),
        decryption_mode=(_s("DECRYPTION_MODE", "seal") or "seal").lower(),
        decryption_service_url=_s("DECRYPTION_SERVICE_URL"),
        agent_shared_secret=_s("AGENT_SHARED_SECRET"),
        price_feed_address=_s("PRICE_FEED_ADDRESS"),
        market_api_url=market_api_url,
        static_fallback_price=_parse_float(_s("STATIC_FALLBACK_PRICE"), None),
        tick_interval_s=float(_parse_float(_s("TICK_INTERVAL_S"), 3.0) or 3.0),
        ingestion_interval_s=float(_parse_float(_s("INGESTION_INTERVAL_S"), 10.0) or 10.0),
        ingestion_page_size=max(1, _parse_int(_s("INGESTION_PAGE_SIZE"), 50)),
        gateway_host=_s("GATEWAY_HOST", "0.0.0.0") or "0.0.0.0",
        gateway_port=_parse_int(_s("GATEWAY_PORT"), 8080),
        state_path=_s("STATE_PATH", "agent_state.json") or "agent_state.json",
        slippage_bps=max(0, _parse_int(_s("SLIPPAGE_BPS"), 100)),
        settlement_max_attempts=max(1, _parse_int(_s("SETTLEMENT_MAX_ATTEMPTS"), 3)),
        settlement_backoff_base_s=float(_parse_float(_s("SETTLEMENT_BACKOFF_BASE_S"), 5.0) or 0.0),
        settlement_backoff_max_s=float(_parse_float(_s("SETTLEMENT_BACKOFF_MAX_S"), 120.0) or 0.0),
        settlement_receipt_timeout_s=float(_parse_float(_s("SETTLEMENT_RECEIPT_TIMEOUT_S"), 120.0) or 120.0),
        settlement_dry_run=_parse_bool(_s("SETTLEMENT_DRY_RUN"), default=False),
        decrypt_max_attempts=max(1, _parse_int(_s("DECRYPT_MAX_ATTEMPTS"), 3)),
        cancellation_check_enabled=_parse_bool(_s("CANCELLATION_CHECK_ENABLED"), default=True),
        strategy_order_amount=float(_parse_float(_s("STRATEGY_ORDER_AMOUNT"), 100.0) or 100.0),
    )
