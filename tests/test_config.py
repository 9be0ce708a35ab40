from __future__ import annotations

import json

import pytest

from veiled_agent.common.config import DEFAULT_MARKET_API_URL, load_config
from veiled_agent.common.config_contract import missing_requirements, validate_or_exit

from tests.conftest import HOOK, USDC, WETH

REQUIRED = {
    "SETTLEMENT_RPC_URL": "http://127.0.0.1:8545",
    "AGENT_PRIVATE_KEY": "0x" + "ab" * 32,
    "SETTLEMENT_CONTRACT_ADDRESS": HOOK,
    "LEDGER_PACKAGE_ID": "0xpkg",
    "LEDGER_RPC_URL": "http://ledger.test",
    "BLOB_AGGREGATOR_URL": "http://aggregator.test/",
    "BLOB_PUBLISHER_URL": "http://publisher.test",
    "AGENT_SHARED_SECRET": "s3cret",
}


def test_contract_passes_with_required_env():
    assert missing_requirements("veiled-agent", env=REQUIRED) == []
    validate_or_exit("veiled-agent", env=REQUIRED)


def test_contract_failure_prints_one_line_and_exits(capsys):
    env = {k: v for k, v in REQUIRED.items() if k != "LEDGER_RPC_URL"}
    env["AGENT_PRIVATE_KEY"] = "   "

    with pytest.raises(SystemExit) as exc:
        validate_or_exit("veiled-agent", env=env)

    assert exc.value.code == 1
    out = capsys.readouterr().out.strip()
    assert out.startswith("CONTRACT_FAIL ")
    assert "\n" not in out
    payload = json.loads(out[len("CONTRACT_FAIL ") :])
    assert payload["service"] == "veiled-agent"
    assert payload["missing"] == ["AGENT_PRIVATE_KEY", "LEDGER_RPC_URL"]


def test_defaults():
    cfg = load_config(REQUIRED)
    assert cfg.blob_aggregator_url == "http://aggregator.test"
    assert cfg.market_api_url == DEFAULT_MARKET_API_URL
    assert cfg.decryption_mode == "seal"
    assert (cfg.tick_interval_s, cfg.ingestion_interval_s) == (3.0, 10.0)
    assert (cfg.settlement_max_attempts, cfg.decrypt_max_attempts) == (3, 3)
    assert cfg.cancellation_check_enabled is True
    assert cfg.settlement_dry_run is False
    # hooks default to the settlement contract itself
    assert cfg.pool.hooks == HOOK
    assert cfg.pool.manager_address is None


def test_overrides():
    cfg = load_config(
        {
            **REQUIRED,
            "POOL_MANAGER_ADDRESS": HOOK,
            "POOL_CURRENCY0": WETH,
            "POOL_CURRENCY1": USDC,
            "POOL_FEE": "500",
            "POOL_STATE_SLOT": "0x6",
            "MARKET_API_URL": "off",
            "STATIC_FALLBACK_PRICE": "2400.5",
            "TICK_INTERVAL_S": "1.5",
            "SETTLEMENT_DRY_RUN": "yes",
            "CANCELLATION_CHECK_ENABLED": "false",
            "DECRYPTION_MODE": "SHARED_SECRET",
            "SLIPPAGE_BPS": "-5",
            "GATEWAY_PORT": "not-a-port",
        }
    )
    assert cfg.pool.fee == 500
    assert cfg.pool.state_slot == 6
    assert cfg.market_api_url is None
    assert cfg.static_fallback_price == 2400.5
    assert cfg.tick_interval_s == 1.5
    assert cfg.settlement_dry_run is True
    assert cfg.cancellation_check_enabled is False
    assert cfg.decryption_mode == "shared_secret"
    assert cfg.slippage_bps == 0
    assert cfg.gateway_port == 8080


def test_missing_required_value_raises_key_error():
    with pytest.raises(KeyError):
        load_config({k: v for k, v in REQUIRED.items() if k != "SETTLEMENT_RPC_URL"})


def test_either_decryption_credential_satisfies_the_contract():
    without = {k: v for k, v in REQUIRED.items() if k != "AGENT_SHARED_SECRET"}
    assert missing_requirements("veiled-agent", env=without) == ["AGENT_SUI_PRIVATE_KEY|AGENT_SHARED_SECRET"]
    assert missing_requirements("veiled-agent", env={**without, "AGENT_SUI_PRIVATE_KEY": "00" * 32}) == []
