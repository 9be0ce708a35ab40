from __future__ import annotations

import asyncio
import logging
import sys

import httpx
from eth_account import Account
from web3 import Web3

from veiled_agent.common.config import AgentConfig, load_config
from veiled_agent.common.config_contract import validate_or_exit
from veiled_agent.common.logging import init_structured_logging, log_event
from veiled_agent.common.process_safety import AsyncShutdown, startup_banner
from veiled_agent.engine import AgentEngine
from veiled_agent.execution.settlement import SettlementDispatcher
from veiled_agent.gateway.server import RealtimeGateway
from veiled_agent.ingestion.blob_store import BlobStore
from veiled_agent.ingestion.decryption import build_decryptor
from veiled_agent.ingestion.identity import LedgerIdentity
from veiled_agent.ingestion.ledger_client import LedgerClient
from veiled_agent.marketdata.price_oracle import build_price_oracle
from veiled_agent.orders.registry import OrderRegistry
from veiled_agent.persistence.state_store import StateStore, StateStoreError

SERVICE = "veiled-agent"

logger = logging.getLogger(__name__)


def build_engine(cfg: AgentConfig, *, http: httpx.AsyncClient) -> AgentEngine:
    w3 = Web3(Web3.HTTPProvider(cfg.settlement_rpc_url, request_kwargs={"timeout": 30}))
    account = Account.from_key(cfg.agent_private_key)
    identity = LedgerIdentity.from_optional_secret(cfg.agent_sui_private_key)

    ledger = LedgerClient(http, cfg.ledger_rpc_url, cfg.ledger_package_id)
    blobs = BlobStore(http, aggregator_url=cfg.blob_aggregator_url, publisher_url=cfg.blob_publisher_url)
    dispatcher = SettlementDispatcher(
        w3=w3,
        account=account,
        contract_address=cfg.settlement_contract_address,
        pool=cfg.pool,
        slippage_bps=cfg.slippage_bps,
        receipt_timeout_s=cfg.settlement_receipt_timeout_s,
        dry_run=cfg.settlement_dry_run,
    )
    return AgentEngine(
        cfg=cfg,
        registry=OrderRegistry(),
        oracle=build_price_oracle(cfg, w3=w3, http=http),
        dispatcher=dispatcher,
        store=StateStore(cfg.state_path),
        ledger=ledger,
        blobs=blobs,
        decryptor=build_decryptor(cfg, http=http, identity=identity),
        identity=identity,
    )


async def main() -> int:
    cfg = load_config()
    startup_banner(
        service=SERVICE,
        intent="Evaluate private limit orders every tick and settle triggered ones on-chain.",
        gateway_port=cfg.gateway_port,
        decryption_mode=cfg.decryption_mode,
        dry_run=cfg.settlement_dry_run,
    )

    async with httpx.AsyncClient() as http:
        try:
            engine = build_engine(cfg, http=http)
        except ValueError as e:
            log_event(logger, "startup.invalid_config", severity="CRITICAL", error=str(e))
            return 1

        try:
            engine.restore()
        except StateStoreError as e:
            log_event(logger, "startup.state_unreadable", severity="CRITICAL", error=str(e))
            return 1

        gateway = RealtimeGateway(host=cfg.gateway_host, port=cfg.gateway_port, inbox=engine.inbox)
        engine.notifier = gateway

        shutdown = AsyncShutdown(service=SERVICE)
        shutdown.add_callback(engine.request_stop)
        shutdown.install()

        log_event(
            logger,
            "startup.ready",
            agent_address=engine.dispatcher.agent_address,
            ledger_address=engine.identity.address if engine.identity else None,
            price_sources=engine.oracle.source_names,
        )

        await gateway.start()
        try:
            await engine.run()
        finally:
            await gateway.stop()
    return 0


def run() -> None:
    # Fail fast on the env contract before anything else touches config.
    validate_or_exit(SERVICE)
    init_structured_logging(service=SERVICE)
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
