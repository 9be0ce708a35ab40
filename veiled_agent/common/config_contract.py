"""
Required env contract, checked before any collaborator is built.

A broken deployment fails once, on one greppable line:

    CONTRACT_FAIL {"ts": ..., "service": "veiled-agent", "missing": [...], "required": [...]}

and exits 1, instead of crash-looping on the first RPC call.
"""

from __future__ import annotations

import json
import os
from datetime import datetime, timezone
from typing import Mapping, Sequence, Union

# "NAME" must be set and non-empty; ("A", "B") needs at least one of them.
EnvRequirement = Union[str, Sequence[str]]

REQUIRED_ENV_BY_SERVICE: dict[str, list[EnvRequirement]] = {
    "veiled-agent": [
        "SETTLEMENT_RPC_URL",
        "AGENT_PRIVATE_KEY",
        "SETTLEMENT_CONTRACT_ADDRESS",
        "LEDGER_PACKAGE_ID",
        "LEDGER_RPC_URL",
        "BLOB_AGGREGATOR_URL",
        "BLOB_PUBLISHER_URL",
        # Order blobs are unreadable without one decryption credential.
        ("AGENT_SUI_PRIVATE_KEY", "AGENT_SHARED_SECRET"),
    ],
}


def _present(env: Mapping[str, str], name: str) -> bool:
    return bool(str(env.get(name) or "").strip())


def _label(req: EnvRequirement) -> str:
    return req if isinstance(req, str) else "|".join(req)


def missing_requirements(service: str, *, env: Mapping[str, str] | None = None) -> list[str]:
    e: Mapping[str, str] = env if env is not None else os.environ
    missing: list[str] = []
    for req in REQUIRED_ENV_BY_SERVICE.get(service.strip(), []):
        names = [req] if isinstance(req, str) else list(req)
        if not any(_present(e, n) for n in names):
            missing.append(_label(req))
    return missing


def validate_or_exit(service: str, *, env: Mapping[str, str] | None = None) -> None:
    missing = missing_requirements(service, env=env)
    if not missing:
        return
    line = {
        "ts": datetime.now(timezone.utc).isoformat(),
        "service": service,
        "missing": missing,
        "required": [_label(r) for r in REQUIRED_ENV_BY_SERVICE.get(service.strip(), [])],
    }
    print("CONTRACT_FAIL " + json.dumps(line, separators=(",", ":")), flush=True)
    raise SystemExit(1)
