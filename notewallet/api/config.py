from __future__ import annotations

import os
import pathlib
from dataclasses import dataclass, field

# =========================
# Paths & config
# =========================

REPO_ROOT = pathlib.Path(__file__).resolve().parents[2]

SERVER_URL = os.getenv("NOTEWALLET_SERVER_URL", "http://127.0.0.1:4000")
# Relay defaults to the settlement server; the reference relay can run elsewhere.
RELAY_URL = os.getenv("NOTEWALLET_RELAY_URL", "") or SERVER_URL
DATA_DIR = pathlib.Path(os.getenv("NOTEWALLET_DATA_DIR", str(pathlib.Path.home() / ".notewallet")))
DB_PATH = pathlib.Path(os.getenv("NOTEWALLET_DB_PATH", str(DATA_DIR / "wallet.db")))
CACHE_DIR = pathlib.Path(os.getenv("NOTEWALLET_CACHE_DIR", str(DATA_DIR / "cache")))

CONTRACT_NAME = os.getenv("NOTEWALLET_CONTRACT_NAME", "hyli_utxo")
CIRCUIT_NAME = os.getenv("NOTEWALLET_CIRCUIT_NAME", "hyli_utxo")

POLL_INTERVAL_SEC = float(os.getenv("NOTEWALLET_POLL_INTERVAL_SEC", "30"))
HTTP_TIMEOUT_SEC = float(os.getenv("NOTEWALLET_HTTP_TIMEOUT_SEC", "30"))

NODE_BIN = os.getenv("NOTEWALLET_NODE_BIN", "node")
BRIDGE_SCRIPT = pathlib.Path(
    os.getenv("NOTEWALLET_BRIDGE_SCRIPT", str(REPO_ROOT / "scripts" / "bb_bridge.mjs"))
)
PROVE_TIMEOUT_SEC = int(os.getenv("NOTEWALLET_PROVE_TIMEOUT_SEC", "600"))


@dataclass
class WalletConfig:
    server_url: str = SERVER_URL
    relay_url: str = RELAY_URL
    db_path: pathlib.Path = DB_PATH
    cache_dir: pathlib.Path = CACHE_DIR
    contract_name: str = CONTRACT_NAME
    circuit_name: str = CIRCUIT_NAME
    poll_interval_sec: float = POLL_INTERVAL_SEC
    http_timeout_sec: float = HTTP_TIMEOUT_SEC
    node_bin: str = NODE_BIN
    bridge_script: pathlib.Path = BRIDGE_SCRIPT
    prove_timeout_sec: int = PROVE_TIMEOUT_SEC
    extra_headers: dict = field(default_factory=dict)

    @property
    def circuit_url(self) -> str:
        return f"{self.server_url.rstrip('/')}/circuit/{self.circuit_name}.json"


def load_config(**overrides) -> WalletConfig:
    """Build a WalletConfig from the environment, with explicit keyword overrides."""
    cfg = WalletConfig()
    for k, v in overrides.items():
        if v is None:
            continue
        if not hasattr(cfg, k):
            raise TypeError(f"Unknown config option: {k}")
        setattr(cfg, k, v)
    return cfg
