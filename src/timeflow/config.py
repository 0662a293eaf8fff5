import os
import tomllib
from pathlib import Path

pkg_root = Path(__file__).parent
config_file = pkg_root / "config.toml"

cfg = tomllib.loads(Path(config_file).read_text())
ledger = cfg["ledger"]
cfg["ledger"]["rpc_url"] = os.getenv("TIMEFLOW_RPC_URL", ledger.get("rpc_url", "http://localhost:8545"))
cfg["ledger"]["ws_url"] = os.getenv("TIMEFLOW_WS_URL", ledger.get("ws_url", "ws://localhost:8546"))
