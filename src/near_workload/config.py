import os
import tomllib
from pathlib import Path

pkg_root = Path(__file__).parent
config_file = pkg_root / "config.toml"


def load_config(path: str | Path | None = None) -> dict:
    cfg = tomllib.loads(Path(path or config_file).read_text())
    rpc = cfg.setdefault("rpc", {})
    rpc["url"] = os.getenv("RPC_URL", rpc.get("url", "http://localhost:3030"))
    acc = cfg.setdefault("accounts", {})
    acc["user_data_dir"] = os.getenv("USER_DATA_DIR", acc.get("user_data_dir", "user-data"))
    cfg.setdefault("benchmark", {})
    cfg.setdefault("block_service", {})
    cfg.setdefault("nonce_query", {})
    cfg.setdefault("service", {})
    return cfg


cfg = load_config(os.getenv("NEAR_WORKLOAD_CONFIG"))
