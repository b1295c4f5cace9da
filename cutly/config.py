from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path

import streamlit as st

CONFIG_FILE_NAME = "settings.json"
ENV_DATA_DIR = "CUTLY_DATA_DIR"
ENV_LOG_LEVEL = "CUTLY_LOG_LEVEL"
ENV_EXPIRY_HORIZON = "CUTLY_EXPIRY_HORIZON_DAYS"

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


@dataclass(frozen=True)
class Settings:
    data_dir: Path
    db_path: Path
    expiry_horizon_days: int = 30
    import_chunk_size: int = 50
    default_page_size: int = 20
    demo_tenant: str = "demo"
    log_level: str = "INFO"


def _default_data_dir() -> Path:
    return Path.home() / ".cutly_demo"


def _load_persisted_settings(data_dir: Path) -> dict:
    cfg = data_dir / CONFIG_FILE_NAME
    if cfg.exists():
        try:
            return json.loads(cfg.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            return {}
    return {}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        logging.getLogger(__name__).warning("Ignoring non-integer %s=%r", name, raw)
        return default


def persist_data_dir(data_dir_str: str) -> None:
    data_dir = Path(data_dir_str).expanduser().resolve()
    data_dir.mkdir(parents=True, exist_ok=True)

    cfg = data_dir / CONFIG_FILE_NAME
    payload = {"data_dir": str(data_dir)}
    cfg.write_text(json.dumps(payload, indent=2), encoding="utf-8")

    st.session_state["cutly_data_dir"] = str(data_dir)


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO), format=LOG_FORMAT)


@st.cache_resource
def get_settings() -> Settings:
    # Priority order:
    # 1) Session state (set via Data Management page)
    # 2) Environment variable
    # 3) Persisted settings in default folder
    # 4) Default folder
    if "cutly_data_dir" in st.session_state:
        data_dir = Path(st.session_state["cutly_data_dir"]).expanduser().resolve()
    elif os.getenv(ENV_DATA_DIR):
        data_dir = Path(os.getenv(ENV_DATA_DIR, "")).expanduser().resolve()
    else:
        default_dir = _default_data_dir()
        persisted = _load_persisted_settings(default_dir)
        data_dir = Path(persisted.get("data_dir", default_dir)).expanduser().resolve()

    data_dir.mkdir(parents=True, exist_ok=True)
    return Settings(
        data_dir=data_dir,
        db_path=data_dir / "cutly.db",
        expiry_horizon_days=_env_int(ENV_EXPIRY_HORIZON, 30),
        log_level=os.getenv(ENV_LOG_LEVEL, "INFO"),
    )
