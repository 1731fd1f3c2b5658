# gridsim/config_loader.py
from __future__ import annotations
"""
Unified configuration loader for GridSim.

Single source of truth:
    config/config.yaml   (override the path with GRIDSIM_CONFIG)

Design notes
------------
- If the file is missing or broken, we raise a friendly RuntimeError that
  prints absolute paths for quick fixes.
- Unknown keys are fine; we pass the full dict through untouched.
- Helpers return {} or sensible defaults when sections are absent.
- Paths are absolute (resolved against the repo root) unless already absolute.
- A couple of values can be overridden from the environment so tests and
  deployments never have to edit the YAML:
    GRIDSIM_DB       -> sqlite path
    GRIDSIM_API_KEY  -> API key checked on mutating routes

Public API
----------
- CONFIG: dict                              # eager-loaded contents of config/config.yaml
- load_config(path: str|Path|None = None)   # explicit reload (mainly for tests/tools)
- get_db_path() -> pathlib.Path
- get_api_key() -> str | None
- get_car_service_cfg() -> dict
- get_race_rules() -> dict
- get_public_base_url() -> str
- get_log_level(default: str = "INFO") -> str
- get_server_bind() -> tuple[str, int]
"""

import os
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import yaml

# ---------- Files & roots ----------
PROJECT_ROOT = Path(__file__).resolve().parents[1]
CONFIG_DIR   = PROJECT_ROOT / "config"
DEFAULT_CFG  = CONFIG_DIR / "config.yaml"


# ---------- I/O helpers ----------
def _load_yaml(path: Path) -> Dict[str, Any]:
    """Load a YAML mapping from `path`. Human-friendly errors, strict root type."""
    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        raise RuntimeError(
            f"Missing configuration file: {path}\n"
            f"Expected a single-file config with an 'app:' section.\n"
            f"Repo root: {PROJECT_ROOT}"
        )
    except OSError as ex:
        raise RuntimeError(f"Failed to read {path}: {type(ex).__name__}: {ex}")

    try:
        data = yaml.safe_load(text) or {}
    except yaml.YAMLError as ex:
        raise RuntimeError(f"Failed to parse YAML {path}: {type(ex).__name__}: {ex}")

    if not isinstance(data, dict):
        raise RuntimeError(f"Root of {path} must be a mapping/object, not {type(data).__name__}")
    return data


def _resolve_path(p: str | os.PathLike[str]) -> Path:
    """Return absolute path; resolve relative to repo root."""
    pth = Path(p)
    return pth if pth.is_absolute() else (PROJECT_ROOT / pth).resolve()


# ---------- Loader ----------
def load_config(path: str | os.PathLike[str] | None = None) -> Dict[str, Any]:
    """
    Load a single YAML file (default: config/config.yaml or $GRIDSIM_CONFIG),
    validate the required shape, and return the raw dict (unmodified).
    """
    env_path = os.getenv("GRIDSIM_CONFIG", "").strip()
    if path:
        cfg_path = _resolve_path(path)
    elif env_path:
        cfg_path = _resolve_path(env_path)
    else:
        cfg_path = DEFAULT_CFG
    cfg = _load_yaml(cfg_path)

    # Minimal structural contract for startup:
    try:
        sqlite_path = cfg["app"]["engine"]["persistence"]["sqlite_path"]
        if not isinstance(sqlite_path, (str, os.PathLike)) or not str(sqlite_path).strip():
            raise KeyError("app.engine.persistence.sqlite_path must be a non-empty string")
    except KeyError as ke:
        raise RuntimeError(
            "CONFIG missing required key: app.engine.persistence.sqlite_path\n"
            "Your config must contain a single top-level 'app:' mapping with an "
            "'engine.persistence.sqlite_path' entry. See config/config.yaml template."
        ) from ke

    return cfg


# Eagerly load once for the app
CONFIG: Dict[str, Any] = load_config()


# ---------- Accessors ----------
def get_db_path() -> Path:
    """Return absolute filesystem path to the SQLite database."""
    override = os.getenv("GRIDSIM_DB", "").strip()
    if override:
        return _resolve_path(override)
    sqlite_path = (
        CONFIG.get("app", {})
              .get("engine", {})
              .get("persistence", {})
              .get("sqlite_path")
    )
    if not sqlite_path:
        # This should be unreachable because load_config already validated it.
        raise RuntimeError("CONFIG missing app.engine.persistence.sqlite_path")
    return _resolve_path(sqlite_path)


def get_api_key() -> Optional[str]:
    """Secret expected in the X-API-KEY header. None means every mutating call is refused."""
    override = os.getenv("GRIDSIM_API_KEY")
    if override is not None and override.strip():
        return override.strip()
    key = (CONFIG.get("app", {}).get("security", {}) or {}).get("api_key")
    return str(key) if key else None


def get_car_service_cfg() -> Dict[str, Any]:
    """Return the car-service client block with defaults filled in."""
    block = CONFIG.get("car_service", {}) or {}
    return {
        "timeout_s": float(block.get("timeout_s", 5.0)),
        "verify_tls": bool(block.get("verify_tls", True)),
    }


def get_race_rules() -> Dict[str, Any]:
    """Return game-balance constants used by the leaderboard."""
    block = CONFIG.get("race", {}) or {}
    return {
        "grid_penalty_s": float(block.get("grid_penalty_s", 5.0)),
    }


def get_public_base_url() -> str:
    """Base URL used to build track links in race payloads (no trailing slash)."""
    base = (CONFIG.get("app", {})
                  .get("engine", {})
                  .get("public_base_url")) or "http://127.0.0.1:3389"
    return str(base).rstrip("/")


def get_log_level(default: str = "INFO") -> str:
    """Return log level as 'INFO'/'DEBUG', etc."""
    lvl = (CONFIG.get("log", {}) or {}).get("level", default)
    return str(lvl).upper()


def get_server_bind() -> Tuple[str, int]:
    """
    Return (host, port) for launching uvicorn from code.
    Explicit app.engine.server.host/port wins; otherwise 127.0.0.1:3389.
    """
    server = (CONFIG.get("app", {})
                    .get("engine", {})
                    .get("server", {})) or {}
    host = server.get("host")
    port = server.get("port")
    if isinstance(host, str) and isinstance(port, int):
        return host, port
    return "127.0.0.1", 3389
# ---------- End of config_loader.py ----------
