"""
Omega configuration.

Sources, lowest to highest precedence:
    1. built-in defaults
    2. <OMEGA_HOME>/config/omega.yaml
    3. environment variables (OMEGA_DATABASE_URL, SUPABASE_URL, ...)

A missing or unreadable yaml file is not fatal: we log and keep defaults.
"""

import logging
import os
from pathlib import Path
from typing import Any, Dict, Literal, Optional

import yaml
from pydantic import BaseModel, Field, field_validator

from .common import get_omega_home
from .policy import DEFAULT_QUERY_LIMIT, MAX_QUERY_LIMIT

logger = logging.getLogger("omega.config")

CONFIG_RELPATH = Path("config") / "omega.yaml"


class Settings(BaseModel):
    home: Path = Path(".omega")

    storage_backend: Literal["sqlite", "supabase", "postgres"] = "sqlite"
    sqlite_path: Optional[Path] = None
    postgres_url: Optional[str] = None
    supabase_url: Optional[str] = None
    supabase_key: Optional[str] = None
    viewer_jwt: Optional[str] = None

    max_query_limit: int = Field(default=MAX_QUERY_LIMIT, ge=1)
    default_query_limit: int = Field(default=DEFAULT_QUERY_LIMIT, ge=1)
    rate_limit_per_minute: int = 30  # <= 0 disables
    storage_timeout_seconds: Optional[float] = 10.0
    reference_ttl_seconds: float = 300.0
    audit_enabled: bool = True

    @field_validator("max_query_limit")
    @classmethod
    def _cap_ceiling(cls, v: int) -> int:
        # config may tighten the ceiling, never loosen it
        return min(v, MAX_QUERY_LIMIT)

    @property
    def resolved_sqlite_path(self) -> Path:
        return self.sqlite_path or (self.home / "omega.db")

    @property
    def audit_path(self) -> Path:
        return self.home / "ledger" / "audit.jsonl"


def _read_yaml(config_path: Path) -> Dict[str, Any]:
    if not config_path.exists():
        return {}
    try:
        with config_path.open() as f:
            return yaml.safe_load(f) or {}
    except Exception as e:
        logger.error(f"Failed to parse {config_path}: {e}. Using defaults.")
        return {}


def _from_yaml(config: Dict[str, Any]) -> Dict[str, Any]:
    values: Dict[str, Any] = {}
    storage = config.get("storage") or {}
    limits = config.get("limits") or {}
    cache = config.get("cache") or {}
    audit = config.get("audit") or {}

    if "backend" in storage:
        values["storage_backend"] = storage["backend"]
    if storage.get("sqlite_path"):
        values["sqlite_path"] = storage["sqlite_path"]
    if (storage.get("postgres") or {}).get("url"):
        values["postgres_url"] = storage["postgres"]["url"]
    supabase = storage.get("supabase") or {}
    if supabase.get("url"):
        values["supabase_url"] = supabase["url"]
    if supabase.get("key"):
        values["supabase_key"] = supabase["key"]

    for key in ("max_query_limit", "default_query_limit", "rate_limit_per_minute", "storage_timeout_seconds"):
        if key in limits:
            values[key] = limits[key]
    if "reference_ttl_seconds" in cache:
        values["reference_ttl_seconds"] = cache["reference_ttl_seconds"]
    if "enabled" in audit:
        values["audit_enabled"] = audit["enabled"]
    return values


def _from_env() -> Dict[str, Any]:
    env = os.environ
    values: Dict[str, Any] = {}

    supabase_url = env.get("SUPABASE_URL") or env.get("NEXT_PUBLIC_SUPABASE_URL")
    supabase_key = env.get("SUPABASE_ANON_KEY") or env.get("NEXT_PUBLIC_SUPABASE_ANON_KEY")
    if supabase_url and supabase_key:
        values.update(storage_backend="supabase", supabase_url=supabase_url, supabase_key=supabase_key)
    if env.get("MCP_VIEWER_JWT"):
        values["viewer_jwt"] = env["MCP_VIEWER_JWT"]
    # direct database access wins over the REST gateway
    if env.get("OMEGA_DATABASE_URL"):
        values.update(storage_backend="postgres", postgres_url=env["OMEGA_DATABASE_URL"])
    return values


def load_settings(home: Optional[Path] = None) -> Settings:
    """Build Settings from defaults, omega.yaml and the environment."""
    home = Path(home) if home is not None else get_omega_home()
    values: Dict[str, Any] = {"home": home}
    values.update(_from_yaml(_read_yaml(home / CONFIG_RELPATH)))
    values.update(_from_env())
    return Settings(**values)
