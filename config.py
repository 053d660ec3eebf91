"""
GeoPulse configuration - YAML files + environment, validated once at startup
"""
import logging
import os
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import yaml
from dotenv import load_dotenv

logger = logging.getLogger(__name__)

CONFIG_FILE = Path("config.yaml")
CONFIG_LOCAL_FILE = Path("config.local.yaml")

DEFAULT_TABLE = "ppgis-geodays"
DEFAULT_DATABASE_PATH = "data/geopulse.db"


class ConfigError(Exception):
    """Raised when the server cannot run with the given configuration."""


def deep_merge(base: object, override: object) -> object:
    if isinstance(base, dict) and isinstance(override, dict):
        merged = dict(base)
        for key, value in override.items():
            merged[key] = deep_merge(base.get(key), value)
        return merged
    # Lists and scalars: override wins
    if override is None:
        return base
    return override


def _env(*names: str) -> Optional[str]:
    for name in names:
        value = os.environ.get(name)
        if value:
            return value
    return None


class StoreConfig:
    """Marker store settings. Passed explicitly to the store constructor."""

    def __init__(
        self,
        backend: str = "sqlite",
        database_path: str = DEFAULT_DATABASE_PATH,
        supabase_url: Optional[str] = None,
        supabase_key: Optional[str] = None,
        table: str = DEFAULT_TABLE,
        timeout_seconds: float = 10.0,
    ):
        self.backend = (backend or "sqlite").strip().lower()
        self.database_path = database_path
        self.supabase_url = supabase_url.rstrip("/") if supabase_url else None
        self.supabase_key = supabase_key
        self.table = table or DEFAULT_TABLE
        self.timeout_seconds = float(timeout_seconds)

    def missing_credentials(self) -> List[str]:
        if self.backend == "sqlite":
            return [] if self.database_path else ["Database path"]
        missing = []
        if not self.supabase_url:
            missing.append("URL")
        if not self.supabase_key:
            missing.append("Key")
        return missing

    def validate(self) -> None:
        if self.backend not in ("sqlite", "supabase"):
            raise ConfigError(f"Server configuration error: Unknown store backend '{self.backend}'")
        missing = self.missing_credentials()
        if missing:
            logger.error(f"Missing store credentials for {self.backend} backend: {missing}")
            raise ConfigError(f"Server configuration error: Missing {' and '.join(missing)}")


class AppConfig:
    """Everything the web server and the live dashboard need."""

    def __init__(
        self,
        store: Optional[StoreConfig] = None,
        host: str = "0.0.0.0",
        port: int = 8893,
        api_base_url: str = "http://localhost:8893",
        poll_interval_seconds: float = 5.0,
        new_marker_seconds: float = 5.0,
        version: Optional[int] = None,
        compare_versions: Optional[Tuple[int, int]] = None,
        time_range: str = "all",
        sentiment: str = "all",
    ):
        self.store = store or StoreConfig()
        self.host = host
        self.port = int(port)
        self.api_base_url = api_base_url.rstrip("/")
        self.poll_interval_seconds = float(poll_interval_seconds)
        self.new_marker_seconds = float(new_marker_seconds)
        self.version = version
        self.compare_versions = compare_versions
        self.time_range = time_range
        self.sentiment = sentiment

    def validate(self) -> None:
        self.store.validate()


def _read_yaml(path: Path) -> Dict:
    if not path.exists():
        return {}
    with open(path, "r") as f:
        return yaml.safe_load(f) or {}


def _optional_int(value: object) -> Optional[int]:
    if value is None or value == "":
        return None
    return int(value)


def _parse_compare(value: object) -> Optional[Tuple[int, int]]:
    if not value:
        return None
    if isinstance(value, str):
        value = [v for v in value.split(",") if v.strip()]
    items = list(value)
    if len(items) != 2:
        raise ConfigError(f"compare_versions needs exactly two versions, got {items!r}")
    return int(items[0]), int(items[1])


def load_config(config_file: Path = CONFIG_FILE, local_file: Path = CONFIG_LOCAL_FILE) -> AppConfig:
    """Build the configuration from YAML files, then environment overrides.

    Missing YAML files are fine: every setting has a default or an
    environment variable.
    """
    load_dotenv()

    raw = deep_merge(_read_yaml(config_file), _read_yaml(local_file))
    store_raw = raw.get("store", {}) or {}
    server_raw = raw.get("server", {}) or {}
    dash_raw = raw.get("dashboard", {}) or {}

    store = StoreConfig(
        backend=_env("MARKER_STORE") or store_raw.get("backend", "sqlite"),
        database_path=_env("DATABASE_PATH") or store_raw.get("database_path", DEFAULT_DATABASE_PATH),
        supabase_url=_env("SUPABASE_URL", "VITE_SUPABASE_URL") or store_raw.get("supabase_url"),
        supabase_key=(
            _env("SUPABASE_SERVICE_KEY", "SUPABASE_ANON_KEY", "VITE_SUPABASE_ANON_KEY")
            or store_raw.get("supabase_key")
        ),
        table=_env("SUPABASE_TABLE") or store_raw.get("table", DEFAULT_TABLE),
        timeout_seconds=store_raw.get("timeout_seconds", 10.0),
    )

    port = int(_env("WEB_PORT") or server_raw.get("port", 8893))
    return AppConfig(
        store=store,
        host=_env("WEB_HOST") or server_raw.get("host", "0.0.0.0"),
        port=port,
        api_base_url=_env("API_BASE_URL") or dash_raw.get("api_base_url", f"http://localhost:{port}"),
        poll_interval_seconds=_env("POLL_INTERVAL_SECONDS") or dash_raw.get("poll_interval_seconds", 5.0),
        new_marker_seconds=dash_raw.get("new_marker_seconds", 5.0),
        version=_optional_int(_env("CAMPAIGN_VERSION") or dash_raw.get("version")),
        compare_versions=_parse_compare(_env("COMPARE_VERSIONS") or dash_raw.get("compare_versions")),
        time_range=dash_raw.get("time_range", "all"),
        sentiment=dash_raw.get("sentiment", "all"),
    )
