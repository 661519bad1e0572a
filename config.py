"""
config.py — process-level configuration for TreeShare.

Values come from the environment (optionally a .env file). Everything that an
admin can change at runtime lives in the settings table instead
(see app_settings.py); this module only holds what is fixed for the lifetime
of the process.
"""

import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv

load_dotenv()

AUTH_ON = "on"
AUTH_OFF = "off"

GUEST_OFF = "off"
GUEST_READ = "read"
GUEST_UPLOAD = "upload"
GUEST_MODES = (GUEST_OFF, GUEST_READ, GUEST_UPLOAD)

COLLISION_RENAME = "rename"
COLLISION_OVERWRITE = "overwrite"
COLLISION_POLICIES = (COLLISION_RENAME, COLLISION_OVERWRITE)

SESSION_COOKIE_NAME = "treeshare_session"


class ConfigError(ValueError):
    pass


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _default_data_dir() -> str:
    xdg = os.getenv("XDG_DATA_HOME")
    if xdg:
        return os.path.join(xdg, "treeshare")
    return os.path.join(os.path.expanduser("~"), ".local", "share", "treeshare")


def normalize_base_path(p: Optional[str]) -> str:
    """Return "/" or a path like "/files" (leading slash, no trailing slash)."""
    p = (p or "").strip()
    if p in ("", "/"):
        return "/"
    if not p.startswith("/"):
        p = "/" + p
    p = p.rstrip("/")
    return p or "/"


@dataclass
class Config:
    root_dir: str
    data_dir: str
    database_url: str
    bind: str = "0.0.0.0"
    port: int = 7331
    public_host: str = ""
    base_path: str = "/"
    auth: str = AUTH_ON
    guest_mode: Optional[str] = None  # written to settings at startup when set
    read_only: bool = False
    https: bool = False
    cert_file: str = ""
    key_file: str = ""
    trust_proxy: bool = False
    log_level: str = "INFO"

    @property
    def auth_enabled(self) -> bool:
        return self.auth != AUTH_OFF

    def route(self, p: str) -> str:
        """Prefix an app-relative route with the configured base path."""
        if self.base_path == "/":
            return p
        return self.base_path + p


def load_config() -> Config:
    data_dir = os.getenv("TREESHARE_DATA_DIR") or _default_data_dir()
    database_url = os.getenv("DATABASE_URL") or "sqlite:///" + os.path.join(data_dir, "treeshare.db")
    guest_mode = os.getenv("TREESHARE_GUEST_MODE")
    cfg = Config(
        root_dir=os.path.abspath(os.getenv("TREESHARE_ROOT") or os.getcwd()),
        data_dir=data_dir,
        database_url=database_url,
        bind=os.getenv("TREESHARE_BIND", "0.0.0.0"),
        port=int(os.getenv("TREESHARE_PORT", "7331")),
        public_host=os.getenv("TREESHARE_PUBLIC_HOST", ""),
        base_path=normalize_base_path(os.getenv("TREESHARE_BASE_PATH", "/")),
        auth=os.getenv("TREESHARE_AUTH", AUTH_ON).strip().lower(),
        guest_mode=guest_mode.strip().lower() if guest_mode else None,
        read_only=_env_bool("TREESHARE_READ_ONLY"),
        https=_env_bool("TREESHARE_HTTPS"),
        cert_file=os.getenv("TREESHARE_CERT_FILE", ""),
        key_file=os.getenv("TREESHARE_KEY_FILE", ""),
        trust_proxy=_env_bool("TREESHARE_TRUST_PROXY"),
        log_level=os.getenv("TREESHARE_LOG_LEVEL", "INFO").upper(),
    )
    validate_config(cfg)
    return cfg


def validate_config(cfg: Config) -> None:
    if cfg.port <= 0 or cfg.port > 65535:
        raise ConfigError(f"invalid port {cfg.port}")
    if cfg.auth not in (AUTH_ON, AUTH_OFF):
        raise ConfigError(f"invalid auth mode {cfg.auth!r}")
    if cfg.guest_mode is not None and cfg.guest_mode not in GUEST_MODES:
        raise ConfigError(f"invalid guest mode {cfg.guest_mode!r}")
    if cfg.https and (not cfg.cert_file or not cfg.key_file):
        raise ConfigError("https enabled but cert/key missing")


CONFIG = load_config()
