from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from typing import Any

from pydantic import SecretStr

from .public_config import PublicConfig
from .secret_config import SecretConfig


class ConfigError(RuntimeError):
    pass


@dataclass(frozen=True, slots=True)
class Settings:
    """
    Merged settings view (dot-access).

    Precedence:
      - secrets override public when names overlap
    """

    public: PublicConfig
    secret: SecretConfig

    def __getattr__(self, name: str) -> Any:
        if hasattr(self.secret, name):
            return getattr(self.secret, name)
        return getattr(self.public, name)

    def redis_connection_url(self) -> str:
        """
        Connection URL for redis-py: REDIS_URL verbatim, else built from host/port/db.
        The password is passed separately (see `redis_password_value`).
        """
        url = str(self.secret.redis_url or "").strip()
        if url:
            return url
        return f"redis://{self.public.redis_host}:{int(self.public.redis_port)}/{int(self.public.redis_db)}"

    def redis_password_value(self) -> str | None:
        return _secret_value(self.secret.redis_password) or None


_VALID_QUEUE_BACKENDS = {"redis", "local"}
_VALID_SESSION_STORES = {"redis", "memory"}


def _secret_value(secret: SecretStr | None) -> str:
    try:
        return secret.get_secret_value() if secret else ""
    except Exception:
        return ""


def _is_production_env(s: Settings) -> bool:
    return str(s.public.env or "").strip().lower() in {"prod", "production"}


def _validate(s: Settings) -> None:
    problems: list[str] = []
    if str(s.public.queue_backend).strip().lower() not in _VALID_QUEUE_BACKENDS:
        problems.append(f"QUEUE_BACKEND must be one of {sorted(_VALID_QUEUE_BACKENDS)}")
    if str(s.public.session_store).strip().lower() not in _VALID_SESSION_STORES:
        problems.append(f"SESSION_STORE must be one of {sorted(_VALID_SESSION_STORES)}")
    if int(s.public.session_ttl_seconds) <= 0:
        problems.append("SESSION_TTL_SECONDS must be positive")
    if int(s.public.session_activity_window_seconds) < 0:
        problems.append("SESSION_ACTIVITY_WINDOW_SECONDS must not be negative")
    if int(s.public.session_activity_window_seconds) >= int(s.public.session_ttl_seconds):
        problems.append("SESSION_ACTIVITY_WINDOW_SECONDS must be shorter than SESSION_TTL_SECONDS")

    if _is_production_env(s):
        # In-process backends cannot be shared between the app and the worker process.
        if str(s.public.queue_backend).strip().lower() == "local":
            problems.append("QUEUE_BACKEND=local is not allowed in production")
        if str(s.public.session_store).strip().lower() == "memory":
            problems.append("SESSION_STORE=memory is not allowed in production")
        if s.public.cookie_secure is False:
            problems.append("COOKIE_SECURE=0 is not allowed in production")

    if problems:
        raise ConfigError("Invalid configuration: " + "; ".join(problems))


def get_safe_config_report() -> dict[str, Any]:
    """
    Deterministic, non-sensitive config report.

    - Public values are included (paths are stringified)
    - Secret values are NEVER included; only SET/UNSET markers
    """
    s = get_settings()

    pub = s.public.model_dump()
    pub_s: dict[str, Any] = {}
    for k, v in pub.items():
        pub_s[k] = str(v) if hasattr(v, "__fspath__") else v

    sec: dict[str, str] = {}
    for k in sorted(s.secret.model_fields.keys()):
        v = getattr(s.secret, k, None)
        if v is None:
            sec[k] = "UNSET"
        elif isinstance(v, SecretStr):
            sec[k] = "SET" if v.get_secret_value() else "UNSET"
        else:
            sec[k] = "SET" if str(v).strip() else "UNSET"

    return {
        "env": str(os.environ.get("ENV") or s.public.env),
        "public": pub_s,
        "secrets": sec,
    }


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    public = PublicConfig()
    secret = SecretConfig()
    s = Settings(public=public, secret=secret)
    _validate(s)
    return s
