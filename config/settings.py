from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from functools import lru_cache
from typing import Any

from pydantic import SecretStr

from .public_config import PublicConfig
from .secret_config import DEV_SESSION_SECRET, SecretConfig

_log = logging.getLogger("coach_pipeline")


class ConfigError(RuntimeError):
    pass


@dataclass(frozen=True, slots=True)
class Settings:
    """
    Public and secret config behind one dot-access object.
    A name defined in both resolves to the secret side.
    """

    public: PublicConfig
    secret: SecretConfig

    def __getattr__(self, name: str) -> Any:
        if hasattr(self.secret, name):
            return getattr(self.secret, name)
        return getattr(self.public, name)

    def cors_origin_list(self) -> list[str]:
        return self.public.cors_origin_list()

    def provider_api_key(self) -> str:
        return _secret_value(self.secret.gemini_api_key)


def _strict_secrets() -> bool:
    env = str(os.environ.get("ENV") or os.environ.get("APP_ENV") or "").strip().lower()
    flag = str(os.environ.get("STRICT_SECRETS") or "").strip().lower()
    return env in {"prod", "production"} or flag in {"1", "true", "yes"}


def _secret_value(secret: SecretStr | None) -> str:
    if secret is None:
        return ""
    return str(secret.get_secret_value() or "")


def _validate(s: Settings) -> None:
    """
    Numeric tunables must be usable; the dev session secret is fatal only under
    production / STRICT_SECRETS and a warning otherwise.
    """
    bad: list[str] = []
    pub = s.public
    if int(pub.chunk_minutes) <= 0:
        bad.append("CHUNK_MINUTES must be > 0")
    if int(pub.max_concurrent_jobs) <= 0:
        bad.append("MAX_CONCURRENT_JOBS must be > 0")
    if int(pub.stream_checkpoint_every) <= 0:
        bad.append("STREAM_CHECKPOINT_EVERY must be > 0")
    if float(pub.inter_request_delay_s) < 0 or float(pub.rate_limit_cooldown_s) < 0:
        bad.append("delays must be >= 0")
    if bad:
        raise ConfigError("; ".join(bad))

    if _secret_value(s.secret.session_secret) == DEV_SESSION_SECRET:
        if _strict_secrets():
            raise ConfigError("SESSION_SECRET is the development default; set it via env or `.env.secrets`")
        _log.warning("dev_session_secret_in_use")

    if int(pub.max_concurrent_jobs) > 1:
        # Job rows are last-writer-wins; more than one slot needs per-job versioning.
        _log.warning(
            "concurrency_above_single_writer",
            extra={"max_concurrent_jobs": int(pub.max_concurrent_jobs)},
        )


def get_safe_config_report() -> dict[str, Any]:
    """
    Effective config for display. Secrets appear only as SET / UNSET.
    """
    s = get_settings()
    public = {k: (str(v) if hasattr(v, "__fspath__") else v) for k, v in s.public.model_dump().items()}
    secrets: dict[str, str] = {}
    for k in sorted(type(s.secret).model_fields):
        v = getattr(s.secret, k, None)
        raw = _secret_value(v) if isinstance(v, SecretStr) else str(v or "")
        secrets[k] = "SET" if raw.strip() else "UNSET"
    return {"public": public, "secrets": secrets}


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    s = Settings(public=PublicConfig(), secret=SecretConfig())
    _validate(s)
    return s
