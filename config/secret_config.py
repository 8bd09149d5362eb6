from __future__ import annotations

from pydantic import AliasChoices, Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict

DEV_SESSION_SECRET = "dev-insecure-session-secret"


class SecretConfig(BaseSettings):
    """
    Credentials only; values come from the environment or a local `.env.secrets`.
    Nothing in this file is itself secret.
    """

    model_config = SettingsConfigDict(
        env_file=".env.secrets",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Missing => POST /analyze answers 500 before any job is created.
    gemini_api_key: SecretStr | None = Field(
        default=None, validation_alias=AliasChoices("GEMINI_API_KEY", "GOOGLE_API_KEY")
    )

    # Signs bearer tokens and storage URLs.
    session_secret: SecretStr = Field(default=SecretStr(DEV_SESSION_SECRET), alias="SESSION_SECRET")
