from __future__ import annotations

from coach_pipeline.config import get_settings
from coach_pipeline.errors import ConfigurationError
from coach_pipeline.providers.base import (  # noqa: F401
    AnalysisProvider,
    Completion,
    RemoteFile,
    StreamFragment,
    Usage,
)


def get_provider() -> AnalysisProvider:
    """
    Build the configured provider. Raises ConfigurationError when the API key is missing.
    """
    s = get_settings()
    key = s.provider_api_key()
    if not key:
        raise ConfigurationError("GEMINI_API_KEY is not configured")
    from coach_pipeline.providers.gemini import GeminiProvider

    return GeminiProvider(api_key=key, model=str(s.model_name))
