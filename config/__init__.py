"""
Process configuration: `public_config` (defaults + `.env`), `secret_config`
(credentials + `.env.secrets`), merged by `settings.get_settings()`.
"""

from .settings import get_settings  # noqa: F401
