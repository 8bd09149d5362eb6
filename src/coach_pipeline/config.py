"""
Package-side access to the repo-level `config/` package.

Code under `coach_pipeline` imports `get_settings` from here so the merge and
validation rules live in one place.
"""

from __future__ import annotations

from config.settings import ConfigError as ConfigError
from config.settings import Settings as Settings
from config.settings import get_safe_config_report as get_safe_config_report
from config.settings import get_settings as get_settings
