"""Configuration module for the county tax pipeline."""

from county_tax.config.logging import configure_logging
from county_tax.config.settings import Settings, get_settings

__all__ = ["Settings", "get_settings", "configure_logging"]
