"""
Configuration loading.
"""

from .loader import AnalyticsConfig, PricingConfig, default_state_dir, load_config

__all__ = ["AnalyticsConfig", "PricingConfig", "default_state_dir", "load_config"]
