"""
Feature Flag Helper

Flags are switched on by listing their key in the FEATURE_FLAGS setting.
"""

from typing import Optional

from core.config import settings

WHOOP_EXTENDED_STREAMS = "whoop.extended_streams"


def is_feature_enabled(flag_key: str, user_id: Optional[str] = None) -> bool:
    """
    Check if a feature flag is enabled.

    Args:
        flag_key: Feature flag key (e.g., "whoop.extended_streams")
        user_id: Reserved for per-user rollout; flags are global today.

    Returns:
        True if feature is enabled
    """
    return flag_key in settings.feature_flags
