from positiondesk.config.settings import DeskSettings, get_settings
from positiondesk.config.view_profiles import ViewProfile, ViewProfiles

__all__ = [
    "DeskSettings",
    "get_settings",
    "ViewProfile",
    "ViewProfiles",
]
