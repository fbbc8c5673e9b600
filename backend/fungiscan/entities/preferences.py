from typing import List, Literal

from .base import EntityRecord

PREFERENCES_ID = "user_preferences"


class UserPreferences(EntityRecord):
    """Singleton settings record; always stored under ``PREFERENCES_ID``."""

    id: str = PREFERENCES_ID
    privacy_mode_enabled: bool = False
    dark_mode_enabled: bool = False
    measurement_unit: Literal["metric", "imperial"] = "metric"
    offline_maps_cached: bool = True
    cache_expiry_days: int = 30
    favorite_species: List[str] = []
    favorite_locations: List[str] = []
