from typing import List, Optional

from pydantic import Field, field_validator

from ..core.clock import utcnow
from .base import Coordinates, EntityRecord, UtcDateTime


class SavedLocation(EntityRecord):
    """A foraging spot the user saved. User-authored, never evicted from the cache."""

    name: str
    notes: str = ""
    timestamp: UtcDateTime = Field(default_factory=utcnow)
    coordinates: Coordinates
    path: Optional[List[Coordinates]] = None  # GPS track walked to the spot
    species: List[str] = []
    photos: Optional[List[str]] = None

    @field_validator("name")
    @classmethod
    def _name_not_blank(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("Location name must not be empty")
        return value.strip()

    def with_species(self, species_name: str, photo_path: Optional[str] = None) -> "SavedLocation":
        photos = self.photos
        if photo_path is not None:
            photos = list(photos or []) + [photo_path]
        return self.model_copy(update={"species": list(self.species) + [species_name], "photos": photos})
