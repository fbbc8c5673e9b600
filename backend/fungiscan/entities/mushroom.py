from enum import Enum
from typing import List

from pydantic import field_validator

from .base import EntityRecord


class Edibility(str, Enum):
    EDIBLE = "edible"
    INEDIBLE = "inedible"        # Not poisonous but not pleasant to eat
    POISONOUS = "poisonous"
    PSYCHOACTIVE = "psychoactive"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, value) -> "Edibility":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            return cls.UNKNOWN


DANGEROUS_EDIBILITY = frozenset({Edibility.POISONOUS, Edibility.PSYCHOACTIVE})


class LookalikeSpecies(EntityRecord):
    common_name: str
    scientific_name: str
    edibility: Edibility = Edibility.UNKNOWN
    differentiation_notes: str = ""

    @field_validator("edibility", mode="before")
    @classmethod
    def _parse_edibility(cls, value):
        return Edibility.parse(value)

    @property
    def is_dangerous(self) -> bool:
        return self.edibility in DANGEROUS_EDIBILITY


class Mushroom(EntityRecord):
    """A catalogued species. Reference data: read from the backend, cached locally."""

    common_name: str
    scientific_name: str
    description: str = ""
    edibility: Edibility = Edibility.UNKNOWN
    habitat: str = ""
    traits: List[str] = []
    seasons: List[str] = []
    lookalikes: List[LookalikeSpecies] = []
    confidence: float = 1.0  # Set from the ML score when attached to an identification

    @field_validator("edibility", mode="before")
    @classmethod
    def _parse_edibility(cls, value):
        return Edibility.parse(value)

    @property
    def is_dangerous(self) -> bool:
        return self.edibility in DANGEROUS_EDIBILITY

    def dangerous_lookalikes(self) -> List[LookalikeSpecies]:
        return [l for l in self.lookalikes if l.is_dangerous]

    def has_any_trait(self, traits: List[str]) -> bool:
        """Case-insensitive: true if any of ``traits`` is one of this species' traits."""
        own = {t.lower() for t in self.traits}
        return any(t.lower() in own for t in traits)
