"""
Shared building blocks for entity records.

Entity records are immutable value objects; an update is a new record with
the same ``id``. The wire format (backend JSON and local cache payloads)
uses camelCase keys.
"""
from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Dict

from pydantic import AfterValidator, BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from ..core.clock import as_naive_utc


class EntityType(str, Enum):
    MUSHROOM = "mushroom"
    IDENTIFICATION = "identification"
    LOCATION = "location"
    PREFERENCES = "preferences"
    EXPERT_VERIFICATION = "expert_verification"


# Authored by the user rather than cached from the backend: never evicted
USER_AUTHORED_TYPES = frozenset({
    EntityType.LOCATION,
    EntityType.PREFERENCES,
    EntityType.EXPERT_VERIFICATION,
})

UtcDateTime = Annotated[datetime, AfterValidator(as_naive_utc)]


class EntityRecord(BaseModel):
    model_config = ConfigDict(
        frozen=True,
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )

    id: str

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)

    @classmethod
    def from_wire(cls, payload: Dict[str, Any]):
        return cls.model_validate(payload)


class Coordinates(BaseModel):
    model_config = ConfigDict(frozen=True)

    latitude: float = Field(ge=-90.0, le=90.0)
    longitude: float = Field(ge=-180.0, le=180.0)
