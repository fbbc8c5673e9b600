"""Maps each ``EntityType`` to the model class its payloads decode into."""
from typing import Any, Dict, Type

from .base import EntityRecord, EntityType
from .identification import ExpertVerificationRequest, IdentificationResult
from .location import SavedLocation
from .mushroom import Mushroom
from .preferences import UserPreferences

ENTITY_MODELS: Dict[EntityType, Type[EntityRecord]] = {
    EntityType.MUSHROOM: Mushroom,
    EntityType.IDENTIFICATION: IdentificationResult,
    EntityType.LOCATION: SavedLocation,
    EntityType.PREFERENCES: UserPreferences,
    EntityType.EXPERT_VERIFICATION: ExpertVerificationRequest,
}


def decode(entity_type: EntityType, payload: Dict[str, Any]) -> EntityRecord:
    return ENTITY_MODELS[entity_type].from_wire(payload)
