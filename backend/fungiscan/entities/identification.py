from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..core.clock import utcnow
from .base import Coordinates, EntityRecord, UtcDateTime
from .mushroom import Mushroom


class Prediction(BaseModel):
    """One ``{label, confidence}`` pair from the on-device ML model."""
    model_config = ConfigDict(frozen=True)

    label: str
    confidence: float = Field(ge=0.0, le=1.0)


class IdentificationResult(EntityRecord):
    timestamp: UtcDateTime = Field(default_factory=utcnow)
    image_url: str
    identified_mushroom: Mushroom
    alternatives: List[Mushroom] = []
    location: Optional[Coordinates] = None
    verified_by_expert: bool = False
    expert_comment: Optional[str] = None


class ExpertVerificationRequest(EntityRecord):
    """A user's request for an expert to review one of their identifications."""

    identification_id: str
    user_query: str
    timestamp: UtcDateTime = Field(default_factory=utcnow)
    status: str = "pending"
