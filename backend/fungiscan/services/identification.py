"""
Maps on-device ML predictions onto catalogued species.

The classifier only knows labels. A label is resolved against the mushroom
catalog by exact (case-insensitive) common or scientific name first, then by
fuzzy match, so a label like "Chanterelles" still finds "Chanterelle".
"""
import difflib
import logging
from typing import Dict, List, Optional, Tuple

from ..core.errors import NotFound, ValidationError
from ..entities.identification import Prediction
from ..entities.mushroom import Mushroom

logger = logging.getLogger(__name__)

FUZZY_CUTOFF = 0.75


class IdentificationMapper:
    def __init__(self, cutoff: float = FUZZY_CUTOFF):
        self.cutoff = cutoff

    def resolve(self, label: str, catalog: List[Mushroom]) -> Optional[Mushroom]:
        """Catalog entry for ``label``, or None if nothing is close enough."""
        names: Dict[str, Mushroom] = {}
        for mushroom in catalog:
            for name in (mushroom.common_name, mushroom.scientific_name):
                names.setdefault(name.strip().lower(), mushroom)

        key = label.strip().lower()
        if key in names:
            return names[key]
        close = difflib.get_close_matches(key, list(names), n=1, cutoff=self.cutoff)
        if close:
            logger.debug("Fuzzy-matched label %r to %r", label, close[0])
            return names[close[0]]
        return None

    def match(
        self, predictions: List[Prediction], catalog: List[Mushroom]
    ) -> Tuple[Mushroom, List[Mushroom]]:
        """
        Resolve the top prediction and the alternatives.
        Each returned mushroom carries its prediction's confidence.
        Raises NotFound if the top label matches no catalogued species.
        """
        if not predictions:
            raise ValidationError("No predictions to identify from")
        ranked = sorted(predictions, key=lambda p: p.confidence, reverse=True)

        top = ranked[0]
        identified = self.resolve(top.label, catalog)
        if identified is None:
            raise NotFound("No catalogued species matches the prediction", {"label": top.label})
        identified = identified.model_copy(update={"confidence": top.confidence})

        alternatives: List[Mushroom] = []
        seen = {identified.id}
        for prediction in ranked[1:]:
            mushroom = self.resolve(prediction.label, catalog)
            if mushroom is None:
                logger.info("Dropping unmatched alternative label %r", prediction.label)
                continue
            if mushroom.id in seen:
                continue
            seen.add(mushroom.id)
            alternatives.append(mushroom.model_copy(update={"confidence": prediction.confidence}))
        return identified, alternatives
