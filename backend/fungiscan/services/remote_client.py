"""
FungiScan backend API client.

Translates domain operations into REST calls. Holds no state beyond one
reusable ``httpx.AsyncClient``. Every failure is raised as a ``RemoteError``
subclass so callers can tell "retry later" (``NetworkError``) apart from
errors that must be surfaced (``Unauthorized``, ``ServerError``).
"""
import logging
from typing import Any, Dict, List, Optional

import httpx
from pydantic import ValidationError as PydanticValidationError

from ..core.config import settings
from ..core.errors import NetworkError, NotFound, ServerError, Unauthorized
from ..entities.base import EntityRecord, EntityType
from ..entities.identification import ExpertVerificationRequest, IdentificationResult
from ..entities.mushroom import LookalikeSpecies, Mushroom
from ..entities.preferences import UserPreferences
from ..entities.registry import ENTITY_MODELS

logger = logging.getLogger(__name__)

# Collection endpoint per entity type
ENDPOINTS: Dict[EntityType, str] = {
    EntityType.MUSHROOM: "/mushrooms",
    EntityType.IDENTIFICATION: "/identifications",
    EntityType.LOCATION: "/locations",
}


class RemoteClient:
    """Async HTTP client for the FungiScan backend."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout: Optional[float] = None,
        health_timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = (base_url or settings.API_BASE_URL).rstrip("/")
        self.api_key = api_key if api_key is not None else settings.API_KEY
        self.timeout = timeout or settings.REQUEST_TIMEOUT
        self.health_timeout = min(health_timeout or settings.HEALTH_CHECK_TIMEOUT, 5.0)

        headers = {"Accept": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        else:
            logger.info("No API key configured; backend requests are anonymous")
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            headers=headers,
            timeout=self.timeout,
            transport=transport,
        )

    @property
    def host(self) -> str:
        return httpx.URL(self.base_url).host

    async def aclose(self) -> None:
        await self._client.aclose()

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    async def health_check(self) -> bool:
        """True if the backend answers ``GET /health`` with 200 within the health timeout."""
        try:
            resp = await self._client.get("/health", timeout=self.health_timeout)
            return resp.status_code == 200
        except httpx.HTTPError as exc:
            logger.warning("Backend health check failed: %s", exc)
            return False

    # ------------------------------------------------------------------
    # Generic CRUD
    # ------------------------------------------------------------------

    async def fetch(self, entity_type: EntityType, entity_id: str) -> EntityRecord:
        payload = await self._request("GET", f"{self._endpoint(entity_type)}/{entity_id}")
        return self._decode(ENTITY_MODELS[entity_type], payload)

    async def fetch_all(self, entity_type: EntityType) -> List[EntityRecord]:
        payload = await self._request("GET", self._endpoint(entity_type))
        return [self._decode(ENTITY_MODELS[entity_type], item) for item in self._as_list(payload)]

    async def create(self, entity_type: EntityType, record: EntityRecord) -> EntityRecord:
        """POST a new record; returns the server's version (may carry a canonical id)."""
        payload = await self._request("POST", self._endpoint(entity_type), json=record.to_wire())
        return self._decode(ENTITY_MODELS[entity_type], payload) if payload else record

    async def update(self, entity_type: EntityType, record: EntityRecord) -> EntityRecord:
        payload = await self._request(
            "PUT", f"{self._endpoint(entity_type)}/{record.id}", json=record.to_wire()
        )
        return self._decode(ENTITY_MODELS[entity_type], payload) if payload else record

    async def delete(self, entity_type: EntityType, entity_id: str) -> None:
        await self._request("DELETE", f"{self._endpoint(entity_type)}/{entity_id}")

    # ------------------------------------------------------------------
    # Domain-specific endpoints
    # ------------------------------------------------------------------

    async def search_mushrooms(self, traits: List[str]) -> List[Mushroom]:
        payload = await self._request("GET", "/mushrooms/search", params={"traits": ",".join(traits)})
        return [self._decode(Mushroom, item) for item in self._as_list(payload)]

    async def dangerous_lookalikes(self, mushroom_id: str) -> List[LookalikeSpecies]:
        payload = await self._request("GET", f"/mushrooms/{mushroom_id}/lookalikes/dangerous")
        return [self._decode(LookalikeSpecies, item) for item in self._as_list(payload)]

    async def recent_identifications(self, limit: int = 10) -> List[IdentificationResult]:
        payload = await self._request("GET", "/identifications/recent", params={"limit": limit})
        return [self._decode(IdentificationResult, item) for item in self._as_list(payload)]

    async def request_expert_verification(self, request: ExpertVerificationRequest) -> None:
        await self._request(
            "POST",
            f"/identifications/{request.identification_id}/verify",
            json={"userQuery": request.user_query},
        )

    async def fetch_preferences(self) -> UserPreferences:
        payload = await self._request("GET", "/user/preferences")
        return self._decode(UserPreferences, payload or {})

    async def update_preferences(self, preferences: UserPreferences) -> UserPreferences:
        payload = await self._request("PUT", "/user/preferences", json=preferences.to_wire())
        return self._decode(UserPreferences, payload) if payload else preferences

    async def delete_all_user_data(self) -> None:
        await self._request("DELETE", "/user/data")

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _endpoint(entity_type: EntityType) -> str:
        try:
            return ENDPOINTS[EntityType(entity_type)]
        except KeyError:
            raise ValueError(f"No collection endpoint for entity type {entity_type!r}")

    @staticmethod
    def _decode(model, payload: Any):
        try:
            return model.from_wire(payload)
        except PydanticValidationError as exc:
            raise ServerError(502, f"Malformed {model.__name__} payload from the backend") from exc

    @staticmethod
    def _as_list(payload: Any) -> List[Dict[str, Any]]:
        if not isinstance(payload, list):
            raise ServerError(502, "Expected a JSON array from the backend")
        return payload

    async def _request(self, method: str, path: str, **kwargs) -> Any:
        try:
            resp = await self._client.request(method, path, **kwargs)
        except httpx.TimeoutException as exc:
            raise NetworkError(f"{method} {path} timed out", {"cause": str(exc)}) from exc
        except httpx.TransportError as exc:
            raise NetworkError(f"{method} {path} failed: backend unreachable", {"cause": str(exc)}) from exc

        self._raise_for_status(resp)
        if resp.status_code == 204 or not resp.content:
            return None
        try:
            return resp.json()
        except ValueError as exc:
            raise ServerError(resp.status_code, "Backend returned invalid JSON") from exc

    @staticmethod
    def _raise_for_status(resp: httpx.Response) -> None:
        if resp.is_success:
            return
        status = resp.status_code
        if status in (401, 403):
            raise Unauthorized("Unauthorized: check the API key", {"status": status})
        if status == 404:
            raise NotFound("Resource not found", {"path": resp.request.url.path})
        try:
            message = resp.json().get("message") or "Unknown error"
        except (ValueError, AttributeError):
            message = resp.text or "Unknown error"
        raise ServerError(status, f"API error ({status}): {message}")

