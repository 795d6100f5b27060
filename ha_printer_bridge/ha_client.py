import asyncio
import logging
from typing import Any, Dict, List, Optional, Tuple

import aiohttp

from .errors import EntityNotFound, StateSourceError, Unauthorized
from .models import RawEntity

logger = logging.getLogger(__name__)


class HomeAssistantClient:
    """State source backed by the Home Assistant REST API.

    ``read_entity`` and ``read_all_entities`` return ``RawEntity`` records;
    every call maps 401/403 to ``Unauthorized`` and 404 to ``EntityNotFound``
    so callers can tell an auth failure from a single missing sensor.
    """

    def __init__(
        self,
        base_url: str,
        token: str,
        session: Optional[aiohttp.ClientSession] = None,
        timeout: float = 10.0,
        verify_ssl: bool = True,
    ) -> None:
        self.base_url = base_url.strip().rstrip("/")
        self._token = token.strip()
        self._session = session
        self._owns_session = session is None
        self._timeout = aiohttp.ClientTimeout(total=timeout, connect=min(timeout, 5.0))
        self._verify_ssl = verify_ssl

    @property
    def headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self._token}",
            "Content-Type": "application/json",
        }

    async def ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            connector = aiohttp.TCPConnector(ssl=self._verify_ssl)
            self._session = aiohttp.ClientSession(
                timeout=self._timeout, connector=connector
            )
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._owns_session and self._session and not self._session.closed:
            await self._session.close()
        self._session = None

    def _url(self, path: str) -> str:
        if path.startswith("http://") or path.startswith("https://"):
            return path
        return f"{self.base_url}/{path.lstrip('/')}"

    @staticmethod
    async def _raise_for_status(resp: aiohttp.ClientResponse, entity_id: Optional[str] = None) -> None:
        if resp.status in (401, 403):
            raise Unauthorized(status=resp.status)
        if resp.status == 404:
            raise EntityNotFound(entity_id or str(resp.url))
        if resp.status != 200:
            body = await resp.text()
            raise StateSourceError(
                f"HTTP Error: {resp.status} {body[:200]}", status=resp.status
            )

    async def _get_json(self, path: str, entity_id: Optional[str] = None) -> Any:
        session = await self.ensure_session()
        try:
            async with session.get(self._url(path), headers=self.headers) as resp:
                await self._raise_for_status(resp, entity_id)
                return await resp.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise StateSourceError(f"Request to {path} failed: {e}") from e
        except ValueError as e:
            raise StateSourceError(f"Failed to parse server response: {e}") from e

    # -------------------------------------------------------------------------
    # State source API
    # -------------------------------------------------------------------------
    async def read_entity(self, entity_id: str) -> RawEntity:
        payload = await self._get_json(f"/api/states/{entity_id}", entity_id=entity_id)
        if not isinstance(payload, dict):
            raise StateSourceError(f"Unexpected payload for {entity_id}: {type(payload)}")
        entity = RawEntity.from_api(payload)
        if not entity.entity_id:
            entity = RawEntity(entity_id, entity.state, entity.attributes)
        return entity

    async def read_all_entities(self) -> List[RawEntity]:
        payload = await self._get_json("/api/states")
        if not isinstance(payload, list):
            raise StateSourceError(f"Unexpected states payload type: {type(payload)}")
        return [RawEntity.from_api(item) for item in payload if isinstance(item, dict)]

    async def call_action(
        self, category: str, action: str, params: Optional[Dict[str, Any]] = None
    ) -> None:
        session = await self.ensure_session()
        path = f"/api/services/{category}/{action}"
        logger.info("Calling %s.%s with %s", category, action, params or {})
        try:
            async with session.post(
                self._url(path), headers=self.headers, json=params or {}
            ) as resp:
                await self._raise_for_status(resp)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise StateSourceError(f"Service call {category}.{action} failed: {e}") from e

    async def fetch_bytes(self, path_or_url: str) -> bytes:
        session = await self.ensure_session()
        try:
            async with session.get(self._url(path_or_url), headers=self.headers) as resp:
                await self._raise_for_status(resp)
                return await resp.read()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise StateSourceError(f"Download of {path_or_url} failed: {e}") from e

    async def check_connection(self) -> Tuple[bool, str]:
        if not self.base_url or not self._token:
            return False, "Please enter server URL and access token"
        try:
            await self._get_json("/api/")
        except Unauthorized:
            return False, "Invalid access token"
        except StateSourceError as e:
            if e.status:
                return False, f"HTTP Error: {e.status}"
            return False, f"Connection failed: {e}"
        return True, "Connected successfully!"
