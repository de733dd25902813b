# qbroker/services/adapters/ts171.py
"""
Adapter for TranSMART 17.1 endpoints.

Authentication uses the OAuth password grant; the bearer token is kept in
the query document credentials together with the time it was generated.
Observations are fetched from the v2 REST API as a hypercube JSON document.
"""
import json
from typing import Any, Dict
from urllib.parse import quote

import httpx

from qbroker.core.config import settings
from qbroker.models.query import ExecutionResult, utcnow
from qbroker.services.adapters.base import (
    AdapterError,
    AuthError,
    QueryAdapter,
    TranslationError,
    TransportError,
)
from qbroker.services.adapters.registry import register_adapter
from qbroker.services.stores import PersistenceError

TOKEN_URI = "/oauth/token"


@register_adapter("TS171")
class TS171Adapter(QueryAdapter):
    source_type = "TS171"

    # -------- credentials -------- #

    def is_authenticated(self) -> bool:
        """True only when all token fields are present and the token has not expired."""
        return self.document.credentials.token_is_valid(utcnow())

    async def ensure_authenticated(self) -> None:
        if not self.is_authenticated():
            await self.refresh_token()

    async def refresh_token(self) -> None:
        creds = self.document.credentials
        params = {
            "grant_type": "password",
            "client_id": settings.TS171_CLIENT_ID,
            "client_secret": settings.TS171_CLIENT_SECRET,
            "username": creds.username or "",
            "password": creds.password or "",
        }
        self.logger.info("Query %s: requesting token from %s%s", self.document.id, self.document.endpoint.base_url, TOKEN_URI)
        try:
            async with self._http_client() as client:
                resp = await client.post(TOKEN_URI, params=params)
                resp.raise_for_status()
                body = resp.json()
        except httpx.HTTPStatusError as e:
            raise AuthError(f"Token request rejected with HTTP {e.response.status_code}") from e
        except httpx.HTTPError as e:
            raise AuthError(f"Token request failed: {e!r}") from e
        except ValueError as e:
            raise AuthError(f"Token response is not JSON: {e}") from e
        if not isinstance(body, dict) or "access_token" not in body:
            raise AuthError("Token response carries no access_token")

        merged = creds.model_dump()
        merged.update(body)
        merged.update(username=creds.username, password=creds.password, generated=utcnow())
        self.document.credentials = type(creds).model_validate(merged)
        await self._persist_fields("credentials")
        self.logger.info("Query %s: token refreshed, expires in %ss", self.document.id, body.get("expires_in"))

    # -------- remote fetch -------- #

    def _observations_uri(self) -> str:
        local = self.document.input.local
        uri = local.get("uri", "")
        params = local.get("params")
        if params is None:
            return uri
        return uri + quote(json.dumps(params, separators=(",", ":")), safe="")

    async def _fetch(self) -> bytes:
        uri = self._observations_uri()
        headers = {"Authorization": f"Bearer {self.document.credentials.access_token}"}
        self.logger.info("Query %s: GET %s%s", self.document.id, self.document.endpoint.base_url, uri)
        try:
            async with self._http_client() as client:
                resp = await client.get(uri, headers=headers)
                resp.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise TransportError(f"Remote fetch failed with HTTP {e.response.status_code}") from e
        except httpx.HTTPError as e:
            raise TransportError(f"Remote fetch failed: {e!r}") from e
        self.logger.info("Query %s: received %d bytes", self.document.id, len(resp.content))
        return resp.content

    async def execute(self) -> ExecutionResult:
        start = utcnow()
        try:
            await self.ensure_authenticated()
            raw = await self._fetch()
            std = await self.persist_local_output(raw)
        except (AdapterError, PersistenceError) as e:
            result = self._failure(start, e)
            self.logger.error("Query %s failed after %d ms: %s", self.document.id, result.time, result.error)
            return result
        result = self._success(start, std)
        self.logger.info("Query %s succeeded in %d ms", self.document.id, result.time)
        return result

    # -------- translation -------- #

    # Local and standard query descriptions share one shape for now.
    def input_local_to_standard(self, data: Dict[str, Any]) -> Dict[str, Any]:
        return data

    def input_standard_to_local(self, data: Dict[str, Any]) -> Dict[str, Any]:
        return data

    def output_local_to_standard(self, data: bytes) -> bytes:
        """Validate the hypercube JSON and re-encode it compactly as UTF-8."""
        try:
            cube = json.loads(data)
        except ValueError as e:
            raise TranslationError(f"TranSMART response is not valid JSON: {e}") from e
        return json.dumps(cube, separators=(",", ":"), ensure_ascii=False).encode("utf-8")

    def output_standard_to_local(self, data: bytes) -> bytes:
        return data
