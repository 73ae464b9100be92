"""
Authenticated async HTTP client for the remote sync API.

Every request goes through BearerTokenAuth, which plays the part of both
interceptors around the wire call:

  before  ask the AuthProvider for the current access token and attach it
          as ``Authorization: Bearer <token>``; no token means the request
          goes out unauthenticated and the server decides
  after   on HTTP 401, refresh the session exactly once and, if that yields
          a new session, resend the original request once with the new token

A request is therefore sent at most twice. Whatever comes back from the
second attempt (or the first, if refresh failed) is final.

CloudClient then maps outcomes onto the sync error taxonomy so callers never
see httpx exceptions.
"""
import logging
from typing import Any, AsyncGenerator, Dict, List, Optional

import httpx

from jobtracker.cloud.auth import AuthProvider
from jobtracker.sync.errors import AuthError, RemoteConnectionError, TransportError

logger = logging.getLogger(__name__)

HEALTH_PATH = "/health"


class BearerTokenAuth(httpx.Auth):
    """httpx auth flow: bearer token injection plus one refresh-and-retry on 401."""

    def __init__(self, provider: Optional[AuthProvider]):
        self._provider = provider

    async def async_auth_flow(
        self, request: httpx.Request
    ) -> AsyncGenerator[httpx.Request, httpx.Response]:
        if self._provider is None:
            yield request
            return

        token = self._provider.get_access_token()
        if token:
            request.headers["Authorization"] = f"Bearer {token}"
        else:
            logger.debug("No access token; sending %s %s unauthenticated", request.method, request.url.path)

        response = yield request
        if response.status_code != 401:
            return

        logger.info("Access token rejected for %s %s, refreshing", request.method, request.url.path)
        result = await self._provider.refresh_session()
        if result.session is None or result.error:
            logger.warning("Token refresh failed: %s", result.error)
            return

        request.headers["Authorization"] = f"Bearer {result.session.access_token}"
        yield request

    def sync_auth_flow(self, request):
        raise RuntimeError("BearerTokenAuth only supports httpx.AsyncClient")


class CloudClient:
    """
    Thin async wrapper over httpx.AsyncClient for the sync REST surface.

        GET    /health
        POST   /<table>
        PUT    /<table>/<id>
        DELETE /<table>/<id>
        GET    /<table>?since=<ISO8601>
    """

    def __init__(
        self,
        base_url: str,
        auth: Optional[AuthProvider] = None,
        *,
        timeout: float = 30.0,
        user_agent: str = "JobTracker-Sync",
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Args:
            base_url: Root of the sync API; table paths are appended to it.
            auth: AuthProvider supplying bearer tokens. None sends every
                  request unauthenticated.
            timeout: Per-request timeout in seconds.
            transport: Optional httpx transport (httpx.MockTransport in tests).
        """
        self._http = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            timeout=httpx.Timeout(timeout),
            headers={"Content-Type": "application/json", "User-Agent": user_agent},
            auth=BearerTokenAuth(auth),
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._http.aclose()

    async def request(
        self,
        method: str,
        path: str,
        *,
        json: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> httpx.Response:
        """
        Send one request and return the 2xx/3xx response.

        Raises:
            RemoteConnectionError: the server could not be reached at all.
            TransportError: timeout, other network failure, or a non-401 error status.
            AuthError: still 401 after the one permitted refresh.
        """
        try:
            response = await self._http.request(
                method, path, json=json, params=params, headers=headers
            )
        except httpx.ConnectError as exc:
            raise RemoteConnectionError(f"Cannot reach sync API: {exc}") from exc
        except httpx.TimeoutException as exc:
            raise TransportError(f"{method} {path} timed out") from exc
        except httpx.RequestError as exc:
            raise TransportError(f"{method} {path} failed: {exc}") from exc

        if response.status_code == 401:
            raise AuthError(f"{method} {path} rejected: not authorized")
        if response.status_code >= 400:
            raise TransportError(
                f"{method} {path} failed with HTTP {response.status_code}: {_error_detail(response)}",
                status_code=response.status_code,
            )
        return response

    async def health(self) -> Dict[str, Any]:
        """
        Lightweight reachability probe.

        Raises:
            RemoteConnectionError: for any failure, including error statuses.
        """
        try:
            response = await self.request("GET", HEALTH_PATH)
        except RemoteConnectionError:
            raise
        except (TransportError, AuthError) as exc:
            raise RemoteConnectionError(f"Health probe failed: {exc}") from exc
        return _json_or_empty(response)

    async def create(
        self, table: str, payload: Dict[str, Any], *, idempotency_key: Optional[str] = None
    ) -> Dict[str, Any]:
        response = await self.request(
            "POST", f"/{table}", json=payload, headers=_idempotency(idempotency_key)
        )
        return _json_or_empty(response)

    async def update(
        self,
        table: str,
        record_id: int,
        payload: Dict[str, Any],
        *,
        idempotency_key: Optional[str] = None,
    ) -> Dict[str, Any]:
        response = await self.request(
            "PUT", f"/{table}/{record_id}", json=payload, headers=_idempotency(idempotency_key)
        )
        return _json_or_empty(response)

    async def delete(
        self, table: str, record_id: int, *, idempotency_key: Optional[str] = None
    ) -> None:
        await self.request(
            "DELETE", f"/{table}/{record_id}", headers=_idempotency(idempotency_key)
        )

    async def changes_since(self, table: str, since: str) -> List[Any]:
        """Fetch the raw CloudRecord list for a table.

        Raises:
            TransportError: if the body is not a JSON array.
        """
        response = await self.request("GET", f"/{table}", params={"since": since})
        body = _json_or_empty(response)
        if body == {}:
            return []
        if not isinstance(body, list):
            raise TransportError(f"GET /{table} returned {type(body).__name__}, expected a list")
        return body


# ─── Helpers ──────────────────────────────────────────────────────────────────

def _idempotency(key: Optional[str]) -> Optional[Dict[str, str]]:
    return {"Idempotency-Key": key} if key else None


def _json_or_empty(response: httpx.Response) -> Any:
    if not response.content:
        return {}
    try:
        return response.json()
    except ValueError:
        return {}


def _error_detail(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:200]
    if isinstance(body, dict):
        return str(body.get("error") or body.get("message") or body)[:200]
    return str(body)[:200]
