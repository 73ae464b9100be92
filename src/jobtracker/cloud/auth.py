"""
Identity-provider session persistence and the AuthProvider contract.

The sync engine never signs anyone in. Login flows (password, magic link,
reset) happen elsewhere; what reaches us is the resulting session:

    {
        "access_token":  "...",   # short-lived bearer token for the sync API
        "refresh_token": "...",   # exchanged for a new access token on 401
        "expires_at":    1735689600,
        "user_id":       "5b0c...",
    }

We serialize this to JSON on disk so the app keeps working across restarts.
When the sync API rejects the access token, the transport asks the provider
to refresh it once; the provider exchanges the refresh token with the
identity provider's token endpoint and saves the new pair.
"""
import json
import logging
import os
import stat
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Dict, Optional, Protocol, runtime_checkable

import httpx

logger = logging.getLogger(__name__)

# ── Constants ─────────────────────────────────────────────────────────────────

SESSION_DIR_DEFAULT = Path.home() / ".jobtracker" / "session"
SESSION_FILE_NAME = "session.json"
TOKEN_PATH = "/auth/v1/token"


# ── Exceptions ────────────────────────────────────────────────────────────────

class NoSessionError(RuntimeError):
    """Raised when no saved session exists."""


# ── Contract ──────────────────────────────────────────────────────────────────

@dataclass
class AuthSession:
    access_token: str
    refresh_token: str
    expires_at: Optional[int] = None
    user_id: Optional[str] = None

    @classmethod
    def from_token_response(cls, payload: Dict[str, Any]) -> "AuthSession":
        """Build a session from the identity provider's token endpoint reply."""
        user = payload.get("user") or {}
        return cls(
            access_token=payload["access_token"],
            refresh_token=payload["refresh_token"],
            expires_at=payload.get("expires_at"),
            user_id=user.get("id") or payload.get("user_id"),
        )


@dataclass
class RefreshResult:
    """Outcome of a refresh. Exactly one of session/error is set."""

    session: Optional[AuthSession]
    error: Optional[str] = None


@runtime_checkable
class AuthProvider(Protocol):
    """What the sync engine needs from the authentication layer."""

    def is_authenticated(self) -> bool:
        ...

    def get_access_token(self) -> Optional[str]:
        ...

    async def refresh_session(self) -> RefreshResult:
        ...


# ── Main class ────────────────────────────────────────────────────────────────

class SessionAuthProvider:
    """
    AuthProvider backed by a session file on disk.

    Usage:
        auth = SessionAuthProvider(auth_url, api_key)
        auth.load_if_present()
        token = auth.get_access_token()
        result = await auth.refresh_session()   # on 401
    """

    def __init__(
        self,
        auth_url: str,
        api_key: str = "",
        *,
        session_dir: Path = SESSION_DIR_DEFAULT,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._auth_url = auth_url.rstrip("/")
        self._api_key = api_key
        self._session_dir = Path(session_dir)
        self._session_file = self._session_dir / SESSION_FILE_NAME
        self._timeout = timeout
        self._transport = transport
        self._http: Optional[httpx.AsyncClient] = None
        self._session: Optional[AuthSession] = None

    # ── Persistence ───────────────────────────────────────────────────────────

    def has_session(self) -> bool:
        """Return True if a session file exists on disk."""
        return self._session_file.exists()

    def save(self, session: AuthSession) -> None:
        """
        Persist the session to disk with owner-only permissions and make it current.

        Directory: 0700 (rwx------)
        File:      0600 (rw-------)
        """
        self._session_dir.mkdir(parents=True, exist_ok=True)
        os.chmod(self._session_dir, stat.S_IRWXU)  # 0700

        self._session_file.write_text(json.dumps(asdict(session), indent=2))
        os.chmod(self._session_file, stat.S_IRUSR | stat.S_IWUSR)  # 0600
        self._session = session

    def load(self) -> AuthSession:
        """
        Load the session from disk and make it current.

        Raises:
            NoSessionError: if no session file exists.
        """
        if not self._session_file.exists():
            raise NoSessionError(
                f"No session found at {self._session_file}. "
                "Run `python -m jobtracker setup` to store one."
            )
        data = json.loads(self._session_file.read_text())
        self._session = AuthSession(**data)
        return self._session

    def load_if_present(self) -> Optional[AuthSession]:
        """Like load(), but a missing or unreadable file just means signed out."""
        try:
            return self.load()
        except NoSessionError:
            return None
        except (ValueError, TypeError) as exc:
            logger.warning("Ignoring unreadable session file %s: %s", self._session_file, exc)
            return None

    def clear(self) -> None:
        """Delete the session file (does not raise if already absent)."""
        self._session = None
        if self._session_file.exists():
            self._session_file.unlink()

    # ── AuthProvider ──────────────────────────────────────────────────────────

    def is_authenticated(self) -> bool:
        return self._session is not None

    def get_access_token(self) -> Optional[str]:
        return self._session.access_token if self._session else None

    async def refresh_session(self) -> RefreshResult:
        """
        Exchange the refresh token for a new session.

        Never raises: failures come back as RefreshResult(session=None, error=...).
        """
        if self._session is None:
            return RefreshResult(session=None, error="No session to refresh")
        if not self._auth_url:
            return RefreshResult(session=None, error="No identity provider URL configured")

        try:
            response = await self._client().post(
                f"{self._auth_url}{TOKEN_PATH}",
                params={"grant_type": "refresh_token"},
                json={"refresh_token": self._session.refresh_token},
                headers={"apikey": self._api_key} if self._api_key else None,
            )
            response.raise_for_status()
            session = AuthSession.from_token_response(response.json())
        except httpx.HTTPStatusError as exc:
            logger.warning("Token refresh rejected: HTTP %s", exc.response.status_code)
            return RefreshResult(
                session=None, error=f"Token refresh rejected (HTTP {exc.response.status_code})"
            )
        except httpx.HTTPError as exc:
            logger.warning("Token refresh failed: %s", exc)
            return RefreshResult(session=None, error=f"Token refresh failed: {exc}")
        except (ValueError, KeyError) as exc:
            logger.warning("Token refresh returned an unusable body: %s", exc)
            return RefreshResult(session=None, error=f"Malformed token response: {exc}")

        self.save(session)
        logger.info("Access token refreshed")
        return RefreshResult(session=session)

    async def exchange_refresh_token(self, refresh_token: str) -> RefreshResult:
        """Adopt a refresh token issued elsewhere; saves the session it yields."""
        previous = self._session
        self._session = AuthSession(access_token="", refresh_token=refresh_token)
        result = await self.refresh_session()
        if result.session is None:
            self._session = previous
        return result

    async def aclose(self) -> None:
        if self._http is not None:
            await self._http.aclose()
            self._http = None

    def _client(self) -> httpx.AsyncClient:
        if self._http is None or self._http.is_closed:
            self._http = httpx.AsyncClient(timeout=self._timeout, transport=self._transport)
        return self._http
