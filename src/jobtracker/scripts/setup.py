"""
Interactive setup: store an identity-provider session for the sync engine.

Sign-in itself happens in the desktop app or the identity provider's web
flow. Paste the refresh token it issued; setup exchanges it once for a
fresh session and saves that to ~/.jobtracker/session/ with owner-only
permissions (0700 dir / 0600 file).

Usage:
    python -m jobtracker setup
    python -m jobtracker.scripts.setup   (direct invocation)

Re-run if the refresh token is revoked or the session file is deleted.
"""
import asyncio
import getpass
import sys

from jobtracker.cloud.auth import SessionAuthProvider
from jobtracker.config import get_settings


async def _exchange(auth: SessionAuthProvider, refresh_token: str):
    try:
        return await auth.exchange_refresh_token(refresh_token)
    finally:
        await auth.aclose()


def run_setup() -> None:
    settings = get_settings()
    auth = SessionAuthProvider(
        settings.auth_url,
        settings.auth_api_key,
        session_dir=settings.session_dir,
        timeout=settings.request_timeout_seconds,
    )

    print("\nJobTracker Sync Setup\n")
    if not settings.auth_url:
        print("Error: AUTH_URL is not configured (set it in .env or the environment).")
        sys.exit(1)
    print(f"Session will be stored in: {settings.session_dir}\n")

    if auth.has_session():
        print("An existing session was found.")
        overwrite = input("Replace it? [y/N] ").strip().lower()
        if overwrite != "y":
            print("Setup cancelled. Existing session unchanged.")
            sys.exit(0)

    refresh_token = getpass.getpass("Refresh token: ").strip()
    if not refresh_token:
        print("Error: refresh token cannot be empty.")
        sys.exit(1)

    print("\nValidating with the identity provider...")
    result = asyncio.run(_exchange(auth, refresh_token))
    if result.session is None:
        print(f"\nSetup failed: {result.error}")
        sys.exit(1)

    print(f"\nSession saved to {settings.session_dir}")
    if result.session.user_id:
        print(f"   Signed in as user {result.session.user_id}")
    print("\nSync will start automatically the next time the engine runs.\n")


if __name__ == "__main__":
    run_setup()
