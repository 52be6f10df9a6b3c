"""Security utilities: bearer token hashing and actor resolution."""

import asyncio
import hashlib
import logging
import secrets
from dataclasses import dataclass

from fastapi import Request
from sqlalchemy import select

from lessongen.db.manager import DatabaseManager
from lessongen.db.models import Account

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Actor:
    """Authenticated caller resolved from a bearer token."""

    account_id: int
    email: str
    is_admin: bool = False

    @property
    def key(self) -> str:
        """Identifier used for rate-limit buckets and the audit trail."""
        return f"account:{self.account_id}"


def hash_token(token: str) -> str:
    """SHA-256 hex digest of a bearer token. Raw tokens are never stored."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def generate_token() -> str:
    """Generate a new random bearer token."""
    return secrets.token_urlsafe(32)


def get_bearer_token(request: Request) -> str | None:
    """
    Extract the bearer token from the Authorization header.

    Returns:
        Token string, or None if the header is missing or malformed
    """
    auth_header = request.headers.get("Authorization", "")
    if not auth_header.startswith("Bearer "):
        return None
    token = auth_header[7:].strip()
    return token or None


class ActorResolver:
    """Resolves bearer tokens to accounts."""

    def __init__(self, db_manager: DatabaseManager) -> None:
        self._db = db_manager

    def _resolve_sync(self, token: str) -> Actor | None:
        with self._db.get_session() as session:
            account = session.execute(
                select(Account).where(Account.token_hash == hash_token(token))
            ).scalar_one_or_none()
            if account is None:
                return None
            return Actor(account_id=account.id, email=account.email, is_admin=account.is_admin)

    async def resolve(self, token: str | None) -> Actor | None:
        """
        Resolve a bearer token.

        Args:
            token: Raw bearer token (may be None)

        Returns:
            Actor, or None if the token is missing or unknown
        """
        if not token:
            return None
        actor = await asyncio.to_thread(self._resolve_sync, token)
        if actor is None:
            logger.warning("Bearer token did not match any account")
        return actor

    def create_account(self, email: str, is_admin: bool = False, token: str | None = None) -> tuple[Actor, str]:
        """
        Create an account and return it with its raw token.

        The raw token is only available here; the database keeps the hash.
        """
        token = token or generate_token()
        with self._db.get_session() as session:
            account = Account(email=email, token_hash=hash_token(token), is_admin=is_admin)
            session.add(account)
            session.flush()
            actor = Actor(account_id=account.id, email=account.email, is_admin=account.is_admin)
        logger.info(f"Created account {email} (admin={is_admin})")
        return actor, token
