"""
Identity enrichment: wallet address -> (name, email).
Lookups are case-insensitive and never raise; a miss or a failure resolves to
the "Unknown" sentinel so the reconciler can retry later.
"""

import logging
from dataclasses import dataclass
from typing import Optional

import httpx
from sqlalchemy import func
from sqlmodel import select

from stream_indexer.config.settings import IdentityConfig
from stream_indexer.database.connection import DatabaseConnection
from stream_indexer.models import User

logger = logging.getLogger(__name__)

UNKNOWN_NAME = "Unknown"


@dataclass(frozen=True)
class Identity:
    name: str
    email: str

    @property
    def is_unknown(self) -> bool:
        return self.name == UNKNOWN_NAME


UNKNOWN_IDENTITY = Identity(name=UNKNOWN_NAME, email="")


def needs_identity(worker_name: Optional[str]) -> bool:
    """Whether a stored worker name should be looked up again."""
    return not worker_name or worker_name == UNKNOWN_NAME


class DatabaseIdentityStore:
    """Reads the users table shared with the payroll API."""

    def __init__(self, db: DatabaseConnection):
        self.db = db

    async def lookup(self, address: str) -> Optional[Identity]:
        with self.db.get_session() as session:
            user = session.exec(
                select(User).where(func.lower(User.wallet_address) == address.lower())
            ).first()
        if user is None:
            return None
        return Identity(name=user.name, email=user.email or "")


class DirectoryIdentityStore:
    """Queries an HTTP user directory at GET {directory_url}/{address}.

    A 404 is a miss; the response body must carry "name" and "email".
    """

    def __init__(self, base_url: str, timeout_seconds: float = 10.0, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self.transport = transport

    async def lookup(self, address: str) -> Optional[Identity]:
        url = f"{self.base_url}/{address.lower()}"
        async with httpx.AsyncClient(timeout=self.timeout_seconds, transport=self.transport) as client:
            response = await client.get(url)

        if response.status_code == 404:
            return None
        response.raise_for_status()

        data = response.json()
        if not data or not data.get("name"):
            return None
        return Identity(name=data["name"], email=data.get("email") or "")


class IdentityEnricher:
    """Resolves worker addresses to display identities."""

    def __init__(self, store):
        self.store = store

    async def resolve(self, address: Optional[str]) -> Identity:
        if not address:
            return UNKNOWN_IDENTITY

        try:
            identity = await self.store.lookup(address)
        except Exception as e:
            logger.warning(f"Identity lookup failed for {address}: {e}")
            return UNKNOWN_IDENTITY

        if identity is None:
            logger.debug(f"No identity found for {address}")
            return UNKNOWN_IDENTITY
        return identity


def create_identity_enricher(config: IdentityConfig, db: DatabaseConnection) -> IdentityEnricher:
    """Build the enricher for the configured identity source."""
    if config.source == "directory":
        return IdentityEnricher(DirectoryIdentityStore(config.directory_url, config.timeout_seconds))
    return IdentityEnricher(DatabaseIdentityStore(db))
