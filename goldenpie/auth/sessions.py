"""
Auth Session Manager
====================

Binds a player slot to a Lightning address through a LUD-22
``addressRequest`` handshake:

    1. UI        create_session(slot)          -> session id + k1 + lnurl (shown as QR)
    2. Wallet    resolve_challenge(k1)          -> request details (may repeat)
    3. Wallet    redeem(k1, address)            -> binds the address, burns k1
    4. UI        status(session id)             -> polled until authenticated

Session lifecycle:

    CREATED --redeem--> BOUND      (terminal; address immutable)
    CREATED --ttl-----> EXPIRED    (terminal; behaves as not found)

Storage layout (``SessionStore``):

    session:<id>   {"session_id", "k1", "slot_number", "address", "created_at"}
    k1:<k1>        {"session_id"}
"""

from __future__ import annotations

import logging
import secrets
import time
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Optional
from urllib.parse import quote, urlencode

from .errors import InvalidAddress, InvalidNonce, InvalidRequest, SessionExpired, SessionNotFound
from .store import SessionStore

logger = logging.getLogger(__name__)

SESSION_TTL = 3600.0
ADDRESS_REQUEST_TAG = "addressRequest"
MAX_SLOT = 4


class SessionState(Enum):
    CREATED = "created"
    BOUND = "bound"
    EXPIRED = "expired"


@dataclass
class AuthSession:
    session_id: str
    nonce: str
    slot_number: int
    bound_address: Optional[str] = None
    created_at: float = 0.0

    def state(self, now: float, ttl: float) -> SessionState:
        if self.bound_address:
            return SessionState.BOUND
        if now - self.created_at >= ttl:
            return SessionState.EXPIRED
        return SessionState.CREATED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "k1": self.nonce,
            "slot_number": self.slot_number,
            "address": self.bound_address,
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AuthSession":
        return cls(
            session_id=data["session_id"],
            nonce=data["k1"],
            slot_number=int(data["slot_number"]),
            bound_address=data.get("address"),
            created_at=float(data.get("created_at", 0.0)),
        )


@dataclass(frozen=True)
class Challenge:
    """LUD-22 addressRequest details returned to the wallet."""
    callback: str
    k1: str
    metadata: str
    tag: str = ADDRESS_REQUEST_TAG

    def to_dict(self) -> Dict[str, str]:
        return {"tag": self.tag, "callback": self.callback, "k1": self.k1, "metadata": self.metadata}

    def to_url(self) -> str:
        query = urlencode({"tag": self.tag, "k1": self.k1, "metadata": self.metadata}, quote_via=quote)
        return f"{self.callback}?{query}"


@dataclass(frozen=True)
class CreatedSession:
    session_id: str
    nonce: str
    challenge: Challenge

    @property
    def lnurl_address(self) -> str:
        return self.challenge.to_url()


@dataclass(frozen=True)
class SessionStatus:
    authenticated: bool
    address: Optional[str]
    slot_number: int


def is_lightning_address(address: str) -> bool:
    """Basic ``user@domain`` shape check."""
    user, sep, domain = address.strip().partition("@")
    return bool(sep and user and domain and "@" not in domain)


class AuthSessionManager:
    """
    Issues and redeems single-use k1 nonces.

    Unknown and already-used nonces both raise ``InvalidNonce`` so callers
    cannot probe which nonces exist.
    """

    def __init__(
        self,
        store: SessionStore,
        ttl: float = SESSION_TTL,
        app_name: str = "GoldenPie",
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.ttl = ttl
        self.app_name = app_name
        self._clock = clock

    @staticmethod
    def _session_key(session_id: str) -> str:
        return f"session:{session_id}"

    @staticmethod
    def _nonce_key(nonce: str) -> str:
        return f"k1:{nonce}"

    def metadata(self, slot_number: int) -> str:
        return f"Login as Player {slot_number} - {self.app_name}"

    def _challenge(self, session: AuthSession, callback_url: str) -> Challenge:
        return Challenge(callback=callback_url, k1=session.nonce, metadata=self.metadata(session.slot_number))

    async def create_session(self, slot_number: int, callback_url: str) -> CreatedSession:
        if not 1 <= slot_number <= MAX_SLOT:
            raise InvalidRequest(f"Player number must be between 1 and {MAX_SLOT}")

        session = AuthSession(
            session_id=str(uuid.uuid4()),
            nonce=secrets.token_hex(32),
            slot_number=slot_number,
            created_at=self._clock(),
        )
        await self.store.set(self._session_key(session.session_id), session.to_dict(), self.ttl)
        await self.store.set(self._nonce_key(session.nonce), {"session_id": session.session_id}, self.ttl)

        logger.info(f"Auth session created for Player {slot_number}")
        return CreatedSession(session.session_id, session.nonce, self._challenge(session, callback_url))

    async def _load(self, session_id: str) -> Optional[AuthSession]:
        data = await self.store.get(self._session_key(session_id))
        return AuthSession.from_dict(data) if data else None

    async def _session_for_nonce(self, nonce: str) -> AuthSession:
        entry = await self.store.get(self._nonce_key(nonce)) if nonce else None
        if not entry:
            raise InvalidNonce()
        session = await self._load(entry["session_id"])
        if session is None or session.state(self._clock(), self.ttl) is not SessionState.CREATED:
            raise InvalidNonce()
        return session

    async def resolve_challenge(self, nonce: str, callback_url: str) -> Challenge:
        """Read-only lookup; wallets may call it more than once."""
        session = await self._session_for_nonce(nonce)
        return self._challenge(session, callback_url)

    async def redeem(self, nonce: str, address: str) -> AuthSession:
        """
        Bind ``address`` to the session behind ``nonce`` and burn the nonce.

        An invalid address leaves the nonce usable so the wallet can retry.
        The nonce entry is taken atomically before binding, so of two
        concurrent redeems only one can proceed.
        """
        await self._session_for_nonce(nonce)

        address = (address or "").strip()
        if not is_lightning_address(address):
            raise InvalidAddress()

        entry = await self.store.take(self._nonce_key(nonce))
        if not entry:
            raise InvalidNonce()

        session = await self._load(entry["session_id"])
        if session is None or session.state(self._clock(), self.ttl) is not SessionState.CREATED:
            raise InvalidNonce()

        session.bound_address = address
        remaining = max(1.0, self.ttl - (self._clock() - session.created_at))
        await self.store.set(self._session_key(session.session_id), session.to_dict(), remaining)

        logger.info(f"Player {session.slot_number} authenticated: {address}")
        return session

    async def status(self, session_id: str) -> SessionStatus:
        session = await self._load(session_id)
        if session is None:
            raise SessionNotFound()
        if session.state(self._clock(), self.ttl) is SessionState.EXPIRED:
            raise SessionExpired()
        return SessionStatus(
            authenticated=bool(session.bound_address),
            address=session.bound_address,
            slot_number=session.slot_number,
        )

    async def purge_expired(self) -> int:
        return await self.store.purge_expired()
