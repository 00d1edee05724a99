"""
Identity provider interface and a document-store backed implementation.

The rest of the system only needs a stable user id and a notification when
it changes. ``LocalIdentityProvider`` keeps credentials next to the user's
data, hashing passwords with scrypt.
"""

import base64
import hashlib
import logging
import os
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Awaitable, Callable, List, Optional

from cryptography.exceptions import InvalidKey
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt

from .document_store import DocumentStore, doc_path
from .errors import AuthError, StorageError

logger = logging.getLogger(__name__)

ACCOUNTS = "accounts"
USERS = "users"
MIN_PASSWORD_LENGTH = 6


@dataclass(frozen=True)
class Identity:
    """An authenticated user."""
    user_id: str
    email: str


IdentityCallback = Callable[[Optional[Identity]], Awaitable[None]]


class IdentityProvider(ABC):
    """Yields the current identity and notifies subscribers when it changes."""

    def __init__(self):
        self._current: Optional[Identity] = None
        self._subscribers: List[IdentityCallback] = []

    @property
    def current(self) -> Optional[Identity]:
        return self._current

    @abstractmethod
    async def sign_up(self, email: str, password: str, username: str) -> Identity:
        """Create an account and its profile, then sign in."""

    @abstractmethod
    async def log_in(self, email: str, password: str) -> Identity:
        """Sign in to an existing account."""

    async def log_out(self) -> None:
        await self._set_current(None)

    async def subscribe(self, callback: IdentityCallback) -> Callable[[], None]:
        """Register for identity changes.

        The callback is awaited once immediately with the current identity
        (None when signed out) and again after every change.

        Returns:
            A callable that removes the subscription
        """
        self._subscribers.append(callback)
        await callback(self._current)

        def unsubscribe():
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    async def _set_current(self, identity: Optional[Identity]) -> None:
        self._current = identity
        for callback in list(self._subscribers):
            await callback(identity)


class PasswordHasher:
    """Scrypt password hashing with a random per-account salt."""

    def __init__(self, n: int = 2 ** 14, r: int = 8, p: int = 1, length: int = 32):
        self.n = n
        self.r = r
        self.p = p
        self.length = length

    def _kdf(self, salt: bytes) -> Scrypt:
        return Scrypt(salt=salt, length=self.length, n=self.n, r=self.r, p=self.p)

    def hash(self, password: str):
        """Returns (salt, hash), both base64 encoded."""
        salt = os.urandom(16)
        derived = self._kdf(salt).derive(password.encode("utf-8"))
        return base64.b64encode(salt).decode("ascii"), base64.b64encode(derived).decode("ascii")

    def verify(self, password: str, salt_b64: str, hash_b64: str) -> bool:
        salt = base64.b64decode(salt_b64)
        expected = base64.b64decode(hash_b64)
        try:
            self._kdf(salt).verify(password.encode("utf-8"), expected)
            return True
        except InvalidKey:
            return False


class LocalIdentityProvider(IdentityProvider):
    """Email/password accounts stored in the document store.

    ``accounts/{emailKey}`` holds the credentials; ``users/{uid}`` holds the
    profile read by the dashboard.
    """

    def __init__(self, store: DocumentStore, hasher: Optional[PasswordHasher] = None):
        super().__init__()
        self.store = store
        self.hasher = hasher or PasswordHasher()

    @staticmethod
    def _account_path(email: str) -> str:
        email_key = hashlib.sha256(email.strip().lower().encode("utf-8")).hexdigest()
        return doc_path(ACCOUNTS, email_key)

    async def sign_up(self, email: str, password: str, username: str) -> Identity:
        email = (email or "").strip()
        if "@" not in email:
            raise AuthError("A valid email is required")
        if len(password or "") < MIN_PASSWORD_LENGTH:
            raise AuthError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters")
        if not (username or "").strip():
            raise AuthError("Username is required")

        account_path = self._account_path(email)
        try:
            if await self.store.get(account_path) is not None:
                raise AuthError("Email already in use")

            user_id = uuid.uuid4().hex
            salt, password_hash = self.hasher.hash(password)
            created_at = datetime.now().isoformat()

            batch = self.store.batch()
            batch.set(account_path, {
                "uid": user_id,
                "email": email,
                "salt": salt,
                "passwordHash": password_hash,
                "createdAt": created_at,
            })
            batch.set(doc_path(USERS, user_id), {
                "username": username.strip(),
                "email": email,
                "createdAt": created_at,
            })
            await batch.commit()
        except StorageError as e:
            raise AuthError(f"Sign-up failed: {e}") from e

        identity = Identity(user_id=user_id, email=email)
        logger.info(f"Created account for {email}")
        await self._set_current(identity)
        return identity

    async def log_in(self, email: str, password: str) -> Identity:
        email = (email or "").strip()
        try:
            account = await self.store.get(self._account_path(email))
        except StorageError as e:
            raise AuthError(f"Log-in failed: {e}") from e

        if account is None or not self.hasher.verify(password or "", account["salt"], account["passwordHash"]):
            raise AuthError("Invalid email or password")

        identity = Identity(user_id=account["uid"], email=account["email"])
        logger.info(f"Logged in {email}")
        await self._set_current(identity)
        return identity
