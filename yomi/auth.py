"""
Authentication module. Local accounts, API key management.

One account per username, each bound to exactly one ledger profile.
Only the sha256 hash of the API key is stored; the raw key is returned
once, at registration or rotation.
"""

import hashlib
import secrets
from dataclasses import dataclass, field
from datetime import datetime, timezone


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class User:
    username: str
    profile_id: int
    api_key_hash: str
    created_at: str = field(default_factory=_now)
    last_seen_at: str = field(default_factory=_now)


def _hash_key(raw_key: str) -> str:
    return hashlib.sha256(raw_key.encode()).hexdigest()


class AuthStore:
    """In-memory auth store. Serialized via persistence module."""

    def __init__(self):
        self.users: dict[str, User] = {}         # username -> User
        self.key_to_user: dict[str, User] = {}   # api_key_hash -> User

    def register_user(self, username: str, profile_id: int) -> tuple[User, str]:
        """Register a user. Returns (user, raw_api_key)."""
        if username in self.users:
            raise ValueError("username_taken")
        raw_key = secrets.token_urlsafe(32)
        key_hash = _hash_key(raw_key)
        user = User(
            username=username,
            profile_id=profile_id,
            api_key_hash=key_hash,
        )
        self.users[username] = user
        self.key_to_user[key_hash] = user
        return user, raw_key

    def rotate_key(self, username: str) -> tuple[User, str]:
        """Issue a new API key. The old one stops working."""
        user = self.users.get(username)
        if user is None:
            raise ValueError("user_not_found")
        raw_key = secrets.token_urlsafe(32)
        key_hash = _hash_key(raw_key)
        self.key_to_user.pop(user.api_key_hash, None)
        user.api_key_hash = key_hash
        user.last_seen_at = _now()
        self.key_to_user[key_hash] = user
        return user, raw_key

    def add_user(self, user: User) -> None:
        """Insert a persisted user."""
        self.users[user.username] = user
        self.key_to_user[user.api_key_hash] = user

    def authenticate(self, raw_key: str) -> User | None:
        """Validate an API key. Returns User or None."""
        key_hash = _hash_key(raw_key)
        user = self.key_to_user.get(key_hash)
        if user:
            user.last_seen_at = _now()
        return user

    def get_by_username(self, username: str) -> User | None:
        return self.users.get(username)
