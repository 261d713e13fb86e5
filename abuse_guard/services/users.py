from __future__ import annotations

import logging
from dataclasses import dataclass
from uuid import UUID, uuid4

from argon2 import PasswordHasher
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from abuse_guard.services.key_strategy import normalize_account

logger = logging.getLogger(__name__)

_ph = PasswordHasher()


@dataclass(frozen=True, slots=True)
class User:
    id: UUID
    email: str
    password_hash: str

    @staticmethod
    def new(*, email: str, password_hash: str) -> User:
        return User(id=uuid4(), email=normalize_account(email), password_hash=password_hash)


class InMemoryUserRepo:
    def __init__(self) -> None:
        self._by_email: dict[str, User] = {}

    def get_by_email(self, email: str) -> User | None:
        return self._by_email.get(normalize_account(email))

    def add(self, user: User) -> None:
        if user.email in self._by_email:
            raise ValueError("email already exists")
        self._by_email[user.email] = user


def hash_password(plain_password: str) -> str:
    if not plain_password:
        raise ValueError("password must be non-empty")
    return _ph.hash(plain_password)


# verify_password() must catch Argon2 exceptions and return False
def verify_password(plain_password: str, password_hash: str) -> bool:
    if not plain_password or not password_hash:
        return False
    try:
        return _ph.verify(password_hash, plain_password)
    except (VerifyMismatchError, VerificationError, InvalidHash):
        return False


def authenticate_user(repo: InMemoryUserRepo, email: str, password: str) -> User | None:
    user = repo.get_by_email(email)
    if user is None:
        return None
    if not verify_password(password, user.password_hash):
        return None
    return user


user_repo = InMemoryUserRepo()


def seed_test_user() -> None:
    """Seed a test user for development. Skip if already present."""
    email = "test@example.com"
    if user_repo.get_by_email(email) is not None:
        return
    user_repo.add(User.new(email=email, password_hash=hash_password("test-password")))
