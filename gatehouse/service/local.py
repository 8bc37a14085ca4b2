from __future__ import annotations

from typing import Optional

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError

from gatehouse.logging import get_logger
from gatehouse.storage.memory import MemoryStore
from gatehouse.storage.models import PROVIDER_LOCAL, User


class LocalCredentialVerifier:
    """Checks username/password pairs against locally stored Argon2id hashes.

    Every failure (unknown user, inactive user, no LOCAL identity, wrong
    password, malformed hash) returns ``None`` and costs one Argon2
    verification, so neither the result nor the timing tells them apart.
    """

    def __init__(
        self,
        store: MemoryStore,
        *,
        time_cost: int = 3,
        memory_cost: int = 65536,
        parallelism: int = 1,
    ) -> None:
        self.store = store
        self.logger = get_logger(__name__)
        self._pwd_hasher = PasswordHasher(
            time_cost=time_cost,
            memory_cost=memory_cost,
            parallelism=parallelism,
            type=Type.ID,
        )
        # Verified against when there is no real credential
        self._dummy_hash = self._pwd_hasher.hash("gatehouse-timing-equalizer")

    def hash_password(self, password: str) -> str:
        return self._pwd_hasher.hash(password)

    def _check(self, password_hash: str, password: str) -> bool:
        try:
            return self._pwd_hasher.verify(password_hash, password)
        except (InvalidHash, VerificationError):
            return False

    def verify(self, username: str, password: str) -> Optional[User]:
        user = self.store.find_user_by_username(username)
        identity = self.store.find_identity(user.id, PROVIDER_LOCAL) if user else None
        credential = self.store.get_credential(identity.id) if identity else None
        if credential is None:
            self._check(self._dummy_hash, password)
            self.logger.info("local_auth_rejected")
            return None

        if not self._check(credential.password_hash, password) or not user.is_active:
            self.logger.info("local_auth_rejected")
            return None

        if self._pwd_hasher.check_needs_rehash(credential.password_hash):
            self.store.set_credential(identity.id, self.hash_password(password))
            self.logger.info("local_password_rehashed", user_id=user.id)
        return user
