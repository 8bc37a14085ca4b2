from __future__ import annotations

import copy
import json
import os
import tempfile
import threading
import uuid
from contextlib import contextmanager
from dataclasses import asdict, replace
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Set, Tuple

from gatehouse.config import DirectoryConfig
from gatehouse.logging import get_logger
from gatehouse.storage.errors import ConstraintViolation
from gatehouse.storage.models import (
    DEFAULT_AUTO,
    DEFAULT_DISABLED,
    DEFAULT_ENABLED,
    PROVIDER_DIRECTORY,
    PROVIDER_LOCAL,
    ROLES,
    Identity,
    LocalCredential,
    PasswordResetToken,
    SectionOverride,
    User,
)

_STATE_FIELDS = (
    "users",
    "identities",
    "credentials",
    "overrides",
    "section_defaults",
    "reset_tokens",
    "directory_config",
    "disabled_sections",
)


class MemoryStore:
    """In-memory users, identities, credentials and access configuration.

    All reads return copies; every mutation happens under ``_data_lock``.
    ``transaction()`` groups several mutations so that they apply together or
    not at all. When ``fs_root`` is given and ``persist`` is set, committed
    state is written to ``<fs_root>/state/memory_store.json``.
    """

    def __init__(self, fs_root: str | None = None, *, persist: bool = False) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.identities: Dict[str, Identity] = {}
        # identity_id -> credential
        self.credentials: Dict[str, LocalCredential] = {}
        self.overrides: Dict[Tuple[str, str], SectionOverride] = {}
        self.section_defaults: Dict[Tuple[str, str], str] = {}
        # sha256 hex digest -> token
        self.reset_tokens: Dict[str, PasswordResetToken] = {}
        self.directory_config = DirectoryConfig()
        self.disabled_sections: Set[str] = set()
        # RLock so transaction() can wrap the public mutators
        self._data_lock = threading.RLock()
        self._tx_depth = 0
        self.fs_root = Path(fs_root) if fs_root else None
        self.persist = bool(persist and fs_root)
        if self.persist:
            self._load_state()

    # transactions
    @contextmanager
    def transaction(self) -> Iterator["MemoryStore"]:
        with self._data_lock:
            snapshot = self._snapshot() if self._tx_depth == 0 else None
            self._tx_depth += 1
            try:
                yield self
            except BaseException:
                self._tx_depth -= 1
                if snapshot is not None:
                    self._restore(snapshot)
                    self.logger.info("memory_store_rolled_back")
                raise
            else:
                self._tx_depth -= 1
                if self._tx_depth == 0:
                    self._persist_state()

    def _snapshot(self) -> Dict[str, Any]:
        return {name: copy.deepcopy(getattr(self, name)) for name in _STATE_FIELDS}

    def _restore(self, snapshot: Dict[str, Any]) -> None:
        for name, value in snapshot.items():
            setattr(self, name, value)

    def _commit(self) -> None:
        if self._tx_depth == 0:
            self._persist_state()

    # users
    def _user_by_username(self, username: str) -> Optional[User]:
        key = username.casefold()
        return next(
            (u for u in self.users.values() if u.username.casefold() == key), None
        )

    def find_user_by_username(self, username: str) -> Optional[User]:
        with self._data_lock:
            user = self._user_by_username(username)
            return replace(user) if user else None

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def list_active_users(self, role: Optional[str] = None) -> List[User]:
        with self._data_lock:
            return [
                replace(u)
                for u in self.users.values()
                if u.is_active and (role is None or u.role == role)
            ]

    def create_user_with_identity(
        self,
        username: str,
        email: str,
        provider: str,
        provider_id: str,
        *,
        role: str = "viewer",
        password_hash: Optional[str] = None,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
    ) -> User:
        """Create a user, its first identity and (for LOCAL) its credential."""
        if role not in ROLES:
            raise ConstraintViolation("unknown role", {"role": role})
        if provider == PROVIDER_LOCAL and not password_hash:
            raise ConstraintViolation(
                "local identity requires a credential", {"provider": provider}
            )
        with self.transaction():
            if self._user_by_username(username):
                raise ConstraintViolation("username already exists", {"field": "username"})
            user = User(
                id=str(uuid.uuid4()),
                username=username,
                email=email,
                role=role,
                first_name=first_name,
                last_name=last_name,
            )
            self.users[user.id] = user
            identity = self._add_identity(user.id, provider, provider_id)
            if password_hash:
                self.credentials[identity.id] = LocalCredential(
                    identity_id=identity.id, password_hash=password_hash
                )
            return replace(user)

    def update_user(self, user_id: str, **changes: Any) -> User:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                raise ConstraintViolation("user not found", {"user_id": user_id})
            if "role" in changes and changes["role"] not in ROLES:
                raise ConstraintViolation("unknown role", {"role": changes["role"]})
            if (
                "token_version" in changes
                and changes["token_version"] < user.token_version
            ):
                raise ConstraintViolation(
                    "token_version cannot decrease", {"user_id": user_id}
                )
            for key in changes:
                if not hasattr(user, key) or key in {"id", "created_at"}:
                    raise ConstraintViolation("unknown user field", {"field": key})
            for key, value in changes.items():
                setattr(user, key, value)
            user.updated_at = datetime.utcnow()
            self._commit()
            return replace(user)

    def bump_token_version(self, user_id: str) -> int:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                raise ConstraintViolation("user not found", {"user_id": user_id})
            user.token_version += 1
            user.updated_at = datetime.utcnow()
            self._commit()
            return user.token_version

    def get_active_token_version(self, user_id: str) -> Optional[int]:
        """Current token version, or None when the user is missing or inactive."""
        with self._data_lock:
            user = self.users.get(user_id)
            if not user or not user.is_active:
                return None
            return user.token_version

    # identities and credentials
    def _add_identity(self, user_id: str, provider: str, provider_id: str) -> Identity:
        if provider not in {PROVIDER_LOCAL, PROVIDER_DIRECTORY}:
            raise ConstraintViolation("unknown provider", {"provider": provider})
        for existing in self.identities.values():
            if existing.user_id == user_id and existing.provider == provider:
                raise ConstraintViolation(
                    "identity already exists", {"user_id": user_id, "provider": provider}
                )
            if existing.provider == provider and existing.provider_id == provider_id:
                raise ConstraintViolation(
                    "provider id already linked", {"provider": provider}
                )
        identity = Identity(
            id=str(uuid.uuid4()),
            user_id=user_id,
            provider=provider,
            provider_id=provider_id,
        )
        self.identities[identity.id] = identity
        return identity

    def add_identity(self, user_id: str, provider: str, provider_id: str) -> Identity:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user not found", {"user_id": user_id})
            identity = self._add_identity(user_id, provider, provider_id)
            self._commit()
            return replace(identity)

    def find_identity(self, user_id: str, provider: str) -> Optional[Identity]:
        with self._data_lock:
            identity = next(
                (
                    i
                    for i in self.identities.values()
                    if i.user_id == user_id and i.provider == provider
                ),
                None,
            )
            return replace(identity) if identity else None

    def get_credential(self, identity_id: str) -> Optional[LocalCredential]:
        with self._data_lock:
            credential = self.credentials.get(identity_id)
            return replace(credential) if credential else None

    def set_credential(self, identity_id: str, password_hash: str) -> None:
        with self._data_lock:
            identity = self.identities.get(identity_id)
            if not identity or identity.provider != PROVIDER_LOCAL:
                raise ConstraintViolation(
                    "credential requires a local identity", {"identity_id": identity_id}
                )
            self.credentials[identity_id] = LocalCredential(
                identity_id=identity_id, password_hash=password_hash
            )
            self._commit()

    # section overrides
    def get_override(self, user_id: str, section: str) -> Optional[SectionOverride]:
        with self._data_lock:
            override = self.overrides.get((user_id, section))
            return replace(override) if override else None

    def upsert_override(self, user_id: str, section: str, enabled: bool) -> SectionOverride:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user not found", {"user_id": user_id})
            override = SectionOverride(user_id=user_id, section=section, enabled=enabled)
            self.overrides[(user_id, section)] = override
            self._commit()
            return replace(override)

    def clear_override(self, user_id: str, section: str) -> bool:
        with self._data_lock:
            removed = self.overrides.pop((user_id, section), None)
            if removed:
                self._commit()
            return removed is not None

    # section defaults and global config
    def get_section_defaults(self) -> Dict[Tuple[str, str], str]:
        with self._data_lock:
            return dict(self.section_defaults)

    def apply_section_defaults(self, changes: Dict[Tuple[str, str], str]) -> None:
        """Write per-role section defaults; ``auto`` removes the row."""
        with self._data_lock:
            for key, value in changes.items():
                if value not in {DEFAULT_ENABLED, DEFAULT_DISABLED, DEFAULT_AUTO}:
                    raise ConstraintViolation("invalid section default", {"value": value})
            for key, value in changes.items():
                if value == DEFAULT_AUTO:
                    self.section_defaults.pop(key, None)
                else:
                    self.section_defaults[key] = value
            self._commit()

    def get_directory_config(self) -> DirectoryConfig:
        with self._data_lock:
            return self.directory_config.model_copy(deep=True)

    def set_directory_config(self, config: DirectoryConfig) -> None:
        with self._data_lock:
            self.directory_config = config.model_copy(deep=True)
            self._commit()

    def get_disabled_sections(self) -> Set[str]:
        with self._data_lock:
            return set(self.disabled_sections)

    def set_disabled_sections(self, sections: Set[str]) -> None:
        with self._data_lock:
            self.disabled_sections = set(sections)
            self._commit()

    # password reset tokens
    def create_reset_token(self, token: PasswordResetToken) -> None:
        with self._data_lock:
            if token.user_id not in self.users:
                raise ConstraintViolation("user not found", {"user_id": token.user_id})
            self.reset_tokens[token.token_hash] = token
            self._commit()

    def get_reset_token(self, token_hash: str) -> Optional[PasswordResetToken]:
        with self._data_lock:
            token = self.reset_tokens.get(token_hash)
            return replace(token) if token else None

    def delete_reset_token(self, token_hash: str) -> bool:
        with self._data_lock:
            removed = self.reset_tokens.pop(token_hash, None)
            if removed:
                self._commit()
            return removed is not None

    # persistence
    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    @staticmethod
    def _serialize(obj: Any) -> dict:
        data = asdict(obj)
        for key, value in data.items():
            if isinstance(value, datetime):
                data[key] = value.isoformat()
        return data

    @staticmethod
    def _deserialize(model_cls, data: dict):
        fields = dict(data)
        for key in ("created_at", "updated_at", "expires_at"):
            if isinstance(fields.get(key), str):
                fields[key] = datetime.fromisoformat(fields[key])
        return model_cls(**fields)

    def _persist_state(self) -> None:
        if not self.persist:
            return
        state = {
            "users": [self._serialize(u) for u in self.users.values()],
            "identities": [self._serialize(i) for i in self.identities.values()],
            "credentials": [self._serialize(c) for c in self.credentials.values()],
            "overrides": [self._serialize(o) for o in self.overrides.values()],
            "section_defaults": [
                {"role": role, "section": section, "value": value}
                for (role, section), value in self.section_defaults.items()
            ],
            "reset_tokens": [self._serialize(t) for t in self.reset_tokens.values()],
            "directory_config": self.directory_config.model_dump(mode="json"),
            "disabled_sections": sorted(self.disabled_sections),
        }
        path = self._state_path()
        fd, tmp_path = tempfile.mkstemp(dir=str(path.parent), suffix=".tmp")
        try:
            with os.fdopen(fd, "w") as handle:
                json.dump(state, handle)
            os.replace(tmp_path, path)
        except OSError:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {
            u["id"]: self._deserialize(User, u) for u in data.get("users", [])
        }
        self.identities = {
            i["id"]: self._deserialize(Identity, i) for i in data.get("identities", [])
        }
        self.credentials = {
            c["identity_id"]: self._deserialize(LocalCredential, c)
            for c in data.get("credentials", [])
        }
        self.overrides = {
            (o["user_id"], o["section"]): self._deserialize(SectionOverride, o)
            for o in data.get("overrides", [])
        }
        self.section_defaults = {
            (d["role"], d["section"]): d["value"]
            for d in data.get("section_defaults", [])
        }
        self.reset_tokens = {
            t["token_hash"]: self._deserialize(PasswordResetToken, t)
            for t in data.get("reset_tokens", [])
        }
        self.directory_config = DirectoryConfig(**data.get("directory_config", {}))
        self.disabled_sections = set(data.get("disabled_sections", []))
        self.logger.info("memory_store_loaded", users=len(self.users))
        return True
