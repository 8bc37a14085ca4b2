from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

ROLES = ("admin", "editor", "viewer")
LOWEST_ROLE = "viewer"

SECTIONS = ("dashboard", "settings", "maintenance")

PROVIDER_LOCAL = "LOCAL"
PROVIDER_DIRECTORY = "DIRECTORY"

# Per-role section default values; "auto" is stored as absence of a row.
DEFAULT_ENABLED = "enabled"
DEFAULT_DISABLED = "disabled"
DEFAULT_AUTO = "auto"


@dataclass
class User:
    id: str
    username: str
    email: str
    role: str = LOWEST_ROLE
    token_version: int = 0
    is_active: bool = True
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    created_at: datetime = field(default_factory=datetime.utcnow)
    updated_at: datetime = field(default_factory=datetime.utcnow)


@dataclass
class Identity:
    id: str
    user_id: str
    provider: str
    provider_id: str
    created_at: datetime = field(default_factory=datetime.utcnow)


@dataclass
class LocalCredential:
    identity_id: str
    password_hash: str
    updated_at: datetime = field(default_factory=datetime.utcnow)


@dataclass
class SectionOverride:
    """Explicit per-user exception; ``enabled`` False means deny."""

    user_id: str
    section: str
    enabled: bool


@dataclass
class PasswordResetToken:
    token_hash: str
    user_id: str
    expires_at: datetime
    created_at: datetime = field(default_factory=datetime.utcnow)

    @classmethod
    def new(cls, token_hash: str, user_id: str, ttl_minutes: int = 15) -> "PasswordResetToken":
        now = datetime.utcnow()
        return cls(
            token_hash=token_hash,
            user_id=user_id,
            expires_at=now + timedelta(minutes=ttl_minutes),
            created_at=now,
        )

    @property
    def expired(self) -> bool:
        return datetime.utcnow() >= self.expires_at


@dataclass
class AuditRecord:
    action: str
    target_type: str
    target_id: Optional[str]
    result: str
    metadata: Dict[str, Any] = field(default_factory=dict)
    actor_id: Optional[str] = None
    created_at: datetime = field(default_factory=datetime.utcnow)
