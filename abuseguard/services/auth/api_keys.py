from __future__ import annotations

import hashlib
import secrets
from uuid import uuid4


ROLE_ORDER: dict[str, int] = {
    "developer": 1,
    "operator": 2,
    "admin": 3,
}

# Roles allowed to change enforcement state.
OVERRIDE_ROLES: tuple[str, ...] = ("operator", "admin")

API_KEY_PREFIX = "abg"


def normalize_role(role: str) -> str:
    # Lowercase and reject anything outside the operator role vocabulary.
    normalized = role.strip().lower()
    if normalized not in ROLE_ORDER:
        raise ValueError(f"Unsupported role: {role}")
    return normalized


def role_allows(*, role: str, minimum_role: str) -> bool:
    return ROLE_ORDER.get(role, 0) >= ROLE_ORDER.get(minimum_role, 0)


def hash_api_key(raw_key: str) -> str:
    # Only the SHA-256 digest is stored; the raw key is shown once at creation.
    return hashlib.sha256(raw_key.encode("utf-8")).hexdigest()


def generate_api_key(*, key_id: str | None = None) -> tuple[str, str, str, str]:
    resolved_id = key_id or uuid4().hex
    secret = secrets.token_urlsafe(32)
    raw_key = f"{API_KEY_PREFIX}_{resolved_id}_{secret}"
    return resolved_id, raw_key, raw_key[:12], hash_api_key(raw_key)
