from __future__ import annotations

import argparse
import asyncio
import sys
from uuid import uuid4

from abuseguard.domain.enforcement import ActorType
from abuseguard.domain.models import ApiKey, User
from abuseguard.persistence.db import get_database
from abuseguard.services.audit import SYSTEM_ACTOR_ID, record_entry
from abuseguard.services.auth.api_keys import generate_api_key, normalize_role


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Create an operator API key")
    parser.add_argument("--role", required=True, help="Role: developer|operator|admin")
    parser.add_argument("--name", required=True, help="Key label for auditing")
    parser.add_argument("--user-id", default=None, help="Existing user id to attach")
    parser.add_argument("--email", default=None, help="Optional user email")
    return parser


async def _create_key(args: argparse.Namespace) -> int:
    role = normalize_role(args.role)
    user_id = args.user_id or uuid4().hex
    key_id, raw_key, key_prefix, key_hash = generate_api_key()

    database = get_database()
    async with database.session() as session:
        user = await session.get(User, user_id)
        if user is None:
            user = User(id=user_id, email=args.email, role=role, is_active=True)
            session.add(user)
        else:
            user.role = role
            if args.email:
                user.email = args.email
        # The user row must exist before the key references it.
        await session.flush()
        session.add(
            ApiKey(
                id=key_id,
                user_id=user.id,
                key_prefix=key_prefix,
                key_hash=key_hash,
                name=args.name,
            )
        )
        await record_entry(
            session=session,
            actor_id=SYSTEM_ACTOR_ID,
            actor_type=ActorType.SYSTEM,
            action="auth.api_key.created",
            target_type="api_key",
            target_id=key_id,
            metadata={"user_id": user.id, "key_prefix": key_prefix, "key_name": args.name, "role": role},
            commit=True,
        )
    await database.dispose()

    print("API key created:")
    print(f"  key_id: {key_id}")
    print(f"  key_prefix: {key_prefix}")
    print("  api_key: ")
    print(f"    {raw_key}")
    return 0


def main() -> int:
    args = _build_parser().parse_args()
    try:
        return asyncio.run(_create_key(args))
    except Exception as exc:  # noqa: BLE001 - surface provisioning failures clearly
        print(f"create_api_key failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
