"""Script to provision an operator user with a free subscription and an API key."""

import asyncio
import sys

sys.path.insert(0, ".")

from src.auth.security import create_api_key
from src.db.models import User
from src.db.session import async_session_maker, init_db
from src.services.ledger import usage_ledger


async def main():
    """Create an operator user and its API key."""
    print("Initializing database...")
    await init_db()

    print("Creating operator user...")
    async with async_session_maker() as db:
        user = User(external_id="operator")
        db.add(user)
        await db.commit()
        user_id = user.id

        subscription = await usage_ledger.create_free_subscription(db, user_id)

        api_key, full_key = await create_api_key(
            db,
            name="Operator Key",
            user_id=user_id,
            scopes=["music", "video"],
            expires_in_days=None,  # Never expires
        )
        await db.commit()

        print("\n" + "=" * 60)
        print("OPERATOR API KEY CREATED SUCCESSFULLY")
        print("=" * 60)
        print(f"\nUser ID:         {user_id}")
        print(f"Subscription ID: {subscription.id} ({subscription.tier})")
        print(f"API Key:         {full_key}")
        print(f"Key ID:          {api_key.id}")
        print(f"Prefix:          {api_key.key_prefix}")
        print("\nSAVE THIS KEY NOW - IT WILL NOT BE SHOWN AGAIN!")
        print("=" * 60)


if __name__ == "__main__":
    asyncio.run(main())
