"""
Seed script to populate the database with trainers, clients and message history.
Run with: python scripts/seed_test_data.py
"""

import asyncio
import random
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from uuid import uuid4

# Add parent directory to path so we can import app
sys.path.insert(0, str(Path(__file__).parent.parent))

from faker import Faker
from sqlalchemy import func, select

from app.core.security import hash_password
from app.database import async_session_maker
from app.models.message import Message
from app.models.user import User

fake = Faker()

# Configuration
NUM_TRAINERS = 3
CLIENTS_PER_TRAINER = 8
MAX_MESSAGES_PER_THREAD = 25
TEST_EMAIL_DOMAIN = "test.fitcoach.app"


async def seed_users(db, role: str, count: int) -> list[User]:
    """Create test users with the given role."""
    users = []

    # Password for all test users (for easy login during testing)
    test_password_hash = hash_password("Test1234!")

    print(f"Creating {count} {role}s...")

    for i in range(count):
        user = User(
            id=uuid4(),
            email=f"{role}{i+1}@{TEST_EMAIL_DOMAIN}",
            password_hash=test_password_hash,
            name=fake.name(),
            role=role,
            created_at=datetime.now(timezone.utc) - timedelta(days=random.randint(30, 180)),
        )
        db.add(user)
        users.append(user)

    await db.flush()
    print(f"  Created {len(users)} {role}s")
    return users


async def seed_thread(db, trainer: User, client: User) -> list[Message]:
    """Create an alternating conversation; the newest client messages stay unread."""
    messages = []
    count = random.randint(0, MAX_MESSAGES_PER_THREAD)
    sent_at = datetime.now(timezone.utc) - timedelta(days=random.randint(1, 30))

    for i in range(count):
        from_trainer = random.random() < 0.5
        sent_at += timedelta(minutes=random.randint(1, 600))
        unread_tail = i >= count - random.randint(0, 3)

        message = Message(
            id=uuid4(),
            sender_id=trainer.id if from_trainer else client.id,
            recipient_id=client.id if from_trainer else trainer.id,
            content=fake.sentence(nb_words=random.randint(4, 18)),
            read=not unread_tail,
            read_at=None if unread_tail else sent_at + timedelta(minutes=5),
            created_at=sent_at,
        )
        db.add(message)
        messages.append(message)

    return messages


async def main():
    print("=" * 50)
    print("Seeding test data for FitCoach messaging")
    print("=" * 50)

    async with async_session_maker() as db:
        try:
            count_result = await db.execute(
                select(func.count(User.id)).where(User.email.like(f"%@{TEST_EMAIL_DOMAIN}"))
            )
            existing_count = count_result.scalar() or 0

            if existing_count > 0:
                print(f"\nFound {existing_count} existing test users.")
                response = input("Do you want to add more test data? (y/n): ")
                if response.lower() != 'y':
                    print("Aborted.")
                    return

            print("\nCreating test data...")

            trainers = await seed_users(db, "trainer", NUM_TRAINERS)
            clients = await seed_users(db, "client", NUM_TRAINERS * CLIENTS_PER_TRAINER)

            messages = []
            for index, client in enumerate(clients):
                trainer = trainers[index % len(trainers)]
                messages.extend(await seed_thread(db, trainer, client))

            await db.commit()

            print("\n" + "=" * 50)
            print("Summary:")
            print("=" * 50)
            print(f"  Trainers created: {len(trainers)}")
            print(f"  Clients created: {len(clients)}")
            print(f"  Messages created: {len(messages)}")
            print(f"    - Unread: {len([m for m in messages if not m.read])}")
            print("\nTest trainer login:")
            print(f"  Email: trainer1@{TEST_EMAIL_DOMAIN}")
            print("  Password: Test1234!")
            print("\nTest client login:")
            print(f"  Email: client1@{TEST_EMAIL_DOMAIN}")
            print("  Password: Test1234!")
            print("=" * 50)

        except Exception as e:
            print(f"\nError: {e}")
            await db.rollback()
            raise


if __name__ == "__main__":
    asyncio.run(main())
