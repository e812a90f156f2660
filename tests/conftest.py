"""
Pytest configuration and fixtures for testing
"""

import itertools
from datetime import datetime, timezone

import pytest
from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from companion.db.models import Application, Base, Relationship, StageRequirement, User
from companion.realtime.notifier import ChangeNotifier
from companion.stages.progression import create_relationship_from_application
from companion.stages.repo import seed_requirements


@pytest.fixture
async def engine():
    """In-memory SQLite shared by every session of one test"""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def notifier():
    return ChangeNotifier()


@pytest.fixture
def now():
    return datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def make_user(db):
    counter = itertools.count(1)

    async def _make(
        user_type: str = "youth",
        full_name: str | None = None,
        is_active: bool = True,
        age_verified: bool = True,
    ) -> User:
        n = next(counter)
        user = User(
            user_type=user_type,
            email=f"{user_type}{n}@example.com",
            full_name=full_name or f"{user_type.title()} {n}",
            is_active=is_active,
            age_verified=age_verified,
        )
        db.add(user)
        await db.commit()
        await db.refresh(user)
        return user

    return _make


@pytest.fixture
async def youth(make_user):
    return await make_user("youth", "Alex")


@pytest.fixture
async def elderly(make_user):
    return await make_user("elderly", "Margaret")


@pytest.fixture
async def admin(make_user):
    return await make_user("admin", "Admin")


@pytest.fixture
def make_application(db):
    async def _make(youth, elderly, status: str = "pre_chat_active", applied_at: datetime | None = None, **fields):
        decisions = {
            "pending_interest": ("accept", "pending"),
            "rejected": ("accept", "decline"),
        }.get(status, ("accept", "accept"))
        app = Application(
            youth_id=youth.id,
            elderly_id=elderly.id,
            status=status,
            youth_decision=fields.pop("youth_decision", decisions[0]),
            elderly_decision=fields.pop("elderly_decision", decisions[1]),
            applied_at=applied_at or datetime.now(timezone.utc),
            **fields,
        )
        db.add(app)
        await db.commit()
        await db.refresh(app)
        return app

    return _make


@pytest.fixture
def make_relationship(db, make_application):
    async def _make(youth, elderly, stage: str = "getting_to_know", created_at: datetime | None = None) -> Relationship:
        app = await make_application(youth, elderly, status="both_accepted")
        rel = await create_relationship_from_application(db, app)
        values = {}
        if stage != rel.current_stage:
            values["current_stage"] = stage
        if created_at is not None:
            values["created_at"] = created_at
            values["stage_start_date"] = created_at
        if values:
            await db.execute(update(Relationship).where(Relationship.id == rel.id).values(**values))
            if "current_stage" in values:
                await seed_requirements(db, rel.id, stage)
            await db.commit()
        return await db.get(Relationship, rel.id, populate_existing=True)

    return _make


@pytest.fixture
def complete_stage(db):
    """Mark every requirement of the relationship's current stage as done"""

    async def _complete(rel: Relationship) -> None:
        await db.execute(
            update(StageRequirement)
            .where(
                StageRequirement.relationship_id == rel.id,
                StageRequirement.stage == rel.current_stage,
            )
            .values(is_completed=True, youth_signed=True, elderly_signed=True)
        )
        await db.commit()

    return _complete
