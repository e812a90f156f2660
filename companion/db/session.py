from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession
from sqlalchemy.orm import sessionmaker
from companion.core.config import settings

engine = create_async_engine(
    settings.DB_URL.replace("psycopg2", "asyncpg"),
    echo=settings.DB_ECHO,
    pool_pre_ping=True,
)
SessionLocal = sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)

async def get_db():
    """One session per request; engines commit their own writes."""
    async with SessionLocal() as session:
        yield session


def side_session(db: AsyncSession) -> AsyncSession:
    """Separate session on the caller's engine; its rollback never expires the caller's objects."""
    return AsyncSession(bind=db.bind, expire_on_commit=False)
