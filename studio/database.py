import logging

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm.exc import StaleDataError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

from .errors import ConflictError, PersistenceError
from .settings.config import settings

logger = logging.getLogger(__name__)

DATABASE_URL = settings.async_database_url

engine = create_async_engine(DATABASE_URL, echo=False, future=True)
async_session_maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)
Base = declarative_base()


async def get_db():
    async with async_session_maker() as session:
        yield session


async def commit(db: AsyncSession) -> None:
    """Commit or roll the whole unit of work back; callers never see a half-applied change."""
    try:
        await db.commit()
    except StaleDataError as exc:
        await db.rollback()
        raise ConflictError("The record was changed by someone else; reload and try again") from exc
    except IntegrityError as exc:
        await db.rollback()
        logger.info("commit rejected by a constraint: %s", exc.orig)
        raise ConflictError("The change conflicts with existing data") from exc
    except SQLAlchemyError as exc:
        await db.rollback()
        logger.exception("commit failed, transaction rolled back")
        raise PersistenceError("Could not save changes; nothing was applied") from exc


async def init_db():
    # Only run create_all in dev, never in prod with Alembic
    if settings.RUN_DB_CREATE_ALL:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
