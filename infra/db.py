from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import DateTime, Numeric, String
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.ext.compiler import compiles
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.sql.expression import FunctionElement
from sqlalchemy.types import TypeDecorator

from .settings import settings


class Base(DeclarativeBase):
    pass


class UTCDateTime(TypeDecorator):
    """Timezone-aware datetime that always comes back as UTC.

    SQLite drops the offset on the way in, so values are normalised to UTC
    before binding and re-tagged with UTC when loaded.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


class DecimalString(TypeDecorator):
    """Exact decimal amount stored as its canonical string."""

    impl = String(80)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        return str(Decimal(value))

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return Decimal(value)


class Money(TypeDecorator):
    """Exact decimal amount in a NUMERIC column, so SQL can sum and order it.

    Postgres NUMERIC is exact. SQLite keeps NUMERIC as a double, so values
    are read back through their shortest repr, which round-trips every
    amount of up to 15 significant digits.
    """

    impl = Numeric
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "sqlite":
            return dialect.type_descriptor(Numeric(asdecimal=False))
        return dialect.type_descriptor(Numeric(asdecimal=True))

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        return Decimal(value)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if isinstance(value, float):
            return Decimal(repr(value))
        return Decimal(value)


class hour_bucket(FunctionElement):
    """UTC hour of a timestamp rendered as ``YYYY-MM-DD HH:00:00``"""

    type = String()
    inherit_cache = True


@compiles(hour_bucket)
def _hour_bucket_default(element, compiler, **kw):
    return "to_char(date_trunc('hour', %s AT TIME ZONE 'UTC'), 'YYYY-MM-DD HH24:00:00')" % (
        compiler.process(element.clauses, **kw)
    )


@compiles(hour_bucket, "sqlite")
def _hour_bucket_sqlite(element, compiler, **kw):
    return "strftime('%%Y-%%m-%%d %%H:00:00', %s)" % compiler.process(element.clauses, **kw)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC and convert aware ones to UTC"""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


async_engine = create_async_engine(settings.database_url)
AsyncSessionLocal = async_sessionmaker(
    async_engine, autocommit=False, autoflush=False, expire_on_commit=False
)


async def get_async_db():
    """Dependency for async database sessions"""
    async with AsyncSessionLocal() as session:
        yield session


async def create_schema(engine=async_engine) -> None:
    """Create all tables and indexes (used by the CLI and tests)"""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
