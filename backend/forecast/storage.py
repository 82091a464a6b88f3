import os
from typing import Iterable, List

from sqlalchemy import Column, Float, Integer, String, create_engine, delete, select
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from .config import DATA_DIR, DATABASE_URL
from .models import TimeSeriesRecord

Base = declarative_base()


class RecordORM(Base):
    __tablename__ = "records"
    id = Column(Integer, primary_key=True, autoincrement=True)
    data_type = Column(String, nullable=False, index=True)  # temp | act | avg | user-<name>
    year = Column(Integer)
    month = Column(Integer)
    day = Column(Integer)
    hour = Column(Integer, nullable=False)
    value = Column(Float, nullable=False)


def user_data_type(username: str) -> str:
    return f"user-{username}"


def _make_engine(url: str):
    if not url.startswith("sqlite"):
        return create_engine(url)
    if url in ("sqlite://", "sqlite:///:memory:"):
        # One shared connection, otherwise every session sees an empty database
        return create_engine(url, connect_args={"check_same_thread": False}, poolclass=StaticPool)
    os.makedirs(DATA_DIR, exist_ok=True)
    return create_engine(url, connect_args={"check_same_thread": False})


class RecordStore:
    """Time-series records partitioned by their ``dataType`` discriminator."""

    def __init__(self, url: str = DATABASE_URL):
        self.url = url
        self.engine = _make_engine(url)
        self.SessionLocal = sessionmaker(
            bind=self.engine,
            autoflush=False,
            autocommit=False,
            expire_on_commit=False,
        )
        Base.metadata.create_all(self.engine)

    @property
    def backend(self) -> str:
        return self.engine.dialect.name

    def find(self, *data_types: str) -> List[TimeSeriesRecord]:
        """Return records of the given types (all records when none given) in insertion order."""
        stmt = select(RecordORM).order_by(RecordORM.id)
        if data_types:
            stmt = stmt.where(RecordORM.data_type.in_(data_types))
        with self.SessionLocal() as db:
            return [_to_record(row) for row in db.scalars(stmt)]

    def insert_many(self, records: Iterable[TimeSeriesRecord]) -> int:
        rows = [_to_orm(r) for r in records]
        with self.SessionLocal() as db:
            db.add_all(rows)
            db.commit()
        return len(rows)

    def delete_many(self, *data_types: str) -> int:
        with self.SessionLocal() as db:
            result = db.execute(delete(RecordORM).where(RecordORM.data_type.in_(data_types)))
            db.commit()
        return result.rowcount

    def replace(self, data_types: Iterable[str], records: Iterable[TimeSeriesRecord]) -> int:
        """Drop every record of ``data_types`` and insert ``records`` in one transaction."""
        rows = [_to_orm(r) for r in records]
        with self.SessionLocal() as db:
            db.execute(delete(RecordORM).where(RecordORM.data_type.in_(list(data_types))))
            db.add_all(rows)
            db.commit()
        return len(rows)


def _to_orm(record: TimeSeriesRecord) -> RecordORM:
    return RecordORM(
        data_type=record.data_type,
        year=record.year,
        month=record.month,
        day=record.day,
        hour=record.hour,
        value=record.value,
    )


def _to_record(row: RecordORM) -> TimeSeriesRecord:
    return TimeSeriesRecord(
        id=row.id,
        data_type=row.data_type,
        year=row.year,
        month=row.month,
        day=row.day,
        hour=row.hour,
        value=row.value,
    )
