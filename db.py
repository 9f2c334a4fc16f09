# db.py
import os
from contextlib import contextmanager
from typing import List

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./cotrainer.db")

connect_args = {"check_same_thread": False} if DATABASE_URL.startswith("sqlite") else {}

engine = create_engine(DATABASE_URL, pool_pre_ping=True, connect_args=connect_args)
SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)

Base = declarative_base()


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def insert_or_ignore(db: Session, model, rows: List[dict], index_elements: List[str], chunk_size: int = 200) -> int:
    """Bulk insert that silently skips rows violating the given unique key.

    Returns the number of rows actually inserted. Does not commit.
    """
    if not rows:
        return 0

    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        from sqlalchemy.dialects.postgresql import insert
    elif dialect == "sqlite":
        from sqlalchemy.dialects.sqlite import insert
    else:
        return _insert_missing(db, model, rows, index_elements)

    inserted = 0
    for i in range(0, len(rows), chunk_size):
        stmt = (
            insert(model)
            .values(rows[i:i + chunk_size])
            .on_conflict_do_nothing(index_elements=index_elements)
        )
        inserted += db.execute(stmt).rowcount
    return inserted


def _insert_missing(db: Session, model, rows: List[dict], index_elements: List[str]) -> int:
    # no ON CONFLICT support: check each key first
    inserted = 0
    for row in rows:
        key = {name: row[name] for name in index_elements}
        if db.query(model).filter_by(**key).first():
            continue
        db.add(model(**row))
        inserted += 1
    db.flush()
    return inserted


@contextmanager
def transaction(db: Session):
    """Commit on success, roll back and re-raise on any error."""
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
