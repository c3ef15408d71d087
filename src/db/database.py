"""Generate database sessions and the store hub that sits on top of them"""

from sqlalchemy import Engine, create_engine
from sqlalchemy.orm import Session, sessionmaker

from src.core.config import Settings
from src.db.memory_store import MemoryDocuments, StoreHub
from src.db.schema import Base
from src.db.sql_store import SQLDocuments


def make_session_factory(database_url: str, echo: bool = False) -> sessionmaker[Session]:
    engine = create_engine(database_url, echo=echo)
    init_db(engine)
    return sessionmaker(bind=engine)


def init_db(engine: Engine) -> None:
    """Ensure all tables are created"""
    Base.metadata.create_all(bind=engine)


def open_store_hub(settings: Settings, db_session: Session | None = None) -> StoreHub:
    """Hub backed by the configured document backend ('memory' or 'sql')."""
    if settings.store_backend == "memory":
        return StoreHub(MemoryDocuments())
    if settings.store_backend == "sql":
        if db_session is None:
            db_session = make_session_factory(settings.database_url)()
        return StoreHub(SQLDocuments(db_session))
    raise ValueError(f"Unknown store backend: {settings.store_backend!r}")
