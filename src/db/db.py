import logging
from pathlib import Path

from sqlalchemy import Engine, create_engine
from sqlalchemy.orm import Session, sessionmaker

from db.models import Base

logger = logging.getLogger(__name__)

IN_MEMORY = ":memory:"


def create_db_engine(
    db_file: str | Path, *, echo: bool = False, lock_timeout: float = 0.0, reset: bool = False
) -> Engine:
    if str(db_file) == IN_MEMORY:
        url = "sqlite:///:memory:"
    else:
        path = Path(db_file)
        if reset and path.exists():
            logger.info("Removing existing database %s", path)
            path.unlink()
        path.parent.mkdir(parents=True, exist_ok=True)
        url = f"sqlite:///{path}"

    # SQLite's busy timeout: with 0 a locked database fails immediately instead of waiting.
    return create_engine(url, echo=echo, connect_args={"timeout": lock_timeout})


def init_db(
    echo: bool = False, *, db_file: str | Path = IN_MEMORY, reset: bool = False, lock_timeout: float = 0.0
) -> Session:
    engine = create_db_engine(db_file, echo=echo, lock_timeout=lock_timeout, reset=reset)
    Base.metadata.create_all(engine)
    return sessionmaker(engine)()
