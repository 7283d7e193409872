from __future__ import annotations

import os
from pathlib import Path

from sqlalchemy import Engine, create_engine
from sqlalchemy.orm import Session, sessionmaker

from taxlots.db.models import Base


def init_db(db_file: Path | str, *, reset: bool = False, echo: bool = False) -> Session:
    if reset and os.path.exists(db_file):
        os.remove(db_file)

    engine: Engine = create_engine(f"sqlite:///{db_file}", echo=echo)

    Base.metadata.create_all(engine)
    return sessionmaker(engine)()
