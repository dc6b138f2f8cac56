from __future__ import annotations

from collections.abc import Generator

from fastapi import Depends
from sqlalchemy.orm import Session

from autoapply.core.controller import RunController
from autoapply.db.session import get_db_session


def get_db() -> Generator[Session, None, None]:
    yield from get_db_session()


def get_controller(db: Session = Depends(get_db)) -> RunController:
    return RunController(db)
