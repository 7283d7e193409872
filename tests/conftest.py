from datetime import date, timedelta
from decimal import Decimal
from typing import Generator

import pytest
from sqlalchemy import Engine, create_engine
from sqlalchemy.orm import Session, sessionmaker

from taxlots.db.models import Base
from taxlots.domain.currency import StaticRateTable
from taxlots.domain.engine import AggregationEngine
from taxlots.domain.policy import EngineConfig
from tests.helpers.time_utils import DEFAULT_TIME_GEN

engine: Engine = create_engine("sqlite:///:memory:", connect_args={"check_same_thread": False})
session_factory = sessionmaker(engine)


@pytest.fixture(scope="function")
def test_session() -> Generator[Session, None, None]:
    with session_factory() as session:
        yield session


@pytest.fixture(scope="function", autouse=True)
def reset_db() -> Generator[None, None, None]:
    Base.metadata.create_all(engine)
    yield
    Base.metadata.drop_all(engine)


@pytest.fixture(autouse=True)
def _reset_default_time_gen() -> None:
    DEFAULT_TIME_GEN.reset()


@pytest.fixture(scope="function")
def rates() -> StaticRateTable:
    table = StaticRateTable()
    day = date(2023, 1, 1)
    while day <= date(2026, 12, 31):
        table.add("EUR", "USD", day, Decimal("1.10"))
        day += timedelta(days=1)
    return table


@pytest.fixture(scope="function")
def engine_config() -> EngineConfig:
    return EngineConfig(reporting_currency="USD")


@pytest.fixture(scope="function")
def aggregation_engine(engine_config: EngineConfig, rates: StaticRateTable) -> AggregationEngine:
    return AggregationEngine(engine_config, rates)
