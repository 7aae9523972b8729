"""
Test fixtures for farewatch backend tests.
"""
from datetime import date, datetime, timedelta

import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker

from farewatch.database import Base
import farewatch.models  # noqa: F401
from farewatch.models.search_filter import SearchFilter, CabinClass, MaxStops, MonitorFrequency
from farewatch.models.price_observation import PriceObservation, ValidationStatus


# Create test database engine (SQLite in-memory)
TEST_DATABASE_URL = "sqlite:///:memory:"

test_engine = create_engine(
    TEST_DATABASE_URL,
    connect_args={"check_same_thread": False}
)


# Enable foreign key constraints for SQLite
@event.listens_for(test_engine, "connect")
def set_sqlite_pragma(dbapi_connection, connection_record):
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


TestSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=test_engine)


@pytest.fixture(scope="function")
def db_session():
    """
    Create a fresh database session for each test.
    Creates all tables before the test and drops them after.
    """
    Base.metadata.create_all(bind=test_engine)

    session = TestSessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=test_engine)


def make_filter(
    origin="JFK",
    destination="LAX",
    departure=None,
    target_price=500.0,
    frequency=MonitorFrequency.DAILY,
    urgent=False,
    **kwargs,
):
    departure = departure or (date.today() + timedelta(days=90))
    values = dict(
        origin_airports=[origin],
        destination_airports=[destination],
        departure_dates=[departure.isoformat()],
        return_dates=[],
        adults=1,
        cabin_class=CabinClass.ECONOMY,
        max_stops=MaxStops.ANY,
        target_price=target_price,
        min_price=0.0,
        max_price=10000.0,
        monitor_frequency=frequency,
        urgent=urgent,
        airline_preferences=[],
    )
    values.update(kwargs)
    return SearchFilter(**values)


def make_observation(route, price, observed_at=None, provider="skyscanner", filter_id=None,
                     status=ValidationStatus.VALID):
    return PriceObservation(
        filter_id=filter_id,
        route=route,
        provider=provider,
        price=price,
        observed_at=observed_at or datetime.utcnow(),
        validation_status=status,
    )


@pytest.fixture
def search_filter(db_session):
    """A persisted daily JFK-LAX filter with a $500 target."""
    search_filter = make_filter()
    db_session.add(search_filter)
    db_session.commit()
    db_session.refresh(search_filter)
    return search_filter
