import pytest
from sqlalchemy.orm import Session

from database import create_store_engine, init_db


@pytest.fixture
def session():
    engine = create_store_engine("sqlite:///:memory:")
    init_db(engine)
    with Session(engine) as session:
        yield session
    engine.dispose()
