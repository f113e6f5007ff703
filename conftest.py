import os

os.environ["DATABASE_URL"] = "sqlite:///./test.db"

import pytest

from database import engine
from models import Base


@pytest.fixture(autouse=True)
def reset_database():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield
