import os

import pytest

os.environ["POSTGRES_URI"] = "sqlite:///./test.db"
os.environ.setdefault("SECRET_KEY", "not-a-secret-test-key")

from sqlmodel import SQLModel  # noqa: E402

from .database import engine  # noqa: E402
from . import models  # noqa: E402,F401


@pytest.fixture(scope="session", autouse=True)
def reset_database():
    SQLModel.metadata.drop_all(engine)
    SQLModel.metadata.create_all(engine)
    yield
    SQLModel.metadata.drop_all(engine)
