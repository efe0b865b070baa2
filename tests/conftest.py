import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.orm import Session, sessionmaker

import models  # noqa: F401
from database import Base, enable_sqlite_pragmas
from fakes import FakeEmailSender, FakeModelClient, FakePushSender


@pytest.fixture()
def session() -> Session:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    with Session(engine) as db:
        yield db


@pytest.fixture()
def session_factory(tmp_path):
    """File database shared by the worker threads of one test."""
    engine = create_engine(
        f"sqlite:///{tmp_path / 'finsight.db'}",
        connect_args={"check_same_thread": False},
    )
    event.listen(engine, "connect", enable_sqlite_pragmas)
    Base.metadata.create_all(engine)
    yield sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    engine.dispose()


@pytest.fixture()
def model_client() -> FakeModelClient:
    return FakeModelClient()


@pytest.fixture()
def push_sender() -> FakePushSender:
    return FakePushSender()


@pytest.fixture()
def email_sender() -> FakeEmailSender:
    return FakeEmailSender()
