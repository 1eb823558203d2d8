import mongomock
import pytest
from fastapi.testclient import TestClient

import main
from config import Settings
from context import AppContext
from tests.fixtures import contest_fields


@pytest.fixture
def ctx():
    context = AppContext.from_settings(
        Settings(database_name="dankmymeme_test", intake_retries=2),
        client=mongomock.MongoClient(),
    )
    context.start()
    return context


@pytest.fixture
def store(ctx):
    return ctx.store


@pytest.fixture
def contest(ctx):
    return ctx.contests.create_contest(contest_fields())


@pytest.fixture
def two_entries(ctx, contest):
    """A contest holding submissions S0 and S1 with no votes."""
    s0 = ctx.contests.submit(str(contest["_id"]), "0xS0", "QmImageZero")
    s1 = ctx.contests.submit(str(contest["_id"]), "0xS1", "QmImageOne")
    return contest, s0, s1


@pytest.fixture
def client(ctx):
    main.app.state.context = ctx
    with TestClient(main.app) as c:
        yield c
