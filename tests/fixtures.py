"""
Shared test data and store doubles.
"""

from datetime import datetime, timezone

from pymongo.errors import PyMongoError

from database import Store

START = datetime(2026, 1, 1, 10, 0, 0, tzinfo=timezone.utc)
END = datetime(2026, 1, 8, 10, 0, 0, tzinfo=timezone.utc)

OWNER = "0x00000000000000000000000000000000000000aa"


def contest_fields(**overrides):
    fields = {
        "name": "Dankest of the week",
        "startDateTime": START,
        "endDateTime": END,
        "entryFee": 10,
        "votingFee": 1,
        "winnerPercentage": 70,
        "numberOfLuckyVoters": 3,
        "contractAddress": "0x7c0EDC302f539f91465Bf3381983DD39A36D6AE9",
        "tokenAddress": "0x1111111111111111111111111111111111111111",
        "contestOwner": OWNER,
    }
    fields.update(overrides)
    return fields


def contest_body(**overrides):
    body = contest_fields(**overrides)
    body["startDateTime"] = START.isoformat()
    body["endDateTime"] = END.isoformat()
    return body


class FailingCollection:
    """Collection proxy whose named methods raise PyMongoError."""

    def __init__(self, inner, methods):
        self.inner = inner
        self.methods = set(methods)

    def __getattr__(self, name):
        if name in self.methods:
            def fail(*args, **kwargs):
                raise PyMongoError(f"{name} unavailable")
            return fail
        return getattr(self.inner, name)


class FlakyStore(Store):
    def __init__(self, db, collection, *methods):
        super().__init__(db)
        self.target = collection
        self.methods = methods

    def __getitem__(self, collection):
        coll = super().__getitem__(collection)
        if collection == self.target:
            return FailingCollection(coll, self.methods)
        return coll
