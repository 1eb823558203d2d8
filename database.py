"""
Database access

Thin document store over MongoDB. Records are plain dicts; references
between collections are ObjectIds. Collection names are the lowercased
record class names ("contest", "submission", "vote").
"""

from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from bson import ObjectId
from bson.errors import InvalidId as BsonInvalidId
from pydantic import BaseModel
from pymongo import ASCENDING, MongoClient, ReturnDocument

from errors import ContestNotFound, InvalidId, NotFound, SubmissionNotFound

CONTESTS = "contest"
SUBMISSIONS = "submission"
VOTES = "vote"

_NOT_FOUND = {
    CONTESTS: ContestNotFound,
    SUBMISSIONS: SubmissionNotFound,
}


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def connect(database_url: str) -> MongoClient:
    return MongoClient(database_url, tz_aware=True)


def parse_id(value: Any, label: str = "id") -> ObjectId:
    """Turn a client supplied id into an ObjectId, or fail with InvalidId."""
    if isinstance(value, ObjectId):
        return value
    if not isinstance(value, str):
        raise InvalidId(f"Invalid {label}")
    try:
        return ObjectId(value)
    except (BsonInvalidId, TypeError):
        raise InvalidId(f"Invalid {label}") from None


def serialize(value: Any) -> Any:
    """Make a document JSON friendly: every ObjectId becomes its hex string."""
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, dict):
        return {k: serialize(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [serialize(v) for v in value]
    return value


def not_found(collection: str, detail: Optional[str] = None) -> NotFound:
    exc = _NOT_FOUND.get(collection, NotFound)
    return exc(detail or f"{collection.capitalize()} not found")


class Store:
    """Create / find / update records and resolve contest references."""

    def __init__(self, db):
        self.db = db

    def __getitem__(self, collection: str):
        return self.db[collection]

    def ensure_indexes(self) -> None:
        self.db[VOTES].create_index([("contest", ASCENDING), ("voter", ASCENDING)], unique=True)
        self.db[VOTES].create_index("voter")
        self.db[SUBMISSIONS].create_index("wallet")
        self.db[SUBMISSIONS].create_index("linked")

    def create_document(self, collection: str, data) -> Dict[str, Any]:
        if isinstance(data, BaseModel):
            doc = data.model_dump(by_alias=True)
        else:
            doc = dict(data)
        doc.setdefault("createdAt", now_utc())
        inserted_id = self.db[collection].insert_one(doc).inserted_id
        doc["_id"] = inserted_id
        return doc

    def find_document(self, collection: str, id_: Any) -> Optional[Dict[str, Any]]:
        return self.db[collection].find_one({"_id": parse_id(id_, f"{collection} id")})

    def get_document(self, collection: str, id_: Any) -> Dict[str, Any]:
        doc = self.find_document(collection, id_)
        if doc is None:
            raise not_found(collection)
        return doc

    def get_documents(self, collection: str, filter_dict: Optional[dict] = None, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        cursor = self.db[collection].find(filter_dict or {})
        if limit:
            cursor = cursor.limit(limit)
        return list(cursor)

    def update_document(self, collection: str, id_: Any, fields: Dict[str, Any]) -> Dict[str, Any]:
        changes = dict(fields)
        changes["updatedAt"] = now_utc()
        doc = self.db[collection].find_one_and_update(
            {"_id": parse_id(id_, f"{collection} id")},
            {"$set": changes},
            return_document=ReturnDocument.AFTER,
        )
        if doc is None:
            raise not_found(collection)
        return doc

    def delete_document(self, collection: str, id_: ObjectId) -> None:
        self.db[collection].delete_one({"_id": id_})

    def find_by_ids(self, collection: str, ids: Iterable[ObjectId]) -> Dict[ObjectId, Dict[str, Any]]:
        ids = list(ids)
        if not ids:
            return {}
        return {d["_id"]: d for d in self.db[collection].find({"_id": {"$in": ids}})}

    def populate(self, contest: Dict[str, Any]) -> Dict[str, Any]:
        """Return a copy of contest with submission ids replaced by records, in contest order."""
        refs = contest.get("submissions") or []
        found = self.find_by_ids(SUBMISSIONS, refs)
        populated = dict(contest)
        populated["submissions"] = [found[r] for r in refs if r in found]
        return populated
