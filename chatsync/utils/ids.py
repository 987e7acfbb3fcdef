from bson import ObjectId
from bson.errors import InvalidId

from chatsync.utils.errors import InvalidArgumentError


def to_object_id(value: str, kind: str = "id") -> ObjectId:
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(value)
    except (InvalidId, TypeError):
        raise InvalidArgumentError(f"Malformed {kind}: {value!r}") from None


def normalize(doc: dict | None) -> dict | None:
    if doc is not None and "_id" in doc:
        doc["_id"] = str(doc["_id"])
    return doc
