"""
Serialization utilities for MongoDB documents
ObjectId parsing and JSON-safe conversion for API responses
"""
from bson import ObjectId
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional


def to_object_id(value: Any) -> Optional[ObjectId]:
    """Parse a 24-hex user/transcription id, None when malformed"""
    if isinstance(value, ObjectId):
        return value
    if not isinstance(value, str) or not ObjectId.is_valid(value) or len(value) != 24:
        return None
    return ObjectId(value)


def serialize_value(obj: Any) -> Any:
    """
    Convert ObjectId and datetime values to strings recursively
    """
    if isinstance(obj, ObjectId):
        return str(obj)
    elif isinstance(obj, datetime):
        return obj.isoformat()
    elif isinstance(obj, dict):
        return {key: serialize_value(value) for key, value in obj.items()}
    elif isinstance(obj, list):
        return [serialize_value(item) for item in obj]
    return obj


def serialize_document(document: Dict, fields: Optional[Iterable[str]] = None) -> Dict:
    """
    Serialize a single MongoDB document, optionally keeping only `fields`

    _id is always kept and always a string.
    """
    if fields is not None:
        document = {key: document.get(key) for key in fields if key in document or key == "_id"}
    serialized = serialize_value(document)
    serialized["_id"] = str(document.get("_id", ""))
    return serialized


def serialize_documents(documents: List[Dict], fields: Optional[Iterable[str]] = None) -> List[Dict]:
    """Serialize a list of MongoDB documents"""
    fields = list(fields) if fields is not None else None
    return [serialize_document(doc, fields) for doc in documents]
