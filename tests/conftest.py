import re
import uuid
from copy import deepcopy
from datetime import datetime

import pytest
from fastapi.testclient import TestClient

import main


class InMemoryStore:
    """Stands in for the pymongo helpers in ``database`` during route tests."""

    def __init__(self):
        self.collections = {}

    def _coll(self, name):
        return self.collections.setdefault(name, {})

    def _matches(self, doc, flt):
        for key, cond in flt.items():
            if key == "$or":
                if not any(self._matches(doc, sub) for sub in cond):
                    return False
            elif isinstance(cond, dict) and "$in" in cond:
                if doc.get(key) not in cond["$in"]:
                    return False
            elif isinstance(cond, dict) and "$regex" in cond:
                flags = re.I if "i" in cond.get("$options", "") else 0
                if doc.get(key) is None or not re.search(cond["$regex"], str(doc[key]), flags):
                    return False
            elif doc.get(key) != cond:
                return False
        return True

    @staticmethod
    def _out(doc):
        doc = deepcopy(doc)
        doc["id"] = str(doc.pop("_id"))
        return doc

    def create_document(self, collection_name, data):
        doc_id = uuid.uuid4().hex
        self._coll(collection_name)[doc_id] = {**deepcopy(data), "_id": doc_id}
        return doc_id

    def get_documents(self, collection_name, filter_dict=None, limit=100, sort=None):
        docs = [d for d in self._coll(collection_name).values() if self._matches(d, filter_dict or {})]
        for key, direction in reversed(list(sort or [])):
            docs.sort(key=lambda d: d.get(key), reverse=direction < 0)
        return [self._out(d) for d in docs[:limit]]

    def get_document_by_id(self, collection_name, doc_id):
        doc = self._coll(collection_name).get(doc_id)
        return self._out(doc) if doc else None

    def upsert_document(self, collection_name, doc_id, data):
        coll = self._coll(collection_name)
        doc = coll.setdefault(doc_id, {"_id": doc_id, "created_at": datetime.utcnow()})
        doc.update(deepcopy(data))
        return doc_id

    def upsert_documents(self, collection_name, items):
        for doc_id, data in items:
            self.upsert_document(collection_name, doc_id, data)
        return len(items)

    def delete_document(self, collection_name, doc_id):
        return self._coll(collection_name).pop(doc_id, None) is not None

    def count_by_field(self, collection_name, field, filter_dict=None):
        counts = {}
        for doc in self._coll(collection_name).values():
            if self._matches(doc, filter_dict or {}) and doc.get(field) is not None:
                key = str(doc[field])
                counts[key] = counts.get(key, 0) + 1
        return counts

    def delete_documents(self, collection_name, filter_dict):
        coll = self._coll(collection_name)
        doomed = [k for k, d in coll.items() if self._matches(d, filter_dict)]
        for k in doomed:
            del coll[k]
        return len(doomed)


STORE_FUNCTIONS = (
    "create_document",
    "get_documents",
    "get_document_by_id",
    "upsert_document",
    "upsert_documents",
    "delete_document",
    "delete_documents",
    "count_by_field",
)


@pytest.fixture
def store(monkeypatch):
    fake = InMemoryStore()
    for name in STORE_FUNCTIONS:
        monkeypatch.setattr(main, name, getattr(fake, name))
    return fake


@pytest.fixture
def client(store):
    return TestClient(main.app)
