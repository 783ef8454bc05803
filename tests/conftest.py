"""Shared fixtures: in-memory Firestore and fakes for the external services."""

from collections import defaultdict

import pytest
from google.api_core.exceptions import AlreadyExists, NotFound

from petradar.common.errors import ExternalServiceError
from petradar.pet_db import LostReportFields, MatchingOrchestrator, PetStore, ReportStatus
from petradar.services.notifications import NotificationDispatcher
from petradar.services.push import PushResult
from petradar.services.similarity import Registration, SimilarityHit


# ─── in-memory Firestore ────────────────────────────────────────

def _compare(value, op, target):
    if op == "==":
        return value == target
    if op == "in":
        return value in target
    if value is None:
        return False
    if op == ">=":
        return value >= target
    if op == ">":
        return value > target
    if op == "<=":
        return value <= target
    if op == "<":
        return value < target
    raise ValueError(f"Unsupported operator {op}")


class FakeSnapshot:
    def __init__(self, reference, data):
        self.reference = reference
        self.id = reference.id
        self._data = data

    @property
    def exists(self):
        return self._data is not None

    def to_dict(self):
        return dict(self._data) if self._data is not None else None


class FakeDocument:
    def __init__(self, db, collection, doc_id):
        self._db = db
        self._collection = collection
        self.id = doc_id

    @property
    def _docs(self):
        return self._db.data[self._collection]

    def get(self):
        return FakeSnapshot(self, self._docs.get(self.id))

    def create(self, data):
        if self.id in self._docs:
            raise AlreadyExists(f"Document already exists: {self._collection}/{self.id}")
        self._docs[self.id] = dict(data)

    def set(self, data):
        self._docs[self.id] = dict(data)

    def update(self, changes):
        if self.id not in self._docs:
            raise NotFound(f"No document to update: {self._collection}/{self.id}")
        self._docs[self.id].update(changes)

    def delete(self):
        self._docs.pop(self.id, None)


class FakeQuery:
    def __init__(self, db, collection, filters=(), orders=(), skip=0, take=None):
        self._db = db
        self._collection = collection
        self._filters = filters
        self._orders = orders
        self._skip = skip
        self._take = take

    def _copy(self, **changes):
        params = dict(filters=self._filters, orders=self._orders, skip=self._skip, take=self._take)
        params.update(changes)
        return FakeQuery(self._db, self._collection, **params)

    def where(self, field_path=None, op_string=None, value=None, *, filter=None):
        if filter is not None:
            field_path, op_string, value = filter.field_path, filter.op_string, filter.value
        return self._copy(filters=self._filters + ((field_path, op_string, value),))

    def order_by(self, field_path, direction="ASCENDING"):
        return self._copy(orders=self._orders + ((field_path, direction),))

    def offset(self, num_to_skip):
        return self._copy(skip=num_to_skip)

    def limit(self, count):
        return self._copy(take=count)

    def stream(self):
        docs = self._db.data[self._collection]
        rows = []
        for doc_id in sorted(docs):
            data = docs[doc_id]
            if all(_compare(data.get(f), op, v) for f, op, v in self._filters):
                rows.append((doc_id, data))
        for field_path, direction in reversed(self._orders):
            rows = [r for r in rows if r[1].get(field_path) is not None]
            rows.sort(key=lambda r: r[1][field_path], reverse=direction == "DESCENDING")
        rows = rows[self._skip:]
        if self._take is not None:
            rows = rows[:self._take]
        for doc_id, data in rows:
            yield FakeSnapshot(FakeDocument(self._db, self._collection, doc_id), dict(data))


class FakeCollection(FakeQuery):
    def __init__(self, db, collection):
        super().__init__(db, collection)

    def document(self, doc_id):
        return FakeDocument(self._db, self._collection, doc_id)


class FakeBatch:
    """Applies every write or none, like a Firestore commit"""

    def __init__(self):
        self._creates = []
        self._deletes = []

    def create(self, reference, data):
        self._creates.append((reference, data))

    def delete(self, reference):
        self._deletes.append(reference)

    def commit(self):
        for reference, _ in self._creates:
            if reference.get().exists:
                raise AlreadyExists(f"Document already exists: {reference.id}")
        for reference, data in self._creates:
            reference.create(data)
        for reference in self._deletes:
            reference.delete()


class FakeFirestore:
    """The subset of firestore.Client used by PetStore"""

    def __init__(self):
        self.data = defaultdict(dict)

    def collection(self, name):
        return FakeCollection(self, name)

    def batch(self):
        return FakeBatch()


# ─── external service fakes ─────────────────────────────────────

class FakeObjectStore:
    def __init__(self, fail=False):
        self.fail = fail
        self.uploads = {}
        self.deleted = []

    def upload(self, data, path, content_type):
        if self.fail:
            raise ExternalServiceError("Failed to upload image: connection reset")
        self.uploads[path] = (data, content_type)
        return f"https://storage.googleapis.com/test-bucket/{path}"

    def delete(self, path):
        self.deleted.append(path)

    def path_for_url(self, url):
        prefix = "https://storage.googleapis.com/test-bucket/"
        return url[len(prefix):] if url.startswith(prefix) else None


class FakeSimilarity:
    def __init__(self):
        self.hits = []
        self.registered = []
        self.searches = []
        self.deleted = []
        self.duplicate_of = None
        self.fail_register = False
        self.fail_search = False

    def register(self, image_bytes, subject_id, event_date, content_type="image/jpeg"):
        if self.fail_register:
            raise ExternalServiceError("Similarity service unreachable")
        self.registered.append((subject_id, event_date))
        if self.duplicate_of:
            return Registration(vector_id=self.duplicate_of, is_duplicate=True)
        return Registration(vector_id=f"vec-{subject_id}")

    def search(self, image_bytes, min_date, max_date, max_results=20, content_type="image/jpeg"):
        self.searches.append((min_date, max_date, max_results))
        if self.fail_search:
            raise ExternalServiceError("Similarity service search failed")
        return list(self.hits)

    def delete(self, vector_id):
        self.deleted.append(vector_id)


class FakeGateway:
    def __init__(self):
        self.sent = []
        self.behaviour = {}

    def send(self, token, title, body, data=None):
        self.sent.append({"token": token, "title": title, "body": body, "data": data})
        outcome = self.behaviour.get(token, PushResult(delivered=True))
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


# ─── fixtures ───────────────────────────────────────────────────

@pytest.fixture
def db():
    return FakeFirestore()


@pytest.fixture
def store(db):
    return PetStore(db)


@pytest.fixture
def object_store():
    return FakeObjectStore()


@pytest.fixture
def similarity():
    return FakeSimilarity()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def dispatcher(store, gateway):
    return NotificationDispatcher(store, gateway)


@pytest.fixture
def orchestrator(store, object_store, similarity, dispatcher):
    return MatchingOrchestrator(store, object_store, similarity, dispatcher)


def push_token(name):
    return f"ExponentPushToken[{name}]"


def make_user(store, user_id, token=None, phone=None):
    store.ensure_user(user_id, f"{user_id}@example.com", user_id.title())
    changes = {}
    if token:
        changes["push_token"] = token
    if phone:
        changes["phone_number"] = phone
    if changes:
        store.update_user(user_id, changes)
    return store.get_user(user_id)


def make_report(store, owner_id, pet_name="Luna", lost_date="2025-06-01", status=ReportStatus.ACTIVE,
                latitude=None, longitude=None, species="dog"):
    report = store.create_lost_report(owner_id, LostReportFields(
        pet_name=pet_name, species=species, lost_date=lost_date,
        latitude=latitude, longitude=longitude,
    ))
    if status != ReportStatus.ACTIVE:
        report = store.set_lost_report_status(report.id, status)
    return report


def hit(subject_id, similarity):
    return SimilarityHit(subject_id=subject_id, similarity=similarity)
