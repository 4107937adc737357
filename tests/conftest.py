from datetime import timedelta

import mongomock
import pytest
from bson import ObjectId
from fastapi.testclient import TestClient

from errors import DependencyError
from main import create_app
from tokens import TokenService

TEST_SECRET = "test-secret"


class FakeGateway:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.amounts = []

    def create_intent(self, amount):
        self.amounts.append(amount)
        if self.fail:
            raise DependencyError("Failed to create payment intent.", details="card network down")
        return f"pi_{amount}_secret_test"


@pytest.fixture
def db():
    return mongomock.MongoClient()["scholarship_test"]


@pytest.fixture
def tokens():
    return TokenService(TEST_SECRET, ttl=timedelta(hours=1))


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def client(db, tokens, gateway):
    app = create_app(db=db, tokens=tokens, payments=gateway)
    with TestClient(app) as c:
        yield c


@pytest.fixture
def make_user(db):
    def _make(email, role="user", name=None):
        res = db["users"].insert_one({"email": email, "name": name or email.split("@")[0], "role": role})
        return str(res.inserted_id)
    return _make


@pytest.fixture
def auth(tokens):
    def _auth(email):
        return {"Authorization": f"Bearer {tokens.issue({'email': email})}"}
    return _auth


@pytest.fixture
def make_scholarship(db):
    def _make(**fields):
        doc = {
            "scholarshipName": "Global Excellence",
            "universityName": "Harbor University",
            "scholarshipCategory": "Full fund",
            "subjectCategory": "Engineering",
            "universityCountry": "Canada",
            "degree": "Masters",
            "applicationFees": 50.0,
            "postedUserEmail": "mod@example.com",
            "applicationCount": 0,
            "reviewCount": 0,
            "averageRating": 0,
        }
        doc.update(fields)
        return db["scholarships"].insert_one(doc).inserted_id
    return _make


@pytest.fixture
def missing_id():
    return str(ObjectId())
