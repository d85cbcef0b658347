"""
Test configuration and fixtures.

MongoDB is replaced by mongomock and the GridFS bucket by an in-memory
store injected through FastAPI's dependency overrides.
"""
import os
from typing import Any, Dict, Iterator, Optional

import mongomock
import pytest
from bson import ObjectId
from faker import Faker
from fastapi.testclient import TestClient

os.environ["ENVIRONMENT"] = "testing"
os.environ["JWT_SECRET_KEY"] = "test-jwt-secret-key-for-testing"
os.environ["BCRYPT_ROUNDS"] = "4"
os.environ["LOG_LEVEL"] = "WARNING"

from iqac import database
from iqac.database import create_document
from iqac.errors import FileDataMissingError
from iqac.main import app
from iqac.schemas import User
from iqac.security import create_access_token, get_password_hash
from iqac.storage import get_file_store

fake = Faker()

PASSWORD = "testpassword123"
PDF_BYTES = b"%PDF-1.4 test document"


class InMemoryFileStore:
    """Stands in for the GridFS bucket"""

    bucket_name = "master-files"

    def __init__(self):
        self.files: Dict[ObjectId, Dict[str, Any]] = {}

    def upload(self, filename: str, data: bytes, content_type: str,
               metadata: Optional[Dict[str, Any]] = None) -> ObjectId:
        gridfs_id = ObjectId()
        self.files[gridfs_id] = {"filename": filename, "data": data,
                                 "contentType": content_type, "metadata": metadata or {}}
        return gridfs_id

    def open(self, gridfs_id: Any) -> Iterator[bytes]:
        entry = self.files.get(ObjectId(str(gridfs_id)))
        if entry is None:
            raise FileDataMissingError(gridfs_id)
        return iter([entry["data"]])

    def delete(self, gridfs_id: Any) -> None:
        self.files.pop(ObjectId(str(gridfs_id)), None)


@pytest.fixture
def db():
    """Fresh mongomock database for each test"""
    mock_db = mongomock.MongoClient().db
    database.ensure_indexes(mock_db)
    database.db = mock_db
    yield mock_db
    database.db = None


@pytest.fixture
def file_store() -> InMemoryFileStore:
    return InMemoryFileStore()


@pytest.fixture
def client(db, file_store) -> Iterator[TestClient]:
    app.dependency_overrides[get_file_store] = lambda: file_store
    yield TestClient(app)
    app.dependency_overrides.clear()


def make_user(db, role: str = "user", **fields) -> Dict[str, Any]:
    data = User(
        username=fields.pop("username", fake.unique.user_name()),
        email=fields.pop("email", fake.unique.email(domain="example.com")),
        password=get_password_hash(fields.pop("password", PASSWORD)),
        firstName=fields.pop("firstName", fake.first_name()),
        lastName=fields.pop("lastName", fake.last_name()),
        role=role,
        **fields,
    ).model_dump()
    user_id = create_document("user", data)
    return db["user"].find_one({"_id": ObjectId(user_id)})


def headers_for(user: Dict[str, Any]) -> Dict[str, str]:
    token = create_access_token({"sub": str(user["_id"])})
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def admin(db) -> Dict[str, Any]:
    return make_user(db, role="admin")


@pytest.fixture
def initiator(db) -> Dict[str, Any]:
    return make_user(db, courseCode="CS101", courseName="Data Structures")


@pytest.fixture
def reviewer(db) -> Dict[str, Any]:
    return make_user(db)


@pytest.fixture
def outsider(db) -> Dict[str, Any]:
    return make_user(db)


@pytest.fixture
def admin_headers(admin) -> Dict[str, str]:
    return headers_for(admin)


@pytest.fixture
def initiator_headers(initiator) -> Dict[str, str]:
    return headers_for(initiator)


@pytest.fixture
def reviewer_headers(reviewer) -> Dict[str, str]:
    return headers_for(reviewer)


@pytest.fixture
def outsider_headers(outsider) -> Dict[str, str]:
    return headers_for(outsider)


@pytest.fixture
def assignment(client, admin_headers, initiator, reviewer) -> Dict[str, Any]:
    """A freshly assigned task, as returned by the API"""
    response = client.post("/api/assignments/", headers=admin_headers, json={
        "initiatorEmail": initiator["email"],
        "reviewerEmail": reviewer["email"],
        "assignmentType": "Course File",
        "courseCode": "CS101",
        "courseName": "Data Structures",
    })
    assert response.status_code == 201, response.text
    return response.json()["assignment"]


def upload_pdf(client, headers, name: str = "notes.pdf", data: bytes = PDF_BYTES, **form):
    return client.post(
        "/api/files/upload",
        headers=headers,
        files={"file": (name, data, "application/pdf")},
        data=form,
    )
