import pytest

from conftest import PDF_BYTES
from iqac.routes import courses

COURSE = {
    "courseCode": "CS101",
    "courseName": "Data Structures",
    "year": "2024",
    "department": "Computer Science",
}


@pytest.fixture
def course(client, admin_headers):
    response = client.post("/api/courses/", headers=admin_headers, json=COURSE)
    assert response.status_code == 201, response.text
    return response.json()["course"]


def _upload(client, headers, document_type="syllabus", name="syllabus.pdf"):
    return client.post(
        "/api/courses/2024_CS101/documents",
        headers=headers,
        files={"file": (name, PDF_BYTES, "application/pdf")},
        data={"documentType": document_type},
    )


def test_create_course_defaults(course):
    assert course["courseId"] == "2024_CS101"
    assert course["ltp"] == {"lecture": 3, "tutorial": 0, "practical": 0}
    assert course["examPattern"] == "70_30"
    assert course["semester"] == 1
    assert course["credits"] == 3


def test_duplicate_course(client, course, admin_headers):
    response = client.post("/api/courses/", headers=admin_headers, json=COURSE)
    assert response.status_code == 409


def test_invalid_course_code(client, admin_headers):
    response = client.post("/api/courses/", headers=admin_headers, json=dict(COURSE, courseCode="cs-101"))
    assert response.status_code == 422


def test_create_course_requires_admin(client, initiator_headers):
    assert client.post("/api/courses/", headers=initiator_headers, json=COURSE).status_code == 403


def test_upload_versions_documents(client, db, course, admin_headers):
    first = _upload(client, admin_headers)
    second = _upload(client, admin_headers)

    assert first.status_code == 201
    assert first.json()["document"]["filename"] == "2024_CS101_syllabus_v1.pdf"
    assert second.json()["document"]["filename"] == "2024_CS101_syllabus_v2.pdf"
    assert second.json()["document"]["status"] == "draft"

    record = db["file"].find_one({"filename": "2024_CS101_syllabus_v2.pdf"})
    assert record["metadata"]["category"] == "course-document"
    assert record["fileID"] == "2024_cs101_syllabus"


def test_upload_unknown_document_type(client, course, admin_headers):
    assert _upload(client, admin_headers, document_type="poster").status_code == 400


def test_upload_requires_faculty(client, course, outsider_headers):
    assert _upload(client, outsider_headers).status_code == 403


def test_course_detail_and_master_view(client, course, admin_headers, initiator_headers):
    _upload(client, admin_headers)
    _upload(client, admin_headers, document_type="lesson_plan", name="plan.docx")

    detail = client.get("/api/courses/2024_CS101", headers=initiator_headers).json()
    assert detail["totalDocuments"] == 2
    assert detail["documentSummary"]["syllabus"]["count"] == 1
    assert detail["documentSummary"]["cie_marks"] == {"count": 0, "approved": 0, "latest": None}

    master = client.get("/api/courses/", params={"year": "2024"}, headers=initiator_headers).json()
    assert [c["courseId"] for c in master] == ["2024_CS101"]
    assert client.get("/api/courses/", params={"year": "2020"}, headers=initiator_headers).json() == []


def test_search_courses(client, course, initiator_headers):
    hits = client.get("/api/courses/search", params={"q": "data struct"}, headers=initiator_headers).json()
    assert len(hits) == 1
    assert client.get("/api/courses/search", params={"q": "physics"}, headers=initiator_headers).json() == []


def test_unknown_course(client, initiator_headers):
    assert client.get("/api/courses/2024_XX999", headers=initiator_headers).status_code == 404


def test_document_status_review(client, db, course, admin, admin_headers):
    document = _upload(client, admin_headers).json()["document"]
    url = f"/api/courses/2024_CS101/documents/{document['id']}/status"

    response = client.patch(url, headers=admin_headers, json={"status": "approved", "comments": "ok"})
    assert response.status_code == 200
    body = response.json()["document"]
    assert body["status"] == "approved"
    assert body["approvedBy"] == str(admin["_id"])
    assert body["reviews"][0]["comments"] == "ok"

    detail = client.get("/api/courses/2024_CS101", headers=admin_headers).json()
    assert detail["approvedDocuments"] == 1


def test_document_status_unknown_document(client, course, admin_headers):
    url = "/api/courses/2024_CS101/documents/0123456789abcdef01234567/status"
    assert client.patch(url, headers=admin_headers, json={"status": "approved"}).status_code == 404


def test_document_status_keeps_concurrent_upload(client, db, course, admin_headers, monkeypatch):
    document = _upload(client, admin_headers).json()["document"]
    stale = db["course"].find_one({"courseId": "2024_CS101"})
    _upload(client, admin_headers, document_type="lesson_plan", name="plan.docx")

    snapshots = [stale]
    real_load = courses._load_course
    monkeypatch.setattr(courses, "_load_course",
                        lambda db, course_id: snapshots.pop() if snapshots else real_load(db, course_id))

    url = f"/api/courses/2024_CS101/documents/{document['id']}/status"
    response = client.patch(url, headers=admin_headers, json={"status": "approved"})

    assert response.status_code == 200
    assert response.json()["document"]["status"] == "approved"
    stored = db["course"].find_one({"courseId": "2024_CS101"})["documents"]
    assert [d["type"] for d in stored] == ["syllabus", "lesson_plan"]
    assert stored[0]["reviews"][0]["status"] == "approved"
