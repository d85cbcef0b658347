from bson import ObjectId

from conftest import PDF_BYTES, upload_pdf
from iqac import workflow
from iqac.errors import ConflictError


def test_upload_general_file(client, db, initiator_headers):
    response = upload_pdf(client, initiator_headers, year="2024", courseCode="CS101",
                          docType="Syllabus", category="syllabus", tags="core, theory")

    assert response.status_code == 200
    body = response.json()["file"]
    assert body["filename"] == "2024CS101_notes.pdf"
    assert body["fileID"] == "2024_cs101_syllabus"
    assert body["fileType"] == "Syllabus"
    assert body["metadata"]["tags"] == ["core", "theory"]
    assert body["metadata"]["isLatest"] is True
    assert body["metadata"]["version"] == 1


def test_upload_rejects_bad_type(client, initiator_headers):
    response = client.post("/api/files/upload", headers=initiator_headers,
                           files={"file": ("run.exe", b"MZ", "application/x-msdownload")})
    assert response.status_code == 400


def test_upload_rejects_empty_file(client, initiator_headers):
    assert upload_pdf(client, initiator_headers, data=b"").status_code == 400


def test_upload_rejects_large_file(client, initiator_headers, monkeypatch):
    from iqac.settings import settings
    monkeypatch.setattr(settings, "MAX_FILE_SIZE", 8)
    response = upload_pdf(client, initiator_headers)
    assert response.status_code == 413
    assert response.json()["code"] == "FILE_TOO_LARGE"


def test_reupload_versions_and_archives(client, db, initiator_headers):
    form = {"year": "2024", "courseCode": "CS101", "docType": "syllabus"}
    first = upload_pdf(client, initiator_headers, **form).json()["file"]
    second = upload_pdf(client, initiator_headers, name="notes-v2.pdf", **form).json()["file"]

    assert second["metadata"]["version"] == 2
    assert second["metadata"]["previousVersion"] == first["id"]
    latest = list(db["file"].find({"fileID": "2024_cs101_syllabus", "metadata.isLatest": True}))
    assert [str(d["_id"]) for d in latest] == [second["id"]]

    versions = client.get(f"/api/files/{second['id']}/versions", headers=initiator_headers).json()
    assert [v["id"] for v in versions] == [second["id"], first["id"]]


def test_list_and_filter(client, initiator_headers):
    upload_pdf(client, initiator_headers, year="2024", courseCode="CS101", docType="syllabus")
    upload_pdf(client, initiator_headers, year="2023", courseCode="MA201", docType="syllabus")

    everything = client.get("/api/files/", headers=initiator_headers).json()
    assert everything["pagination"]["total"] == 2
    assert everything["pagination"]["pages"] == 1

    only_2024 = client.get("/api/files/", params={"year": "2024"}, headers=initiator_headers).json()
    assert [f["metadata"]["courseCode"] for f in only_2024["files"]] == ["CS101"]

    paged = client.get("/api/files/", params={"limit": 1, "page": 2}, headers=initiator_headers).json()
    assert len(paged["files"]) == 1
    assert paged["pagination"]["pages"] == 2


def test_search_escapes_pattern(client, initiator_headers):
    upload_pdf(client, initiator_headers, name="data (final).pdf")
    upload_pdf(client, initiator_headers, name="other.pdf")

    response = client.get("/api/files/search", params={"q": "(final)"}, headers=initiator_headers)
    assert response.status_code == 200
    assert response.json()["count"] == 1


def test_stats_and_categories(client, initiator_headers):
    upload_pdf(client, initiator_headers, category="curriculum")
    upload_pdf(client, initiator_headers, category="general")

    stats = client.get("/api/files/stats/overview", headers=initiator_headers).json()
    assert stats["totalFiles"] == 2
    assert stats["totalSize"] == 2 * len(PDF_BYTES)
    assert stats["byCategory"]["curriculum"]["count"] == 1

    categories = client.get("/api/files/categories/list", headers=initiator_headers).json()
    assert {c["category"] for c in categories} == {"curriculum", "general"}

    curriculum = client.get("/api/files/curriculum", headers=initiator_headers).json()
    assert len(curriculum) == 1


def test_download(client, initiator_headers):
    file_id = upload_pdf(client, initiator_headers).json()["file"]["id"]
    response = client.get(f"/api/files/{file_id}/download", headers=initiator_headers)

    assert response.status_code == 200
    assert response.content == PDF_BYTES
    assert response.headers["content-type"].startswith("application/pdf")
    assert response.headers["content-disposition"] == 'inline; filename="notes.pdf"'


def test_download_missing_gridfs_data(client, initiator_headers, file_store):
    file_id = upload_pdf(client, initiator_headers).json()["file"]["id"]
    file_store.files.clear()
    response = client.get(f"/api/files/{file_id}/download", headers=initiator_headers)
    assert response.status_code == 404
    assert response.json()["code"] == "FILE_DATA_MISSING"


def test_get_unknown_file(client, initiator_headers):
    assert client.get(f"/api/files/{ObjectId()}", headers=initiator_headers).status_code == 404


def test_update_metadata_recomputes_file_id(client, db, initiator_headers):
    file_id = upload_pdf(client, initiator_headers, year="2024", courseCode="CS101").json()["file"]["id"]
    response = client.put(f"/api/files/{file_id}", headers=initiator_headers,
                          json={"docType": "Lesson Plan", "tags": "a,b", "gridfsId": "hacked"})

    assert response.status_code == 200
    body = response.json()["file"]
    assert body["fileID"] == "2024_cs101_lessonplan"
    assert body["metadata"]["tags"] == ["a", "b"]
    assert body["metadata"]["gridfsId"] != "hacked"



def test_update_refuses_second_latest_for_file_id(client, db, initiator_headers):
    form = {"year": "2024", "courseCode": "CS101"}
    upload_pdf(client, initiator_headers, docType="syllabus", **form)
    notes = upload_pdf(client, initiator_headers, docType="notes", **form).json()["file"]

    response = client.put(f"/api/files/{notes['id']}", headers=initiator_headers, json={"docType": "syllabus"})

    assert response.status_code == 409
    assert db["file"].count_documents({"fileID": "2024_cs101_syllabus", "metadata.isLatest": True}) == 1
    assert db["file"].find_one({"_id": ObjectId(notes["id"])})["fileID"] == "2024_cs101_notes"

def test_update_requires_owner(client, initiator_headers, outsider_headers, admin_headers):
    file_id = upload_pdf(client, initiator_headers).json()["file"]["id"]
    assert client.put(f"/api/files/{file_id}", headers=outsider_headers,
                      json={"description": "x"}).status_code == 403
    assert client.put(f"/api/files/{file_id}", headers=admin_headers,
                      json={"description": "x"}).status_code == 200


def test_delete_file(client, db, initiator_headers, file_store):
    file_id = upload_pdf(client, initiator_headers).json()["file"]["id"]
    response = client.delete(f"/api/files/{file_id}", headers=initiator_headers)

    assert response.status_code == 200
    assert db["file"].count_documents({}) == 0
    assert file_store.files == {}


def test_delete_latest_restores_previous(client, db, initiator_headers):
    form = {"year": "2024", "courseCode": "CS101", "docType": "syllabus"}
    first = upload_pdf(client, initiator_headers, **form).json()["file"]
    second = upload_pdf(client, initiator_headers, **form).json()["file"]

    client.delete(f"/api/files/{second['id']}", headers=initiator_headers)
    restored = db["file"].find_one({"_id": ObjectId(first["id"])})
    assert restored["metadata"]["isLatest"] is True


def test_delete_resets_linked_task(client, db, assignment, initiator_headers):
    file_id = upload_pdf(client, initiator_headers, assignmentId=assignment["id"]).json()["file"]["id"]
    response = client.delete(f"/api/files/{file_id}", headers=initiator_headers)

    assert response.status_code == 200
    task = db["task"].find_one({"_id": ObjectId(assignment["id"])})
    assert task["status"] == "assigned"
    assert "fileId" not in task


def test_delete_blocked_after_reviewer_approval(client, db, assignment, initiator_headers, reviewer_headers):
    file_id = upload_pdf(client, initiator_headers, assignmentId=assignment["id"]).json()["file"]["id"]
    client.post(f"/api/assignments/{assignment['id']}/review", headers=reviewer_headers,
                json={"action": "approve"})

    response = client.delete(f"/api/files/{file_id}", headers=initiator_headers)
    assert response.status_code == 409
    assert db["file"].count_documents({"_id": ObjectId(file_id)}) == 1


def test_assignment_files(client, assignment, initiator_headers, outsider_headers):
    upload_pdf(client, initiator_headers, assignmentId=assignment["id"])
    url = f"/api/files/assignments/{assignment['id']}"
    assert len(client.get(url, headers=initiator_headers).json()) == 1
    assert client.get(url, headers=outsider_headers).status_code == 403


def test_delete_latest_keeps_previous_status(client, db, initiator_headers):
    form = {"year": "2024", "courseCode": "CS101", "docType": "syllabus"}
    first = upload_pdf(client, initiator_headers, **form).json()["file"]
    db["file"].update_one({"_id": ObjectId(first["id"])}, {"$set": {"metadata.status": "approved"}})
    second = upload_pdf(client, initiator_headers, **form).json()["file"]
    assert db["file"].find_one({"_id": ObjectId(first["id"])})["metadata"]["status"] == "archived"

    client.delete(f"/api/files/{second['id']}", headers=initiator_headers)

    restored = db["file"].find_one({"_id": ObjectId(first["id"])})["metadata"]
    assert restored["isLatest"] is True
    assert restored["status"] == "approved"
    assert "archivedStatus" not in restored


def test_failed_resubmission_rolls_back(client, db, assignment, initiator_headers, reviewer_headers,
                                        file_store, monkeypatch):
    task_id = assignment["id"]
    first = upload_pdf(client, initiator_headers, assignmentId=task_id).json()["file"]
    client.post(f"/api/assignments/{task_id}/review", headers=reviewer_headers, json={"action": "reject"})
    status_before = db["file"].find_one({"_id": ObjectId(first["id"])})["metadata"]["status"]

    def lost_race(*args, **kwargs):
        raise ConflictError("Assignment status changed concurrently")

    monkeypatch.setattr(workflow, "submit_file", lost_race)
    response = upload_pdf(client, initiator_headers, assignmentId=task_id)

    assert response.status_code == 409
    previous = db["file"].find_one({"_id": ObjectId(first["id"])})
    assert previous["metadata"]["isLatest"] is True
    assert previous["metadata"]["status"] == status_before
    assert db["file"].count_documents({}) == 1
    assert len(file_store.files) == 1
    task = db["task"].find_one({"_id": ObjectId(task_id)})
    assert task["status"] == "rejected"
    assert task["fileId"] == first["id"]
