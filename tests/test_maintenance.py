from bson import ObjectId

from conftest import make_user
from iqac import maintenance
from iqac.database import create_document


def _file(db, file_id, version, latest=True):
    doc_id = create_document("file", {
        "filename": f"{file_id}_v{version}.pdf",
        "fileID": file_id,
        "metadata": {"version": version, "isLatest": latest, "status": "uploaded"},
    })
    return ObjectId(doc_id)


def test_create_admin(db):
    user_id = maintenance.create_admin(db, "root@example.com", "pw", username="root")
    user = db["user"].find_one({"_id": ObjectId(user_id)})
    assert user["role"] == "admin"
    assert user["password"] != "pw"


def test_create_admin_promotes_existing(db):
    user = make_user(db)
    user_id = maintenance.create_admin(db, user["email"], "pw")
    assert user_id == str(user["_id"])
    assert db["user"].find_one({"_id": user["_id"]})["role"] == "admin"


def test_check_task_statuses(db):
    db["task"].insert_many([
        {"title": "ok", "status": "assigned"},
        {"title": "weird", "status": "pending-review"},
        {"title": "orphan", "status": "file-uploaded", "fileId": str(ObjectId())},
        {"title": "empty", "status": "in-review"},
    ])
    report = maintenance.check_task_statuses(db)
    assert [t["title"] for t in report["unknown_status"]] == ["weird"]
    assert [t["title"] for t in report["missing_file"]] == ["orphan"]
    assert [t["title"] for t in report["no_file"]] == ["empty"]


def test_dedupe_files(db):
    old = _file(db, "2024_cs101_syllabus", 1)
    new = _file(db, "2024_cs101_syllabus", 2)
    other = _file(db, "2024_cs102_syllabus", 1)

    archived = maintenance.dedupe_files(db)

    assert archived == [str(old)]
    assert db["file"].find_one({"_id": old})["metadata"]["isLatest"] is False
    assert db["file"].find_one({"_id": new})["metadata"]["isLatest"] is True
    assert db["file"].find_one({"_id": other})["metadata"]["isLatest"] is True


def test_dedupe_dry_run_changes_nothing(db):
    old = _file(db, "2024_cs101_syllabus", 1)
    _file(db, "2024_cs101_syllabus", 1)

    archived = maintenance.dedupe_files(db, dry_run=True)

    assert archived == [str(old)]
    assert db["file"].count_documents({"metadata.isLatest": True}) == 2
