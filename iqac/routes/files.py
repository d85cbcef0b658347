import logging
import math
import re
from typing import Any, Dict, List, Optional, Union

from fastapi import APIRouter, Depends, File as FileParam, Form, Query, UploadFile
from fastapi.responses import StreamingResponse
from pydantic import BaseModel
from pymongo import DESCENDING
from pymongo.database import Database

from ..database import clean, get_db, get_documents, now, oid
from ..errors import AuthorizationError, ConflictError, FileRecordNotFoundError, PortalError, ValidationError
from ..schemas import FileCategory
from ..security import get_current_user
from ..settings import settings
from ..storage import FileStore, delete_file_record, generate_file_id, get_file_store, save_file, with_derived_fields
from .. import workflow

logger = logging.getLogger("iqac.routes.files")

router = APIRouter()

FILTER_FIELDS = ("category", "programme", "year", "batch", "semester",
                 "courseCode", "courseName", "docType", "status")


class FileUpdate(BaseModel):
    category: Optional[FileCategory] = None
    programme: Optional[str] = None
    year: Optional[str] = None
    batch: Optional[str] = None
    semester: Optional[str] = None
    courseCode: Optional[str] = None
    courseName: Optional[str] = None
    docLevel: Optional[str] = None
    docType: Optional[str] = None
    docNumber: Optional[int] = None
    description: Optional[str] = None
    tags: Optional[Union[List[str], str]] = None


def parse_tags(tags: Union[List[str], str, None]) -> List[str]:
    if not tags:
        return []
    if isinstance(tags, str):
        tags = tags.split(",")
    return [tag.strip() for tag in tags if tag and tag.strip()]


def file_out(doc: Dict[str, Any]) -> Dict[str, Any]:
    return clean(with_derived_fields(doc))


def _load_file(db: Database, file_id: str) -> Dict[str, Any]:
    doc = db["file"].find_one({"_id": oid(file_id)})
    if not doc:
        raise FileRecordNotFoundError(file_id)
    return doc


def _require_owner(doc: Dict[str, Any], user: Dict[str, Any]) -> None:
    if user.get("role") != "admin" and doc.get("metadata", {}).get("uploadedBy") != str(user["_id"]):
        raise AuthorizationError("Only the uploader or an admin can modify this file")


def _metadata_filter(params: Dict[str, Any]) -> Dict[str, Any]:
    q: Dict[str, Any] = {"metadata.isLatest": True}
    for key in FILTER_FIELDS:
        if params.get(key):
            q[f"metadata.{key}"] = params[key]
    return q


def _paginate(db: Database, query: Dict[str, Any], page: int, limit: int) -> Dict[str, Any]:
    total = db["file"].count_documents(query)
    docs = get_documents("file", query, limit=limit, skip=(page - 1) * limit,
                         sort=[("metadata.uploadedAt", DESCENDING)])
    return {
        "files": [file_out(d) for d in docs],
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "pages": math.ceil(total / limit) if limit else 0,
        },
    }


@router.post("/upload")
async def upload(
    file: UploadFile = FileParam(...),
    category: FileCategory = Form("general"),
    programme: Optional[str] = Form(None),
    year: Optional[str] = Form(None),
    batch: Optional[str] = Form(None),
    semester: Optional[str] = Form(None),
    courseCode: Optional[str] = Form(None),
    courseName: Optional[str] = Form(None),
    docLevel: Optional[str] = Form(None),
    docType: Optional[str] = Form(None),
    docNumber: Optional[int] = Form(None),
    assignmentId: Optional[str] = Form(None),
    uploaderEmail: Optional[str] = Form(None),
    reviewerEmail: Optional[str] = Form(None),
    description: str = Form(""),
    tags: Optional[str] = Form(None),
    current_user: Dict[str, Any] = Depends(get_current_user),
    db: Database = Depends(get_db),
    store: FileStore = Depends(get_file_store),
):
    task = None
    if assignmentId:
        task = workflow.get_task(db, assignmentId)
        workflow.require_action(task, current_user, "upload")
        workflow.check_transition(task["status"], "file-uploaded")
        category = "assignment"

    data = await file.read()
    metadata = {
        "category": category,
        "programme": programme,
        "year": year,
        "batch": batch,
        "semester": semester,
        "courseCode": courseCode or (task or {}).get("courseCode"),
        "courseName": courseName or (task or {}).get("courseName"),
        "docLevel": docLevel,
        "docType": docType,
        "docNumber": docNumber,
        "assignmentId": assignmentId,
        "uploaderEmail": uploaderEmail or current_user.get("email"),
        "reviewerEmail": reviewerEmail,
        "description": description,
        "tags": parse_tags(tags),
        "status": "uploaded",
        "uploadedBy": str(current_user["_id"]),
    }
    doc = save_file(db, store, data, file.filename or "upload", file.content_type, metadata)

    if task is not None:
        try:
            workflow.submit_file(db, task, current_user, doc["_id"])
        except PortalError:
            delete_file_record(db, store, doc)
            logger.warning(f"Rolled back upload {doc['_id']} for task {assignmentId}")
            raise
        doc = _load_file(db, str(doc["_id"]))

    return {"message": "File uploaded successfully", "file": file_out(doc)}


@router.get("/")
def list_files(
    page: int = Query(1, ge=1),
    limit: int = Query(settings.DEFAULT_PAGE_SIZE, ge=1, le=100),
    category: Optional[str] = None,
    programme: Optional[str] = None,
    year: Optional[str] = None,
    batch: Optional[str] = None,
    semester: Optional[str] = None,
    courseCode: Optional[str] = None,
    courseName: Optional[str] = None,
    docType: Optional[str] = None,
    status: Optional[str] = None,
    _: Dict[str, Any] = Depends(get_current_user),
    db: Database = Depends(get_db),
):
    query = _metadata_filter({
        "category": category, "programme": programme, "year": year, "batch": batch,
        "semester": semester, "courseCode": courseCode, "courseName": courseName,
        "docType": docType, "status": status,
    })
    return _paginate(db, query, page, limit)


@router.get("/search")
def search_files(
    q: str = Query(..., min_length=1),
    category: Optional[str] = None,
    year: Optional[str] = None,
    courseCode: Optional[str] = None,
    docType: Optional[str] = None,
    _: Dict[str, Any] = Depends(get_current_user),
):
    query = _metadata_filter({"category": category, "year": year,
                              "courseCode": courseCode, "docType": docType})
    pattern = {"$regex": re.escape(q), "$options": "i"}
    query["$or"] = [
        {"filename": pattern},
        {"originalName": pattern},
        {"metadata.description": pattern},
        {"metadata.courseName": pattern},
    ]
    docs = get_documents("file", query, limit=100, sort=[("metadata.uploadedAt", DESCENDING)])
    return {"query": q, "count": len(docs), "files": [file_out(d) for d in docs]}


@router.get("/academic")
def academic_files(
    programme: Optional[str] = None,
    year: Optional[str] = None,
    batch: Optional[str] = None,
    courseCode: Optional[str] = None,
    docType: Optional[str] = None,
    _: Dict[str, Any] = Depends(get_current_user),
):
    query = _metadata_filter({"programme": programme, "year": year, "batch": batch,
                              "courseCode": courseCode, "docType": docType})
    query["metadata.category"] = {"$ne": "assignment"}
    docs = get_documents("file", query, sort=[("metadata.uploadedAt", DESCENDING)])
    return [file_out(d) for d in docs]


@router.get("/curriculum")
def curriculum_files(
    programme: Optional[str] = None,
    year: Optional[str] = None,
    _: Dict[str, Any] = Depends(get_current_user),
):
    query = _metadata_filter({"category": "curriculum", "programme": programme, "year": year})
    docs = get_documents("file", query, sort=[("metadata.uploadedAt", DESCENDING)])
    return [file_out(d) for d in docs]


@router.get("/assignments/{assignment_id}")
def assignment_files(assignment_id: str, current_user: Dict[str, Any] = Depends(get_current_user),
                     db: Database = Depends(get_db)):
    task = workflow.get_task(db, assignment_id)
    workflow.require_action(task, current_user, "view")
    docs = get_documents("file", {"metadata.assignmentId": assignment_id},
                         sort=[("metadata.version", DESCENDING)])
    return [file_out(d) for d in docs]


@router.get("/categories/list")
def list_categories(_: Dict[str, Any] = Depends(get_current_user), db: Database = Depends(get_db)):
    pipeline = [
        {"$match": {"metadata.isLatest": True}},
        {"$group": {"_id": "$metadata.category", "count": {"$sum": 1}}},
        {"$sort": {"_id": 1}},
    ]
    return [{"category": row["_id"], "count": row["count"]} for row in db["file"].aggregate(pipeline)]


@router.get("/stats/overview")
def stats_overview(_: Dict[str, Any] = Depends(get_current_user), db: Database = Depends(get_db)):
    pipeline = [
        {"$match": {"metadata.isLatest": True}},
        {"$group": {"_id": "$metadata.category", "count": {"$sum": 1}, "size": {"$sum": "$size"}}},
    ]
    by_category = {}
    total_files = 0
    total_size = 0
    for row in db["file"].aggregate(pipeline):
        by_category[row["_id"]] = {"count": row["count"], "size": row["size"]}
        total_files += row["count"]
        total_size += row["size"]
    return {"byCategory": by_category, "totalFiles": total_files, "totalSize": total_size}


@router.get("/{file_id}")
def get_file(file_id: str, _: Dict[str, Any] = Depends(get_current_user),
             db: Database = Depends(get_db)):
    return file_out(_load_file(db, file_id))


@router.get("/{file_id}/versions")
def file_versions(file_id: str, _: Dict[str, Any] = Depends(get_current_user),
                  db: Database = Depends(get_db)):
    """Walk the previousVersion chain, newest first"""
    versions = []
    seen = set()
    doc: Optional[Dict[str, Any]] = _load_file(db, file_id)
    while doc is not None and doc["_id"] not in seen:
        seen.add(doc["_id"])
        versions.append(file_out(doc))
        previous = (doc.get("metadata") or {}).get("previousVersion")
        doc = db["file"].find_one({"_id": oid(previous)}) if previous else None
    return versions


@router.get("/{file_id}/download")
def download_file(file_id: str, _: Dict[str, Any] = Depends(get_current_user),
                  db: Database = Depends(get_db), store: FileStore = Depends(get_file_store)):
    doc = _load_file(db, file_id)
    gridfs_id = (doc.get("metadata") or {}).get("gridfsId")
    if not gridfs_id:
        raise FileRecordNotFoundError(file_id)
    chunks = store.open(gridfs_id)
    headers = {"Content-Disposition": f'inline; filename="{doc["filename"]}"'}
    return StreamingResponse(chunks, media_type=doc.get("contentType"), headers=headers)


@router.put("/{file_id}")
def update_file(file_id: str, payload: FileUpdate,
                current_user: Dict[str, Any] = Depends(get_current_user),
                db: Database = Depends(get_db)):
    doc = _load_file(db, file_id)
    _require_owner(doc, current_user)
    updates = payload.model_dump(exclude_unset=True)
    if not updates:
        raise ValidationError("No metadata fields to update")
    if "tags" in updates:
        updates["tags"] = parse_tags(updates["tags"])

    meta = dict(doc.get("metadata") or {})
    meta.update(updates)
    fields: Dict[str, Any] = {f"metadata.{k}": v for k, v in updates.items()}
    new_file_id = generate_file_id(meta.get("year"), meta.get("courseCode"), meta.get("docType"))
    if new_file_id and new_file_id != doc.get("fileID") and meta.get("isLatest"):
        clash = db["file"].find_one({"fileID": new_file_id, "metadata.isLatest": True,
                                     "_id": {"$ne": doc["_id"]}})
        if clash:
            raise ConflictError(f"A latest file already exists for {new_file_id}",
                                details={"fileID": new_file_id, "existing": str(clash["_id"])})
    fields["fileID"] = new_file_id
    fields["updatedAt"] = now()
    db["file"].update_one({"_id": doc["_id"]}, {"$set": fields})
    return {"message": "File metadata updated successfully", "file": file_out(_load_file(db, file_id))}


@router.delete("/{file_id}")
def delete_file(file_id: str, current_user: Dict[str, Any] = Depends(get_current_user),
                db: Database = Depends(get_db), store: FileStore = Depends(get_file_store)):
    doc = _load_file(db, file_id)
    _require_owner(doc, current_user)

    task = db["task"].find_one({"fileId": str(doc["_id"])})
    if task is not None:
        workflow.withdraw_file(db, task)
        logger.info(f"File {file_id} withdrawn from task {task['_id']}")

    delete_file_record(db, store, doc)
    return {"message": "File deleted successfully"}
