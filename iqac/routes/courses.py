"""
Course catalog and per-course master documents.

Each course holds an embedded list of documents (syllabus, lesson plan,
marks, ...). Every upload of a document type adds a new version stored
in the master bucket as ``{year}_{courseCode}_{documentType}_v{n}.{ext}``.
"""

import logging
import re
from typing import Any, Dict, List, Optional

from bson import ObjectId
from fastapi import APIRouter, Depends, File as FileParam, Form, UploadFile, status
from pydantic import BaseModel, Field
from pymongo import ASCENDING, DESCENDING
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from ..database import clean, create_document, get_db, now, oid
from ..errors import (
    AuthorizationError,
    ConflictError,
    CourseDocumentNotFoundError,
    CourseNotFoundError,
    ValidationError,
)
from ..schemas import DOCUMENT_TYPES, LTP, Course, CourseDocument, DocumentReview, DocumentStatus
from ..security import get_current_user, require_admin
from ..storage import FileStore, generate_master_filename, get_file_store, save_file, split_extension

logger = logging.getLogger("iqac.routes.courses")

router = APIRouter()


class CreateCourseRequest(BaseModel):
    courseCode: str = Field(..., pattern=r"^[A-Z]{2,4}\d{3}$")
    courseName: str = Field(..., min_length=1)
    year: str = Field(..., pattern=r"^\d{4}$")
    department: str
    ltp: Optional[LTP] = None
    examPattern: str = Field("70_30", pattern=r"^\d{2}_\d{2}$")
    semester: int = Field(1, ge=1, le=8)
    credits: int = Field(3, ge=0)
    courseCoordinator: Optional[str] = None
    faculty: List[str] = Field(default_factory=list)


class DocumentStatusUpdate(BaseModel):
    status: DocumentStatus
    comments: str = ""


def document_summary(documents: List[Dict[str, Any]]) -> Dict[str, Any]:
    summary = {}
    for doc_type in DOCUMENT_TYPES:
        of_type = [d for d in documents if d.get("type") == doc_type]
        summary[doc_type] = {
            "count": len(of_type),
            "approved": sum(1 for d in of_type if d.get("status") == "approved"),
            "latest": of_type[-1] if of_type else None,
        }
    return summary


def course_summary(course: Dict[str, Any]) -> Dict[str, Any]:
    documents = course.get("documents") or []
    return {
        "courseId": course["courseId"],
        "courseCode": course["courseCode"],
        "courseName": course["courseName"],
        "year": course["year"],
        "department": course.get("department"),
        "semester": course.get("semester"),
        "coordinator": course.get("courseCoordinator"),
        "faculty": course.get("faculty") or [],
        "documentSummary": document_summary(documents),
        "totalDocuments": len(documents),
        "approvedDocuments": sum(1 for d in documents if d.get("status") == "approved"),
        "lastUpdated": course.get("updatedAt"),
    }


def _load_course(db: Database, course_id: str) -> Dict[str, Any]:
    course = db["course"].find_one({"courseId": course_id})
    if not course:
        raise CourseNotFoundError(course_id)
    return course


def _can_review(course: Dict[str, Any], user: Dict[str, Any]) -> bool:
    if user.get("role") == "admin":
        return True
    user_id = str(user["_id"])
    return user_id in (course.get("faculty") or []) or course.get("courseCoordinator") == user_id


@router.post("/", status_code=status.HTTP_201_CREATED)
def create_course(payload: CreateCourseRequest, _: Dict[str, Any] = Depends(require_admin),
                  db: Database = Depends(get_db)):
    course_id = f"{payload.year}_{payload.courseCode}"
    if db["course"].find_one({"courseId": course_id}):
        raise ConflictError(f"Course {course_id} already exists")

    data = Course(
        courseId=course_id,
        ltp=payload.ltp or LTP(),
        **payload.model_dump(exclude={"ltp"}),
    ).model_dump()
    try:
        create_document("course", data)
    except DuplicateKeyError:
        raise ConflictError(f"Course {course_id} already exists")
    logger.info(f"Created course {course_id}")
    return {"message": "Course created successfully", "course": clean(_load_course(db, course_id))}


@router.get("/")
def master_view(year: Optional[str] = None, _: Dict[str, Any] = Depends(get_current_user),
                db: Database = Depends(get_db)):
    q = {"year": year} if year else {}
    courses = db["course"].find(q).sort([("year", DESCENDING), ("courseCode", ASCENDING)])
    return [clean(course_summary(c)) for c in courses]


@router.get("/search")
def search_courses(q: str, _: Dict[str, Any] = Depends(get_current_user),
                   db: Database = Depends(get_db)):
    pattern = {"$regex": re.escape(q), "$options": "i"}
    query = {"$or": [
        {"courseId": pattern},
        {"courseCode": pattern},
        {"courseName": pattern},
        {"department": pattern},
    ]}
    courses = db["course"].find(query).sort([("year", DESCENDING), ("courseCode", ASCENDING)])
    return [clean(course_summary(c)) for c in courses]


@router.get("/{course_id}")
def get_course(course_id: str, _: Dict[str, Any] = Depends(get_current_user),
               db: Database = Depends(get_db)):
    course = _load_course(db, course_id)
    documents = course.get("documents") or []
    return clean({
        "course": {
            "courseId": course["courseId"],
            "courseCode": course["courseCode"],
            "courseName": course["courseName"],
            "year": course["year"],
            "ltp": course.get("ltp"),
            "examPattern": course.get("examPattern"),
            "coordinator": course.get("courseCoordinator"),
            "faculty": course.get("faculty") or [],
        },
        "documents": documents,
        "documentSummary": document_summary(documents),
        "totalDocuments": len(documents),
        "approvedDocuments": sum(1 for d in documents if d.get("status") == "approved"),
    })


@router.post("/{course_id}/documents", status_code=status.HTTP_201_CREATED)
async def upload_document(
    course_id: str,
    file: UploadFile = FileParam(...),
    documentType: str = Form(...),
    current_user: Dict[str, Any] = Depends(get_current_user),
    db: Database = Depends(get_db),
    store: FileStore = Depends(get_file_store),
):
    if documentType not in DOCUMENT_TYPES:
        raise ValidationError("Invalid document type", details={"documentType": documentType})
    course = _load_course(db, course_id)
    if not _can_review(course, current_user):
        raise AuthorizationError("Only course faculty or an admin can upload course documents")

    existing = [d for d in course.get("documents") or [] if d.get("type") == documentType]
    version = len(existing) + 1
    original_name = file.filename or documentType
    extension = (split_extension(original_name)[1] or "pdf").lower()
    master_name = generate_master_filename(course["year"], course["courseCode"], documentType,
                                           version, extension)

    data = await file.read()
    record = save_file(db, store, data, original_name, file.content_type, {
        "category": "course-document",
        "year": course["year"],
        "courseCode": course["courseCode"],
        "courseName": course["courseName"],
        "docType": documentType,
        "status": "pending",
        "uploadedBy": str(current_user["_id"]),
        "uploaderEmail": current_user.get("email"),
    }, filename=master_name)

    entry = CourseDocument(
        type=documentType,
        fileId=record["metadata"]["gridfsId"],
        filename=master_name,
        version=version,
        uploadedBy=str(current_user["_id"]),
        uploadedAt=now(),
    ).model_dump()
    entry["_id"] = ObjectId()
    db["course"].update_one(
        {"_id": course["_id"]},
        {"$push": {"documents": entry}, "$set": {"updatedAt": now()}},
    )
    logger.info(f"Course {course_id}: stored {master_name}")
    return {
        "message": "Document uploaded successfully",
        "document": clean(entry),
        "fileRecordId": str(record["_id"]),
    }


@router.patch("/{course_id}/documents/{document_id}/status")
def update_document_status(course_id: str, document_id: str, payload: DocumentStatusUpdate,
                           current_user: Dict[str, Any] = Depends(get_current_user),
                           db: Database = Depends(get_db)):
    course = _load_course(db, course_id)
    if not _can_review(course, current_user):
        raise AuthorizationError("Only course faculty or an admin can review course documents")

    target = oid(document_id)
    stamp = now()
    review_status = payload.status if payload.status in ("approved", "rejected") else "pending"
    fields: Dict[str, Any] = {"documents.$.status": payload.status, "updatedAt": stamp}
    if payload.status == "approved":
        fields["documents.$.approvedBy"] = str(current_user["_id"])
        fields["documents.$.approvedAt"] = stamp
    review_entry = DocumentReview(
        reviewedBy=str(current_user["_id"]),
        comments=payload.comments,
        status=review_status,
        reviewedAt=stamp,
    ).model_dump()

    # positional update, the rest of the documents array is left alone
    result = db["course"].update_one(
        {"_id": course["_id"], "documents": {"$elemMatch": {"_id": target}}},
        {"$set": fields, "$push": {"documents.$.reviews": review_entry}},
    )
    if not result.matched_count:
        raise CourseDocumentNotFoundError(document_id)

    course = _load_course(db, course_id)
    doc = next(d for d in course.get("documents") or [] if d.get("_id") == target)
    logger.info(f"Course {course_id}: document {document_id} -> {payload.status}")
    return {"message": "Document status updated successfully", "document": clean(doc)}
