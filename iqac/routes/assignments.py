"""
Assignment workflow endpoints.

An admin assigns a course document to an initiator and a reviewer; the
initiator uploads, the reviewer approves or rejects, the admin gives
final approval and closes the task.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, EmailStr
from pymongo import DESCENDING
from pymongo.database import Database

from ..database import clean, get_db, get_documents, now
from ..errors import UserNotFoundError, ValidationError
from ..schemas import Task
from ..security import get_current_user, require_admin
from ..settings import settings
from .. import workflow

logger = logging.getLogger("iqac.routes.assignments")

router = APIRouter()


class CreateAssignmentRequest(BaseModel):
    initiatorEmail: Optional[EmailStr] = None
    reviewerEmail: Optional[EmailStr] = None
    assignmentType: Optional[str] = None
    courseCode: Optional[str] = None
    courseName: Optional[str] = None
    description: Optional[str] = None
    deadline: Optional[datetime] = None


class StatusUpdate(BaseModel):
    status: str


class AssignmentUpdate(BaseModel):
    initiatorEmail: Optional[EmailStr] = None
    reviewerEmail: Optional[EmailStr] = None
    assignmentType: Optional[str] = None
    courseCode: Optional[str] = None
    courseName: Optional[str] = None
    description: Optional[str] = None
    deadline: Optional[datetime] = None


class UploadRequest(BaseModel):
    fileId: str


class ReviewRequest(BaseModel):
    action: str
    comment: Optional[str] = None


class AdminDecision(BaseModel):
    comment: Optional[str] = None
    reason: Optional[str] = None


def _assignable_user(db: Database, email: str, label: str) -> Dict[str, Any]:
    user = db["user"].find_one({"email": email})
    if not user:
        raise UserNotFoundError(email)
    if user.get("role") in ("viewer", "admin"):
        raise ValidationError(f"{label} must be a regular user (not viewer or admin)",
                              details={"email": email, "role": user.get("role")})
    return user


def _set_workflow_role(db: Database, user: Dict[str, Any], subrole: str,
                       course_code: Optional[str], course_name: Optional[str]) -> None:
    current = user.get("subrole") or "none"
    if current not in ("none", subrole):
        subrole = "both"
    fields: Dict[str, Any] = {"subrole": subrole, "updatedAt": now()}
    if course_code and course_name:
        fields["courseCode"] = course_code
        fields["courseName"] = course_name
    db["user"].update_one({"_id": user["_id"]}, {"$set": fields})


def _response(db: Database, message: str, task: Dict[str, Any]) -> Dict[str, Any]:
    return {"message": message, "assignment": clean(workflow.populate_task(db, task))}


@router.get("/")
def list_assignments(_: Dict[str, Any] = Depends(require_admin), db: Database = Depends(get_db)):
    tasks = get_documents("task", sort=[("createdAt", DESCENDING)])
    return [clean(t) for t in workflow.populate_tasks(db, tasks)]


@router.get("/my-tasks")
def my_tasks(current_user: Dict[str, Any] = Depends(get_current_user), db: Database = Depends(get_db)):
    user_id = str(current_user["_id"])
    query = {"$or": [{"assignedToInitiator": user_id}, {"assignedToReviewer": user_id}]}
    tasks = get_documents("task", query, sort=[("createdAt", DESCENDING)])
    return [clean(t) for t in workflow.populate_tasks(db, tasks)]


@router.post("/", status_code=status.HTTP_201_CREATED)
def create_assignment(payload: CreateAssignmentRequest, admin: Dict[str, Any] = Depends(require_admin),
                      db: Database = Depends(get_db)):
    if not payload.initiatorEmail or not payload.reviewerEmail or not payload.assignmentType:
        raise ValidationError("Initiator email, reviewer email, and assignment type are required")
    if payload.initiatorEmail == payload.reviewerEmail:
        raise ValidationError("Initiator and reviewer must be different users")

    initiator = _assignable_user(db, payload.initiatorEmail, "Initiator")
    reviewer = _assignable_user(db, payload.reviewerEmail, "Reviewer")

    _set_workflow_role(db, initiator, "initiator", payload.courseCode, payload.courseName)
    _set_workflow_role(db, reviewer, "reviewer", payload.courseCode, payload.courseName)

    data = Task(
        title=payload.assignmentType,
        description=payload.description or f"Assignment for {payload.assignmentType}",
        courseCode=payload.courseCode or initiator.get("courseCode") or "N/A",
        courseName=payload.courseName or initiator.get("courseName") or "N/A",
        assignedToInitiator=str(initiator["_id"]),
        assignedToReviewer=str(reviewer["_id"]),
        assignedBy=str(admin["_id"]),
        deadline=payload.deadline or now() + timedelta(days=settings.DEFAULT_DEADLINE_DAYS),
    ).model_dump()
    task = workflow.create_task(db, data)
    return _response(db, "Assignment created successfully", task)


@router.patch("/{task_id}/status")
def update_status(task_id: str, payload: StatusUpdate, admin: Dict[str, Any] = Depends(require_admin),
                  db: Database = Depends(get_db)):
    task = workflow.get_task(db, task_id)
    updated = workflow.set_status(db, task, admin, payload.status)
    return _response(db, "Assignment status updated successfully", updated)


@router.patch("/{task_id}/update")
def update_assignment(task_id: str, payload: AssignmentUpdate,
                      _: Dict[str, Any] = Depends(require_admin), db: Database = Depends(get_db)):
    task = workflow.get_task(db, task_id)
    fields: Dict[str, Any] = {}

    initiator = reviewer = None
    if payload.initiatorEmail:
        initiator = _assignable_user(db, payload.initiatorEmail, "Initiator")
        fields["assignedToInitiator"] = str(initiator["_id"])
    if payload.reviewerEmail:
        reviewer = _assignable_user(db, payload.reviewerEmail, "Reviewer")
        fields["assignedToReviewer"] = str(reviewer["_id"])

    new_initiator = fields.get("assignedToInitiator", task["assignedToInitiator"])
    new_reviewer = fields.get("assignedToReviewer", task["assignedToReviewer"])
    if new_initiator == new_reviewer:
        raise ValidationError("Initiator and reviewer must be different users")
    if initiator:
        _set_workflow_role(db, initiator, "initiator", payload.courseCode, payload.courseName)
    if reviewer:
        _set_workflow_role(db, reviewer, "reviewer", payload.courseCode, payload.courseName)

    if payload.assignmentType:
        fields["title"] = payload.assignmentType
    for key in ("courseCode", "courseName", "description", "deadline"):
        value = getattr(payload, key)
        if value is not None:
            fields[key] = value

    if not fields:
        return _response(db, "Nothing to update", task)

    fields["updatedAt"] = now()
    db["task"].update_one({"_id": task["_id"]}, {"$set": fields})
    updated = workflow.get_task(db, task_id)
    workflow.notify_reassignment(db, task, updated)
    logger.info(f"Assignment {task_id} updated: {sorted(k for k in fields if k != 'updatedAt')}")
    return _response(db, "Assignment updated successfully", updated)


@router.post("/{task_id}/upload")
def upload_file(task_id: str, payload: UploadRequest,
                current_user: Dict[str, Any] = Depends(get_current_user),
                db: Database = Depends(get_db)):
    task = workflow.get_task(db, task_id)
    updated = workflow.submit_file(db, task, current_user, payload.fileId)
    return _response(db, "File uploaded successfully", updated)


@router.post("/{task_id}/start-review")
def start_review(task_id: str, current_user: Dict[str, Any] = Depends(get_current_user),
                 db: Database = Depends(get_db)):
    task = workflow.get_task(db, task_id)
    updated = workflow.start_review(db, task, current_user)
    return _response(db, "Review started", updated)


@router.post("/{task_id}/review")
def review(task_id: str, payload: ReviewRequest,
           current_user: Dict[str, Any] = Depends(get_current_user),
           db: Database = Depends(get_db)):
    task = workflow.get_task(db, task_id)
    updated = workflow.review(db, task, current_user, payload.action, payload.comment)
    verb = "approved" if payload.action == "approve" else "rejected"
    return _response(db, f"Assignment {verb} successfully", updated)


@router.post("/{task_id}/admin-approve")
def admin_approve(task_id: str, payload: Optional[AdminDecision] = None,
                  admin: Dict[str, Any] = Depends(require_admin), db: Database = Depends(get_db)):
    task = workflow.get_task(db, task_id)
    updated = workflow.admin_approve(db, task, admin, payload.comment if payload else None)
    return _response(db, "Assignment approved by admin", updated)


@router.post("/{task_id}/admin-reject")
def admin_reject(task_id: str, payload: Optional[AdminDecision] = None,
                 admin: Dict[str, Any] = Depends(require_admin), db: Database = Depends(get_db)):
    task = workflow.get_task(db, task_id)
    reason = (payload.reason or payload.comment) if payload else None
    updated = workflow.admin_reject(db, task, admin, reason)
    return _response(db, "Assignment rejected by admin", updated)


@router.post("/{task_id}/complete")
def complete(task_id: str, admin: Dict[str, Any] = Depends(require_admin),
             db: Database = Depends(get_db)):
    task = workflow.get_task(db, task_id)
    updated = workflow.complete(db, task, admin)
    return _response(db, "Assignment completed", updated)


@router.delete("/{task_id}")
def delete_assignment(task_id: str, _: Dict[str, Any] = Depends(require_admin),
                      db: Database = Depends(get_db)):
    task = workflow.get_task(db, task_id)
    workflow.delete_task(db, task)
    return {"message": "Assignment deleted successfully"}
