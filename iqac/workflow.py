"""
Task approval workflow.

    assigned -> file-uploaded -> (in-review) -> approved-by-reviewer
             -> approved-by-admin -> completed

A reviewer (or the admin at final approval) can send a task to
``rejected``; the initiator resubmits from there. Withdrawing the
submitted file (deleting it) puts the task back to ``assigned``.

Every status move goes through `apply_transition`, which checks the
transition table and updates the task only if nobody else moved it in
the meantime.
"""

import logging
from typing import Any, Dict, FrozenSet, Iterable, List, Optional

from pymongo import ReturnDocument
from pymongo.database import Database

from .database import create_document, now, oid
from .errors import (
    AuthorizationError,
    ConflictError,
    InvalidTransitionError,
    TaskNotFoundError,
    ValidationError,
)
from .schemas import TASK_STATUSES, Notification, ReviewComment
from .security import display_name

logger = logging.getLogger("iqac.workflow")

TRANSITIONS: Dict[str, FrozenSet[str]] = {
    "assigned": frozenset({"file-uploaded"}),
    "file-uploaded": frozenset({"in-review", "approved-by-reviewer", "rejected", "assigned"}),
    "in-review": frozenset({"approved-by-reviewer", "rejected", "assigned"}),
    "rejected": frozenset({"file-uploaded", "assigned"}),
    "approved-by-reviewer": frozenset({"approved-by-admin", "rejected"}),
    "approved-by-admin": frozenset({"completed"}),
    "completed": frozenset(),
}

# Timestamp field stamped when a task enters the status
STATUS_TIMESTAMPS = {
    "file-uploaded": "submittedAt",
    "approved-by-reviewer": "reviewedAt",
    "rejected": "reviewedAt",
    "approved-by-admin": "adminApprovedAt",
    "completed": "completedAt",
}

# File record status that mirrors the task status
FILE_STATUS_FOR_TASK = {
    "file-uploaded": "uploaded",
    "in-review": "in-review",
    "approved-by-reviewer": "in-review",
    "approved-by-admin": "approved",
    "completed": "approved",
    "rejected": "rejected",
}

# Statuses in which the submitted file may still be withdrawn
WITHDRAWABLE = frozenset({"file-uploaded", "in-review", "rejected"})

ACTIONS = ("view", "upload", "review", "approve", "assign")


def can_transition(current: str, requested: str) -> bool:
    return requested in TRANSITIONS.get(current, frozenset())


def check_transition(current: str, requested: str) -> None:
    if requested not in TASK_STATUSES:
        raise ValidationError("Invalid status", details={"status": requested})
    if not can_transition(current, requested):
        raise InvalidTransitionError(current, requested)


def transition(task: Dict[str, Any], new_status: str) -> Dict[str, Any]:
    """`$set` fields for moving a task to `new_status`"""
    check_transition(task.get("status", "assigned"), new_status)
    stamp = now()
    fields: Dict[str, Any] = {"status": new_status, "updatedAt": stamp}
    if new_status in STATUS_TIMESTAMPS:
        fields[STATUS_TIMESTAMPS[new_status]] = stamp
    return fields


# ----------------------
# Access control
# ----------------------

def is_admin(user: Dict[str, Any]) -> bool:
    return user.get("role") == "admin"


def is_initiator(task: Dict[str, Any], user: Dict[str, Any]) -> bool:
    return str(task.get("assignedToInitiator")) == str(user["_id"])


def is_reviewer(task: Dict[str, Any], user: Dict[str, Any]) -> bool:
    return str(task.get("assignedToReviewer")) == str(user["_id"])


def can_perform(task: Dict[str, Any], user: Dict[str, Any], action: str) -> bool:
    if is_admin(user):
        return True
    if action == "view":
        return is_initiator(task, user) or is_reviewer(task, user)
    if action == "upload":
        return is_initiator(task, user)
    if action == "review":
        return is_reviewer(task, user)
    # approve / assign are admin only, unknown actions are denied
    return False


_DENIED = {
    "view": "Access denied. You don't have permission to view this task.",
    "upload": "Only the initiator can upload files for this assignment",
    "review": "Only the assigned reviewer can review this assignment",
    "approve": "Admin access required",
    "assign": "Admin access required",
}


def require_action(task: Dict[str, Any], user: Dict[str, Any], action: str) -> None:
    if not can_perform(task, user, action):
        raise AuthorizationError(_DENIED.get(action, f"Access denied for action '{action}'"))


def tasks_query_for(user: Dict[str, Any]) -> Dict[str, Any]:
    """Tasks visible to `user`: everything for admins, own assignments otherwise"""
    if is_admin(user):
        return {}
    user_id = str(user["_id"])
    return {"$or": [{"assignedToInitiator": user_id}, {"assignedToReviewer": user_id}]}


# ----------------------
# Loading & presentation
# ----------------------

def get_task(db: Database, task_id: Any) -> Dict[str, Any]:
    task = db["task"].find_one({"_id": oid(task_id)})
    if not task:
        raise TaskNotFoundError(task_id)
    return task


def get_user(db: Database, user_id: Any) -> Optional[Dict[str, Any]]:
    if not user_id:
        return None
    return db["user"].find_one({"_id": oid(user_id)})


def user_summary(user: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if not user:
        return None
    return {"_id": user["_id"], "name": display_name(user), "email": user.get("email")}


def populate_task(db: Database, task: Dict[str, Any]) -> Dict[str, Any]:
    """Replace participant ids with {_id, name, email}"""
    out = dict(task)
    for field in ("assignedToInitiator", "assignedToReviewer", "assignedBy"):
        ref = task.get(field)
        out[field] = user_summary(get_user(db, ref)) or ref
    return out


def populate_tasks(db: Database, tasks: Iterable[Dict[str, Any]]) -> List[Dict[str, Any]]:
    cache: Dict[str, Any] = {}
    result = []
    for task in tasks:
        out = dict(task)
        for field in ("assignedToInitiator", "assignedToReviewer", "assignedBy"):
            ref = task.get(field)
            if ref and ref not in cache:
                cache[ref] = user_summary(get_user(db, ref))
            out[field] = cache.get(ref) or ref
        result.append(out)
    return result


# ----------------------
# Notifications
# ----------------------

def notify(db: Database, user_id: Any, type_: str, title: str, message: str,
           task_id: Any = None, file_id: Any = None) -> str:
    notif = Notification(
        userId=str(user_id),
        type=type_,
        title=title,
        message=message,
        taskId=str(task_id) if task_id else None,
        fileId=str(file_id) if file_id else None,
    ).model_dump()
    return create_document("notification", notif)


def notify_assignment(db: Database, task: Dict[str, Any]) -> None:
    title = task["title"]
    notify(db, task["assignedToInitiator"], "task_assigned", "New Task Assigned",
           f"You have been assigned as initiator for: {title}", task["_id"])
    notify(db, task["assignedToReviewer"], "task_assigned", "New Review Assignment",
           f"You have been assigned as reviewer for: {title}", task["_id"])


def notify_reassignment(db: Database, old: Dict[str, Any], new: Dict[str, Any]) -> None:
    title = new["title"]
    for field, role in (("assignedToInitiator", "initiator"), ("assignedToReviewer", "reviewer")):
        if old[field] == new[field]:
            continue
        notify(db, old[field], "assignment_changed", "Assignment Updated",
               f'You have been removed as {role} from "{title}" assignment', new["_id"])
        heading = "New Assignment" if role == "initiator" else "New Review Assignment"
        notify(db, new[field], "assignment_assigned", heading,
               f'You have been assigned as {role} for "{title}"', new["_id"])


# ----------------------
# Status changes
# ----------------------

def apply_transition(db: Database, task: Dict[str, Any], new_status: str,
                     extra_set: Optional[Dict[str, Any]] = None,
                     push: Optional[Dict[str, Any]] = None,
                     unset: Optional[Iterable[str]] = None) -> Dict[str, Any]:
    fields = transition(task, new_status)
    if extra_set:
        fields.update(extra_set)
    update: Dict[str, Any] = {"$set": fields}
    if push:
        update["$push"] = push
    if unset:
        update["$unset"] = {key: "" for key in unset}

    updated = db["task"].find_one_and_update(
        {"_id": task["_id"], "status": task["status"]},
        update,
        return_document=ReturnDocument.AFTER,
    )
    if updated is None:
        raise ConflictError(
            "Assignment was modified by another request",
            details={"task_id": str(task["_id"]), "expected_status": task["status"]},
        )
    logger.info(f"Task {task['_id']} moved {task['status']} -> {new_status}")
    _mirror_file_status(db, updated)
    return updated


def _mirror_file_status(db: Database, task: Dict[str, Any]) -> None:
    file_status = FILE_STATUS_FOR_TASK.get(task["status"])
    if not file_status or not task.get("fileId"):
        return
    db["file"].update_one(
        {"_id": oid(task["fileId"])},
        {"$set": {"metadata.status": file_status, "updatedAt": now()}},
    )


def submit_file(db: Database, task: Dict[str, Any], user: Dict[str, Any], file_id: Any) -> Dict[str, Any]:
    require_action(task, user, "upload")
    if task["status"] not in ("assigned", "rejected"):
        raise InvalidTransitionError(
            task["status"], "file-uploaded",
            "File can only be uploaded when assignment is in assigned or rejected status",
        )
    file_doc = db["file"].find_one({"_id": oid(file_id)})
    if not file_doc:
        raise ValidationError("Unknown file", details={"fileId": str(file_id)})

    updated = apply_transition(db, task, "file-uploaded", extra_set={"fileId": str(file_id)},
                               unset=["rejectionReason"])
    db["file"].update_one(
        {"_id": file_doc["_id"]},
        {"$set": {"metadata.assignmentId": str(task["_id"]), "updatedAt": now()}},
    )
    initiator_name = display_name(user)
    notify(db, task["assignedToReviewer"], "file_submitted", "File Submitted for Review",
           f'{initiator_name} has submitted a file for "{task["title"]}" - awaiting your review',
           task["_id"], file_id)
    return updated


def start_review(db: Database, task: Dict[str, Any], user: Dict[str, Any]) -> Dict[str, Any]:
    require_action(task, user, "review")
    return apply_transition(db, task, "in-review")


def review(db: Database, task: Dict[str, Any], user: Dict[str, Any], action: str,
           comment: Optional[str] = None) -> Dict[str, Any]:
    if action not in ("approve", "reject"):
        raise ValidationError('Invalid action. Must be "approve" or "reject"')
    require_action(task, user, "review")
    if task["status"] not in ("file-uploaded", "in-review"):
        raise InvalidTransitionError(
            task["status"], "approved-by-reviewer" if action == "approve" else "rejected",
            "Assignment must have an uploaded file to be reviewed",
        )

    stamp = now()
    entry = ReviewComment(
        comment=comment or "",
        reviewedBy=str(user["_id"]),
        reviewedAt=stamp,
        action="approved" if action == "approve" else "rejected",
    ).model_dump()
    title = task["title"]

    if action == "approve":
        updated = apply_transition(db, task, "approved-by-reviewer",
                                   extra_set={"reviewedAt": stamp},
                                   push={"reviewComments": entry})
        notify(db, task["assignedBy"], "reviewer_approved", "Document Approved by Reviewer",
               f'"{title}" has been approved by {display_name(user)} and needs admin approval',
               task["_id"])
        notify(db, task["assignedToInitiator"], "file_approved", "Your File Was Approved",
               f'Your submission for "{title}" has been approved by the reviewer', task["_id"])
    else:
        reason = comment or "No reason provided"
        updated = apply_transition(db, task, "rejected",
                                   extra_set={"reviewedAt": stamp, "rejectionReason": reason},
                                   push={"reviewComments": entry})
        notify(db, task["assignedToInitiator"], "file_rejected", "Your File Was Rejected",
               f'Your submission for "{title}" was rejected. Reason: {reason}', task["_id"])

    if task.get("fileId"):
        db["file"].update_one(
            {"_id": oid(task["fileId"])},
            {"$set": {
                "metadata.reviewedBy": str(user["_id"]),
                "metadata.reviewedAt": stamp,
                "metadata.reviewComments": comment or "",
            }},
        )
    return updated


def admin_approve(db: Database, task: Dict[str, Any], admin: Dict[str, Any],
                  comment: Optional[str] = None) -> Dict[str, Any]:
    require_action(task, admin, "approve")
    if task["status"] != "approved-by-reviewer":
        raise InvalidTransitionError(task["status"], "approved-by-admin",
                                     "Assignment must be approved by reviewer first")
    entry = ReviewComment(
        comment=comment or "Approved by admin",
        reviewedBy=str(admin["_id"]),
        reviewedAt=now(),
        action="admin-approved",
    ).model_dump()
    updated = apply_transition(db, task, "approved-by-admin", push={"reviewComments": entry})
    title = task["title"]
    notify(db, task["assignedToInitiator"], "file_approved", "Document Approved",
           f'Your submission for "{title}" has received final approval', task["_id"])
    notify(db, task["assignedToReviewer"], "file_approved", "Document Approved",
           f'"{title}" has received final approval', task["_id"])
    return updated


def admin_reject(db: Database, task: Dict[str, Any], admin: Dict[str, Any],
                 reason: Optional[str] = None) -> Dict[str, Any]:
    require_action(task, admin, "approve")
    if task["status"] != "approved-by-reviewer":
        raise InvalidTransitionError(task["status"], "rejected",
                                     "Only reviewer-approved assignments can be rejected by admin")
    reason = reason or "No reason provided"
    entry = ReviewComment(
        comment=reason,
        reviewedBy=str(admin["_id"]),
        reviewedAt=now(),
        action="admin-rejected",
    ).model_dump()
    updated = apply_transition(db, task, "rejected", extra_set={"rejectionReason": reason},
                               push={"reviewComments": entry})
    notify(db, task["assignedToInitiator"], "file_rejected", "File Rejected",
           f'Your submission for "{task["title"]}" has been rejected. Reason: {reason}', task["_id"])
    return updated


def complete(db: Database, task: Dict[str, Any], admin: Dict[str, Any]) -> Dict[str, Any]:
    require_action(task, admin, "approve")
    updated = apply_transition(db, task, "completed")
    notify(db, task["assignedToInitiator"], "task_completed", "Task Completed",
           f'"{task["title"]}" has been marked as completed', task["_id"])
    return updated


def set_status(db: Database, task: Dict[str, Any], admin: Dict[str, Any], status: str) -> Dict[str, Any]:
    """Admin override, still bound by the transition table"""
    require_action(task, admin, "approve")
    unset = ["fileId"] if status == "assigned" else None
    return apply_transition(db, task, status, unset=unset)


def withdraw_file(db: Database, task: Dict[str, Any]) -> Dict[str, Any]:
    """The task's file is being deleted: return the task to assigned"""
    if task["status"] not in WITHDRAWABLE:
        raise ConflictError(
            "File belongs to an assignment that is already approved",
            details={"task_id": str(task["_id"]), "status": task["status"]},
        )
    return apply_transition(db, task, "assigned", unset=["fileId"])


def create_task(db: Database, task_data: Dict[str, Any]) -> Dict[str, Any]:
    """Insert a validated Task and notify both participants"""
    if task_data["assignedToInitiator"] == task_data["assignedToReviewer"]:
        raise ValidationError("Initiator and reviewer must be different users")
    task_id = create_document("task", task_data)
    task = get_task(db, task_id)
    notify_assignment(db, task)
    logger.info(f"Task {task_id} '{task['title']}' assigned to {task['assignedToInitiator']}"
                f" (reviewer {task['assignedToReviewer']})")
    return task


def delete_task(db: Database, task: Dict[str, Any]) -> None:
    db["notification"].delete_many({"taskId": str(task["_id"])})
    db["task"].delete_one({"_id": task["_id"]})
    logger.info(f"Deleted task {task['_id']} and its notifications")
