from datetime import datetime
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, Field
from pymongo import DESCENDING
from pymongo.database import Database

from ..database import clean, get_db, get_documents
from ..errors import UserNotFoundError
from ..schemas import Task
from ..security import get_current_user, require_admin, require_self_or_admin
from .. import workflow

router = APIRouter()


class CreateTaskRequest(BaseModel):
    title: str = Field(..., min_length=1)
    description: Optional[str] = None
    courseCode: str
    courseName: str
    assignedToInitiator: str = Field(..., description="Initiator user id")
    assignedToReviewer: str = Field(..., description="Reviewer user id")
    category: str = "course-document"
    docNumber: int = Field(1, ge=1)
    deadline: datetime


def _task_list(db: Database, query: Dict[str, Any]):
    tasks = get_documents("task", query, sort=[("createdAt", DESCENDING)])
    return [clean(t) for t in workflow.populate_tasks(db, tasks)]


@router.post("/create", status_code=status.HTTP_201_CREATED)
def create_task(payload: CreateTaskRequest, admin: Dict[str, Any] = Depends(require_admin),
                db: Database = Depends(get_db)):
    for user_id in (payload.assignedToInitiator, payload.assignedToReviewer):
        if not workflow.get_user(db, user_id):
            raise UserNotFoundError(user_id)
    data = Task(assignedBy=str(admin["_id"]), **payload.model_dump()).model_dump()
    task = workflow.create_task(db, data)
    return {"message": "Task created successfully", "task": clean(workflow.populate_task(db, task))}


@router.get("/all")
def all_tasks(_: Dict[str, Any] = Depends(require_admin), db: Database = Depends(get_db)):
    return _task_list(db, {})


@router.get("/mine")
def my_tasks(current_user: Dict[str, Any] = Depends(get_current_user), db: Database = Depends(get_db)):
    return _task_list(db, workflow.tasks_query_for(current_user))


@router.get("/user/{user_id}")
def tasks_for_user(user_id: str, current_user: Dict[str, Any] = Depends(get_current_user),
                   db: Database = Depends(get_db)):
    require_self_or_admin(current_user, user_id)
    return _task_list(db, {"$or": [{"assignedToInitiator": user_id}, {"assignedToReviewer": user_id}]})


@router.get("/category/{category}")
def tasks_by_category(category: str, status: Optional[str] = None,
                      current_user: Dict[str, Any] = Depends(get_current_user),
                      db: Database = Depends(get_db)):
    query = workflow.tasks_query_for(current_user)
    query["category"] = category
    if status:
        query["status"] = status
    return _task_list(db, query)


@router.get("/course/{course_code}")
def tasks_by_course(course_code: str, _: Dict[str, Any] = Depends(require_admin),
                    db: Database = Depends(get_db)):
    return _task_list(db, {"courseCode": course_code})


@router.get("/{task_id}")
def get_task(task_id: str, current_user: Dict[str, Any] = Depends(get_current_user),
             db: Database = Depends(get_db)):
    task = workflow.get_task(db, task_id)
    workflow.require_action(task, current_user, "view")
    return clean(workflow.populate_task(db, task))


@router.delete("/{task_id}")
def delete_task(task_id: str, _: Dict[str, Any] = Depends(require_admin),
                db: Database = Depends(get_db)):
    task = workflow.get_task(db, task_id)
    workflow.delete_task(db, task)
    return {"message": "Task deleted successfully"}
