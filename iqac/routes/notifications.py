from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends
from pymongo import DESCENDING
from pymongo.database import Database

from ..database import clean, get_db, get_documents, now, oid
from ..errors import AuthorizationError, NotificationNotFoundError
from ..security import get_current_user, require_self_or_admin
from ..settings import settings

router = APIRouter()


def _with_task(db: Database, notifications: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Attach {title, category} of the referenced task"""
    out = []
    for n in notifications:
        n = dict(n)
        if n.get("taskId"):
            task = db["task"].find_one({"_id": oid(n["taskId"])}, {"title": 1, "category": 1})
            n["task"] = task
        out.append(clean(n))
    return out


def _list_for(db: Database, user_id: str, unread: Optional[bool]) -> List[Dict[str, Any]]:
    q: Dict[str, Any] = {"userId": user_id}
    if unread:
        q["isRead"] = False
    docs = get_documents("notification", q, limit=settings.NOTIFICATION_LIMIT,
                         sort=[("createdAt", DESCENDING)])
    return _with_task(db, docs)


def _load_own(db: Database, notification_id: str, user: Dict[str, Any]) -> Dict[str, Any]:
    notif = db["notification"].find_one({"_id": oid(notification_id)})
    if not notif:
        raise NotificationNotFoundError(notification_id)
    if user.get("role") != "admin" and notif.get("userId") != str(user["_id"]):
        raise AuthorizationError("You can only access your own notifications")
    return notif


@router.get("/")
def my_notifications(unread: Optional[bool] = None,
                     current_user: Dict[str, Any] = Depends(get_current_user),
                     db: Database = Depends(get_db)):
    return _list_for(db, str(current_user["_id"]), unread)


@router.get("/unread-count")
def unread_count(current_user: Dict[str, Any] = Depends(get_current_user),
                 db: Database = Depends(get_db)):
    count = db["notification"].count_documents({"userId": str(current_user["_id"]), "isRead": False})
    return {"count": count}


@router.get("/user/{user_id}")
def user_notifications(user_id: str, unread: Optional[bool] = None,
                       current_user: Dict[str, Any] = Depends(get_current_user),
                       db: Database = Depends(get_db)):
    require_self_or_admin(current_user, user_id)
    return _list_for(db, user_id, unread)


@router.put("/read-all")
def mark_all_read(current_user: Dict[str, Any] = Depends(get_current_user),
                  db: Database = Depends(get_db)):
    result = db["notification"].update_many(
        {"userId": str(current_user["_id"]), "isRead": False},
        {"$set": {"isRead": True, "updatedAt": now()}},
    )
    return {"message": "All notifications marked as read", "updated": result.modified_count}


@router.put("/{notification_id}/read")
def mark_read(notification_id: str, current_user: Dict[str, Any] = Depends(get_current_user),
              db: Database = Depends(get_db)):
    notif = _load_own(db, notification_id, current_user)
    db["notification"].update_one({"_id": notif["_id"]}, {"$set": {"isRead": True, "updatedAt": now()}})
    notif["isRead"] = True
    return clean(notif)


@router.delete("/{notification_id}")
def delete_notification(notification_id: str, current_user: Dict[str, Any] = Depends(get_current_user),
                        db: Database = Depends(get_db)):
    notif = _load_own(db, notification_id, current_user)
    db["notification"].delete_one({"_id": notif["_id"]})
    return {"message": "Notification deleted"}
