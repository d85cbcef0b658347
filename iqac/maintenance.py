"""
Maintenance commands for the portal database.

Usage:
    python -m iqac.maintenance create-admin --email admin@example.com --password secret
    python -m iqac.maintenance check-task-statuses
    python -m iqac.maintenance dedupe-files [--dry-run]
"""

import argparse
import logging
import sys
from collections import defaultdict
from typing import Any, Dict, List, Optional

from pymongo.database import Database

from . import database
from .database import create_document, now, oid
from .errors import ValidationError
from .schemas import TASK_STATUSES, User
from .security import get_password_hash
from .storage import archive_file

logger = logging.getLogger("iqac.maintenance")


def create_admin(db: Database, email: str, password: str, username: str = "admin",
                 first_name: Optional[str] = "Admin") -> str:
    """Create an admin account, or promote the existing account with that email"""
    existing = db["user"].find_one({"email": email})
    if existing:
        db["user"].update_one({"_id": existing["_id"]},
                              {"$set": {"role": "admin", "isActive": True, "updatedAt": now()}})
        logger.info(f"Promoted existing user {email} to admin")
        return str(existing["_id"])
    if db["user"].find_one({"username": username}):
        raise ValidationError(f"Username '{username}' is already taken")

    data = User(
        username=username,
        email=email,
        password=get_password_hash(password),
        firstName=first_name,
        role="admin",
        isPasswordSet=True,
    ).model_dump()
    user_id = create_document("user", data)
    logger.info(f"Created admin {email}")
    return user_id


def check_task_statuses(db: Database) -> Dict[str, List[Dict[str, Any]]]:
    """Report tasks with unknown statuses and tasks whose file is missing"""
    report: Dict[str, List[Dict[str, Any]]] = {"unknown_status": [], "missing_file": [], "no_file": []}
    for task in db["task"].find():
        entry = {"id": str(task["_id"]), "title": task.get("title"), "status": task.get("status")}
        status = task.get("status")
        if status not in TASK_STATUSES:
            report["unknown_status"].append(entry)
            continue
        file_id = task.get("fileId")
        if file_id:
            try:
                found = db["file"].find_one({"_id": oid(file_id)})
            except ValidationError:
                found = None
            if not found:
                report["missing_file"].append(entry)
        elif status != "assigned":
            report["no_file"].append(entry)
    return report


def dedupe_files(db: Database, dry_run: bool = False) -> List[str]:
    """Keep exactly one latest record per fileID; returns the ids archived"""
    groups: Dict[str, List[Dict[str, Any]]] = defaultdict(list)
    for doc in db["file"].find({"fileID": {"$ne": None}, "metadata.isLatest": True}):
        groups[doc["fileID"]].append(doc)

    archived = []
    for file_id, docs in groups.items():
        if len(docs) < 2:
            continue
        docs.sort(key=lambda d: (d["metadata"].get("version") or 1, d["_id"]), reverse=True)
        keep, extras = docs[0], docs[1:]
        logger.info(f"{file_id}: keeping {keep['_id']}, archiving {len(extras)} duplicate(s)")
        for doc in extras:
            if not dry_run:
                archive_file(db, doc)
            archived.append(str(doc["_id"]))
    return archived


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="python -m iqac.maintenance",
                                     description="IQAC portal maintenance")
    sub = parser.add_subparsers(dest="command", required=True)

    admin = sub.add_parser("create-admin", help="Create or promote an admin account")
    admin.add_argument("--email", required=True)
    admin.add_argument("--password", required=True)
    admin.add_argument("--username", default="admin")

    sub.add_parser("check-task-statuses", help="Report inconsistent tasks")

    dedupe = sub.add_parser("dedupe-files", help="Archive duplicate latest file records")
    dedupe.add_argument("--dry-run", action="store_true")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    db = database.connect()
    try:
        if args.command == "create-admin":
            user_id = create_admin(db, args.email, args.password, args.username)
            print(f"Admin ready: {args.email} ({user_id})")
        elif args.command == "check-task-statuses":
            report = check_task_statuses(db)
            for problem, tasks in report.items():
                print(f"{problem}: {len(tasks)}")
                for task in tasks:
                    print(f"  {task['id']}  {task['status']}  {task['title']}")
            if any(report.values()):
                return 1
        elif args.command == "dedupe-files":
            archived = dedupe_files(db, dry_run=args.dry_run)
            verb = "Would archive" if args.dry_run else "Archived"
            print(f"{verb} {len(archived)} file record(s)")
    finally:
        database.disconnect()
    return 0


if __name__ == "__main__":
    sys.exit(main())
