from . import assignments, auth, courses, files, notifications, tasks

__all__ = ["assignments", "auth", "courses", "files", "notifications", "tasks"]
