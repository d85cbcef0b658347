"""
GridFS-backed file storage and file naming.

File bytes live in a single GridFS bucket (``MASTER_BUCKET_NAME``); each
upload also gets a metadata document in the ``file`` collection that
points at the GridFS object. Re-uploading the same logical document
(same fileID, or same assignment) archives the previous record and
chains the new one to it, so only one record per document is ever
marked ``isLatest``.
"""

import logging
import re
from typing import Any, Dict, Iterator, Optional

import gridfs
from bson import ObjectId
from fastapi import Depends
from pymongo.database import Database

from .database import create_document, get_db, now, oid
from .errors import FileDataMissingError, FileTooLargeError, ValidationError
from .schemas import File, FileMetadata
from .settings import settings

logger = logging.getLogger("iqac.storage")

MASTER_FILENAME_RE = re.compile(r"^(\d{4})_([A-Z]{2,4}\d{3})_([a-z_]+)_v(\d+)\.(.+)$")
CHUNK_SIZE = 255 * 1024


# ----------------------
# Naming
# ----------------------

def clean_part(value: Any) -> str:
    return re.sub(r"[^a-z0-9]", "", str(value).lower())


def generate_file_id(year: Any, course_code: Any, doc_type: Any) -> Optional[str]:
    """Deterministic key for a course document, e.g. 2024_cs101_syllabus"""
    if not year or not course_code or not doc_type:
        return None
    parts = [str(year).strip(), clean_part(course_code), clean_part(doc_type)]
    parts = [part for part in parts if part]
    if len(parts) < 2:
        return None
    return "_".join(parts)


def generate_master_filename(year: str, course_code: str, document_type: str,
                             version: int = 1, extension: str = "pdf") -> str:
    return f"{year}_{course_code}_{document_type}_v{version}.{extension}"


def parse_master_filename(filename: str) -> Optional[Dict[str, Any]]:
    match = MASTER_FILENAME_RE.match(filename)
    if not match:
        return None
    year, course_code, document_type, version, extension = match.groups()
    return {
        "year": year,
        "courseCode": course_code,
        "courseId": f"{year}_{course_code}",
        "documentType": document_type,
        "version": int(version),
        "extension": extension,
    }


def split_extension(filename: str) -> tuple:
    if "." in filename.strip(".") and not filename.startswith("."):
        stem, ext = filename.rsplit(".", 1)
        return stem, ext
    return filename, ""


def format_filename(metadata: Dict[str, Any], original_name: str) -> str:
    """year + courseCode + '_' + original name, e.g. 2024CS101_notes.pdf"""
    parts = []
    if metadata.get("year"):
        parts.append(str(metadata["year"]))
    if metadata.get("courseCode"):
        parts.append(str(metadata["courseCode"]))
    if parts:
        parts.append("_")

    stem, ext = split_extension(original_name)
    parts.append(stem)
    if ext:
        parts.append(f".{ext}")
    return "".join(parts)


def academic_path(metadata: Dict[str, Any]) -> str:
    keys = ("programme", "year", "batch", "courseCode", "docType")
    return " → ".join(str(metadata[k]) for k in keys if metadata.get(k))


def file_type(category: Optional[str]) -> str:
    return {
        "assignment": "Assignment",
        "curriculum": "Curriculum",
        "syllabus": "Syllabus",
    }.get(category or "", "General")


def with_derived_fields(file_doc: Dict[str, Any]) -> Dict[str, Any]:
    meta = file_doc.get("metadata") or {}
    out = dict(file_doc)
    out["academicPath"] = academic_path(meta)
    out["fileType"] = file_type(meta.get("category"))
    return out


def validate_upload(content_type: Optional[str], size: int) -> None:
    if content_type not in settings.ALLOWED_FILE_TYPES:
        raise ValidationError("Invalid file type", details={"content_type": content_type})
    if size == 0:
        raise ValidationError("No file uploaded")
    if size > settings.MAX_FILE_SIZE:
        raise FileTooLargeError(size, settings.MAX_FILE_SIZE)


# ----------------------
# GridFS
# ----------------------

class FileStore:
    """Thin wrapper over one GridFS bucket"""

    def __init__(self, database: Database, bucket_name: str):
        self.bucket_name = bucket_name
        self._bucket = gridfs.GridFSBucket(database, bucket_name=bucket_name)

    def upload(self, filename: str, data: bytes, content_type: str,
               metadata: Optional[Dict[str, Any]] = None) -> ObjectId:
        meta = dict(metadata or {})
        meta["contentType"] = content_type
        return self._bucket.upload_from_stream(filename, data, metadata=meta)

    def open(self, gridfs_id: Any) -> Iterator[bytes]:
        try:
            grid_out = self._bucket.open_download_stream(oid(gridfs_id))
        except gridfs.errors.NoFile:
            raise FileDataMissingError(gridfs_id)
        return self._iter_chunks(grid_out)

    @staticmethod
    def _iter_chunks(grid_out) -> Iterator[bytes]:
        try:
            while True:
                chunk = grid_out.read(CHUNK_SIZE)
                if not chunk:
                    break
                yield chunk
        finally:
            grid_out.close()

    def delete(self, gridfs_id: Any) -> None:
        try:
            self._bucket.delete(oid(gridfs_id))
        except gridfs.errors.NoFile:
            logger.warning(f"GridFS object {gridfs_id} already gone from '{self.bucket_name}'")


def get_file_store(db: Database = Depends(get_db)) -> FileStore:
    return FileStore(db, settings.MASTER_BUCKET_NAME)


# ----------------------
# File records
# ----------------------

def find_previous_version(db: Database, file_id: Optional[str],
                          assignment_id: Optional[str]) -> Optional[Dict[str, Any]]:
    if assignment_id:
        query: Dict[str, Any] = {"metadata.assignmentId": assignment_id}
    elif file_id:
        query = {"fileID": file_id}
    else:
        return None
    query["metadata.isLatest"] = True
    return db["file"].find_one(query, sort=[("metadata.version", -1)])


def archive_file(db: Database, file_doc: Dict[str, Any]) -> None:
    """Mark a record superseded, remembering the status it had"""
    status = (file_doc.get("metadata") or {}).get("status")
    fields: Dict[str, Any] = {"metadata.isLatest": False, "metadata.status": "archived", "updatedAt": now()}
    if status and status != "archived":
        fields["metadata.archivedStatus"] = status
    db["file"].update_one({"_id": file_doc["_id"]}, {"$set": fields})
    logger.info(f"Archived file {file_doc['_id']} ({file_doc.get('filename')})")


def restore_file(db: Database, file_id: Any) -> None:
    """Make an archived record latest again with its pre-archive status"""
    doc = db["file"].find_one({"_id": oid(file_id)})
    if not doc:
        logger.warning(f"Previous version {file_id} is gone, nothing to restore")
        return
    status = (doc.get("metadata") or {}).get("archivedStatus") or "uploaded"
    db["file"].update_one(
        {"_id": doc["_id"]},
        {"$set": {"metadata.isLatest": True, "metadata.status": status, "updatedAt": now()},
         "$unset": {"metadata.archivedStatus": ""}},
    )
    logger.info(f"Restored file {doc['_id']} as latest ({status})")


def save_file(db: Database, store: FileStore, data: bytes, original_name: str,
              content_type: str, metadata: Dict[str, Any],
              filename: Optional[str] = None) -> Dict[str, Any]:
    """Write bytes to GridFS and record metadata, superseding any previous version

    The previous version is archived only once the new record exists, so a
    failed write leaves the old record as latest.
    """
    validate_upload(content_type, len(data))

    meta = FileMetadata(**metadata).model_dump()
    file_id = generate_file_id(meta.get("year"), meta.get("courseCode"), meta.get("docType"))

    previous = find_previous_version(db, file_id, meta.get("assignmentId"))
    if previous:
        meta["version"] = int(previous["metadata"].get("version") or 1) + 1
        meta["previousVersion"] = str(previous["_id"])

    stored_name = filename or format_filename(meta, original_name)
    gridfs_id = store.upload(stored_name, data, content_type, metadata={
        "originalName": original_name,
        "uploadedBy": meta.get("uploadedBy"),
        "category": meta.get("category"),
        "fileID": file_id,
    })

    meta.update({
        "gridfsId": str(gridfs_id),
        "gridfsBucket": store.bucket_name,
        "uploadedAt": now(),
        "isLatest": True,
        "academicPath": academic_path(meta) or None,
    })
    record = File(
        filename=stored_name,
        originalName=original_name,
        contentType=content_type,
        size=len(data),
        fileID=file_id,
        metadata=FileMetadata(**meta),
    ).model_dump()
    try:
        record_id = create_document("file", record)
    except Exception:
        store.delete(gridfs_id)
        raise

    if previous:
        archive_file(db, previous)
    logger.info(f"Stored {stored_name} as file {record_id} (fileID={file_id}, version={meta['version']})")
    return db["file"].find_one({"_id": ObjectId(record_id)})


def delete_file_record(db: Database, store: FileStore, file_doc: Dict[str, Any]) -> None:
    """Remove GridFS bytes and the record; the previous version becomes latest again

    Also used to roll back a save whose follow-up step failed.
    """
    meta = file_doc.get("metadata") or {}
    if meta.get("gridfsId"):
        store.delete(meta["gridfsId"])
    db["file"].delete_one({"_id": file_doc["_id"]})

    if meta.get("isLatest") and meta.get("previousVersion"):
        restore_file(db, meta["previousVersion"])
    logger.info(f"Deleted file {file_doc['_id']} ({file_doc.get('filename')})")
