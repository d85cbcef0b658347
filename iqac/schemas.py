"""
Database Schemas for the IQAC Document Workflow Portal

Define MongoDB collection schemas here using Pydantic models.
Each Pydantic model maps to a collection whose name is the lowercase of the class name.

Example: class Task -> "task" collection

References to other documents are stored as string ids.
"""

from datetime import datetime
from typing import List, Literal, Optional, get_args

from pydantic import BaseModel, EmailStr, Field

Role = Literal["admin", "user", "viewer"]
Subrole = Literal["initiator", "reviewer", "both", "none"]

TaskStatus = Literal[
    "assigned",              # Task assigned to initiator
    "file-uploaded",         # Initiator has uploaded file
    "in-review",             # Reviewer opened the review
    "rejected",              # Reviewer or admin rejected the file
    "approved-by-reviewer",  # Reviewer approved, waiting for admin
    "approved-by-admin",     # Admin final approval
    "completed",             # Fully completed
]
TASK_STATUSES = list(get_args(TaskStatus))

NotificationType = Literal[
    "task_assigned",
    "file_submitted",
    "file_approved",
    "file_rejected",
    "reviewer_approved",
    "assignment_changed",
    "assignment_assigned",
    "ready_for_final_approval",
    "task_completed",
]

FileCategory = Literal["curriculum", "assignment", "general", "syllabus", "course-document"]
FileStatus = Literal["pending", "uploaded", "in-review", "approved", "rejected", "archived"]

DocumentType = Literal[
    "syllabus",
    "lesson_plan",
    "course_file",
    "cie_marks",
    "see_marks",
    "question_paper",
    "answer_key",
    "course_outcome",
    "program_outcome",
    "co_po_mapping",
    "attainment_report",
]
DOCUMENT_TYPES = list(get_args(DocumentType))
DocumentStatus = Literal["draft", "under_review", "approved", "rejected"]


class User(BaseModel):
    """Users collection schema"""
    username: str = Field(..., min_length=1, description="Unique login name")
    email: EmailStr = Field(..., description="Email address")
    password: str = Field(..., description="bcrypt hash, never returned")
    firstName: Optional[str] = None
    lastName: Optional[str] = None
    role: Role = Field("viewer", description="Portal role")
    subrole: Subrole = Field("none", description="Workflow role for regular users")
    courseIds: List[str] = Field(default_factory=list, description="Courses tracked for admin reference")
    courseCode: Optional[str] = None
    courseName: Optional[str] = None
    department: Optional[str] = None
    isActive: bool = True
    isPasswordSet: bool = False
    lastLogin: Optional[datetime] = None


class ReviewComment(BaseModel):
    comment: str = ""
    reviewedBy: str
    reviewedAt: datetime
    action: Literal["approved", "rejected", "admin-approved", "admin-rejected"]


class Task(BaseModel):
    """A course document that an initiator uploads and a reviewer checks"""
    title: str
    description: Optional[str] = None
    courseCode: str = Field(..., description="Course context, e.g. CS101")
    courseName: str = Field(..., description="Course name, e.g. Data Structures")
    assignedToInitiator: str = Field(..., description="User id of the initiator")
    assignedToReviewer: str = Field(..., description="User id of the reviewer")
    assignedBy: str = Field(..., description="Admin who assigned the task")
    category: str = "course-document"
    docNumber: int = Field(1, ge=1)
    deadline: datetime
    status: TaskStatus = "assigned"
    fileId: Optional[str] = Field(None, description="Associated file document")
    reviewComments: List[ReviewComment] = Field(default_factory=list)
    rejectionReason: Optional[str] = None
    submittedAt: Optional[datetime] = None
    reviewedAt: Optional[datetime] = None
    adminApprovedAt: Optional[datetime] = None
    completedAt: Optional[datetime] = None


class Notification(BaseModel):
    """Message addressed to a user about a task"""
    userId: str
    type: NotificationType
    title: str
    message: str
    taskId: Optional[str] = None
    fileId: Optional[str] = None
    isRead: bool = False


class FileMetadata(BaseModel):
    category: FileCategory = "general"
    programme: Optional[str] = None
    year: Optional[str] = None
    batch: Optional[str] = None
    semester: Optional[str] = None
    courseCode: Optional[str] = None
    courseName: Optional[str] = None
    docLevel: Optional[str] = None
    docType: Optional[str] = None
    docNumber: Optional[int] = None
    assignmentId: Optional[str] = None
    uploaderEmail: Optional[str] = None
    reviewerEmail: Optional[str] = None
    description: str = ""
    tags: List[str] = Field(default_factory=list)
    status: FileStatus = "pending"
    uploadedBy: Optional[str] = None
    uploadedAt: Optional[datetime] = None
    reviewedBy: Optional[str] = None
    reviewedAt: Optional[datetime] = None
    reviewComments: Optional[str] = None
    gridfsBucket: str = "master-files"
    gridfsId: Optional[str] = None
    version: int = Field(1, ge=1)
    isLatest: bool = True
    previousVersion: Optional[str] = None
    archivedStatus: Optional[FileStatus] = None
    academicPath: Optional[str] = None


class File(BaseModel):
    """Metadata record pointing into GridFS"""
    filename: str
    originalName: str
    contentType: str
    size: int = Field(..., ge=0)
    fileID: Optional[str] = Field(None, description="year_coursecode_doctype when derivable")
    metadata: FileMetadata = Field(default_factory=FileMetadata)
    isActive: bool = True


class LTP(BaseModel):
    """Lecture-Tutorial-Practical configuration"""
    lecture: int = Field(3, ge=0)
    tutorial: int = Field(0, ge=0)
    practical: int = Field(0, ge=0)


class DocumentReview(BaseModel):
    reviewedBy: str
    comments: str = ""
    status: Literal["pending", "approved", "rejected"]
    reviewedAt: datetime


class CourseDocument(BaseModel):
    type: DocumentType
    fileId: str = Field(..., description="GridFS object id")
    filename: str
    status: DocumentStatus = "draft"
    version: int = Field(1, ge=1)
    reviewDocumentId: Optional[str] = None
    uploadedBy: str
    uploadedAt: datetime
    approvedBy: Optional[str] = None
    approvedAt: Optional[datetime] = None
    reviews: List[DocumentReview] = Field(default_factory=list)


class Course(BaseModel):
    """Catalog entry; courseId is year_courseCode, e.g. 2022_CS101"""
    courseId: str = Field(..., pattern=r"^\d{4}_[A-Z]{2,4}\d{3}$")
    courseCode: str = Field(..., pattern=r"^[A-Z]{2,4}\d{3}$")
    courseName: str = Field(..., min_length=1)
    year: str = Field(..., pattern=r"^\d{4}$")
    ltp: LTP = Field(default_factory=LTP)
    examPattern: str = Field("70_30", pattern=r"^\d{2}_\d{2}$", description="external_internal split")
    department: str
    semester: int = Field(1, ge=1, le=8)
    credits: int = Field(3, ge=0)
    courseCoordinator: Optional[str] = None
    faculty: List[str] = Field(default_factory=list)
    documents: List[CourseDocument] = Field(default_factory=list)
    isActive: bool = True
