"""
Database Schemas for the Exam Results App

The first three models describe documents stored in MongoDB (collections
"students", "quizzes" and "results"). The models after them are what the API
accepts and returns.
"""
from pydantic import BaseModel, Field
from typing import Any, Dict, List, Optional
from datetime import datetime

# Collection: students
class Student(BaseModel):
    first_name: str = Field(..., description="Given name")
    last_name: str = Field("", description="Family name")
    class_name: str = Field(..., description="Class the student belongs to, e.g. 10A")
    external_id: Optional[str] = Field(None, description="ID used in uploaded score sheets")
    email: Optional[str] = Field(None, description="Student login email")
    parent_email1: Optional[str] = Field(None, description="First parent email")
    parent_email2: Optional[str] = Field(None, description="Second parent email")

# Collection: quizzes, keyed by the deterministic quiz id
class Quiz(BaseModel):
    title: str = Field(..., description="Quiz name as uploaded")
    subject: str = Field(..., description="Subject name")
    class_name: str = Field(..., description="Class the quiz was taken by")
    date: str = Field(..., description="Exam date, YYYY-MM-DD")
    uploaded_at: datetime = Field(..., description="Upload timestamp used in the quiz id")
    source_files: Dict[str, str] = Field(default_factory=dict, description="part1/part2 source file names")
    total_students: Optional[int] = Field(None, description="Matched students in the last upload")
    stats: Optional[Dict[str, Optional[float]]] = Field(None, description="avg/max/min of stored scores")

# Collection: results, one exam attempt per quiz and student, keyed "<quiz_id>__<student_id>"
class ExamResult(BaseModel):
    quiz_id: str
    student_id: str
    student_name: str = "NoName"
    class_name: str
    subject: str
    date: str = Field("", description="YYYY-MM-DD or empty when unknown")
    score: Optional[float] = Field(None, description="Total percentage, None when not computable")
    raw: Optional[Dict[str, Any]] = Field(None, description="Uploaded part1/part2 submissions")
    uploaded_at: datetime


class StudentIn(Student):
    pass


class PartStats(BaseModel):
    numQuestions: Optional[float] = None
    numCorrect: Optional[float] = None
    percentCorrect: Optional[float] = None


class UploadRow(BaseModel):
    external_id: str
    part1: Optional[PartStats] = None
    part2: Optional[PartStats] = None


class UploadIn(BaseModel):
    subject: str = Field(..., min_length=1)
    class_name: str = Field(..., min_length=1)
    date: str = Field(..., min_length=1, description="YYYY-MM-DD")
    quiz_name: str = Field(..., min_length=1)
    uploaded_at: str = Field(..., min_length=1, description="ISO timestamp")
    rows: List[UploadRow]
    source_files: Dict[str, str] = Field(default_factory=dict)


class BulkDeleteIn(BaseModel):
    ids: List[str]


class SubjectHistoryEntry(BaseModel):
    date: str
    total: float
    part1: Optional[float] = None
    part2: Optional[float] = None


class SubjectResult(BaseModel):
    average: float
    history: List[SubjectHistoryEntry]


class StudentResultsBundle(BaseModel):
    subjects: List[str]
    results: Dict[str, SubjectResult]
