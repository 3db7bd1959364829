import logging
import os
import re
from typing import List, Optional, Dict, Any

from fastapi import FastAPI, HTTPException, Query, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pymongo.errors import ConnectionFailure

from dashboard import build_dashboard
from database import (
    DatabaseUnavailable,
    db,
    count_by_field,
    create_document,
    delete_document,
    delete_documents,
    get_document_by_id,
    get_documents,
    upsert_document,
    upsert_documents,
)
from schemas import BulkDeleteIn, StudentIn, StudentResultsBundle, UploadIn
from scoring import build_bulk_results, build_student_results
from uploads import ingest_upload, lookup_keys, parse_timestamp

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

RESULTS_QUERY_LIMIT = int(os.getenv("RESULTS_QUERY_LIMIT", 2000))
BULK_RESULTS_LIMIT = int(os.getenv("BULK_RESULTS_LIMIT", 10000))

app = FastAPI(title="Exam Results API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(DatabaseUnavailable)
@app.exception_handler(ConnectionFailure)
async def database_unavailable(request: Request, exc: Exception):
    logger.error("%s %s failed: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=503, content={"detail": "Database unavailable"})


def _no_store(response: Response) -> None:
    response.headers["Cache-Control"] = "no-store"


def _clamp(value: int, low: int, high: int) -> int:
    return max(low, min(high, value))


@app.get("/")
def root():
    return {"message": "Exam Results API"}


@app.get("/test")
def test_database():
    resp = {
        "backend": "✅ Running",
        "database": "❌ Not Connected",
        "collections": []
    }
    try:
        if db is not None:
            resp["database"] = "✅ Connected"
            resp["collections"] = db.list_collection_names()
    except Exception as e:
        resp["error"] = str(e)
    return resp


# Students registry
@app.post("/students")
def create_student(payload: StudentIn):
    data = payload.model_dump()
    for field in ("email", "parent_email1", "parent_email2"):
        if data.get(field):
            data[field] = data[field].strip().lower()
    student_id = create_document("students", data)
    return {"id": student_id, **data}


@app.get("/students")
def list_students(q: Optional[str] = None, class_name: Optional[str] = None) -> List[Dict[str, Any]]:
    flt: Dict[str, Any] = {}
    if q:
        pattern = re.escape(q)
        flt["$or"] = [
            {"first_name": {"$regex": pattern, "$options": "i"}},
            {"last_name": {"$regex": pattern, "$options": "i"}},
            {"external_id": {"$regex": pattern, "$options": "i"}},
        ]
    if class_name:
        flt["class_name"] = class_name
    return get_documents("students", flt, limit=500)


# Teachers upload quiz results, one row per student with part1/part2 stats
@app.post("/teacher/upload")
def upload_results(payload: UploadIn):
    try:
        parse_timestamp(payload.uploaded_at)
    except ValueError:
        raise HTTPException(status_code=400, detail="uploaded_at must be an ISO timestamp")

    keys = lookup_keys(row.external_id for row in payload.rows)
    students = []
    if keys:
        students = get_documents("students", {"external_id": {"$in": keys}}, limit=len(keys))

    upload = ingest_upload(payload, students)
    quiz_id = upload["quiz_id"]

    upsert_document("quizzes", quiz_id, upload["quiz"])
    upsert_documents("results", upload["results"])
    upsert_document("quizzes", quiz_id, {
        "total_students": upload["counts"]["matched_students"],
        "stats": upload["stats"],
    })

    logger.info(
        "Stored quiz %s: %d/%d rows matched",
        quiz_id, upload["counts"]["matched_students"], upload["counts"]["input_rows"],
    )
    return {"ok": True, "quiz_id": quiz_id, "counts": upload["counts"], "stats": upload["stats"]}


@app.get("/teacher/quizzes")
def list_quizzes(
    subject: Optional[str] = None,
    class_name: Optional[str] = None,
    limit: int = 100,
) -> List[Dict[str, Any]]:
    flt: Dict[str, Any] = {}
    if subject:
        flt["subject"] = subject.strip()
    if class_name:
        flt["class_name"] = class_name.strip()
    return get_documents("quizzes", flt, limit=_clamp(limit, 1, 500), sort=[("uploaded_at", -1)])


@app.get("/teacher/quizzes/{quiz_id}")
def get_quiz(quiz_id: str):
    quiz = get_document_by_id("quizzes", quiz_id)
    if not quiz:
        raise HTTPException(status_code=404, detail="Quiz not found")
    return quiz


@app.get("/teacher/quizzes/{quiz_id}/results")
def get_quiz_results(quiz_id: str, limit: int = 200) -> List[Dict[str, Any]]:
    if not get_document_by_id("quizzes", quiz_id):
        raise HTTPException(status_code=404, detail="Quiz not found")
    return get_documents("results", {"quiz_id": quiz_id}, limit=_clamp(limit, 1, 500), sort=[("_id", 1)])


@app.get("/teacher/results/dashboard")
def results_dashboard(
    response: Response,
    class_name: Optional[str] = None,
    student_id: Optional[str] = None,
    subject: Optional[str] = None,
    date: Optional[str] = None,
    limit_students: int = 100,
    limit_quizzes: int = 100,
):
    _no_store(response)
    class_name = (class_name or "").strip()
    student_id = (student_id or "").strip()
    subject = (subject or "").strip()

    if student_id:
        student = get_document_by_id("students", student_id)
        students = [student] if student else []
        if not students:
            return {"classes": [], "subjects": [], "students": [], "results": {}}
    else:
        flt = {"class_name": class_name} if class_name else {}
        students = get_documents("students", flt, limit=_clamp(limit_students, 1, 1000))

    quiz_filter = {"subject": subject} if subject else {}
    quizzes = get_documents("quizzes", quiz_filter, limit=_clamp(limit_quizzes, 1, 1000))

    results = []
    if students and quizzes:
        results = get_documents("results", {
            "student_id": {"$in": [s["id"] for s in students]},
            "quiz_id": {"$in": [q["id"] for q in quizzes]},
        }, limit=BULK_RESULTS_LIMIT)

    data = build_dashboard(students, quizzes, results, date=(date or "").strip() or None)
    logger.info(
        "Dashboard: %d students, %d quizzes, %d results",
        len(students), len(quizzes), len(results),
    )
    return data


@app.get("/admin/quizzes/counts")
def quiz_counts(response: Response, subject: Optional[List[str]] = Query(None)):
    """Quizzes per subject; subjects named in ``subject`` are reported even at zero."""
    _no_store(response)
    counts = count_by_field("quizzes", "subject")
    for name in subject or []:
        name = name.strip()
        if name:
            counts.setdefault(name, 0)
    return {"ok": True, "counts": dict(sorted(counts.items()))}


# Per-student and bulk results views
def _results_for(student_id: str) -> Dict[str, Any]:
    attempts = get_documents("results", {"student_id": student_id}, limit=RESULTS_QUERY_LIMIT)
    bundle = build_student_results(attempts, student_id)
    logger.debug("Aggregated %d attempts for student %s", len(attempts), student_id)
    return bundle


def _find_student_by_email(email: str) -> Optional[Dict[str, Any]]:
    for field in ("email", "parent_email1", "parent_email2"):
        found = get_documents("students", {field: email}, limit=1)
        if found:
            return found[0]
    return None


@app.get("/student/results", response_model=StudentResultsBundle, response_model_exclude_none=True)
def student_results(response: Response, student_id: Optional[str] = None, email: Optional[str] = None):
    _no_store(response)
    student = None
    if student_id and student_id.strip():
        student = get_document_by_id("students", student_id.strip())
    elif email and email.strip():
        student = _find_student_by_email(email.strip().lower())
    else:
        raise HTTPException(status_code=400, detail="student_id or email is required")
    if not student:
        raise HTTPException(status_code=404, detail="Student not found")
    return _results_for(student["id"])


@app.get(
    "/admin/students/results/bulk",
    response_model=Dict[str, StudentResultsBundle],
    response_model_exclude_none=True,
)
def bulk_results(response: Response, include_empty: bool = False):
    _no_store(response)
    attempts = get_documents("results", {}, limit=BULK_RESULTS_LIMIT)
    student_ids = None
    if include_empty:
        student_ids = [s["id"] for s in get_documents("students", {}, limit=BULK_RESULTS_LIMIT)]
    data = build_bulk_results(attempts, student_ids)
    logger.info("Bulk results: %d attempts, %d students", len(attempts), len(data))
    return data


@app.get(
    "/admin/students/{student_id}/results",
    response_model=StudentResultsBundle,
    response_model_exclude_none=True,
)
def admin_student_results(student_id: str, response: Response):
    _no_store(response)
    student_id = student_id.strip()
    if not student_id:
        raise HTTPException(status_code=400, detail="Missing student id")
    return _results_for(student_id)


def _purge_student(student_id: str) -> int:
    removed = delete_documents("results", {"student_id": student_id})
    delete_document("students", student_id)
    return removed


@app.delete("/admin/students/{student_id}")
def delete_student(student_id: str):
    student = get_document_by_id("students", student_id)
    if not student:
        raise HTTPException(status_code=404, detail="Student not found")
    removed = _purge_student(student["id"])
    logger.info("Deleted student %s with %d results", student["id"], removed)
    return {"ok": True, "id": student["id"], "results_deleted": removed}


@app.post("/admin/students/bulk-delete")
def bulk_delete_students(payload: BulkDeleteIn):
    ids = list(dict.fromkeys(i.strip() for i in payload.ids if i and i.strip()))
    if not ids:
        raise HTTPException(status_code=400, detail="No student ids given")
    per_student = {sid: _purge_student(sid) for sid in ids}
    logger.info("Bulk deleted %d students", len(ids))
    return {"ok": True, "deleted": len(ids), "results_deleted": per_student}


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
