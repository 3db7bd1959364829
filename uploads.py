"""Turning an uploaded score sheet into quiz and result documents."""
import logging
import re
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple

from schemas import ExamResult, Quiz, UploadIn
from scoring import compute_total, round_half_up, to_number

logger = logging.getLogger(__name__)

_SLUG_DROP_RE = re.compile(r"[^\w\-\s]")
_WHITESPACE_RE = re.compile(r"\s+")


def slugify(text: str) -> str:
    slug = _SLUG_DROP_RE.sub("", text.lower()).strip()
    return _WHITESPACE_RE.sub("-", slug)[:120]


def parse_timestamp(value: str) -> datetime:
    text = value.strip()
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    return datetime.fromisoformat(text)


def timestamp_key(uploaded_at: str) -> str:
    # Minute precision: re-uploading within the same minute overwrites
    return parse_timestamp(uploaded_at).strftime("%Y%m%d%H%M")


def make_quiz_id(subject: str, quiz_name: str, uploaded_at: str) -> str:
    return f"{slugify(subject)}__{slugify(quiz_name)}__{timestamp_key(uploaded_at)}"


def result_id(quiz_id: str, student_id: str) -> str:
    return f"{quiz_id}__{student_id}"


def _numeric_key(value: Any) -> Optional[str]:
    number = to_number(value)
    if number is None:
        return None
    return str(int(number)) if number.is_integer() else repr(number)


def student_name(student: Dict[str, Any]) -> str:
    first = str(student.get("first_name") or "").strip()
    last = str(student.get("last_name") or "").strip()
    return " ".join(part for part in (last, first) if part) or "NoName"


def index_by_external_id(students: Iterable[Dict[str, Any]]) -> Dict[str, Dict[str, Any]]:
    index: Dict[str, Dict[str, Any]] = {}
    for student in students:
        ext = student.get("external_id")
        if ext is None:
            continue
        index[str(ext).strip()] = student
        numeric = _numeric_key(ext)
        if numeric is not None:
            index.setdefault(numeric, student)
    return index


def lookup_keys(external_ids: Iterable[str]) -> List[Any]:
    """Values to match ``external_id`` against; sheets and the registry disagree on str vs int."""
    keys: List[Any] = []
    for ext in external_ids:
        ext = str(ext).strip()
        if not ext:
            continue
        keys.append(ext)
        number = to_number(ext)
        if number is not None:
            # "0102" must also find a registry entry stored as "102" or 102
            keys.append(_numeric_key(ext))
            keys.append(int(number) if number.is_integer() else number)
    return list(dict.fromkeys(keys))


def quiz_stats(scores: List[float]) -> Dict[str, Optional[float]]:
    if not scores:
        return {"avg": None, "max": None, "min": None}
    return {
        "avg": round_half_up(sum(scores) / len(scores), 2),
        "max": max(scores),
        "min": min(scores),
    }


def build_quiz_document(payload: UploadIn, uploaded_at: datetime) -> Dict[str, Any]:
    quiz = Quiz(
        title=payload.quiz_name,
        subject=payload.subject,
        class_name=payload.class_name,
        date=payload.date,
        uploaded_at=uploaded_at,
        source_files=payload.source_files,
    )
    return quiz.model_dump(exclude_none=True)


def build_result_document(
    quiz_id: str,
    payload: UploadIn,
    student: Dict[str, Any],
    raw: Optional[Dict[str, Any]],
    uploaded_at: datetime,
) -> Dict[str, Any]:
    score = compute_total({"raw": raw}) if raw else {"total": None}
    result = ExamResult(
        quiz_id=quiz_id,
        student_id=student["id"],
        student_name=student_name(student),
        class_name=student.get("class_name") or payload.class_name,
        subject=payload.subject,
        date=payload.date,
        score=score["total"],
        raw=raw,
        uploaded_at=uploaded_at,
    )
    return result.model_dump()


def ingest_upload(payload: UploadIn, students: Iterable[Dict[str, Any]]) -> Dict[str, Any]:
    """Match sheet rows to students and build the documents to store.

    Raises ValueError when ``payload.uploaded_at`` is not an ISO timestamp.
    """
    uploaded_at = parse_timestamp(payload.uploaded_at)
    quiz_id = make_quiz_id(payload.subject, payload.quiz_name, payload.uploaded_at)
    by_external_id = index_by_external_id(students)

    results: List[Tuple[str, Dict[str, Any]]] = []
    scores: List[float] = []
    unmatched = 0
    for row in payload.rows:
        key = row.external_id.strip()
        student = by_external_id.get(key)
        if student is None:
            numeric = _numeric_key(key)
            student = by_external_id.get(numeric) if numeric is not None else None
        if student is None:
            unmatched += 1
            continue

        raw = None
        if row.part1 is not None or row.part2 is not None:
            raw = {
                "part1": row.part1.model_dump() if row.part1 is not None else None,
                "part2": row.part2.model_dump() if row.part2 is not None else None,
            }
        doc = build_result_document(quiz_id, payload, student, raw, uploaded_at)
        if doc["score"] is not None:
            scores.append(doc["score"])
        results.append((result_id(quiz_id, student["id"]), doc))

    if unmatched:
        logger.info("Upload %s: %d of %d rows matched no student", quiz_id, unmatched, len(payload.rows))

    return {
        "quiz_id": quiz_id,
        "quiz": build_quiz_document(payload, uploaded_at),
        "results": results,
        "counts": {
            "matched_students": len(results),
            "input_rows": len(payload.rows),
            "unmatched_rows": unmatched,
        },
        "stats": quiz_stats(scores),
    }
