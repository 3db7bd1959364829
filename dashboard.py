"""Class results dashboard: subject averages and histories for a set of students."""
from typing import Any, Dict, Iterable, List, Optional

from scoring import build_bulk_results, normalize_date
from uploads import student_name


def quiz_index(quizzes: Iterable[Dict[str, Any]]) -> Dict[str, Dict[str, str]]:
    """quiz id -> subject and exam date; the upload time stands in for a missing date."""
    index: Dict[str, Dict[str, str]] = {}
    for quiz in quizzes:
        subject = str(quiz.get("subject") or "").strip()
        when = normalize_date(quiz.get("date")) or normalize_date(quiz.get("uploaded_at"))
        index[quiz["id"]] = {"subject": subject, "date": when}
    return index


def dashboard_student(student: Dict[str, Any]) -> Dict[str, str]:
    return {
        "id": student["id"],
        "name": student_name(student),
        "class_name": str(student.get("class_name") or "N/A"),
    }


def build_dashboard(
    students: List[Dict[str, Any]],
    quizzes: List[Dict[str, Any]],
    results: Iterable[Dict[str, Any]],
    date: Optional[str] = None,
) -> Dict[str, Any]:
    """Join stored results to their quizzes and aggregate them per student.

    A result counts only when its quiz is among ``quizzes`` and has a subject.
    Subject and date always come from the quiz. With ``date`` set, only
    quizzes held on that day count.
    """
    quizzes_by_id = quiz_index(quizzes)
    rows = [dashboard_student(s) for s in students]
    student_ids = [row["id"] for row in rows]

    attempts = []
    for result in results:
        quiz = quizzes_by_id.get(result.get("quiz_id"))
        if not quiz or not quiz["subject"]:
            continue
        if date and quiz["date"] != date:
            continue
        attempts.append({**result, "subject": quiz["subject"], "date": quiz["date"]})

    bundles = build_bulk_results(attempts, student_ids)
    return {
        "classes": sorted({row["class_name"] for row in rows}),
        "subjects": sorted({q["subject"] for q in quizzes_by_id.values() if q["subject"]}),
        "students": rows,
        "results": {sid: bundles[sid]["results"] for sid in student_ids},
    }
