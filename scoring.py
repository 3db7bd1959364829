"""
Score normalization and aggregation for uploaded exam results.

Raw exam attempts arrive in several shapes: a pre-computed total, part
submissions carrying a percentage, or part submissions carrying only
correct/question counts. This module turns them into one total per attempt
and then into per-subject histories and averages for each student.

Everything here is pure: callers hand in records already read from the
store and get plain dicts back, ready to be returned as JSON.
"""
import math
import re
from collections.abc import Mapping
from datetime import date, datetime
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

ISO_DATE_RE = re.compile(r"\d{4}-\d{2}-\d{2}", re.ASCII)

# Preference order for an already computed total on the attempt itself
TOTAL_FIELDS = ("score", "percentCorrect", "percentage", "percent", "average", "total")


def round_half_up(value: float, digits: int = 1) -> float:
    """Round half away from zero on the float's shortest decimal form.

    ``round_half_up(0.25)`` is ``0.3`` where ``round(0.25, 1)`` gives ``0.2``.
    """
    quantum = Decimal(1).scaleb(-digits)
    try:
        return float(Decimal(repr(float(value))).quantize(quantum, rounding=ROUND_HALF_UP))
    except InvalidOperation:
        # too many digits to quantize; nothing left to round at this magnitude
        return float(value)


def to_number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        try:
            number = float(value)
        except OverflowError:
            return None
    elif isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        try:
            number = float(text)
        except ValueError:
            return None
    else:
        return None
    return number if math.isfinite(number) else None


# Part score strategies, tried in order. Each returns a percentage or None.

def _direct_value(raw: Any) -> Optional[float]:
    return to_number(raw)


def _percent_correct(raw: Any) -> Optional[float]:
    if not isinstance(raw, Mapping):
        return None
    return to_number(raw.get("percentCorrect"))


def _correct_over_questions(raw: Any) -> Optional[float]:
    if not isinstance(raw, Mapping):
        return None
    correct = to_number(raw.get("numCorrect"))
    questions = to_number(raw.get("numQuestions"))
    if correct is None or questions is None or questions <= 0:
        return None
    return correct / questions * 100


PART_STRATEGIES: Tuple[Tuple[str, Callable[[Any], Optional[float]]], ...] = (
    ("direct", _direct_value),
    ("percentCorrect", _percent_correct),
    ("numCorrect/numQuestions", _correct_over_questions),
)


def extract_part_score(raw: Any) -> Optional[float]:
    """Percentage for one exam part, or None when the part carries no score."""
    for _name, strategy in PART_STRATEGIES:
        value = strategy(raw)
        if value is not None:
            return round_half_up(value)
    return None


def question_count(raw: Any) -> Optional[float]:
    if not isinstance(raw, Mapping):
        return None
    questions = to_number(raw.get("numQuestions"))
    if questions is None or questions <= 0:
        return None
    return questions


def direct_total(attempt: Mapping) -> Optional[float]:
    for field in TOTAL_FIELDS:
        value = to_number(attempt.get(field))
        if value is not None:
            return value
    return None


def _part_submissions(attempt: Mapping) -> Tuple[Any, Any]:
    raw = attempt.get("raw")
    if isinstance(raw, Mapping):
        return raw.get("part1"), raw.get("part2")
    return attempt.get("part1"), attempt.get("part2")


def compute_total(attempt: Mapping) -> Dict[str, Optional[float]]:
    """Combine the parts of one attempt into its total percentage.

    Priority, first applicable wins:

    1. a total already stored on the attempt (see ``TOTAL_FIELDS``), verbatim;
    2. both parts scored and both with a question count: question-weighted mean;
    3. both parts scored: plain mean;
    4. one part scored: that part;
    5. nothing: ``total`` is None and the attempt does not count.
    """
    part1_raw, part2_raw = _part_submissions(attempt)
    part1 = extract_part_score(part1_raw)
    part2 = extract_part_score(part2_raw)

    total = direct_total(attempt)
    if total is None:
        if part1 is not None and part2 is not None:
            n1 = question_count(part1_raw)
            n2 = question_count(part2_raw)
            if n1 and n2:
                total = round_half_up((part1 * n1 + part2 * n2) / (n1 + n2))
            else:
                total = round_half_up((part1 + part2) / 2)
        elif part1 is not None:
            total = part1
        else:
            total = part2

    return {"total": total, "part1": part1, "part2": part2}


def normalize_date(value: Any) -> str:
    if isinstance(value, datetime):
        return value.strftime("%Y-%m-%d")
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, str) and ISO_DATE_RE.fullmatch(value):
        return value
    return ""


def _text(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


class SubjectHistory:
    """Running totals and history points for one subject of one student."""

    def __init__(self):
        self.totals: List[float] = []
        self.entries: List[Dict[str, Any]] = []

    def add(self, when: str, score: Dict[str, Optional[float]]) -> None:
        total = score["total"]
        self.totals.append(total)
        entry: Dict[str, Any] = {"date": when, "total": round_half_up(total)}
        for part in ("part1", "part2"):
            if score[part] is not None:
                entry[part] = round_half_up(score[part])
        self.entries.append(entry)

    def result(self) -> Dict[str, Any]:
        average = round_half_up(sum(self.totals) / len(self.totals)) if self.totals else 0.0
        # sorted() is stable, so same-day attempts keep insertion order
        history = sorted((e for e in self.entries if e["date"]), key=lambda e: e["date"])
        return {"average": average, "history": history}


class ResultsBundleBuilder:
    """Accumulates attempts of one student into a results bundle."""

    def __init__(self):
        self.subjects: Dict[str, SubjectHistory] = {}

    def add(self, attempt: Mapping) -> bool:
        subject = _text(attempt.get("subject"))
        if not subject:
            return False
        score = compute_total(attempt)
        if score["total"] is None:
            return False
        history = self.subjects.get(subject)
        if history is None:
            history = self.subjects[subject] = SubjectHistory()
        history.add(normalize_date(attempt.get("date")), score)
        return True

    def build(self) -> Dict[str, Any]:
        subjects = sorted(self.subjects)
        return {
            "subjects": subjects,
            "results": {subject: self.subjects[subject].result() for subject in subjects},
        }


def aggregate_subjects(attempts: Iterable[Mapping]) -> Dict[str, Dict[str, Any]]:
    builder = ResultsBundleBuilder()
    for attempt in attempts:
        builder.add(attempt)
    return builder.build()["results"]


def build_student_results(attempts: Iterable[Mapping], student_id: Optional[str] = None) -> Dict[str, Any]:
    """Results bundle for a single student.

    When ``student_id`` is given, attempts that name a different student are
    ignored; attempts without a ``student_id`` are assumed to belong to it.
    """
    wanted = _text(student_id)
    builder = ResultsBundleBuilder()
    for attempt in attempts:
        owner = _text(attempt.get("student_id"))
        if wanted and owner and owner != wanted:
            continue
        builder.add(attempt)
    return builder.build()


def build_bulk_results(
    attempts: Iterable[Mapping], student_ids: Optional[Iterable[str]] = None
) -> Dict[str, Dict[str, Any]]:
    """Results bundles for every student in one pass over ``attempts``.

    Every id in ``student_ids`` gets a bundle, empty if it has no attempts.
    """
    builders: Dict[str, ResultsBundleBuilder] = {}
    for sid in student_ids or ():
        sid = _text(sid)
        if sid:
            builders.setdefault(sid, ResultsBundleBuilder())

    for attempt in attempts:
        sid = _text(attempt.get("student_id"))
        if not sid:
            continue
        builder = builders.get(sid)
        if builder is None:
            builder = ResultsBundleBuilder()
            if not builder.add(attempt):
                continue
            builders[sid] = builder
        else:
            builder.add(attempt)

    return {sid: builder.build() for sid, builder in builders.items()}
