import math
import re
from typing import Any, Dict, Iterable, List, Optional, Tuple


DEFAULT_CREDITS = 4.0

DEFAULT_GRADE_SCALE: Dict[str, float] = {
    "A": 93.0,
    "A-": 90.0,
    "B+": 87.0,
    "B": 83.0,
    "B-": 80.0,
    "C+": 77.0,
    "C": 73.0,
    "C-": 70.0,
    "D+": 67.0,
    "D": 63.0,
    "D-": 60.0,
    "F": 0.0,
}

GRADE_POINTS: Dict[str, float] = {
    "A": 4.0,
    "A-": 3.667,
    "B+": 3.333,
    "B": 3.0,
    "B-": 2.667,
    "C+": 2.333,
    "C": 2.0,
    "C-": 1.667,
    "D+": 1.333,
    "D": 1.0,
    "D-": 0.667,
    "F": 0.0,
}

# Threshold comparisons ignore float noise such as 28.999999999999996
_THRESHOLD_DIGITS = 9


# -------------------------------
# Small utility helpers
# -------------------------------

def _normalize_letter_token(x: Any) -> str:
    return str(x or "").strip().upper().replace(" ", "")


def _is_number(x: Any) -> bool:
    if x is None or isinstance(x, bool):
        return False
    try:
        return math.isfinite(float(x))
    except (TypeError, ValueError, OverflowError):
        return False


def course_credits(course: Dict[str, Any]) -> float:
    credits = (course or {}).get("credits")
    if not _is_number(credits) or float(credits) == 0:
        return DEFAULT_CREDITS
    return float(credits)


# -------------------------------
# Grade scale parsing
# -------------------------------

def parse_grade_scale(text: str) -> Dict[str, float]:
    """
    Accepts lines like:
      A: 93
      A-: 90
      ...
    Returns a letter -> minimum percent mapping ordered by minimum desc.
    """
    if not text or not text.strip():
        return {}

    rows: Dict[str, float] = {}
    for raw in text.splitlines():
        line = raw.strip()
        if not line:
            continue

        m = re.match(r"^([A-Za-z][A-Za-z\+\-]*)\s*[:=]?\s*(\d+(\.\d+)?)\s*%?$", line)
        if not m:
            raise ValueError(f"Invalid line: {line}")

        # keep last occurrence if repeated
        letter = m.group(1).upper().strip()
        rows.pop(letter, None)
        rows[letter] = float(m.group(2))

    ordered = sorted(rows.items(), key=lambda kv: kv[1], reverse=True)
    return dict(ordered)


def format_grade_scale(scale: Optional[Dict[str, float]]) -> str:
    lines = []
    for letter, threshold in sorted((scale or {}).items(), key=lambda kv: float(kv[1]), reverse=True):
        lines.append(f"{letter}: {float(threshold):g}")
    return "\n".join(lines)


# -------------------------------
# Grade calculations
# -------------------------------

def calculate_percentage(earned: Optional[float], total: Optional[float]) -> Optional[float]:
    if not _is_number(earned) or not _is_number(total):
        return None
    if float(total) <= 0:
        return None
    return float(earned) / float(total) * 100.0


def _counts_toward_average(a: Dict[str, Any]) -> bool:
    if a.get("opt_out"):
        return False
    return calculate_percentage(a.get("points_earned"), a.get("points_total")) is not None


def calculate_group_average(group: Dict[str, Any], assignments: Iterable[Dict[str, Any]]) -> Optional[float]:
    """
    Average percentage of a group's graded assignments.

    Extra-credit groups return the sum of earned points of completed items
    (0.0 when nothing is scored yet) instead of an average.
    """
    group_id = group.get("id")
    members = [
        a for a in (assignments or [])
        if a.get("group_id") == group_id and not a.get("deleted")
    ]

    if group.get("is_extra_credit"):
        return sum(
            float(a["points_earned"]) for a in members
            if a.get("is_completed") and _is_number(a.get("points_earned"))
        )

    graded = [a for a in members if _counts_toward_average(a)]
    if not graded:
        return None

    total = sum(calculate_percentage(a["points_earned"], a["points_total"]) for a in graded)
    return total / len(graded)


def calculate_course_grade(
    course_id: str,
    assignments: Iterable[Dict[str, Any]],
    groups: Iterable[Dict[str, Any]],
) -> Optional[float]:
    assignments = list(assignments or [])
    course_groups = [
        g for g in (groups or [])
        if g.get("course_id") == course_id and not g.get("deleted")
    ]
    if not course_groups:
        return None

    weighted_sum = 0.0
    total_weight = 0.0
    extra_credit = 0.0

    for group in course_groups:
        if group.get("is_extra_credit"):
            extra_credit += calculate_group_average(group, assignments) or 0.0
            continue

        weight = float(group.get("weight") or 0.0)
        if weight < 0:
            continue

        average = calculate_group_average(group, assignments)
        if average is None:
            continue

        weighted_sum += average * weight / 100.0
        total_weight += weight

    if total_weight == 0:
        if extra_credit == 0:
            return None
        return extra_credit

    # Normalize by the weight that actually has grades
    return (weighted_sum / total_weight) * 100.0 + extra_credit


def calculate_letter_grade(percentage: Optional[float], grade_scale: Optional[Dict[str, float]]) -> Optional[str]:
    if not grade_scale or not _is_number(percentage):
        return None

    # sorted() is stable, so tied thresholds keep the scale's order
    ordered = sorted(grade_scale.items(), key=lambda kv: float(kv[1]), reverse=True)
    pct = round(float(percentage), _THRESHOLD_DIGITS)

    for letter, threshold in ordered:
        if pct >= float(threshold):
            return letter

    return ordered[-1][0]


# -------------------------------
# GPA
# -------------------------------

def grade_points(letter: Optional[str]) -> float:
    return GRADE_POINTS.get(_normalize_letter_token(letter), 0.0)


def calculate_weighted_gpa(entries: Iterable[Tuple[Optional[str], float]]) -> Optional[float]:
    total_points = 0.0
    total_credits = 0.0

    for letter, credits in (entries or []):
        if letter is None:
            continue
        credits = float(credits or 0.0)
        total_points += grade_points(letter) * credits
        total_credits += credits

    if total_credits == 0:
        return None

    return total_points / total_credits


# -------------------------------
# Transcript rollup
# -------------------------------

OTHER_SECTION_ID = "other"


def course_transcript_row(
    course: Dict[str, Any],
    assignments: Iterable[Dict[str, Any]],
    groups: Iterable[Dict[str, Any]],
) -> Dict[str, Any]:
    credits = course_credits(course)
    pct = calculate_course_grade(str(course.get("course_id") or ""), assignments, groups)
    letter = calculate_letter_grade(pct, course.get("grade_scale")) if pct is not None else None
    gpa = calculate_weighted_gpa([(letter, credits)]) if letter is not None else None

    return {
        "course_id": course.get("course_id"),
        "name": course.get("name", ""),
        "code": course.get("code", ""),
        "color": course.get("color"),
        "credits": credits,
        "percentage": pct,
        "letter": letter,
        "gpa": gpa,
        "quality_points": gpa * credits if gpa is not None else 0.0,
    }


def summarize_rows(rows: Iterable[Dict[str, Any]]) -> Dict[str, Any]:
    rows = list(rows or [])
    return {
        "total_credits": sum(float(r["credits"]) for r in rows),
        "gpa": calculate_weighted_gpa([(r["letter"], r["credits"]) for r in rows]),
        "quality_points": sum(float(r["quality_points"]) for r in rows),
    }


def build_transcript(
    courses: Iterable[Dict[str, Any]],
    semesters: Iterable[Dict[str, Any]],
    assignments: Iterable[Dict[str, Any]],
    groups: Iterable[Dict[str, Any]],
) -> Dict[str, Any]:
    assignments = list(assignments or [])
    groups = list(groups or [])
    active = [c for c in (courses or []) if not c.get("deleted")]
    semesters = list(semesters or [])
    known_semesters = {s.get("id") for s in semesters}

    rows_by_course = {
        c.get("course_id"): course_transcript_row(c, assignments, groups)
        for c in active
    }

    def _section(sid: str, name: str, members: List[Dict[str, Any]]) -> Dict[str, Any]:
        rows = [rows_by_course[c.get("course_id")] for c in members]
        return {"id": sid, "name": name, "rows": rows, **summarize_rows(rows)}

    sections: List[Dict[str, Any]] = []
    for s in semesters:
        members = [c for c in active if c.get("semester_id") == s.get("id")]
        if members:
            sections.append(_section(s.get("id"), s.get("name", ""), members))

    others = [c for c in active if c.get("semester_id") not in known_semesters]
    if others:
        sections.append(_section(OTHER_SECTION_ID, "Other", others))

    graded = [r for r in rows_by_course.values() if r["percentage"] is not None]
    return {"sections": sections, "overall": summarize_rows(graded)}
