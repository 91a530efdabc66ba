import datetime
import logging
import uuid
from typing import Any, Dict, Iterable, List, Optional

logger = logging.getLogger(__name__)

DEFAULT_COURSE_COLOR = "#FF6B6B"
COURSE_COLORS = ["#FF6B6B", "#4ECDC4", "#FFE66D", "#FF9F1C", "#2EC4B6", "#E71D36", "#7209B7"]

HIGH_CONFIDENCE = 0.7
AUTO_SELECT_CONFIDENCE = 0.5

# kind -> user_data collection
COLLECTIONS = {
    "course": "courses",
    "group": "groups",
    "assignment": "assignments",
    "note": "notes",
}


# -------------------------------
# Small utility helpers
# -------------------------------

def generate_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:12]}"


def _now_ms() -> int:
    return int(datetime.datetime.now().timestamp() * 1000)


def _iso_date(x: Any) -> Optional[str]:
    if isinstance(x, datetime.datetime):
        return x.date().isoformat()
    if isinstance(x, datetime.date):
        return x.isoformat()
    if isinstance(x, str):
        return x.strip() or None
    return None


def _opt_float(x: Any) -> Optional[float]:
    if x is None or x == "" or isinstance(x, bool):
        return None
    try:
        return float(x)
    except (TypeError, ValueError):
        return None


def _item_id(kind: str, item: Dict[str, Any]) -> Optional[str]:
    if kind == "course":
        return item.get("course_id")
    return item.get("id")


# -------------------------------
# Schema
# -------------------------------

def ensure_user_schema(user_data: Dict[str, Any], username: str) -> Dict[str, Any]:
    user_data = user_data or {}

    user_data.setdefault("profile", {})
    user_data["profile"].setdefault("username", username)

    for key in ("semesters", "courses", "groups", "assignments", "notes"):
        if not isinstance(user_data.get(key), list):
            user_data[key] = []

    if not isinstance(user_data.get("settings"), dict):
        user_data["settings"] = {}

    semesters: List[Dict[str, Any]] = []
    for s in user_data["semesters"]:
        if not isinstance(s, dict):
            continue
        s = dict(s)
        s.setdefault("id", generate_id("sem"))
        s.setdefault("name", "Untitled semester")
        s.setdefault("created_at", _now_ms())
        semesters.append(s)
    user_data["semesters"] = semesters

    courses: List[Dict[str, Any]] = []
    for c in user_data["courses"]:
        if not isinstance(c, dict):
            continue
        c = dict(c)
        c["course_id"] = str(c.get("course_id") or c.get("id") or generate_id("course"))
        c.pop("id", None)
        c.setdefault("name", "Untitled course")
        c.setdefault("code", "")
        c.setdefault("color", DEFAULT_COURSE_COLOR)
        c.setdefault("semester_id", None)
        for contact in ("professor_name", "professor_email", "ta_name", "ta_email"):
            c.setdefault(contact, "")
        c["credits"] = _opt_float(c.get("credits"))
        if not isinstance(c.get("grade_scale"), dict) or not c["grade_scale"]:
            c["grade_scale"] = None
        c["deleted"] = bool(c.get("deleted", False))
        courses.append(c)
    user_data["courses"] = courses

    groups: List[Dict[str, Any]] = []
    for g in user_data["groups"]:
        if not isinstance(g, dict):
            continue
        g = dict(g)
        g.setdefault("id", generate_id("grp"))
        g["course_id"] = str(g.get("course_id") or "").strip()
        g.setdefault("name", "Untitled group")
        g["weight"] = _opt_float(g.get("weight")) or 0.0
        g["is_extra_credit"] = bool(g.get("is_extra_credit", False))
        g["deleted"] = bool(g.get("deleted", False))
        groups.append(g)
    user_data["groups"] = groups

    assignments: List[Dict[str, Any]] = []
    for a in user_data["assignments"]:
        if not isinstance(a, dict):
            continue
        a = dict(a)
        a.setdefault("id", generate_id("asg"))
        a["course_id"] = str(a.get("course_id") or "").strip()
        a["group_id"] = str(a.get("group_id") or "").strip() or None
        a.setdefault("title", "Untitled assignment")
        a.setdefault("description", "")
        a["due_date"] = _iso_date(a.get("due_date"))
        a["points_total"] = _opt_float(a.get("points_total"))
        a["points_earned"] = _opt_float(a.get("points_earned"))
        a["is_completed"] = bool(a.get("is_completed", False))
        a["opt_out"] = bool(a.get("opt_out", False))
        a["deleted"] = bool(a.get("deleted", False))
        assignments.append(a)
    user_data["assignments"] = assignments

    notes: List[Dict[str, Any]] = []
    for n in user_data["notes"]:
        if not isinstance(n, dict):
            continue
        n = dict(n)
        n.setdefault("id", generate_id("note"))
        n["course_id"] = str(n.get("course_id") or "").strip()
        n.setdefault("title", "")
        n.setdefault("content", "")
        n.setdefault("created_at", _now_ms())
        n["deleted"] = bool(n.get("deleted", False))
        notes.append(n)
    user_data["notes"] = notes

    return user_data


# -------------------------------
# Semesters
# -------------------------------

def add_semester(user_data: Dict[str, Any], name: str) -> Dict[str, Any]:
    semester = {"id": generate_id("sem"), "name": name.strip(), "created_at": _now_ms()}
    user_data.setdefault("semesters", []).append(semester)
    return semester


def rename_semester(user_data: Dict[str, Any], semester_id: str, name: str) -> None:
    for s in user_data.get("semesters", []):
        if s.get("id") == semester_id:
            s["name"] = name.strip()
            break


def delete_semester(user_data: Dict[str, Any], semester_id: str) -> None:
    user_data["semesters"] = [s for s in user_data.get("semesters", []) if s.get("id") != semester_id]
    for c in user_data.get("courses", []):
        if c.get("semester_id") == semester_id:
            c["semester_id"] = None


# -------------------------------
# Courses
# -------------------------------

def get_courses(user_data: Dict[str, Any], deleted: bool = False) -> List[Dict[str, Any]]:
    return [c for c in user_data.get("courses", []) if bool(c.get("deleted")) == deleted]


def get_course(user_data: Dict[str, Any], course_id: Optional[str]) -> Optional[Dict[str, Any]]:
    for c in user_data.get("courses", []):
        if c.get("course_id") == course_id:
            return c
    return None


def add_course(
    user_data: Dict[str, Any],
    name: str,
    color: str = DEFAULT_COURSE_COLOR,
    **fields: Any,
) -> Dict[str, Any]:
    course = {
        "course_id": generate_id("course"),
        "name": name.strip(),
        "code": "",
        "color": color,
        "semester_id": None,
        "professor_name": "",
        "professor_email": "",
        "ta_name": "",
        "ta_email": "",
        "credits": None,
        "grade_scale": None,
        "deleted": False,
    }
    course.update(fields)
    user_data.setdefault("courses", []).append(course)
    return course


def update_course(user_data: Dict[str, Any], course_id: str, **updates: Any) -> Optional[Dict[str, Any]]:
    course = get_course(user_data, course_id)
    if course is not None:
        course.update(updates)
    return course


# -------------------------------
# Assignment groups
# -------------------------------

def get_groups_for_course(user_data: Dict[str, Any], course_id: str) -> List[Dict[str, Any]]:
    return [
        g for g in user_data.get("groups", [])
        if g.get("course_id") == course_id and not g.get("deleted")
    ]


def add_group(
    user_data: Dict[str, Any],
    course_id: str,
    name: str,
    weight: float,
    is_extra_credit: bool = False,
) -> Dict[str, Any]:
    group = {
        "id": generate_id("grp"),
        "course_id": course_id,
        "name": name.strip(),
        "weight": float(weight),
        "is_extra_credit": bool(is_extra_credit),
        "deleted": False,
    }
    user_data.setdefault("groups", []).append(group)
    return group


def update_group(user_data: Dict[str, Any], group_id: str, **updates: Any) -> None:
    for g in user_data.get("groups", []):
        if g.get("id") == group_id:
            g.update(updates)
            break


# -------------------------------
# Assignments
# -------------------------------

def get_assignments_for_course(user_data: Dict[str, Any], course_id: str) -> List[Dict[str, Any]]:
    return [
        a for a in user_data.get("assignments", [])
        if a.get("course_id") == course_id and not a.get("deleted")
    ]


def add_assignment(
    user_data: Dict[str, Any],
    course_id: str,
    title: str,
    group_id: Optional[str] = None,
    due_date: Any = None,
    **fields: Any,
) -> Dict[str, Any]:
    assignment = {
        "id": generate_id("asg"),
        "course_id": course_id,
        "group_id": group_id or None,
        "title": title.strip(),
        "description": "",
        "due_date": _iso_date(due_date),
        "points_total": None,
        "points_earned": None,
        "is_completed": False,
        "opt_out": False,
        "deleted": False,
    }
    assignment.update(fields)
    user_data.setdefault("assignments", []).append(assignment)
    return assignment


def update_assignment(user_data: Dict[str, Any], assignment_id: str, **updates: Any) -> None:
    if "due_date" in updates:
        updates["due_date"] = _iso_date(updates["due_date"])
    for a in user_data.get("assignments", []):
        if a.get("id") == assignment_id:
            a.update(updates)
            break


def toggle_assignment_completed(user_data: Dict[str, Any], assignment_id: str) -> None:
    for a in user_data.get("assignments", []):
        if a.get("id") == assignment_id:
            a["is_completed"] = not bool(a.get("is_completed", False))
            break


def sort_assignments(
    assignments: Iterable[Dict[str, Any]],
    courses: Iterable[Dict[str, Any]],
    sort_by: str = "date",
) -> List[Dict[str, Any]]:
    names = {c.get("course_id"): str(c.get("name", "")) for c in (courses or [])}
    items = list(assignments or [])

    if sort_by == "course":
        return sorted(items, key=lambda a: names.get(a.get("course_id"), "Unknown course").lower())
    if sort_by == "status":
        return sorted(items, key=lambda a: bool(a.get("is_completed", False)))

    # undated assignments go last
    return sorted(items, key=lambda a: (a.get("due_date") is None, a.get("due_date") or ""))


# -------------------------------
# Notes
# -------------------------------

def get_notes_for_course(user_data: Dict[str, Any], course_id: str) -> List[Dict[str, Any]]:
    notes = [
        n for n in user_data.get("notes", [])
        if n.get("course_id") == course_id and not n.get("deleted")
    ]
    return sorted(notes, key=lambda n: n.get("created_at") or 0, reverse=True)


def add_note(user_data: Dict[str, Any], course_id: str, title: str = "", content: str = "") -> Dict[str, Any]:
    note = {
        "id": generate_id("note"),
        "course_id": course_id,
        "title": title,
        "content": content,
        "created_at": _now_ms(),
        "deleted": False,
    }
    user_data.setdefault("notes", []).append(note)
    return note


def update_note(user_data: Dict[str, Any], note_id: str, title: str, content: str) -> None:
    for n in user_data.get("notes", []):
        if n.get("id") == note_id:
            n["title"] = title
            n["content"] = content
            break


# -------------------------------
# Trash (soft delete / restore / purge)
# -------------------------------

def _find(user_data: Dict[str, Any], kind: str, item_id: str) -> Optional[Dict[str, Any]]:
    if kind not in COLLECTIONS:
        raise ValueError(f"Unknown item kind: {kind}")
    for item in user_data.get(COLLECTIONS[kind], []):
        if _item_id(kind, item) == item_id:
            return item
    return None


def _dependants(user_data: Dict[str, Any], kind: str, item_id: str) -> List[Dict[str, Any]]:
    if kind == "course":
        out: List[Dict[str, Any]] = []
        for key in ("groups", "assignments", "notes"):
            out.extend(x for x in user_data.get(key, []) if x.get("course_id") == item_id)
        return out
    if kind == "group":
        return [a for a in user_data.get("assignments", []) if a.get("group_id") == item_id]
    return []


def soft_delete(user_data: Dict[str, Any], kind: str, item_id: str) -> None:
    item = _find(user_data, kind, item_id)
    if item is None or item.get("deleted"):
        return

    item["deleted"] = True
    item.pop("deleted_by", None)

    for child in _dependants(user_data, kind, item_id):
        if child.get("deleted"):
            continue
        child["deleted"] = True
        child["deleted_by"] = item_id
        logger.debug("Cascade delete %s -> %s", item_id, child.get("id"))


def restore(user_data: Dict[str, Any], kind: str, item_id: str) -> None:
    item = _find(user_data, kind, item_id)
    if item is None:
        return

    item["deleted"] = False
    item.pop("deleted_by", None)

    for child in _dependants(user_data, kind, item_id):
        if child.get("deleted_by") == item_id:
            child["deleted"] = False
            child.pop("deleted_by", None)


def delete_forever(user_data: Dict[str, Any], kind: str, item_id: str) -> None:
    if kind == "course":
        for key in ("groups", "assignments", "notes"):
            user_data[key] = [x for x in user_data.get(key, []) if x.get("course_id") != item_id]
    elif kind == "group":
        user_data["assignments"] = [a for a in user_data.get("assignments", []) if a.get("group_id") != item_id]

    key = COLLECTIONS[kind]
    user_data[key] = [x for x in user_data.get(key, []) if _item_id(kind, x) != item_id]


def trash_items(user_data: Dict[str, Any]) -> List[Dict[str, Any]]:
    """
    Deleted items the user removed directly (cascaded children travel
    with their parent and are not listed on their own).
    """
    items: List[Dict[str, Any]] = []
    for kind, key in COLLECTIONS.items():
        for x in user_data.get(key, []):
            if x.get("deleted") and not x.get("deleted_by"):
                items.append({"kind": kind, "id": _item_id(kind, x), "item": x})
    return items


def empty_trash(user_data: Dict[str, Any]) -> int:
    items = trash_items(user_data)
    for t in items:
        delete_forever(user_data, t["kind"], t["id"])
    return len(items)


# -------------------------------
# Email import helpers
# -------------------------------

def filter_by_confidence(items: Iterable[Dict[str, Any]], level: str = "all") -> List[Dict[str, Any]]:
    items = list(items or [])
    if level == "high":
        return [x for x in items if float(x.get("confidence", 0.0)) >= HIGH_CONFIDENCE]
    if level == "low":
        return [x for x in items if float(x.get("confidence", 0.0)) < HIGH_CONFIDENCE]
    return items


def set_all_selected(items: Iterable[Dict[str, Any]], selected: bool) -> None:
    for x in (items or []):
        x["selected"] = bool(selected)


def import_assignments(user_data: Dict[str, Any], importable: Iterable[Dict[str, Any]]) -> List[Dict[str, Any]]:
    created: List[Dict[str, Any]] = []
    for x in (importable or []):
        if not x.get("selected") or not x.get("course_id"):
            continue
        created.append(add_assignment(
            user_data,
            course_id=x["course_id"],
            title=str(x.get("title") or "Untitled Assignment"),
            group_id=x.get("group_id"),
            due_date=x.get("due_date"),
            description=str(x.get("description") or ""),
            points_total=_opt_float(x.get("points")),
        ))
    logger.info("Imported %d assignment(s) from email", len(created))
    return created
