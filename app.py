import datetime
import json
import logging
from typing import Any, Dict, List, Optional

import pandas as pd
import streamlit as st

from whats_my_grade import config, records
from whats_my_grade.email_import import (
    AssignmentExtractor,
    GmailClient,
    GmailError,
    prepare_importable,
)
from whats_my_grade.grading import (
    DEFAULT_GRADE_SCALE,
    build_transcript,
    calculate_course_grade,
    calculate_group_average,
    calculate_letter_grade,
    calculate_percentage,
    course_credits,
    format_grade_scale,
    parse_grade_scale,
)
from whats_my_grade.storage import (
    AuthError,
    get_user_data,
    init_app_state,
    save_user_data,
    sign_in,
    sign_out,
    sign_up,
    supabase_enabled,
)

logger = logging.getLogger(__name__)


# -------------------------------
# Small utility helpers
# -------------------------------

def _now_stamp() -> str:
    return datetime.datetime.now().strftime("%Y-%m-%d_%H%M")


def _fmt_pct(x: Optional[float]) -> str:
    return f"{x:.1f}%" if x is not None else "-"


def _fmt_num(x: Optional[float]) -> str:
    return f"{x:.2f}" if x is not None else "-"


def _course_label(c: Dict[str, Any]) -> str:
    cid = c.get("course_id", "")
    short = str(cid)[-6:] if cid else "------"
    code = str(c.get("code", "")).strip()
    return f"{c.get('name','')}" + (f" ({code})" if code else "") + f" · {short}"


def _course_picker(user_data: Dict[str, Any], key: str) -> Optional[Dict[str, Any]]:
    courses = records.get_courses(user_data)
    if not courses:
        st.info("Add a course first in the **Courses** tab.")
        return None
    labels = {_course_label(c): c for c in courses}
    label = st.selectbox("Select course", list(labels.keys()), key=key)
    return labels[label]


def _persist(username: str, user_data: Dict[str, Any], msg: Optional[str] = None) -> None:
    save_user_data(username, user_data)
    if msg:
        st.success(msg)
    st.rerun()


# -------------------------------
# UI: user selector (Supabase auth OR local)
# -------------------------------

def _account_sidebar():
    st.sidebar.header("Account")

    if st.session_state.get("current_user"):
        st.sidebar.success(f"Signed in as: {st.session_state.current_username}")
        if st.sidebar.button("Sign out", key="sb_signout"):
            sign_out()
            st.rerun()
        return

    mode = st.sidebar.radio("Choose:", ["Log in", "Sign up"], key="sb_mode")
    email = st.sidebar.text_input("Email", key="sb_email").strip()
    password = st.sidebar.text_input("Password", type="password", key="sb_password")

    label = "Log in" if mode == "Log in" else "Create account"
    if not st.sidebar.button(label, type="primary", key=f"sb_{mode}_btn"):
        return
    if not email or not password:
        st.sidebar.error("Enter email and password.")
        return

    try:
        if mode == "Log in":
            sign_in(email, password)
            st.rerun()
        else:
            sign_up(email, password)
            st.sidebar.success("Account created. Now log in (and confirm email if required).")
    except AuthError as e:
        st.sidebar.error(str(e))


def user_selector():
    if st.session_state.get("storage_mode") == "supabase" and supabase_enabled():
        _account_sidebar()
        return

    # Local JSON mode
    st.sidebar.caption("Local mode (not real multi-user). Add Supabase secrets to enable accounts.")
    st.sidebar.header("Student")

    existing_users = sorted(st.session_state.app_data.get("users", {}).keys())
    mode = st.sidebar.radio("Choose:", ["Log in", "New student"], key="mode_user_selector")

    if mode == "Log in":
        if existing_users:
            selected = st.sidebar.selectbox("Select your name", existing_users, key="login_select_name")
            if st.sidebar.button("Use this profile", key="login_use_profile"):
                st.session_state.current_user = selected
                st.session_state.current_username = selected
        else:
            st.sidebar.info("No students yet. Create one below.")

    if mode == "New student":
        new_name = st.sidebar.text_input("Enter your name", key="new_student_name")
        if st.sidebar.button("Create profile", key="new_student_create"):
            name = new_name.strip()
            if not name:
                st.sidebar.error("Please enter a valid name.")
            else:
                save_user_data(name, get_user_data(name))
                st.session_state.current_user = name
                st.session_state.current_username = name
                st.sidebar.success(f"Profile created for {name}")


# -------------------------------
# UI: Courses (semesters, details, grade scale, groups)
# -------------------------------

def courses_view(user_data: Dict[str, Any]):
    username = user_data["profile"]["username"]
    K = f"courses_{username}"

    st.header("Courses")

    with st.expander("Semesters", expanded=False):
        with st.form(key=f"{K}_sem_form", clear_on_submit=True):
            sem_name = st.text_input("New semester", placeholder="Fall 2026", key=f"{K}_sem_name")
            if st.form_submit_button("Add semester") and sem_name.strip():
                records.add_semester(user_data, sem_name)
                _persist(username, user_data, "Semester added.")

        for s in user_data.get("semesters", []):
            c1, c2, c3 = st.columns([3, 1, 1])
            with c1:
                new_name = st.text_input("Name", value=s.get("name", ""), key=f"{K}_sem_{s['id']}", label_visibility="collapsed")
            with c2:
                if st.button("Rename", key=f"{K}_sem_rename_{s['id']}") and new_name.strip():
                    records.rename_semester(user_data, s["id"], new_name)
                    _persist(username, user_data)
            with c3:
                if st.button("🗑️", key=f"{K}_sem_del_{s['id']}"):
                    records.delete_semester(user_data, s["id"])
                    _persist(username, user_data, "Semester removed; its courses moved to Other.")

    courses = records.get_courses(user_data)
    options = ["➕ New course"] + [_course_label(c) for c in courses]
    label_to_course = {_course_label(c): c for c in courses}

    choice = st.selectbox("Choose a course to add or edit", options, key=f"{K}_choose_course")
    is_new = choice == "➕ New course"
    course = None if is_new else label_to_course[choice]
    ck = "new" if is_new else course["course_id"]
    course = course or {}

    semesters = user_data.get("semesters", [])
    sem_options = [("No semester (Other)", None)] + [(s.get("name", ""), s.get("id")) for s in semesters]
    sem_labels = [x[0] for x in sem_options]
    sem_index = next((i for i, x in enumerate(sem_options) if x[1] == course.get("semester_id")), 0)

    st.markdown("### Course details")
    c1, c2, c3 = st.columns([3, 2, 1])
    with c1:
        name = st.text_input("Course name", value=course.get("name", ""), placeholder="MATH 101", key=f"{K}_name_{ck}")
    with c2:
        code = st.text_input("Course code", value=course.get("code", ""), key=f"{K}_code_{ck}")
    with c3:
        color = st.color_picker("Color", value=course.get("color") or records.COURSE_COLORS[len(courses) % len(records.COURSE_COLORS)], key=f"{K}_color_{ck}")

    c4, c5 = st.columns(2)
    with c4:
        sem_label = st.selectbox("Semester", sem_labels, index=sem_index, key=f"{K}_sem_{ck}")
    with c5:
        credits = st.number_input(
            "Credits",
            min_value=0.5,
            max_value=10.0,
            value=course_credits(course),
            step=0.5,
            key=f"{K}_credits_{ck}",
        )

    c6, c7 = st.columns(2)
    with c6:
        prof_name = st.text_input("Professor", value=course.get("professor_name", ""), key=f"{K}_prof_{ck}")
        prof_email = st.text_input("Professor email", value=course.get("professor_email", ""), key=f"{K}_prof_email_{ck}")
    with c7:
        ta_name = st.text_input("TA", value=course.get("ta_name", ""), key=f"{K}_ta_{ck}")
        ta_email = st.text_input("TA email", value=course.get("ta_email", ""), key=f"{K}_ta_email_{ck}")

    st.subheader("Letter grade scale (optional)")
    use_scale = st.checkbox("Use a letter grade scale", value=bool(course.get("grade_scale")) or is_new, key=f"{K}_use_scale_{ck}")
    scale_text = st.text_area(
        "One per line, minimum percent, like: A: 93",
        value=format_grade_scale(course.get("grade_scale") or DEFAULT_GRADE_SCALE),
        height=220,
        key=f"{K}_scale_{ck}",
        disabled=not use_scale,
    )

    col_save, col_delete = st.columns([3, 1])
    with col_save:
        if st.button("Save course", key=f"{K}_save_{ck}"):
            if not name.strip():
                st.error("Course name is required.")
                st.stop()

            grade_scale = None
            if use_scale:
                try:
                    grade_scale = parse_grade_scale(scale_text) or None
                except ValueError as e:
                    st.error(str(e))
                    st.stop()

            fields = {
                "name": name.strip(),
                "code": code.strip(),
                "color": color,
                "semester_id": dict(sem_options).get(sem_label),
                "credits": float(credits),
                "professor_name": prof_name.strip(),
                "professor_email": prof_email.strip(),
                "ta_name": ta_name.strip(),
                "ta_email": ta_email.strip(),
                "grade_scale": grade_scale,
            }
            if is_new:
                records.add_course(user_data, **fields)
                _persist(username, user_data, f"Course '{name.strip()}' added.")
            else:
                records.update_course(user_data, course["course_id"], **fields)
                _persist(username, user_data, f"Course '{name.strip()}' updated.")

    with col_delete:
        if not is_new and st.button("🗑️ Move to trash", key=f"{K}_delete_{ck}"):
            records.soft_delete(user_data, "course", course["course_id"])
            _persist(username, user_data, "Course moved to trash.")

    if is_new:
        return

    st.write("---")
    groups_editor(user_data, course)


def groups_editor(user_data: Dict[str, Any], course: Dict[str, Any]):
    username = user_data["profile"]["username"]
    cid = course["course_id"]
    K = f"groups_{username}_{cid}"

    st.subheader("Assignment groups")
    st.caption("Weights are re-normalized over groups that already have grades. Extra credit adds points on top.")

    assignments = user_data.get("assignments", [])
    groups = records.get_groups_for_course(user_data, cid)

    for g in groups:
        avg = calculate_group_average(g, assignments)
        c1, c2, c3, c4, c5 = st.columns([3, 1, 1, 1, 1])
        with c1:
            g_name = st.text_input("Group", value=g.get("name", ""), key=f"{K}_name_{g['id']}")
        with c2:
            g_weight = st.number_input("Weight %", min_value=0.0, max_value=100.0, value=max(0.0, min(100.0, float(g.get("weight") or 0.0))), key=f"{K}_w_{g['id']}")
        with c3:
            g_extra = st.checkbox("Extra credit", value=bool(g.get("is_extra_credit")), key=f"{K}_ec_{g['id']}")
        with c4:
            if g.get("is_extra_credit"):
                st.metric("Total", _fmt_pct(avg))
            else:
                st.metric("Avg", _fmt_pct(avg))
        with c5:
            if st.button("Save", key=f"{K}_save_{g['id']}") and g_name.strip():
                records.update_group(user_data, g["id"], name=g_name.strip(), weight=float(g_weight), is_extra_credit=bool(g_extra))
                _persist(username, user_data)
            if st.button("🗑️", key=f"{K}_del_{g['id']}"):
                records.soft_delete(user_data, "group", g["id"])
                _persist(username, user_data, "Group and its assignments moved to trash.")

    with st.form(key=f"{K}_add_form", clear_on_submit=True):
        c1, c2, c3 = st.columns([3, 1, 1])
        with c1:
            new_name = st.text_input("New group", placeholder="Problem Sets", key=f"{K}_new_name")
        with c2:
            new_weight = st.number_input("Weight %", min_value=0.0, max_value=100.0, value=20.0, key=f"{K}_new_weight")
        with c3:
            new_extra = st.checkbox("Extra credit", value=False, key=f"{K}_new_extra")
        if st.form_submit_button("Add group"):
            if not new_name.strip():
                st.error("Group name is required.")
            else:
                records.add_group(user_data, cid, new_name, new_weight, is_extra_credit=new_extra)
                _persist(username, user_data, "Group added.")

    total = sum(float(g.get("weight") or 0.0) for g in groups if not g.get("is_extra_credit"))
    if groups and abs(total - 100.0) > 1e-6:
        st.caption(f"Regular group weights add up to {total:g}%.")


# -------------------------------
# UI: Assignments
# -------------------------------

def assignments_view(user_data: Dict[str, Any]):
    username = user_data["profile"]["username"]
    K = f"asg_{username}"

    st.header("Assignments")

    course = _course_picker(user_data, key=f"{K}_course_select")
    if course is None:
        return
    course_id = course["course_id"]

    groups = records.get_groups_for_course(user_data, course_id)
    all_assignments = user_data.get("assignments", [])

    grade = calculate_course_grade(course_id, all_assignments, user_data.get("groups", []))
    letter = calculate_letter_grade(grade, course.get("grade_scale"))
    c1, c2 = st.columns(2)
    c1.metric("Course grade", _fmt_pct(grade))
    c2.metric("Letter", letter or "-")

    if not groups:
        st.info("This course has no assignment groups yet. Add them in the Courses tab.")
        return

    group_labels = {g.get("name", ""): g for g in groups}

    st.subheader("Add assignment")
    with st.form(key=f"{K}_add_form", clear_on_submit=True):
        title = st.text_input("Title", placeholder="Problem Set 1", key=f"{K}_add_title")
        group_label = st.selectbox("Group", list(group_labels.keys()), key=f"{K}_add_group")
        due_date = st.date_input("Due date", value=datetime.date.today(), key=f"{K}_add_due")
        description = st.text_area("Description", key=f"{K}_add_desc", height=80)
        if st.form_submit_button("Save assignment"):
            if not title.strip():
                st.error("Assignment title is required.")
            else:
                group = group_labels[group_label]
                records.add_assignment(
                    user_data,
                    course_id,
                    title,
                    group_id=group["id"],
                    due_date=None if group.get("is_extra_credit") else due_date,
                    description=description.strip(),
                )
                _persist(username, user_data, f"Assignment '{title.strip()}' saved.")

    st.write("---")
    course_assignments = records.get_assignments_for_course(user_data, course_id)

    for g in groups:
        avg = calculate_group_average(g, all_assignments)
        kind = "Total" if g.get("is_extra_credit") else "Avg"
        st.markdown(f"### {g.get('name','')} · {g.get('weight', 0):g}% · {kind}: {_fmt_pct(avg)}")

        members = records.sort_assignments(
            [a for a in course_assignments if a.get("group_id") == g["id"]],
            [course],
            "date",
        )
        if not members:
            st.caption("No assignments in this group yet.")
            continue

        for a in members:
            assignment_row(user_data, a, groups, K)

    ungrouped = [a for a in course_assignments if a.get("group_id") not in {g["id"] for g in groups}]
    if ungrouped:
        st.markdown("### Ungrouped")
        st.caption("These assignments do not count toward the course grade until they are placed in a group.")
        for a in ungrouped:
            assignment_row(user_data, a, groups, K)


def assignment_row(user_data: Dict[str, Any], a: Dict[str, Any], groups: List[Dict[str, Any]], K: str):
    username = user_data["profile"]["username"]
    aid = a["id"]

    pct = calculate_percentage(a.get("points_earned"), a.get("points_total"))
    status = []
    if pct is not None:
        status.append(f"{a['points_earned']:g}/{a['points_total']:g} ({pct:.1f}%)")
    elif a.get("points_earned") is not None:
        status.append(f"{a['points_earned']:g} pts")
    else:
        status.append("Not graded yet")
    if a.get("opt_out"):
        status.append("opted out")

    done_val = bool(a.get("is_completed"))
    new_done = st.checkbox(
        f"**{a.get('title','')}** · Due {a.get('due_date') or '-'} · {'; '.join(status)}",
        value=done_val,
        key=f"{K}_done_{aid}",
    )
    if new_done != done_val:
        records.toggle_assignment_completed(user_data, aid)
        _persist(username, user_data)

    # IMPORTANT: make expander labels unique to avoid DuplicateElementId when titles repeat
    with st.expander(f"Edit '{a.get('title','')}' · {aid[-6:]}"):
        group_labels = {g.get("name", ""): g["id"] for g in groups}
        names = list(group_labels.keys())
        current = next((n for n, gid in group_labels.items() if gid == a.get("group_id")), None)

        new_title = st.text_input("Title", value=a.get("title", ""), key=f"{K}_title_{aid}")
        new_group = st.selectbox("Group", names, index=names.index(current) if current in names else 0, key=f"{K}_grp_{aid}")
        new_due = st.date_input(
            "Due date",
            value=datetime.date.fromisoformat(a["due_date"]) if a.get("due_date") else None,
            key=f"{K}_due_{aid}",
        )
        c1, c2 = st.columns(2)
        with c1:
            has_earned = st.checkbox("Graded", value=a.get("points_earned") is not None, key=f"{K}_graded_{aid}")
            new_earned = st.number_input("Points earned", min_value=0.0, value=float(a.get("points_earned") or 0.0), key=f"{K}_earned_{aid}")
        with c2:
            new_total = st.number_input("Total points", min_value=0.0, value=float(a.get("points_total") or 0.0), key=f"{K}_total_{aid}")
            new_opt_out = st.checkbox("Opt out of grade", value=bool(a.get("opt_out")), key=f"{K}_opt_{aid}")
        new_desc = st.text_area("Description", value=a.get("description", ""), key=f"{K}_desc_{aid}", height=80)

        col_u, col_d = st.columns(2)
        with col_u:
            if st.button("Save changes", key=f"{K}_save_{aid}"):
                records.update_assignment(
                    user_data,
                    aid,
                    title=new_title.strip() or a["title"],
                    group_id=group_labels.get(new_group),
                    due_date=new_due,
                    points_earned=float(new_earned) if has_earned else None,
                    points_total=float(new_total) if new_total > 0 else None,
                    opt_out=bool(new_opt_out),
                    description=new_desc.strip(),
                )
                _persist(username, user_data, "Assignment updated.")
        with col_d:
            if st.button("Move to trash", key=f"{K}_del_{aid}"):
                records.soft_delete(user_data, "assignment", aid)
                _persist(username, user_data)


# -------------------------------
# UI: Notes
# -------------------------------

def notes_view(user_data: Dict[str, Any]):
    username = user_data["profile"]["username"]
    K = f"notes_{username}"

    st.header("Notes")
    course = _course_picker(user_data, key=f"{K}_course_select")
    if course is None:
        return
    course_id = course["course_id"]

    if st.button("➕ New note", key=f"{K}_add"):
        records.add_note(user_data, course_id)
        _persist(username, user_data)

    notes = records.get_notes_for_course(user_data, course_id)
    if not notes:
        st.caption("No notes yet for this course.")
        return

    for n in notes:
        created = datetime.datetime.fromtimestamp((n.get("created_at") or 0) / 1000).strftime("%Y-%m-%d")
        with st.expander(f"{n.get('title') or 'Untitled Note'} · {created}", expanded=not n.get("title")):
            title = st.text_input("Title", value=n.get("title", ""), key=f"{K}_title_{n['id']}")
            content = st.text_area("Content", value=n.get("content", ""), height=200, key=f"{K}_content_{n['id']}")
            c1, c2 = st.columns(2)
            with c1:
                if st.button("Save note", key=f"{K}_save_{n['id']}"):
                    records.update_note(user_data, n["id"], title, content)
                    _persist(username, user_data, "Note saved.")
            with c2:
                if st.button("Move to trash", key=f"{K}_del_{n['id']}"):
                    records.soft_delete(user_data, "note", n["id"])
                    _persist(username, user_data)


# -------------------------------
# UI: All assignments
# -------------------------------

def all_assignments_view(user_data: Dict[str, Any]):
    username = user_data["profile"]["username"]
    K = f"all_{username}"

    st.header("All assignments")

    courses = records.get_courses(user_data)
    active_ids = {c["course_id"] for c in courses}
    assignments = [a for a in user_data.get("assignments", []) if not a.get("deleted") and a.get("course_id") in active_ids]
    if not assignments:
        st.info("No assignments yet.")
        return

    sort_label = st.radio("Sort by", ["Date", "Course", "Status"], horizontal=True, key=f"{K}_sort")
    ordered = records.sort_assignments(assignments, courses, sort_label.lower())

    names = {c["course_id"]: c.get("name", "") for c in courses}
    rows = []
    for a in ordered:
        rows.append({
            "Done": bool(a.get("is_completed")),
            "Title": a.get("title", ""),
            "Course": names.get(a.get("course_id"), "Unknown course"),
            "Due": a.get("due_date") or "",
            "Score": _fmt_pct(calculate_percentage(a.get("points_earned"), a.get("points_total"))),
        })
    st.dataframe(pd.DataFrame(rows), use_container_width=True, hide_index=True)


# -------------------------------
# UI: Grades (transcript)
# -------------------------------

def grades_view(user_data: Dict[str, Any]):
    st.header("Grades overview")
    st.caption("Academic transcript view")

    transcript = build_transcript(
        user_data.get("courses", []),
        user_data.get("semesters", []),
        user_data.get("assignments", []),
        user_data.get("groups", []),
    )

    rows = []
    for section in transcript["sections"]:
        rows.append({
            "Subject": f"▼ {section['name']}",
            "Credits": section["total_credits"],
            "PCT": "",
            "Grade": "",
            "GPA": _fmt_num(section["gpa"]),
            "QPTS": _fmt_num(section["quality_points"]),
        })
        for r in section["rows"]:
            rows.append({
                "Subject": f"    {r['name']}",
                "Credits": r["credits"],
                "PCT": _fmt_pct(r["percentage"]),
                "Grade": r["letter"] or "-",
                "GPA": _fmt_num(r["gpa"]),
                "QPTS": _fmt_num(r["quality_points"]),
            })

    overall = transcript["overall"]
    rows.append({
        "Subject": "Total",
        "Credits": overall["total_credits"],
        "PCT": "",
        "Grade": "",
        "GPA": _fmt_num(overall["gpa"]),
        "QPTS": _fmt_num(overall["quality_points"]),
    })

    if len(rows) > 1:
        st.dataframe(pd.DataFrame(rows), use_container_width=True, hide_index=True)

    if overall["gpa"] is None and not any(
        r["percentage"] is not None for s in transcript["sections"] for r in s["rows"]
    ):
        st.info("No grades yet. Complete assignments and add grades to see your transcript here.")
    else:
        st.markdown(f"## 🎓 {_fmt_num(overall['gpa'])}  (overall GPA)")


# -------------------------------
# UI: Email import
# -------------------------------

def email_import_view(user_data: Dict[str, Any]):
    username = user_data["profile"]["username"]
    K = f"email_{username}"

    st.header("Import assignments from email")

    if not config.gmail_configured() or not config.openai_configured():
        st.info("Add a Gmail access token and an OpenAI API key (secrets or the Settings tab) to use email import.")
        return

    gcfg = config.gmail_cfg()
    ocfg = config.openai_cfg()
    courses = records.get_courses(user_data)

    after = st.date_input(
        "Look at emails after",
        value=datetime.date.today() - datetime.timedelta(days=gcfg["default_days"]),
        key=f"{K}_after",
    )

    if st.button("Sync emails", type="primary", key=f"{K}_sync"):
        try:
            gmail = GmailClient(gcfg["access_token"], max_workers=gcfg["max_workers"])
            try:
                with st.spinner("Fetching emails..."):
                    emails = gmail.fetch_assignment_emails(
                        gcfg["keywords"], after=after, max_results=gcfg["max_results"]
                    )
            finally:
                gmail.close()

            extractor = AssignmentExtractor(
                api_key=ocfg["api_key"],
                model=ocfg["model"],
                temperature=ocfg["temperature"],
                max_tokens=ocfg["max_tokens"],
            )
            with st.spinner(f"Extracting assignments from {len(emails)} email(s)..."):
                extracted = extractor.extract_from_emails(emails, courses)
        except (GmailError, ValueError) as e:
            st.error(str(e))
            return

        st.session_state[f"{K}_importable"] = prepare_importable(extracted, courses)

    importable: List[Dict[str, Any]] = st.session_state.get(f"{K}_importable")
    if importable is None:
        return
    if not importable:
        st.info("No assignments found in your recent emails. Try a wider date range.")
        return

    level = st.radio("Show", ["all", "high", "low"], horizontal=True, key=f"{K}_filter",
                     format_func=lambda x: {"all": "All", "high": "High confidence", "low": "Low confidence"}[x])

    all_selected = all(x.get("selected") for x in importable)
    if st.button("Deselect all" if all_selected else "Select all", key=f"{K}_toggle_all"):
        records.set_all_selected(importable, not all_selected)
        for idx, item in enumerate(importable):
            st.session_state[f"{K}_sel_{idx}"] = item["selected"]

    course_options = [("Select course...", None)] + [(c.get("name", ""), c["course_id"]) for c in courses]
    course_labels = [x[0] for x in course_options]

    visible = {id(x) for x in records.filter_by_confidence(importable, level)}
    for idx, item in enumerate(importable):
        if id(item) not in visible:
            continue

        st.markdown(
            f"**{item['title']}** · {round(item['confidence'] * 100)}% confident"
            + (f" · {item['assignment_type']}" if item.get("assignment_type") else "")
            + (f" · 📅 {item['due_date']}" if item.get("due_date") else "")
            + (f" · 🎯 {item['points']} pts" if item.get("points") else "")
        )
        if item.get("description"):
            st.caption(item["description"])
        st.caption(f"From: {item.get('source_email_subject', '')}")

        c1, c2, c3 = st.columns([1, 3, 3])
        with c1:
            item["selected"] = st.checkbox("Import", value=bool(item.get("selected")), key=f"{K}_sel_{idx}")
        with c2:
            cur = next((i for i, x in enumerate(course_options) if x[1] == item.get("course_id")), 0)
            label = st.selectbox("Course", course_labels, index=cur, key=f"{K}_course_{idx}")
            item["course_id"] = dict(course_options).get(label)
        with c3:
            if item.get("course_id"):
                groups = records.get_groups_for_course(user_data, item["course_id"])
                group_options = [("Select group...", None)] + [
                    (f"{g.get('name','')} ({g.get('weight', 0):g}%)", g["id"]) for g in groups
                ]
                glabel = st.selectbox("Group", [x[0] for x in group_options], key=f"{K}_group_{idx}")
                item["group_id"] = dict(group_options).get(glabel)
        st.write("---")

    selected = [x for x in importable if x.get("selected") and x.get("course_id")]
    if st.button(f"Import {len(selected)} assignment(s)", disabled=not selected, key=f"{K}_import"):
        created = records.import_assignments(user_data, importable)
        st.session_state.pop(f"{K}_importable", None)
        _persist(username, user_data, f"Imported {len(created)} assignment(s).")


# -------------------------------
# UI: Trash
# -------------------------------

def trash_view(user_data: Dict[str, Any]):
    username = user_data["profile"]["username"]
    K = f"trash_{username}"

    st.header("Trash")
    st.caption("Items in trash can be restored or permanently deleted.")

    items = records.trash_items(user_data)
    if not items:
        st.info("Trash is empty.")
        return

    names = {c["course_id"]: c.get("name", "") for c in user_data.get("courses", [])}

    for t in items:
        x = t["item"]
        if t["kind"] == "course":
            label = f"Course · {x.get('name','')}"
        elif t["kind"] == "note":
            label = f"Note · {x.get('title') or 'Untitled Note'} · {names.get(x.get('course_id'), 'Unknown Course')}"
            preview = str(x.get("content", ""))[:100]
            if preview:
                label += f" · {preview}..."
        else:
            label = f"{t['kind'].capitalize()} · {x.get('name') or x.get('title', '')} · {names.get(x.get('course_id'), 'Unknown Course')}"

        c1, c2, c3 = st.columns([4, 1, 1])
        c1.write(label)
        with c2:
            if st.button("Restore", key=f"{K}_restore_{t['id']}"):
                records.restore(user_data, t["kind"], t["id"])
                _persist(username, user_data)
        with c3:
            if st.button("Delete forever", key=f"{K}_purge_{t['id']}"):
                records.delete_forever(user_data, t["kind"], t["id"])
                _persist(username, user_data)

    st.write("---")
    if st.button("Empty trash", key=f"{K}_empty"):
        n = records.empty_trash(user_data)
        _persist(username, user_data, f"Deleted {n} item(s) permanently.")


# -------------------------------
# CSV export
# -------------------------------

def export_user_csvs(user_data: Dict[str, Any]) -> Dict[str, str]:
    out = {}
    for key in ("courses", "groups", "assignments", "notes"):
        out[key] = pd.DataFrame(user_data.get(key, [])).to_csv(index=False)
    return out


# -------------------------------
# UI: Settings
# -------------------------------

def settings_view(user_data: Dict[str, Any]):
    username = user_data["profile"]["username"]
    K = f"settings_{username}"

    st.header("Settings")

    st.subheader("Email import")
    st.caption("Keys entered here are kept for this browser session only. Use Streamlit secrets to keep them.")
    with st.form(key=f"{K}_keys_form"):
        openai_key = st.text_input("OpenAI API key", type="password", key=f"{K}_openai_key")
        gmail_token = st.text_input("Gmail access token", type="password", key=f"{K}_gmail_token")
        if st.form_submit_button("Use for this session"):
            if openai_key.strip():
                config.set_session_override("openai", "api_key", openai_key.strip())
            if gmail_token.strip():
                config.set_session_override("gmail", "access_token", gmail_token.strip())
            st.success("Saved for this session.")

    st.write(f"- OpenAI: {'configured' if config.openai_configured() else 'not configured'}")
    st.write(f"- Gmail: {'configured' if config.gmail_configured() else 'not configured'}")

    st.write("---")
    st.subheader("CSV export")
    csvs = export_user_csvs(user_data)
    cols = st.columns(len(csvs))
    for col, (key, text) in zip(cols, csvs.items()):
        with col:
            st.download_button(
                f"Download {key} CSV",
                data=text,
                file_name=f"{key}_{username}.csv",
                mime="text/csv",
                key=f"{K}_dl_{key}_csv",
            )

    st.write("---")
    st.subheader("Data info")
    if st.session_state.get("storage_mode") == "supabase":
        st.write("Your data is stored in Supabase (real multi-user).")
    else:
        st.write("Your data is stored on the server running this app (local JSON mode).")

    st.subheader("Backup")
    backup_obj = {
        "version": 1,
        "exported_at": datetime.datetime.now().isoformat(),
        "username": username,
        "user_data": user_data,
    }
    st.download_button(
        label="Download full backup (JSON)",
        data=json.dumps(backup_obj, indent=2, ensure_ascii=False, default=str).encode("utf-8"),
        file_name=f"whats_my_grade_backup_{username}_{_now_stamp()}.json",
        mime="application/json",
        key=f"{K}_download_backup",
    )


# -------------------------------
# Main
# -------------------------------

def main():
    st.set_page_config(page_title="What's My Grade", page_icon="🎓", layout="wide")
    logging.basicConfig(
        level=logging.DEBUG if config.debug_enabled() else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    init_app_state()

    st.title("🎓 What's My Grade")
    user_selector()

    if st.session_state.current_user is None:
        st.info("Sign in (or create/select a profile on the left) to get started.")
        return

    # In Supabase mode, current_user is UUID and current_username is email
    username = st.session_state.current_username or st.session_state.current_user
    user_data = get_user_data(username)

    tabs = st.tabs(["Courses", "Assignments", "Notes", "All assignments", "Grades", "Email import", "Trash", "Settings"])

    with tabs[0]:
        courses_view(user_data)
    with tabs[1]:
        assignments_view(user_data)
    with tabs[2]:
        notes_view(user_data)
    with tabs[3]:
        all_assignments_view(user_data)
    with tabs[4]:
        grades_view(user_data)
    with tabs[5]:
        email_import_view(user_data)
    with tabs[6]:
        trash_view(user_data)
    with tabs[7]:
        settings_view(user_data)


if __name__ == "__main__":
    main()
