import base64
import datetime
import json
from types import SimpleNamespace

import httpx
import openai
import pytest

from whats_my_grade.email_import import (
    AssignmentExtractor,
    GmailClient,
    GmailError,
    build_search_query,
    format_due_date,
    identify_course,
    parse_email_body,
    prepare_importable,
)


def _b64(text: str) -> str:
    return base64.urlsafe_b64encode(text.encode("utf-8")).decode("ascii").rstrip("=")


COURSES = [
    {"course_id": "c1", "name": "Linear Algebra", "code": "MATH 221", "deleted": False},
    {"course_id": "c2", "name": "Organic Chemistry", "code": "CHEM 210", "deleted": False},
    {"course_id": "c3", "name": "Ancient History", "code": "HIST 100", "deleted": True},
]


# -------------------------------
# Query + body parsing
# -------------------------------

def test_build_search_query_default_window():
    q = build_search_query(["homework", "due date"], default_days=30, today=datetime.date(2026, 10, 17))
    assert q == '("homework" OR "due date") after:2026/09/17'


def test_build_search_query_explicit_after():
    q = build_search_query(["exam"], after=datetime.datetime(2026, 1, 5, 12, 0))
    assert q == '("exam") after:2026/01/05'


def test_parse_email_body_top_level_data():
    assert parse_email_body({"body": {"data": _b64("Problem set due Friday")}}) == "Problem set due Friday"


def test_parse_email_body_prefers_plain_text_parts():
    payload = {
        "parts": [
            {"mimeType": "text/plain", "body": {"data": _b64("plain ")}},
            {"mimeType": "text/html", "body": {"data": _b64("<p>html</p>")}},
            {"mimeType": "multipart/alternative", "parts": [
                {"mimeType": "text/plain", "body": {"data": _b64("nested")}},
            ]},
        ]
    }
    assert parse_email_body(payload) == "plain nested"


def test_parse_email_body_html_fallback():
    payload = {"parts": [{"mimeType": "text/html", "body": {"data": _b64("<p>Quiz <b>Monday</b></p>")}}]}
    assert parse_email_body(payload) == "Quiz Monday"


def test_parse_email_body_empty():
    assert parse_email_body({}) == ""


# -------------------------------
# Gmail client
# -------------------------------

def _message(mid, subject):
    return {
        "id": mid,
        "snippet": f"snippet {mid}",
        "payload": {
            "headers": [
                {"name": "Subject", "value": subject},
                {"name": "From", "value": "prof@school.edu"},
                {"name": "Date", "value": "Mon, 05 Oct 2026 10:00:00 +0000"},
            ],
            "body": {"data": _b64(f"body of {mid}")},
        },
    }


def _gmail(handler):
    return GmailClient("token", http_client=httpx.Client(transport=httpx.MockTransport(handler)), max_workers=2)


def test_gmail_requires_token():
    with pytest.raises(GmailError):
        GmailClient("")


def test_gmail_search_and_fetch_isolates_failures():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        assert request.headers["Authorization"] == "Bearer token"
        path = request.url.path
        if path.endswith("/messages"):
            seen["q"] = request.url.params["q"]
            seen["max"] = request.url.params["maxResults"]
            return httpx.Response(200, json={"messages": [{"id": "m1"}, {"id": "m2"}, {"id": "m3"}]})
        mid = path.rsplit("/", 1)[-1]
        if mid == "m2":
            return httpx.Response(500, json={"error": "boom"})
        return httpx.Response(200, json=_message(mid, f"Subject {mid}"))

    client = _gmail(handler)
    emails = client.fetch_assignment_emails(["homework"], after=datetime.date(2026, 10, 1), max_results=10)
    client.close()

    assert seen == {"q": '("homework") after:2026/10/01', "max": "10"}
    assert [e["id"] for e in emails] == ["m1", "m3"]
    first = emails[0]
    assert first["subject"] == "Subject m1"
    assert first["from"] == "prof@school.edu"
    assert first["body"] == "body of m1"
    assert first["date"].date() == datetime.date(2026, 10, 5)


def test_gmail_search_error_raises():
    client = _gmail(lambda request: httpx.Response(401, json={}))
    with pytest.raises(GmailError, match="401"):
        client.search("anything")


def test_gmail_search_no_messages():
    client = _gmail(lambda request: httpx.Response(200, json={"resultSizeEstimate": 0}))
    assert client.search("anything") == []
    assert client.fetch_messages([]) == []


# -------------------------------
# AI extraction
# -------------------------------

def _fake_openai(contents):
    calls = []

    def create(**kwargs):
        calls.append(kwargs)
        content = contents.pop(0)
        if isinstance(content, Exception):
            raise content
        return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=content))])

    client = SimpleNamespace(chat=SimpleNamespace(completions=SimpleNamespace(create=create)))
    return client, calls


EMAIL = {
    "id": "m1",
    "subject": "MATH 221 homework",
    "from": "prof@school.edu",
    "date": datetime.datetime(2026, 10, 5),
    "body": "Problem Set 3 is due October 12.",
}


def test_extractor_requires_key():
    with pytest.raises(ValueError, match="OpenAI API key"):
        AssignmentExtractor()


def test_extract_from_email_parses_response():
    payload = {
        "assignments": [
            {
                "title": "Problem Set 3",
                "description": "Chapter 4",
                "dueDate": "2026-10-12",
                "courseName": "MATH 221",
                "assignmentType": "problem_set",
                "points": 20,
                "confidence": 0.92,
            },
            {"title": "", "dueDate": "someday", "confidence": 7},
        ]
    }
    client, calls = _fake_openai([json.dumps(payload)])
    extractor = AssignmentExtractor(client=client, model="test-model")

    out = extractor.extract_from_email(EMAIL, COURSES)

    assert calls[0]["model"] == "test-model"
    assert calls[0]["response_format"] == {"type": "json_object"}
    user_prompt = calls[0]["messages"][1]["content"]
    assert "Linear Algebra (MATH 221)" in user_prompt
    assert "Ancient History" not in user_prompt
    assert "Date: 2026-10-05" in user_prompt

    assert out[0]["title"] == "Problem Set 3"
    assert out[0]["due_date"] == "2026-10-12"
    assert out[0]["course_name"] == "MATH 221"
    assert out[0]["confidence"] == pytest.approx(0.92)
    assert out[0]["source_email_id"] == "m1"
    assert out[0]["source_email_subject"] == "MATH 221 homework"

    assert out[1]["title"] == "Untitled Assignment"
    assert out[1]["due_date"] is None
    assert out[1]["confidence"] == 1.0


@pytest.mark.parametrize("content", ["not json", "", openai.OpenAIError("rate limited")])
def test_extract_from_email_failures_return_empty(content):
    client, _ = _fake_openai([content])
    assert AssignmentExtractor(client=client).extract_from_email(EMAIL, COURSES) == []


def test_extract_from_emails_flattens():
    a = json.dumps({"assignments": [{"title": "A", "confidence": 0.8}]})
    b = json.dumps({"assignments": [{"title": "B", "confidence": 0.8}, {"title": "C", "confidence": 0.8}]})
    client, _ = _fake_openai([a, b])
    extractor = AssignmentExtractor(client=client, max_workers=1)

    out = extractor.extract_from_emails([EMAIL, {**EMAIL, "id": "m2"}], COURSES)
    assert sorted(x["title"] for x in out) == ["A", "B", "C"]


@pytest.mark.parametrize("value,expected", [
    ("2026-10-12", "2026-10-12"),
    ("October 12, 2026", "2026-10-12"),
    (None, None),
    ("", None),
    ("not a date", None),
])
def test_format_due_date(value, expected):
    assert format_due_date(value) == expected


# -------------------------------
# Course matching + review
# -------------------------------

@pytest.mark.parametrize("name,expected", [
    ("linear algebra", "c1"),
    ("MATH 221", "c1"),
    ("chem 210 lab", "c2"),
    ("Organic", "c2"),
    ("Ancient History", None),
    ("Physics", None),
    (None, None),
])
def test_identify_course(name, expected):
    match = identify_course({"course_name": name}, COURSES)
    assert (match["course_id"] if match else None) == expected


def test_prepare_importable_preselects_confident_matches():
    extracted = [
        {"title": "PS 3", "course_name": "MATH 221", "confidence": 0.9},
        {"title": "Maybe", "course_name": "Physics", "confidence": 0.4},
        {"title": "Edge", "course_name": "Organic Chemistry", "confidence": 0.5},
    ]
    out = prepare_importable(extracted, COURSES)

    assert [x["course_id"] for x in out] == ["c1", None, "c2"]
    assert [x["selected"] for x in out] == [True, False, True]
    assert all(x["group_id"] is None for x in out)
    assert out[0]["title"] == "PS 3"


@pytest.mark.parametrize("content", [
    json.dumps({"assignments": 1}),
    json.dumps({"assignments": True}),
    json.dumps({"assignments": "HW 1"}),
    json.dumps(["not", "an", "object"]),
])
def test_extract_from_email_unexpected_shape_returns_empty(content):
    client, _ = _fake_openai([content])
    assert AssignmentExtractor(client=client).extract_from_email(EMAIL, COURSES) == []


def test_extract_from_emails_bad_reply_keeps_rest_of_batch():
    good = json.dumps({"assignments": [{"title": "HW 1"}]})
    bad = json.dumps({"assignments": 1})
    client, _ = _fake_openai([good, bad])
    extractor = AssignmentExtractor(client=client, max_workers=1)

    out = extractor.extract_from_emails([EMAIL, {**EMAIL, "id": "m2"}], COURSES)
    assert [x["title"] for x in out] == ["HW 1"]


@pytest.mark.parametrize("body", [[], "just text", 42])
def test_gmail_non_object_message_is_skipped(body):
    def handler(request: httpx.Request) -> httpx.Response:
        mid = request.url.path.rsplit("/", 1)[-1]
        if mid == "m2":
            return httpx.Response(200, json=body)
        return httpx.Response(200, json=_message(mid, f"Subject {mid}"))

    client = _gmail(handler)
    assert [e["id"] for e in client.fetch_messages(["m1", "m2"])] == ["m1"]
    assert client.get_message("m2") is None
