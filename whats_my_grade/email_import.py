import base64
import datetime
import json
import logging
from concurrent.futures import ThreadPoolExecutor
from email.utils import parsedate_to_datetime
from typing import Any, Dict, Iterable, List, Optional

import httpx
import openai
import pandas as pd
from bs4 import BeautifulSoup

from whats_my_grade.records import AUTO_SELECT_CONFIDENCE

logger = logging.getLogger(__name__)

GMAIL_API_BASE = "https://www.googleapis.com/gmail/v1/users/me"

MAX_BODY_CHARS = 3000

SYSTEM_PROMPT = """You are an expert at extracting course assignment information from emails.

Your task is to analyze emails and identify any course assignments, homework, exams, quizzes, projects, or other graded work.

Return your response as a JSON object with this exact structure:
{
  "assignments": [
    {
      "title": "Assignment title",
      "description": "Brief description or instructions",
      "dueDate": "YYYY-MM-DD or null",
      "courseName": "Course name or code",
      "assignmentType": "homework|exam|quiz|project|problem_set|other",
      "points": number or null,
      "confidence": 0.0 to 1.0
    }
  ]
}

Guidelines:
- Only extract actual assignments, not general course announcements
- Be conservative - if you're not sure it's an assignment, set confidence < 0.5
- Try to match course names to the existing courses provided
- Parse dates carefully - look for phrases like "due on", "deadline", "submit by"
- If multiple assignments are in one email, extract all of them
- If no assignments found, return {"assignments": []}
"""


class GmailError(Exception):
    pass


# -------------------------------
# Query + body parsing
# -------------------------------

def build_search_query(
    keywords: Iterable[str],
    after: Optional[datetime.date] = None,
    default_days: int = 30,
    today: Optional[datetime.date] = None,
) -> str:
    quoted = " OR ".join(f'"{k}"' for k in keywords)
    if after is None:
        after = (today or datetime.date.today()) - datetime.timedelta(days=default_days)
    if isinstance(after, datetime.datetime):
        after = after.date()
    return f"({quoted}) after:{after.strftime('%Y/%m/%d')}"


def _decode_base64url(data: str) -> str:
    try:
        padded = data + "=" * (-len(data) % 4)
        return base64.urlsafe_b64decode(padded.encode("ascii")).decode("utf-8")
    except (ValueError, UnicodeError) as e:
        logger.warning("Failed to decode message body: %s", e)
        return ""


def _strip_html(html: str) -> str:
    return BeautifulSoup(html, "html.parser").get_text(" ", strip=True)


def parse_email_body(payload: Dict[str, Any]) -> str:
    body_data = (payload.get("body") or {}).get("data")
    if body_data:
        return _decode_base64url(body_data)

    body = ""
    for part in payload.get("parts") or []:
        data = (part.get("body") or {}).get("data")
        mime = part.get("mimeType")
        if mime == "text/plain" and data:
            body += _decode_base64url(data)
        elif mime == "text/html" and data and not body:
            # HTML only when there is no plain text yet
            body = _strip_html(_decode_base64url(data))
        elif part.get("parts"):
            body += parse_email_body(part)
    return body


def _header(headers: List[Dict[str, Any]], name: str) -> str:
    for h in headers or []:
        if h.get("name") == name:
            return str(h.get("value") or "")
    return ""


def _parse_date_header(value: str) -> Optional[datetime.datetime]:
    if not value:
        return None
    try:
        return parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None


# -------------------------------
# Gmail
# -------------------------------

class GmailClient:
    def __init__(self, access_token: str, http_client: Optional[httpx.Client] = None, max_workers: int = 8):
        if not access_token:
            raise GmailError("Not authenticated with Gmail")
        self.max_workers = max(1, int(max_workers))
        self.http = http_client or httpx.Client(timeout=30.0)
        self.headers = {"Authorization": f"Bearer {access_token}"}

    def search(self, query: str, max_results: Optional[int] = None) -> List[str]:
        params: Dict[str, Any] = {"q": query}
        if max_results:
            params["maxResults"] = int(max_results)

        logger.debug("Gmail search query: %s", query)
        try:
            r = self.http.get(f"{GMAIL_API_BASE}/messages", params=params, headers=self.headers)
        except httpx.HTTPError as e:
            raise GmailError(f"Gmail API request failed: {e}") from e
        if r.status_code >= 400:
            raise GmailError(f"Gmail API error: {r.status_code} {r.reason_phrase}")

        ids = [m["id"] for m in (r.json().get("messages") or []) if m.get("id")]
        logger.debug("Found %d potential assignment emails", len(ids))
        return ids

    def get_message(self, message_id: str) -> Optional[Dict[str, Any]]:
        try:
            r = self.http.get(
                f"{GMAIL_API_BASE}/messages/{message_id}",
                params={"format": "full"},
                headers=self.headers,
            )
            r.raise_for_status()
            data = r.json()
            if not isinstance(data, dict):
                raise ValueError(f"unexpected message body: {type(data).__name__}")

            payload = data.get("payload") or {}
            headers = payload.get("headers") or []
            return {
                "id": message_id,
                "subject": _header(headers, "Subject"),
                "from": _header(headers, "From"),
                "date": _parse_date_header(_header(headers, "Date")),
                "body": parse_email_body(payload),
                "snippet": data.get("snippet") or "",
            }
        except (httpx.HTTPError, ValueError, TypeError, AttributeError) as e:
            logger.warning("Failed to fetch email %s: %s", message_id, e)
            return None

    def fetch_messages(self, message_ids: Iterable[str]) -> List[Dict[str, Any]]:
        message_ids = list(message_ids)
        if not message_ids:
            return []
        with ThreadPoolExecutor(max_workers=min(self.max_workers, len(message_ids))) as pool:
            messages = list(pool.map(self.get_message, message_ids))
        return [m for m in messages if m is not None]

    def fetch_assignment_emails(
        self,
        keywords: Iterable[str],
        after: Optional[datetime.date] = None,
        max_results: int = 50,
        default_days: int = 30,
    ) -> List[Dict[str, Any]]:
        query = build_search_query(keywords, after=after, default_days=default_days)
        return self.fetch_messages(self.search(query, max_results=max_results))

    def close(self) -> None:
        self.http.close()


# -------------------------------
# AI extraction
# -------------------------------

def format_due_date(value: Any) -> Optional[str]:
    if value in (None, ""):
        return None
    ts = pd.to_datetime(value, errors="coerce")
    if pd.isna(ts):
        return None
    return ts.date().isoformat()


def _clamp_confidence(x: Any) -> float:
    try:
        value = float(x)
    except (TypeError, ValueError):
        return AUTO_SELECT_CONFIDENCE
    return max(0.0, min(1.0, value))


def _course_context(courses: Iterable[Dict[str, Any]]) -> str:
    labels = []
    for c in courses or []:
        if c.get("deleted"):
            continue
        name = str(c.get("name", "")).strip()
        code = str(c.get("code", "")).strip()
        labels.append(f"{name} ({code})" if code else name)
    return ", ".join(labels)


def build_extraction_prompt(email: Dict[str, Any], course_context: str) -> str:
    body = str(email.get("body") or "")
    truncated = body[:MAX_BODY_CHARS] + (" ..." if len(body) > MAX_BODY_CHARS else "")
    date = email.get("date")
    date_str = date.strftime("%Y-%m-%d") if isinstance(date, (datetime.date, datetime.datetime)) else ""

    return f"""
Analyze this email and extract any course assignments mentioned.

EMAIL DETAILS:
From: {email.get("from", "")}
Subject: {email.get("subject", "")}
Date: {date_str}

EMAIL BODY:
{truncated}

EXISTING COURSES:
{course_context or "None"}

Extract all assignments mentioned in this email. For each assignment, identify:
1. Title/name of the assignment
2. Description or instructions (if mentioned)
3. Due date (in YYYY-MM-DD format if mentioned)
4. Course name (match to existing courses if possible)
5. Assignment type (homework, exam, quiz, project, problem set, etc.)
6. Points or grade weight (if mentioned)
7. Your confidence level (0.0 to 1.0) that this is actually an assignment

If no assignments are found, return an empty assignments array.
""".strip()


class AssignmentExtractor:
    def __init__(
        self,
        client: Any = None,
        api_key: str = "",
        model: str = "gpt-4o-mini",
        temperature: float = 0.3,
        max_tokens: int = 1000,
        max_workers: int = 4,
    ):
        if client is None:
            if not api_key:
                raise ValueError("OpenAI API key not configured")
            client = openai.OpenAI(api_key=api_key)
        self.client = client
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.max_workers = max(1, int(max_workers))

    def _parse_response(self, content: str, email: Dict[str, Any]) -> List[Dict[str, Any]]:
        parsed = json.loads(content)
        raw = parsed.get("assignments") if isinstance(parsed, dict) else None
        if not isinstance(raw, list):
            raw = []

        out: List[Dict[str, Any]] = []
        for a in raw:
            if not isinstance(a, dict):
                continue
            out.append({
                "title": str(a.get("title") or "Untitled Assignment").strip(),
                "description": a.get("description"),
                "due_date": format_due_date(a.get("dueDate")),
                "course_name": a.get("courseName"),
                "assignment_type": a.get("assignmentType"),
                "points": a.get("points"),
                "confidence": _clamp_confidence(a.get("confidence", AUTO_SELECT_CONFIDENCE)),
                "source_email_id": email.get("id"),
                "source_email_subject": email.get("subject", ""),
            })
        return out

    def extract_from_email(self, email: Dict[str, Any], courses: Iterable[Dict[str, Any]]) -> List[Dict[str, Any]]:
        try:
            logger.debug("Sending email to AI for extraction: %s", email.get("subject"))
            response = self.client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": SYSTEM_PROMPT},
                    {"role": "user", "content": build_extraction_prompt(email, _course_context(courses))},
                ],
                temperature=self.temperature,
                max_tokens=self.max_tokens,
                response_format={"type": "json_object"},
            )
            content = response.choices[0].message.content if response.choices else None
            if not content:
                raise ValueError("No response from AI")
            assignments = self._parse_response(content, email)
        except (openai.OpenAIError, ValueError, TypeError, AttributeError, IndexError) as e:
            logger.warning("Failed to extract assignments from email %s: %s", email.get("id"), e)
            return []

        logger.debug("AI extraction result for %s: %d item(s)", email.get("id"), len(assignments))
        return assignments

    def extract_from_emails(
        self,
        emails: Iterable[Dict[str, Any]],
        courses: Iterable[Dict[str, Any]],
    ) -> List[Dict[str, Any]]:
        emails = list(emails)
        courses = list(courses or [])
        if not emails:
            return []
        with ThreadPoolExecutor(max_workers=min(self.max_workers, len(emails))) as pool:
            results = list(pool.map(lambda e: self.extract_from_email(e, courses), emails))
        return [a for batch in results for a in batch]


# -------------------------------
# Course matching + review
# -------------------------------

def _norm(x: Any) -> str:
    return " ".join(str(x or "").lower().split())


def identify_course(extracted: Dict[str, Any], courses: Iterable[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    wanted = _norm(extracted.get("course_name"))
    if not wanted:
        return None

    candidates = [c for c in (courses or []) if not c.get("deleted")]

    def _labels(c: Dict[str, Any]) -> List[str]:
        return [x for x in (_norm(c.get("name")), _norm(c.get("code"))) if x]

    for c in candidates:
        if wanted in _labels(c):
            return c

    for c in candidates:
        for label in _labels(c):
            if label in wanted or wanted in label:
                return c

    return None


def prepare_importable(extracted: Iterable[Dict[str, Any]], courses: Iterable[Dict[str, Any]]) -> List[Dict[str, Any]]:
    courses = list(courses or [])
    out: List[Dict[str, Any]] = []
    for a in extracted or []:
        match = identify_course(a, courses)
        out.append({
            **a,
            "course_id": match.get("course_id") if match else None,
            "group_id": None,
            "selected": float(a.get("confidence", 0.0)) >= AUTO_SELECT_CONFIDENCE,
        })
    return out
