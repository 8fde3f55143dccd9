"""Canvas LMS connector.

All outbound HTTP calls to a Canvas instance go through this class.
API reference: https://canvas.instructure.com/doc/api/

Poll algorithm:
  1. GET /api/v1/courses?enrollment_state=active  (paged)
  2. For each course, GET /api/v1/courses/<id>/assignments?include[]=submission  (paged)
  3. Keep only actionable, outstanding work (see is_actionable_assignment)
  4. Normalise survivors to RawExternalRecord

Status mapping (terminal, aborts the whole poll):
  401 → InvalidCredentialsError, 429 → RateLimitError,
  ≥500 / timeout / transport failure → NetworkError
Any other non-2xx on a per-course fetch skips that course only.

Testability: pass a mock `session` to CanvasConnector() in tests instead of
letting it create a real requests.Session.
"""

from __future__ import annotations

import logging
from typing import Any

import requests

from assignment_sync.core.exceptions import (
    InvalidCredentialsError,
    NetworkError,
    RateLimitError,
)
from assignment_sync.integrations.base import (
    BaseConnector,
    ExternalItemDetails,
    RawExternalRecord,
    register_connector,
)
from assignment_sync.utils.helpers import parse_timestamp

logger = logging.getLogger(__name__)

# Submission modalities that have an online/electronic form.
# "none", "on_paper", "external_tool" and attendance-style items are excluded.
ONLINE_SUBMISSION_TYPES = frozenset({
    "online_upload",
    "online_text_entry",
    "online_url",
    "online_quiz",
    "media_recording",
})


class _CourseSkipped(Exception):
    """Non-terminal failure on one course listing."""

    def __init__(self, status_code: int) -> None:
        self.status_code = status_code
        super().__init__(f"HTTP {status_code}")


def is_actionable_assignment(assignment: dict) -> bool:
    """Return True if a Canvas assignment is outstanding work for the user.

    Rules, in order:
      - must be published
      - must accept at least one online submission type
      - must have a due date
      - must not be submitted yet (submission missing or workflow_state
        'unsubmitted'); overdue unsubmitted work is kept
    """
    if not assignment.get("published"):
        return False

    submission_types = assignment.get("submission_types") or []
    if not any(t in ONLINE_SUBMISSION_TYPES for t in submission_types):
        return False

    if not assignment.get("due_at"):
        return False

    submission = assignment.get("submission")
    if submission and submission.get("workflow_state") != "unsubmitted":
        return False

    return True


def to_raw_record(assignment: dict) -> RawExternalRecord | None:
    """Map a Canvas assignment payload to a RawExternalRecord.

    The description is the assignment's html_url (a link back to Canvas),
    not the HTML body. Returns None if updated_at is missing or unparseable.
    """
    modified = parse_timestamp(assignment.get("updated_at"))
    if modified is None:
        logger.warning(
            "Canvas assignment id=%s has no usable updated_at, dropping",
            assignment.get("id"),
        )
        return None
    return RawExternalRecord(
        external_id=str(assignment["id"]),
        details=ExternalItemDetails(
            name=assignment.get("name") or f"Assignment {assignment['id']}",
            description=assignment.get("html_url") or None,
            due_date=parse_timestamp(assignment.get("due_at")),
        ),
        external_modified_at=modified,
    )


@register_connector("Canvas")
class CanvasConnector(BaseConnector):
    """Canvas REST API connector (bearer-token auth).

    connection_details: {"api_token": str, "base_url": str}
    """

    required_details = ("api_token", "base_url")

    @property
    def session(self) -> requests.Session:
        """Return (or lazily create) the requests.Session."""
        if self._session is None:
            self._session = requests.Session()
        return self._session

    # ── HTTP plumbing ─────────────────────────────────────────────────────────

    @staticmethod
    def _base_url(details: dict) -> str:
        return str(details["base_url"]).strip().rstrip("/")

    @staticmethod
    def _headers(details: dict) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {details['api_token']}",
            "Accept": "application/json",
        }

    def _get(self, url: str, details: dict, params: dict | None = None) -> requests.Response:
        """Single bounded GET. Transport failures become NetworkError."""
        try:
            return self.session.get(
                url,
                headers=self._headers(details),
                params=params,
                timeout=self.timeout,
            )
        except requests.Timeout as exc:
            logger.warning("Canvas request timed out after %ss url=%s", self.timeout, url)
            raise NetworkError(f"Request timed out after {self.timeout}s") from exc
        except requests.RequestException as exc:
            logger.warning("Canvas transport error url=%s error=%s", url, str(exc)[:200])
            raise NetworkError("Network error during external API call.") from exc

    @staticmethod
    def _raise_for_terminal(resp: requests.Response, url: str) -> None:
        """Raise the terminal error for 401 / 429 / 5xx; otherwise return."""
        status = resp.status_code
        if status == 401:
            raise InvalidCredentialsError("API token expired or invalid.")
        if status == 429:
            raise RateLimitError("External API rate limit exceeded.")
        if status >= 500:
            logger.warning("Canvas server error status=%d url=%s", status, url)
            raise NetworkError(f"Canvas returned HTTP {status}")

    def _get_paged(self, url: str, details: dict, params: dict) -> list[dict]:
        """GET a listing, following Link rel="next" up to max_pages.

        Raises the terminal errors above; any other non-2xx raises
        _CourseSkipped so the caller decides whether it is skippable.
        A listing still paging after max_pages raises NetworkError.
        """
        items: list[dict] = []
        next_url: str | None = url
        next_params: dict | None = params
        pages = 0
        while next_url and pages < self.max_pages:
            resp = self._get(next_url, details, params=next_params)
            self._raise_for_terminal(resp, next_url)
            if not resp.ok:
                raise _CourseSkipped(resp.status_code)
            try:
                payload: Any = resp.json()
            except ValueError as exc:
                raise NetworkError(f"Canvas returned a non-JSON body from {next_url}") from exc
            if not isinstance(payload, list):
                raise NetworkError(f"Canvas returned an unexpected payload from {next_url}")
            items.extend(payload)
            pages += 1
            # The next link already carries the query string.
            next_url = (resp.links or {}).get("next", {}).get("url")
            next_params = None
        if next_url:
            logger.warning("Canvas listing exceeded max_pages=%d url=%s", self.max_pages, url)
            raise NetworkError(
                f"Canvas listing exceeded CONNECTOR_MAX_PAGES ({self.max_pages}) at {url}"
            )
        return items

    # ── Connector operations ──────────────────────────────────────────────────

    def validate_credentials(self, details: dict) -> bool:
        """Probe GET /api/v1/users/self.

        Returns False when Canvas rejects the token (401) or answers with any
        other client error (wrong base URL, forbidden). 429 and server-side
        failures are transient and raise NetworkError.
        """
        url = f"{self._base_url(details)}/api/v1/users/self"
        resp = self._get(url, details)
        status = resp.status_code
        if status == 401:
            return False
        if status == 429 or status >= 500:
            logger.warning("Canvas credential check inconclusive status=%d", status)
            raise NetworkError("Network error connecting to external platform.")
        return resp.ok

    def fetch_courses(self, details: dict) -> list[dict]:
        """Return the user's active-enrollment courses.

        Any failure of the course listing aborts the poll: there is nothing
        to skip to.
        """
        url = f"{self._base_url(details)}/api/v1/courses"
        params = {"enrollment_state": "active", "per_page": self.page_size}
        try:
            return self._get_paged(url, details, params)
        except _CourseSkipped as exc:
            raise NetworkError(f"Canvas course listing failed: HTTP {exc.status_code}") from exc

    def fetch_course_assignments(self, details: dict, course_id: Any) -> list[dict]:
        """Return all assignments of one course with embedded submission state."""
        url = f"{self._base_url(details)}/api/v1/courses/{course_id}/assignments"
        params = {"include[]": "submission", "per_page": self.page_size}
        return self._get_paged(url, details, params)

    def poll(self, details: dict) -> list[RawExternalRecord]:
        records: list[RawExternalRecord] = []
        courses = self.fetch_courses(details)
        skipped = 0

        for course in courses:
            course_id = course.get("id")
            try:
                assignments = self.fetch_course_assignments(details, course_id)
            except _CourseSkipped as exc:
                skipped += 1
                logger.warning(
                    "Failed to fetch assignments for course %s: HTTP %s, skipping",
                    course_id, exc.status_code,
                )
                continue

            for assignment in assignments:
                if not is_actionable_assignment(assignment):
                    continue
                record = to_raw_record(assignment)
                if record is not None:
                    records.append(record)

        logger.info(
            "Canvas poll complete courses=%d skipped=%d records=%d",
            len(courses), skipped, len(records),
        )
        return records
