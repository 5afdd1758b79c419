from __future__ import annotations

import logging
import re
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

import requests

"""HTTP client for the remote event API.

Two response shapes are handled:

* synchronous creation: the body carries the new event id (import summary
  `reference`, or `uid`)
* asynchronous tracker job: the body carries {id, location}, either at the top
  level or under `response`; GET <location> reports job progress and
  GET <location>/report the detailed outcome

Every request is made with a timeout. Network failures surface as
SubmissionError so the upload engine can retry them like any other failure.
"""

__all__ = [
    "EventApiClient",
    "SubmissionReceipt",
    "JobStatus",
    "SubmissionError",
    "JobPollTimeout",
    "classify_response",
    "parse_job_status",
]

logger = logging.getLogger(__name__)

DONE_STATUSES = frozenset({"COMPLETED", "SUCCESS"})
RUNNING_STATUSES = frozenset({"RUNNING", "SCHEDULED"})
_MAX_ERROR_TEXT = 500


class SubmissionError(Exception):
    """One submission attempt failed (network, non-2xx, or remote-reported error)."""

    def __init__(self, message: str, status_code: int | None = None, body: Any = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class JobPollTimeout(Exception):
    """Async job did not report completion within the poll budget."""

    def __init__(self, job_id: str | None, location: str, attempts: int) -> None:
        super().__init__(f"job {job_id or location} not confirmed after {attempts} polls")
        self.job_id = job_id
        self.location = location
        self.attempts = attempts


@dataclass(frozen=True)
class SubmissionReceipt:
    status_code: int
    entity_id: str | None = None
    job_id: str | None = None
    location: str | None = None
    body: Any = None

    @property
    def is_async(self) -> bool:
        return self.location is not None


@dataclass(frozen=True)
class JobStatus:
    state: str  # COMPLETED / RUNNING / ERROR
    messages: tuple[str, ...] = ()
    raw: Any = None

    @property
    def is_done(self) -> bool:
        return self.state == "COMPLETED"

    @property
    def is_error(self) -> bool:
        return self.state == "ERROR"


def _import_summaries(body: dict[str, Any]) -> list[dict[str, Any]]:
    inner = body.get("response")
    if isinstance(inner, dict) and isinstance(inner.get("importSummaries"), list):
        return inner["importSummaries"]
    if isinstance(body.get("importSummaries"), list):
        return body["importSummaries"]
    return []


def _describe_summary(summary: dict[str, Any]) -> str:
    parts = [str(summary.get("description") or "import summary reported ERROR")]
    for conflict in summary.get("conflicts") or []:
        if isinstance(conflict, dict):
            parts.append(f"{conflict.get('object', '')}: {conflict.get('value', '')}".strip(": "))
    return "; ".join(parts)


def classify_response(status_code: int, body: Any, text: str = "") -> SubmissionReceipt:
    """Turn an HTTP response into a receipt, or raise SubmissionError."""
    if not 200 <= status_code < 300:
        raise SubmissionError(f"HTTP {status_code}: {text[:_MAX_ERROR_TEXT]}", status_code=status_code, body=body)
    if not isinstance(body, dict):
        return SubmissionReceipt(status_code=status_code, body=body)

    http_code = body.get("httpStatusCode")
    if body.get("status") == "ERROR" or (isinstance(http_code, int) and http_code >= 400):
        raise SubmissionError(
            str(body.get("message") or "remote system reported an error"), status_code=status_code, body=body
        )

    summaries = _import_summaries(body)
    for summary in summaries:
        if isinstance(summary, dict) and summary.get("status") == "ERROR":
            raise SubmissionError(_describe_summary(summary), status_code=status_code, body=body)

    inner = body.get("response") if isinstance(body.get("response"), dict) else {}
    location = inner.get("location") or body.get("location")
    if location:
        job_id = inner.get("id") or body.get("id")
        return SubmissionReceipt(status_code=status_code, job_id=job_id, location=location, body=body)

    entity_id = None
    if summaries and isinstance(summaries[0], dict):
        entity_id = summaries[0].get("reference")
    entity_id = entity_id or inner.get("uid") or body.get("uid") or inner.get("id") or body.get("id")
    return SubmissionReceipt(status_code=status_code, entity_id=entity_id, body=body)


def parse_job_status(body: Any) -> JobStatus:
    # 一覧形式 (ジョブ通知の配列) とオブジェクト形式の両方を受け付ける
    if isinstance(body, list):
        messages = tuple(str(e.get("message", "")) for e in body if isinstance(e, dict))
        if any(isinstance(e, dict) and e.get("level") == "ERROR" for e in body):
            return JobStatus(state="ERROR", messages=messages, raw=body)
        if any(isinstance(e, dict) and e.get("completed") is True for e in body):
            return JobStatus(state="COMPLETED", messages=messages, raw=body)
        return JobStatus(state="RUNNING", messages=messages, raw=body)
    if isinstance(body, dict):
        status = str(body.get("status", "")).upper()
        if body.get("completed") is True or status in DONE_STATUSES:
            return JobStatus(state="COMPLETED", raw=body)
        if status == "ERROR":
            return JobStatus(state="ERROR", messages=(str(body.get("message", "")),), raw=body)
    return JobStatus(state="RUNNING", raw=body)


class EventApiClient:
    def __init__(
        self,
        endpoint_url: str,
        headers: dict[str, str] | None = None,
        timeout: float = 30.0,
        session: requests.Session | None = None,
        session_id: str | None = None,
        auth: tuple[str, str] | None = None,
    ) -> None:
        self.endpoint_url = endpoint_url
        self.timeout = timeout
        self.session = session if session is not None else requests.Session()
        self.session.headers.update({
            "Content-Type": "application/json",
            "Accept": "application/json",
        })
        if headers:
            self.session.headers.update(headers)
        if session_id:
            self.session.cookies.set("JSESSIONID", session_id)
        if auth:
            self.session.auth = auth

    @staticmethod
    def _body(response: requests.Response) -> Any:
        try:
            return response.json()
        except ValueError:
            return None

    def submit(self, payload: dict[str, Any]) -> SubmissionReceipt:
        try:
            response = self.session.post(self.endpoint_url, json=payload, timeout=self.timeout)
        except requests.RequestException as e:
            raise SubmissionError(f"network error: {e}") from e
        return classify_response(response.status_code, self._body(response), response.text)

    def get_job_status(self, location: str) -> JobStatus:
        try:
            response = self.session.get(location, timeout=self.timeout)
        except requests.RequestException as e:
            raise SubmissionError(f"job status request failed: {e}") from e
        if not 200 <= response.status_code < 300:
            raise SubmissionError(f"job status HTTP {response.status_code}", status_code=response.status_code)
        return parse_job_status(self._body(response))

    def get_job_report(self, location: str) -> Any:
        url = location.rstrip("/") + "/report"
        try:
            response = self.session.get(url, timeout=self.timeout)
        except requests.RequestException as e:
            raise SubmissionError(f"job report request failed: {e}") from e
        return self._body(response)

    def wait_for_job(
        self,
        location: str,
        job_id: str | None = None,
        attempts: int = 10,
        interval: float = 1.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> JobStatus:
        """Poll an async job until it completes.

        Raises SubmissionError when the job reports an ERROR entry (the job
        report is attached as the error body) and JobPollTimeout when the poll
        budget runs out. A failed poll request only uses up one attempt.
        """
        for attempt in range(1, attempts + 1):
            try:
                status = self.get_job_status(location)
            except SubmissionError as e:
                logger.debug("job %s poll %d/%d failed: %s", job_id, attempt, attempts, e)
            else:
                if status.is_done:
                    return status
                if status.is_error:
                    report = self.get_job_report(location)
                    detail = "; ".join(m for m in status.messages if m) or "job reported ERROR"
                    raise SubmissionError(f"job {job_id or location} failed: {detail}", body=report)
            if attempt < attempts:
                sleep(interval)
        raise JobPollTimeout(job_id, location, attempts)

    # --- read-back ---------------------------------------------------------
    def read_back_candidates(self, entity_id: str) -> list[str]:
        m = re.match(r"^(.*?/api)(?:/(\d+))?(?:/|$)", self.endpoint_url)
        if not m:
            return []
        api_root, version = m.group(1), m.group(2)
        candidates = [
            f"{api_root}/tracker/events/{entity_id}",
            f"{api_root}/events/{entity_id}",
        ]
        if version:
            candidates.append(f"{api_root}/{version}/tracker/events/{entity_id}")
        return candidates

    def read_back(self, entity_id: str) -> Any:
        """Fetch a created event for verification. Returns None when no candidate URL answers."""
        for url in self.read_back_candidates(entity_id):
            try:
                response = self.session.get(url, timeout=self.timeout)
            except requests.RequestException as e:
                logger.debug("read-back %s failed: %s", url, e)
                continue
            if 200 <= response.status_code < 300:
                return self._body(response)
            logger.debug("read-back %s -> HTTP %s", url, response.status_code)
        return None

    def close(self) -> None:
        self.session.close()
