import logging
from collections.abc import Iterable, Mapping
from typing import override

import requests
from django.conf import settings

from core.stores.circuit_breaker import CircuitBreaker, member_directory_breaker
from core.stores.exceptions import StoreUnavailableError
from core.stores.interfaces import MemberRecord

logger = logging.getLogger(__name__)

_KNOWN_ROLES: frozenset[str] = frozenset({"member", "officer", "admin", "auditor"})


def _counts_against_breaker(exc: requests.exceptions.RequestException) -> bool:
    """Only outages trip the breaker; 4xx responses are the caller's problem."""
    if isinstance(exc, requests.exceptions.HTTPError):
        return exc.response is not None and exc.response.status_code >= 500
    return isinstance(exc, (requests.exceptions.Timeout, requests.exceptions.ConnectionError))


class _DirectoryTimeoutSession(requests.Session):
    def __init__(self, default_timeout: float) -> None:
        super().__init__()
        self.default_timeout = default_timeout

    @override
    def request(self, method: str, url: str, **kwargs: object) -> requests.Response:
        if "timeout" not in kwargs or kwargs.get("timeout") is None:
            kwargs["timeout"] = self.default_timeout
        return super().request(method, url, **kwargs)


def _member_from_row(row: Mapping[str, object]) -> MemberRecord | None:
    username = str(row.get("username") or row.get("uid") or "").strip()
    if not username:
        return None
    if row.get("is_active") is False:
        return None

    role = str(row.get("role") or "member").strip().lower()
    if role not in _KNOWN_ROLES:
        role = "member"

    return MemberRecord(
        username=username,
        branch=str(row.get("branch") or "").strip(),
        role=role,
    )


def parse_member_directory_payload(payload: object) -> list[MemberRecord]:
    """Accept either a bare JSON list or ``{"members": [...]}``."""
    rows: object = payload
    if isinstance(payload, Mapping):
        rows = payload.get("members")
    if not isinstance(rows, Iterable) or isinstance(rows, (str, bytes)):
        raise StoreUnavailableError("member directory returned an unexpected payload")

    members: list[MemberRecord] = []
    seen: set[str] = set()
    for row in rows:
        if not isinstance(row, Mapping):
            continue
        member = _member_from_row(row)
        if member is None or member.username in seen:
            continue
        seen.add(member.username)
        members.append(member)
    return members


class HttpMemberDirectory:
    """Member list served by the organization's membership system over HTTP."""

    def __init__(
        self,
        *,
        url: str,
        token: str = "",
        timeout_seconds: float | None = None,
        session: requests.Session | None = None,
        breaker: CircuitBreaker | None = None,
    ) -> None:
        if not url.strip():
            raise ValueError("url is required")
        self.url = url.strip()
        self.token = token
        timeout = timeout_seconds if timeout_seconds is not None else settings.MEMBER_DIRECTORY_TIMEOUT_SECONDS
        self._session = session if session is not None else _DirectoryTimeoutSession(timeout)
        self.breaker = breaker if breaker is not None else member_directory_breaker()

    def list_members(self) -> list[MemberRecord]:
        self.breaker.check()

        headers = {"Accept": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"

        try:
            response = self._session.get(self.url, headers=headers)
            response.raise_for_status()
            payload = response.json()
        except requests.exceptions.RequestException as exc:
            if _counts_against_breaker(exc):
                self.breaker.record_failure()
            logger.warning("Member directory request failed url=%s error=%s", self.url, exc)
            raise StoreUnavailableError(f"member directory unavailable: {exc}") from exc
        except ValueError as exc:
            logger.warning("Member directory returned invalid JSON url=%s", self.url)
            raise StoreUnavailableError("member directory returned invalid JSON") from exc

        self.breaker.record_success()
        return parse_member_directory_payload(payload)


__all__ = [
    "HttpMemberDirectory",
    "parse_member_directory_payload",
]
