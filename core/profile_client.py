"""
HTTP client for the third-party profile API.

``fetch_profile`` never raises for API or network failures: every outcome is
returned as a FetchResult tagged with one of OK, NOT_FOUND, RATE_LIMITED or
ERROR so the retry loop can branch on the tag.
"""
import json
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

import requests

logger = logging.getLogger(__name__)

NOT_FOUND_MARKERS = ("not valid linkedin profile", "can't be accessed", "profile not found")


class FetchOutcome(Enum):
    OK = "ok"
    NOT_FOUND = "not_found"
    RATE_LIMITED = "rate_limited"
    ERROR = "error"


@dataclass
class ExternalProfile:
    """Fields of the API profile payload used downstream."""
    urn: str = ""
    username: str = ""
    first_name: str = ""
    last_name: str = ""
    headline: str = ""
    geo: Optional[Dict[str, Any]] = None
    educations: List[Dict[str, Any]] = field(default_factory=list)
    positions: List[Dict[str, Any]] = field(default_factory=list)
    skills: List[Dict[str, Any]] = field(default_factory=list)

    @classmethod
    def from_payload(cls, data: Dict[str, Any]) -> "ExternalProfile":
        return cls(
            urn=data.get("urn") or "",
            username=data.get("username") or "",
            first_name=data.get("firstName") or "",
            last_name=data.get("lastName") or "",
            headline=data.get("headline") or "",
            geo=data.get("geo") or None,
            educations=data.get("educations") or [],
            positions=data.get("fullPositions") or [],
            skills=data.get("skills") or [],
        )


@dataclass
class FetchResult:
    outcome: FetchOutcome
    profile: Optional[ExternalProfile] = None
    raw: bytes = b""
    retry_after: Optional[float] = None
    status_code: Optional[int] = None
    detail: str = ""

    @property
    def ok(self) -> bool:
        return self.outcome is FetchOutcome.OK


def parse_retry_after(value: Optional[str]) -> Optional[float]:
    """Integer-seconds Retry-After header; anything else is ignored."""
    if not value:
        return None
    try:
        seconds = int(value.strip())
    except ValueError:
        return None
    return float(seconds) if seconds > 0 else None


def parse_profile_body(body: bytes, urn: str = "") -> FetchResult:
    """Parse a 200 body that is either a {success, message, data} wrapper or a bare profile."""
    try:
        payload = json.loads(body)
    except ValueError as e:
        return FetchResult(FetchOutcome.ERROR, raw=body, status_code=200,
                           detail=f"failed to parse response as profile: {e}")

    if not isinstance(payload, dict):
        return FetchResult(FetchOutcome.ERROR, raw=body, status_code=200,
                           detail="failed to parse response as profile: not an object")

    if "success" in payload:
        message = payload.get("message") or ""
        if not payload.get("success"):
            if any(marker in message.lower() for marker in NOT_FOUND_MARKERS):
                return FetchResult(FetchOutcome.NOT_FOUND, raw=body, status_code=200,
                                   detail=f"profile not found for URN {urn}: {message}")
            return FetchResult(FetchOutcome.ERROR, raw=body, status_code=200, detail=f"API error: {message}")

        data = payload.get("data")
        if data is None:
            return FetchResult(FetchOutcome.ERROR, raw=body, status_code=200,
                               detail="API error: success=true but data is null")
        if not isinstance(data, dict):
            return FetchResult(FetchOutcome.ERROR, raw=body, status_code=200,
                               detail="failed to parse profile from data field")
        payload = data

    profile = ExternalProfile.from_payload(payload)
    if not profile.urn:
        profile.urn = urn
    return FetchResult(FetchOutcome.OK, profile=profile, raw=body, status_code=200)


class ProfileClient:
    def __init__(self, api_key: str, base_url: str, api_host: str, timeout: float = 60.0,
                 session: Optional[requests.Session] = None):
        self.api_key = api_key
        self.base_url = base_url
        self.api_host = api_host
        self.timeout = timeout
        self.session = session or requests.Session()

    @classmethod
    def from_settings(cls, settings) -> "ProfileClient":
        return cls(
            api_key=settings.api_key,
            base_url=settings.api_base_url,
            api_host=settings.api_host,
            timeout=settings.request_timeout,
        )

    def _headers(self) -> Dict[str, str]:
        return {
            "X-RapidAPI-Key": self.api_key,
            "X-RapidAPI-Host": self.api_host,
        }

    def fetch_profile(self, urn: str) -> FetchResult:
        """GET one profile by URN and classify the response."""
        start = time.time()
        logger.info("[CLIENT] GET %s username=%s (key=%s...)", self.base_url, urn, self.api_key[:4])
        try:
            resp = self.session.get(
                self.base_url,
                params={"username": urn},
                headers=self._headers(),
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            logger.error("[CLIENT] Request failed after %.1fs: %s", time.time() - start, e)
            return FetchResult(FetchOutcome.ERROR, detail=f"failed to execute request: {e}")

        body = resp.content or b""
        logger.info("[CLIENT] Response status=%s after %.1fs (%d bytes)",
                    resp.status_code, time.time() - start, len(body))

        if resp.status_code == 429:
            retry_after = parse_retry_after(resp.headers.get("Retry-After"))
            text = body.decode("utf-8", errors="replace")
            return FetchResult(
                FetchOutcome.RATE_LIMITED,
                raw=body,
                retry_after=retry_after,
                status_code=429,
                detail=f"rate limited (status=429): {text}",
            )

        if resp.status_code == 404:
            text = body.decode("utf-8", errors="replace")
            return FetchResult(FetchOutcome.NOT_FOUND, raw=body, status_code=404,
                               detail=f"profile not found for URN {urn}: {text}")

        if resp.status_code != 200:
            text = body.decode("utf-8", errors="replace")
            return FetchResult(FetchOutcome.ERROR, raw=body, status_code=resp.status_code,
                               detail=f"API returned status {resp.status_code}: {text}")

        return parse_profile_body(body, urn)
