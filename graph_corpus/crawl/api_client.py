"""Thin Twitter REST v1.1 client with local rate-limit awareness."""
from __future__ import annotations

import json
import logging
import math
import threading
import time
from collections import deque
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Deque, Dict, List, Sequence

import requests

from ..data.models import MessageSnapshot, ProfileSnapshot, RelationshipKind, RelationshipPage
from ..errors import NetworkError, ParseError
from ..identity import ByNumericID, Identity, identity_params
from .pagination import END_CURSOR


LOGGER = logging.getLogger(__name__)

API_BASE_URL = "https://api.twitter.com/1.1"
API_BATCH_LIMIT = 100
TIMELINE_PAGE_SIZE = 200

# Requests allowed per rate-limit window (app-only auth).
ENDPOINT_QUOTAS = {
    "users/show": 900,
    "users/lookup": 300,
    "friends/ids": 15,
    "followers/ids": 15,
    "statuses/user_timeline": 1500,
}

CREATED_AT_FORMAT = "%a %b %d %H:%M:%S %z %Y"


class RateLimit:
    """Sliding-window request budget for one endpoint, on the monotonic clock."""

    def __init__(
        self,
        requests_per_window: int,
        window_seconds: float,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.requests_per_window = requests_per_window
        self.window_seconds = window_seconds
        self._clock = clock
        self.request_times: Deque[float] = deque()

    def _evict(self, now: float) -> None:
        cutoff = now - self.window_seconds
        while self.request_times and self.request_times[0] <= cutoff:
            self.request_times.popleft()

    def can_make_request(self) -> bool:
        self._evict(self._clock())
        return len(self.request_times) < self.requests_per_window

    def wait_time(self) -> int:
        """Whole seconds until a request slot frees up; 0 if one is free now."""

        now = self._clock()
        self._evict(now)
        if len(self.request_times) < self.requests_per_window:
            return 0
        return max(math.ceil(self.request_times[0] + self.window_seconds - now), 1)

    def record_request(self) -> None:
        self.request_times.append(self._clock())


@dataclass
class TwitterAPIClientConfig:
    bearer_token: str
    rate_state_path: Path = Path("data/rate_state.json")
    window_seconds: int = 15 * 60
    timeout_seconds: float = 30.0
    max_attempts: int = 3
    retry_backoff_seconds: float = 2.0


def parse_created_at(value: str) -> int:
    """Convert the API's ``created_at`` text to unix seconds."""

    try:
        return int(datetime.strptime(value, CREATED_AT_FORMAT).timestamp())
    except (TypeError, ValueError) as exc:
        raise ParseError(f"Unparseable created_at {value!r}", operation="parse_created_at") from exc


def _profile_from_payload(payload: Any, raw: bytes) -> ProfileSnapshot:
    if not isinstance(payload, dict):
        raise ParseError("Profile payload is not an object", operation="parse_profile")
    try:
        return ProfileSnapshot(
            user_id=int(payload["id"]),
            handle=str(payload["screen_name"]),
            description=payload.get("description") or "",
            protected=bool(payload.get("protected", False)),
            blob=raw,
        )
    except (KeyError, TypeError, ValueError) as exc:
        raise ParseError(
            f"Profile payload missing fields: {exc}",
            operation="parse_profile",
            details={"keys": sorted(payload.keys())},
        ) from exc


def _message_from_payload(payload: Any, user_id: int) -> MessageSnapshot:
    if not isinstance(payload, dict):
        raise ParseError("Message payload is not an object", operation="parse_message")
    try:
        message_id = int(payload["id"])
        text = payload.get("full_text") or payload.get("text") or ""
        created_at = parse_created_at(payload["created_at"])
    except (KeyError, TypeError, ValueError) as exc:
        raise ParseError(f"Message payload missing fields: {exc}", operation="parse_message") from exc
    return MessageSnapshot(
        message_id=message_id,
        created_at=created_at,
        language=payload.get("lang"),
        user_id=user_id,
        text=text,
        blob=json.dumps(payload, separators=(",", ":")).encode("utf-8"),
    )


class TwitterAPIClient:
    """Minimal wrapper around the endpoints the crawler needs.

    Safe to share between threads: rate-limit bookkeeping is guarded by a
    lock, and each call is a single GET on a shared session.
    """

    def __init__(self, config: TwitterAPIClientConfig) -> None:
        self._config = config
        self._rate_state_path = config.rate_state_path
        self._limits: Dict[str, RateLimit] = {
            endpoint: RateLimit(quota, config.window_seconds)
            for endpoint, quota in ENDPOINT_QUOTAS.items()
        }
        self._lock = threading.Lock()
        self._last_reset_ts = self._load_rate_limit_state()

        self._session = requests.Session()
        self._session.headers.update(
            {
                "Authorization": f"Bearer {config.bearer_token}",
                "User-Agent": "GraphCorpusCrawler/1.0",
            }
        )

    # ------------------------------------------------------------------
    # Rate limit persistence
    # ------------------------------------------------------------------
    def _load_rate_limit_state(self) -> int:
        """Reset timestamp saved by an earlier run's 429, or 0."""

        try:
            data = json.loads(self._rate_state_path.read_text())
        except FileNotFoundError:
            return 0
        except json.JSONDecodeError:
            LOGGER.warning("Ignoring unreadable rate-limit state at %s", self._rate_state_path)
            return 0
        return int(data.get("reset_timestamp", 0))

    def _save_rate_limit_state(self, reset_timestamp: int) -> None:
        # Concurrent 429s may report different resets; keep the latest.
        with self._lock:
            self._last_reset_ts = max(self._last_reset_ts, reset_timestamp)
            payload = {
                "reset_timestamp": self._last_reset_ts,
                "persisted_at": int(time.time()),
            }
            self._rate_state_path.parent.mkdir(parents=True, exist_ok=True)
            self._rate_state_path.write_text(json.dumps(payload, indent=2))

    def _respect_persistent_limit(self) -> None:
        with self._lock:
            reset_ts = self._last_reset_ts
        now = int(time.time())
        if reset_ts and now < reset_ts:
            wait_seconds = reset_ts - now + 5
            LOGGER.info("Waiting %s seconds for persisted rate limit reset", wait_seconds)
            time.sleep(wait_seconds)

    def _acquire_slot(self, endpoint: str) -> None:
        limiter = self._limits[endpoint]
        while True:
            with self._lock:
                wait = limiter.wait_time()
                if wait == 0:
                    limiter.record_request()
                    return
            LOGGER.info("Rate limiter sleeping %s seconds before %s", wait, endpoint)
            time.sleep(wait)

    # ------------------------------------------------------------------
    # Request plumbing
    # ------------------------------------------------------------------
    def _make_request(self, endpoint: str, params: Dict[str, str]) -> requests.Response:
        url = f"{API_BASE_URL}/{endpoint}.json"
        attempt = 0
        while True:
            attempt += 1
            self._respect_persistent_limit()
            self._acquire_slot(endpoint)

            try:
                response = self._session.get(url, params=params, timeout=self._config.timeout_seconds)
            except requests.RequestException as exc:
                if attempt < self._config.max_attempts:
                    LOGGER.warning(
                        "API request %s failed (attempt %s/%s): %s",
                        endpoint,
                        attempt,
                        self._config.max_attempts,
                        exc,
                    )
                    time.sleep(self._config.retry_backoff_seconds * attempt)
                    continue
                raise NetworkError(
                    f"API request failed: {exc}",
                    operation=endpoint,
                    details={"params": params},
                ) from exc

            if response.status_code == 200:
                return response

            if response.status_code == 429:
                reset_header = response.headers.get("x-rate-limit-reset")
                retry_after = response.headers.get("retry-after")
                if reset_header:
                    reset_ts = int(reset_header)
                    self._save_rate_limit_state(reset_ts)
                    sleep_for = max(reset_ts - int(time.time()) + 5, 60)
                elif retry_after:
                    sleep_for = int(retry_after)
                    self._save_rate_limit_state(int(time.time()) + sleep_for)
                else:
                    sleep_for = self._config.window_seconds
                LOGGER.warning("API rate-limited on %s; sleeping %s seconds", endpoint, sleep_for)
                time.sleep(sleep_for)
                attempt -= 1
                continue

            if response.status_code >= 500 and attempt < self._config.max_attempts:
                LOGGER.warning(
                    "API returned %s for %s (attempt %s/%s)",
                    response.status_code,
                    endpoint,
                    attempt,
                    self._config.max_attempts,
                )
                time.sleep(self._config.retry_backoff_seconds * attempt)
                continue

            raise NetworkError(
                f"API returned {response.status_code}: {response.text[:200]}",
                status_code=response.status_code,
                operation=endpoint,
                details={"params": params},
            )

    @staticmethod
    def _decode(response: requests.Response, endpoint: str) -> Any:
        try:
            return response.json()
        except ValueError as exc:
            raise ParseError(f"Response is not JSON: {exc}", operation=endpoint) from exc

    # ------------------------------------------------------------------
    # Public lookups
    # ------------------------------------------------------------------
    def resolve_profile(self, identity: Identity) -> ProfileSnapshot:
        response = self._make_request("users/show", identity_params(identity))
        payload = self._decode(response, "users/show")
        return _profile_from_payload(payload, response.content)

    def resolve_profiles(self, user_ids: Sequence[int]) -> List[ProfileSnapshot]:
        """Bulk lookup. Accounts the API no longer knows are simply absent."""

        if len(user_ids) > API_BATCH_LIMIT:
            raise ValueError(f"At most {API_BATCH_LIMIT} ids per lookup, got {len(user_ids)}")
        if not user_ids:
            return []
        params = {"user_id": ",".join(str(user_id) for user_id in user_ids)}
        try:
            response = self._make_request("users/lookup", params)
        except NetworkError as exc:
            # 404 means none of the requested accounts exist any more.
            if exc.status_code == 404:
                return []
            raise
        payload = self._decode(response, "users/lookup")
        if not isinstance(payload, list):
            raise ParseError("users/lookup did not return a list", operation="users/lookup")
        return [
            _profile_from_payload(item, json.dumps(item, separators=(",", ":")).encode("utf-8"))
            for item in payload
        ]

    def fetch_relationship_page(
        self, identity: Identity, kind: RelationshipKind, cursor: int
    ) -> RelationshipPage:
        if cursor == END_CURSOR:
            return RelationshipPage(ids=[], next_cursor=END_CURSOR)
        params = identity_params(identity)
        params["cursor"] = str(cursor)
        response = self._make_request(kind.endpoint, params)
        payload = self._decode(response, kind.endpoint)
        try:
            ids = [int(value) for value in payload["ids"]]
            next_cursor = int(payload["next_cursor"])
        except (KeyError, TypeError, ValueError) as exc:
            raise ParseError(
                f"Unexpected {kind.endpoint} payload: {exc}",
                operation=kind.endpoint,
                details={"params": params},
            ) from exc
        return RelationshipPage(ids=ids, next_cursor=next_cursor)

    def fetch_message_page(self, identity: Identity, max_id: int) -> List[MessageSnapshot]:
        """One timeline page, newest first, strictly older than ``max_id`` when non-zero."""

        params = identity_params(identity)
        params["trim_user"] = "true"
        params["count"] = str(TIMELINE_PAGE_SIZE)
        params["tweet_mode"] = "extended"
        if max_id != 0:
            params["max_id"] = str(max_id - 1)
        response = self._make_request("statuses/user_timeline", params)
        payload = self._decode(response, "statuses/user_timeline")
        if not isinstance(payload, list):
            raise ParseError(
                "statuses/user_timeline did not return a list",
                operation="statuses/user_timeline",
                details={"params": params},
            )
        messages = []
        for item in payload:
            owner = identity.user_id if isinstance(identity, ByNumericID) else None
            if owner is None:
                try:
                    owner = int(item["user"]["id"])
                except (KeyError, TypeError, ValueError) as exc:
                    raise ParseError(
                        "Timeline entry has no owner id", operation="statuses/user_timeline"
                    ) from exc
            messages.append(_message_from_payload(item, owner))
        return messages
