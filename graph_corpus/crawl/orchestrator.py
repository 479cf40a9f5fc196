"""Crawl orchestrator: seed, resolve, gate and expand the social graph."""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, Iterable, List, Optional, Sequence, Tuple

from ..config import CrawlConfig
from ..data.corpus_store import CorpusStore
from ..data.models import MessageSnapshot, ProfileSnapshot, RelationshipKind, StoredProfile
from ..errors import CrawlError, NetworkError, ParseError
from ..identity import ByHandle, ByNumericID, Identity, normalize_handle
from .api_client import API_BATCH_LIMIT, TwitterAPIClient
from .pagination import collect_messages, collect_relationship_ids
from .policy import AcceptancePolicy
from .scheduler import CrawlScheduler


LOGGER = logging.getLogger(__name__)


@dataclass
class PassStats:
    """Counters reported at the end of each pass."""

    name: str
    profiles_visited: int = 0
    api_profiles: int = 0
    rows_written: int = 0
    ids_enqueued: int = 0
    failures: int = 0
    started_at: float = 0.0

    def log(self) -> None:
        LOGGER.info(
            "PASS %s: visited=%s fetched_profiles=%s rows=%s enqueued=%s failures=%s (%.1fs)",
            self.name,
            self.profiles_visited,
            self.api_profiles,
            self.rows_written,
            self.ids_enqueued,
            self.failures,
            time.monotonic() - self.started_at,
        )


class CrawlOrchestrator:
    """Drives the breadth-first expansion of the corpus.

    All state lives in the store, so every operation can be interrupted and
    re-run: seeds and queued IDs stay unprocessed until their profile is
    stored, and watermarks only move forward.
    """

    def __init__(
        self,
        store: CorpusStore,
        api: TwitterAPIClient,
        policy: AcceptancePolicy,
        config: Optional[CrawlConfig] = None,
        *,
        scheduler_factory: Optional[Callable[[], CrawlScheduler]] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self._api = api
        self._policy = policy
        self._config = config or CrawlConfig()
        self._scheduler_factory = scheduler_factory
        self._clock = clock
        self._scheduler: Optional[CrawlScheduler] = None

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _gate(self, profile: ProfileSnapshot) -> bool:
        """Acceptance for a freshly fetched profile; protected ones are never accepted."""

        if profile.protected:
            LOGGER.debug("Profile %s (@%s) is protected; not expanding", profile.user_id, profile.handle)
            return False
        accepted = bool(self._policy(profile.blob))
        LOGGER.debug("Policy %s @%s", "accepted" if accepted else "rejected", profile.handle)
        return accepted

    def _handle_failure(self, stats: PassStats, exc: CrawlError, subject: str) -> None:
        stats.failures += 1
        if self._config.abort_on_error:
            raise exc
        LOGGER.warning("%s failed for %s, continuing: %s", stats.name, subject, exc.describe())

    def _frontier(self) -> Iterable[StoredProfile]:
        for user_id in self._store.accepted_ids():
            profile = self._store.get_profile(ByNumericID(user_id))
            if profile is not None:
                yield profile

    # ------------------------------------------------------------------
    # Seeding and resolution
    # ------------------------------------------------------------------
    def seed(self, handles: Iterable[str]) -> None:
        cleaned = [normalize_handle(handle) for handle in handles]
        cleaned = [handle for handle in cleaned if handle]
        if not cleaned:
            return
        self._store.enqueue_handles(cleaned)
        self._store.flush()
        LOGGER.info("SEED queued %s handle(s)", len(cleaned))

    def resolve_profile(self, identity: Identity) -> ProfileSnapshot:
        """Fetch ``identity``, store it and record the acceptance decision."""

        profile = self._api.resolve_profile(identity)
        self._store.record_resolved_profile(profile, self._gate(profile))
        return profile

    def resolve_seeds(self) -> int:
        """Resolve every unprocessed seed handle; returns how many needed an API call."""

        stats = PassStats("resolve_seeds", started_at=time.monotonic())
        for handle in self._store.unprocessed_handles():
            stats.profiles_visited += 1
            if self._store.get_profile(ByHandle(handle)) is None:
                try:
                    profile = self.resolve_profile(ByHandle(handle))
                except (NetworkError, ParseError) as exc:
                    self._handle_failure(stats, exc, f"@{handle}")
                    continue
                stats.api_profiles += 1
                stats.rows_written += 1
                LOGGER.info("SEED resolved @%s -> %s", handle, profile.user_id)
            else:
                LOGGER.debug("SEED @%s already stored", handle)
            self._store.mark_handle_processed(handle)
        self._store.flush()
        stats.log()
        return stats.api_profiles

    def drain_pending_ids(self) -> int:
        """Resolve queued numeric IDs in bulk batches; returns profiles fetched."""

        stats = PassStats("drain_pending_ids", started_at=time.monotonic())
        known: List[int] = []
        unknown: List[int] = []
        for user_id in self._store.unprocessed_ids():
            if self._store.get_profile(ByNumericID(user_id)) is None:
                unknown.append(user_id)
            else:
                known.append(user_id)
        if known:
            self._store.mark_ids_processed(known)
        stats.profiles_visited = len(known) + len(unknown)

        first_error: Optional[CrawlError] = None
        for start in range(0, len(unknown), API_BATCH_LIMIT):
            batch = unknown[start:start + API_BATCH_LIMIT]
            try:
                profiles = self._api.resolve_profiles(batch)
            except (NetworkError, ParseError) as exc:
                # Leave the batch unprocessed so a later iteration retries it.
                stats.failures += 1
                LOGGER.error("Bulk lookup of %s ids starting at %s failed: %s", len(batch), batch[0], exc.describe())
                if first_error is None:
                    first_error = exc
                continue
            resolved: List[Tuple[ProfileSnapshot, bool]] = [
                (profile, self._gate(profile)) for profile in profiles
            ]
            self._store.record_resolved_profiles(resolved)
            self._store.mark_ids_processed(batch)
            stats.api_profiles += len(profiles)
            stats.rows_written += len(profiles)
            if len(profiles) < len(batch):
                LOGGER.debug("%s of %s ids in batch were not returned", len(batch) - len(profiles), len(batch))

        self._store.flush()
        stats.log()
        if first_error is not None and self._config.abort_on_error:
            raise first_error
        return stats.api_profiles

    # ------------------------------------------------------------------
    # Expansion
    # ------------------------------------------------------------------
    def fetch_relationship_ids(self, identity: Identity, kind: RelationshipKind, watermark: int) -> List[int]:
        """IDs on ``identity``'s ``kind`` list newer than ``watermark``, in feed order."""

        return collect_relationship_ids(
            lambda cursor: self._api.fetch_relationship_page(identity, kind, cursor), watermark
        )

    def fetch_messages(self, identity: Identity, watermark: int) -> List[MessageSnapshot]:
        """Messages by ``identity`` newer than ``watermark``, newest first."""

        return collect_messages(lambda max_id: self._api.fetch_message_page(identity, max_id), watermark)

    def collect_relationships(self, profile: StoredProfile, kind: RelationshipKind) -> List[int]:
        """Fetch and record one profile's new ``kind`` edges; returns the new IDs."""

        watermark = profile.watermark(kind)
        ids = self.fetch_relationship_ids(ByNumericID(profile.user_id), kind, watermark)
        if not ids:
            return ids
        self._store.store_edges(kind, profile.user_id, ids)
        self._store.enqueue_ids(ids)
        # The feed lists the most recent relationship first.
        self._store.advance_relationship_watermark(kind, profile.user_id, ids[0])
        return ids

    def expand_relationships(self, kind: RelationshipKind) -> int:
        """Run relationship expansion over the frontier; returns edges collected."""

        kind = RelationshipKind(kind)
        stats = PassStats(f"expand_{kind.value}", started_at=time.monotonic())
        for profile in self._frontier():
            stats.profiles_visited += 1
            try:
                ids = self.collect_relationships(profile, kind)
            except (NetworkError, ParseError) as exc:
                self._handle_failure(stats, exc, f"{profile.user_id} ({kind.value})")
                continue
            stats.rows_written += len(ids)
            stats.ids_enqueued += len(ids)
        self._store.flush()
        stats.log()
        return stats.rows_written

    def collect_messages(self, profile: StoredProfile) -> List[MessageSnapshot]:
        """Fetch and store one profile's new messages; returns them newest first."""

        messages = self.fetch_messages(ByNumericID(profile.user_id), profile.latest_message_id)
        if not messages:
            return messages
        self._store.store_messages(messages)
        newest = max(message.message_id for message in messages)
        self._store.advance_message_watermark(profile.user_id, newest, int(self._clock()))
        return messages

    def expand_messages(self) -> int:
        """Run timeline expansion over the frontier; returns messages collected."""

        stats = PassStats("expand_messages", started_at=time.monotonic())
        for profile in self._frontier():
            stats.profiles_visited += 1
            try:
                messages = self.collect_messages(profile)
            except (NetworkError, ParseError) as exc:
                self._handle_failure(stats, exc, f"{profile.user_id} (messages)")
                continue
            stats.rows_written += len(messages)
        self._store.flush()
        stats.log()
        return stats.rows_written

    # ------------------------------------------------------------------
    # Long-running service
    # ------------------------------------------------------------------
    def build_scheduler(self) -> CrawlScheduler:
        if self._scheduler_factory is not None:
            scheduler = self._scheduler_factory()
        else:
            scheduler = CrawlScheduler(
                self._config.pass_period_seconds,
                health_check=self._store.check_writer,
            )
        scheduler.add("drain_pending_ids", self.drain_pending_ids)
        scheduler.add("expand_following", lambda: self.expand_relationships(RelationshipKind.FOLLOWING))
        scheduler.add("expand_followers", lambda: self.expand_relationships(RelationshipKind.FOLLOWERS))
        scheduler.add("expand_messages", self.expand_messages)
        return scheduler

    def run(self) -> None:
        """Resolve seeds once, then repeat the four expansion passes until one fails.

        Blocks for the life of the crawl. A pass failure is re-raised here.
        """

        LOGGER.info("Starting crawl of corpus '%s'", self._config.corpus_name)
        self.resolve_seeds()
        self._scheduler = self.build_scheduler()
        self._scheduler.start()
        self._scheduler.wait()

    def stop(self) -> None:
        """Stop the scheduler after the passes' current iterations."""

        if self._scheduler is not None:
            self._scheduler.stop()


def seed_handles_from_lines(lines: Sequence[str]) -> List[str]:
    """Parse a seed file: one handle per line, blank lines and '#' comments ignored."""

    handles = []
    for line in lines:
        text = line.split("#", 1)[0].strip()
        if text:
            handles.append(normalize_handle(text))
    return handles
