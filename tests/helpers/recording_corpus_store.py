"""Stateful CorpusStore test double for orchestrator tests."""
from __future__ import annotations

from dataclasses import replace
from typing import Dict, Iterable, List, Optional, Sequence, Set, Tuple

from graph_corpus.data.models import MessageSnapshot, ProfileSnapshot, RelationshipKind, StoredProfile
from graph_corpus.identity import ByHandle, ByNumericID, Identity


class RecordingCorpusStore:
    """Apply writes immediately in memory and record every call by name."""

    def __init__(self) -> None:
        self.profiles: Dict[int, StoredProfile] = {}
        self.messages: Dict[int, MessageSnapshot] = {}
        self.edges: Dict[RelationshipKind, Set[Tuple[int, int]]] = {kind: set() for kind in RelationshipKind}
        self.pending_handles: Dict[str, bool] = {}
        self.pending_ids: Dict[int, bool] = {}
        self.calls: List[str] = []
        self.flushes = 0

    # Writes -------------------------------------------------------------
    def store_profile(self, profile: ProfileSnapshot) -> None:
        self.calls.append("store_profile")
        self._insert_profile(profile)

    def _insert_profile(self, profile: ProfileSnapshot) -> bool:
        if profile.user_id in self.profiles:
            return True
        if any(existing.handle.lower() == profile.handle.lower() for existing in self.profiles.values()):
            return False
        self.profiles[profile.user_id] = StoredProfile(
            user_id=profile.user_id,
            handle=profile.handle,
            description=profile.description,
            last_looked_at=0,
            latest_message_id=0,
            latest_following_id=0,
            latest_follower_id=0,
            protected=profile.protected,
            processed=False,
            accepted=False,
            blob=profile.blob,
        )
        return True

    def record_resolved_profiles(self, resolved: Sequence[Tuple[ProfileSnapshot, bool]]) -> None:
        self.calls.append("record_resolved_profiles")
        for profile, accepted in resolved:
            if self._insert_profile(profile):
                self.profiles[profile.user_id] = replace(
                    self.profiles[profile.user_id], processed=True, accepted=accepted
                )

    def record_resolved_profile(self, profile: ProfileSnapshot, accepted: bool) -> None:
        self.record_resolved_profiles([(profile, accepted)])

    def mark_profile_processed(self, user_id: int, accepted: bool) -> None:
        self.calls.append("mark_profile_processed")
        if user_id in self.profiles:
            self.profiles[user_id] = replace(self.profiles[user_id], processed=True, accepted=accepted)

    def advance_message_watermark(self, user_id: int, message_id: int, looked_at: int) -> None:
        self.calls.append("advance_message_watermark")
        profile = self.profiles[user_id]
        self.profiles[user_id] = replace(
            profile,
            latest_message_id=max(profile.latest_message_id, message_id),
            last_looked_at=max(profile.last_looked_at, looked_at),
        )

    def advance_relationship_watermark(self, kind: RelationshipKind, user_id: int, value: int) -> None:
        self.calls.append(f"advance_{kind.value}_watermark")
        profile = self.profiles[user_id]
        current = getattr(profile, kind.watermark_column)
        self.profiles[user_id] = replace(profile, **{kind.watermark_column: max(current, value)})

    def store_messages(self, messages: Sequence[MessageSnapshot]) -> None:
        self.calls.append("store_messages")
        for message in messages:
            self.messages.setdefault(message.message_id, message)

    def store_edges(self, kind: RelationshipKind, user_id: int, other_ids: Iterable[int]) -> None:
        self.calls.append(f"store_{kind.value}_edges")
        for other_id in other_ids:
            self.edges[kind].add((user_id, other_id))

    def enqueue_handles(self, handles: Iterable[str]) -> None:
        self.calls.append("enqueue_handles")
        for handle in handles:
            self.pending_handles.setdefault(handle, False)

    def enqueue_ids(self, user_ids: Iterable[int]) -> None:
        self.calls.append("enqueue_ids")
        for user_id in user_ids:
            self.pending_ids.setdefault(user_id, False)

    def mark_handle_processed(self, handle: str) -> None:
        self.calls.append("mark_handle_processed")
        if handle in self.pending_handles:
            self.pending_handles[handle] = True

    def mark_ids_processed(self, user_ids: Iterable[int]) -> None:
        self.calls.append("mark_ids_processed")
        for user_id in user_ids:
            if user_id in self.pending_ids:
                self.pending_ids[user_id] = True

    def flush(self) -> None:
        self.flushes += 1

    def check_writer(self) -> None:
        return None

    # Reads --------------------------------------------------------------
    def get_profile(self, identity: Identity) -> Optional[StoredProfile]:
        if isinstance(identity, ByNumericID):
            return self.profiles.get(identity.user_id)
        if isinstance(identity, ByHandle):
            for profile in self.profiles.values():
                if profile.handle.lower() == identity.handle.lower():
                    return profile
            return None
        raise TypeError(f"identity must be ByHandle or ByNumericID, got {type(identity)!r}")

    def accepted_ids(self) -> List[int]:
        return sorted(
            user_id for user_id, profile in self.profiles.items() if profile.processed and profile.accepted
        )

    def unprocessed_handles(self) -> List[str]:
        return sorted(handle for handle, done in self.pending_handles.items() if not done)

    def unprocessed_ids(self) -> List[int]:
        return sorted(user_id for user_id, done in self.pending_ids.items() if not done)

    def processed_ids(self) -> List[int]:
        return sorted(user_id for user_id, done in self.pending_ids.items() if done)

    def writes(self, name: str) -> int:
        return sum(1 for call in self.calls if call == name)
