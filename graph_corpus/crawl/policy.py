"""Acceptance policies: decide from a raw profile snapshot whether to expand it.

A policy is any ``Callable[[bytes], bool]``. It runs once per non-protected
profile at resolution time and its answer is persisted.
"""
from __future__ import annotations

import importlib
import json
import logging
from typing import Any, Callable, Iterable, Optional, Sequence

from ..errors import ConfigError

LOGGER = logging.getLogger(__name__)

AcceptancePolicy = Callable[[bytes], bool]


def _load_profile(blob: bytes) -> Optional[dict]:
    try:
        payload = json.loads(blob)
    except (TypeError, ValueError):
        LOGGER.warning("Profile snapshot is not valid JSON; rejecting")
        return None
    return payload if isinstance(payload, dict) else None


def accept_all(blob: bytes) -> bool:
    """Expand every non-protected profile."""

    return True


class KeywordPolicy:
    """Accept profiles whose text fields mention any of the keywords (case-insensitive)."""

    def __init__(self, keywords: Iterable[str], fields: Sequence[str] = ("description",)) -> None:
        self._keywords = [keyword.lower() for keyword in keywords if keyword.strip()]
        if not self._keywords:
            raise ValueError("KeywordPolicy needs at least one keyword")
        self._fields = tuple(fields)

    def __call__(self, blob: bytes) -> bool:
        profile = _load_profile(blob)
        if profile is None:
            return False
        text = " ".join(str(profile.get(field) or "") for field in self._fields).lower()
        return any(keyword in text for keyword in self._keywords)

    def __repr__(self) -> str:
        return f"KeywordPolicy(keywords={self._keywords!r}, fields={self._fields!r})"


class LanguagePolicy:
    """Accept profiles whose declared language, or latest status language, is listed."""

    def __init__(self, languages: Iterable[str]) -> None:
        self._languages = {language.lower() for language in languages if language.strip()}
        if not self._languages:
            raise ValueError("LanguagePolicy needs at least one language")

    def __call__(self, blob: bytes) -> bool:
        profile = _load_profile(blob)
        if profile is None:
            return False
        candidates = [profile.get("lang")]
        status = profile.get("status")
        if isinstance(status, dict):
            candidates.append(status.get("lang"))
        return any(isinstance(lang, str) and lang.lower() in self._languages for lang in candidates)

    def __repr__(self) -> str:
        return f"LanguagePolicy(languages={sorted(self._languages)!r})"


class AllOf:
    """Accept only when every wrapped policy accepts."""

    def __init__(self, policies: Sequence[AcceptancePolicy]) -> None:
        self._policies = list(policies)

    def __call__(self, blob: bytes) -> bool:
        return all(policy(blob) for policy in self._policies)

    def __repr__(self) -> str:
        return f"AllOf({self._policies!r})"


def load_policy(target: str) -> AcceptancePolicy:
    """Import a policy from ``"package.module:attribute"``."""

    module_name, _, attribute = target.partition(":")
    if not module_name or not attribute:
        raise ConfigError(f"Policy must look like 'module:attribute'; received '{target}'.")
    try:
        module = importlib.import_module(module_name)
    except ImportError as exc:
        raise ConfigError(f"Cannot import policy module '{module_name}': {exc}") from exc
    policy: Any = getattr(module, attribute, None)
    if not callable(policy):
        raise ConfigError(f"Policy '{target}' is not a callable.")
    return policy


def build_policy(
    custom: Optional[str] = None,
    keywords: Sequence[str] = (),
    languages: Sequence[str] = (),
) -> AcceptancePolicy:
    """Combine CLI policy options; with none given every profile is accepted."""

    policies: list = []
    if custom:
        policies.append(load_policy(custom))
    if keywords:
        policies.append(KeywordPolicy(keywords))
    if languages:
        policies.append(LanguagePolicy(languages))
    if not policies:
        return accept_all
    if len(policies) == 1:
        return policies[0]
    return AllOf(policies)
