"""Crawl subsystem: API client, pagination, acceptance policies and scheduling."""

from __future__ import annotations

from .api_client import API_BATCH_LIMIT, TwitterAPIClient, TwitterAPIClientConfig
from .orchestrator import CrawlOrchestrator
from .pagination import collect_messages, collect_relationship_ids, trim_until_id
from .policy import AcceptancePolicy, accept_all, build_policy
from .scheduler import CrawlScheduler, RepeatingTask

__all__ = [
    "API_BATCH_LIMIT",
    "AcceptancePolicy",
    "CrawlOrchestrator",
    "CrawlScheduler",
    "RepeatingTask",
    "TwitterAPIClient",
    "TwitterAPIClientConfig",
    "accept_all",
    "build_policy",
    "collect_messages",
    "collect_relationship_ids",
    "trim_until_id",
]
