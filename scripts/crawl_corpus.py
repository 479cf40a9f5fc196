"""CLI entrypoint for building (and resuming) a social-graph corpus."""
from __future__ import annotations

import argparse
import dataclasses
import json
import logging
import sys
from pathlib import Path
from typing import List, Optional, Sequence

from sqlalchemy import create_engine

from graph_corpus.config import CrawlConfig, get_api_credentials, get_crawl_config
from graph_corpus.crawl import CrawlOrchestrator, TwitterAPIClient, TwitterAPIClientConfig, build_policy
from graph_corpus.crawl.orchestrator import seed_handles_from_lines
from graph_corpus.data.corpus_store import CorpusStore, get_corpus_store
from graph_corpus.errors import ConfigError, CrawlError, StorageError
from graph_corpus.identity import Identity, parse_identity
from graph_corpus.logging_utils import setup_crawl_logging

LOGGER = logging.getLogger(__name__)


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Crawl profiles, follow edges and timelines into a resumable SQLite corpus",
    )
    parser.add_argument(
        "corpus",
        nargs="?",
        default=None,
        help="Corpus name; the database is <data dir>/<corpus>.db (falls back to CORPUS_NAME env).",
    )
    parser.add_argument(
        "--seeds",
        nargs="*",
        default=[],
        help="Seed handles to queue before crawling (leading '@' optional). Re-queuing is harmless.",
    )
    parser.add_argument(
        "--seed-file",
        type=Path,
        default=None,
        help="File with one seed handle per line; '#' starts a comment.",
    )
    parser.add_argument(
        "--credentials",
        type=Path,
        default=None,
        help="JSON file with a 'bearer_token' entry (falls back to X_CREDENTIALS_PATH, then X_BEARER_TOKEN).",
    )
    parser.add_argument(
        "--policy",
        type=str,
        default=None,
        help="Custom acceptance policy as 'package.module:callable'.",
    )
    parser.add_argument(
        "--accept-keyword",
        action="append",
        default=[],
        help="Only expand profiles whose bio mentions this keyword (repeatable).",
    )
    parser.add_argument(
        "--accept-language",
        action="append",
        default=[],
        help="Only expand profiles in this language code, e.g. 'en' (repeatable).",
    )
    parser.add_argument(
        "--period",
        type=float,
        default=None,
        help="Minimum seconds between iterations of each pass (default CRAWL_PASS_PERIOD_SECONDS or 2).",
    )
    parser.add_argument(
        "--continue-on-error",
        action="store_true",
        help="Log per-profile API failures and keep going instead of aborting the crawl.",
    )
    parser.add_argument(
        "--status",
        action="store_true",
        help="Print row counts for the corpus as JSON and exit without crawling.",
    )
    parser.add_argument(
        "--show",
        type=parse_identity,
        default=None,
        metavar="IDENTITY",
        help="Print the stored profile for a handle or numeric ID as JSON and exit without crawling.",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARN", "ERROR", "CRITICAL"],
        help="Console logging verbosity (default INFO). File always logs DEBUG.",
    )
    parser.add_argument(
        "--log-dir",
        type=Path,
        default=None,
        help="Directory for the rotating log file (default logs/).",
    )
    parser.add_argument(
        "--quiet",
        action="store_true",
        help="Only log to file; no console output besides --status.",
    )
    args = parser.parse_args(argv)
    if args.period is not None and args.period < 0:
        parser.error("--period must not be negative")
    return args


def collect_seeds(args: argparse.Namespace) -> List[str]:
    seeds = list(args.seeds)
    if args.seed_file is not None:
        try:
            lines = args.seed_file.read_text().splitlines()
        except FileNotFoundError as exc:
            raise ConfigError(f"Seed file not found at {args.seed_file}.") from exc
        seeds.extend(seed_handles_from_lines(lines))
    return seeds


def build_config(args: argparse.Namespace) -> CrawlConfig:
    config = get_crawl_config(args.corpus, abort_on_error=not args.continue_on_error)
    if args.period is not None:
        config = dataclasses.replace(config, pass_period_seconds=args.period)
    return config


def open_store(config: CrawlConfig) -> CorpusStore:
    config.data_dir.mkdir(parents=True, exist_ok=True)
    engine = create_engine(config.db_url)
    return get_corpus_store(engine, write_queue_size=config.write_queue_size)


def stored_profile_summary(store: CorpusStore, identity: Identity) -> Optional[dict]:
    """Stored profile fields for `identity`, without the raw blob; None if not in the corpus."""

    profile = store.get_profile(identity)
    if profile is None:
        return None
    summary = dataclasses.asdict(profile)
    summary.pop("blob")
    return summary


def build_orchestrator(args: argparse.Namespace, config: CrawlConfig, store: CorpusStore) -> CrawlOrchestrator:
    credentials = get_api_credentials(args.credentials)
    client = TwitterAPIClient(
        TwitterAPIClientConfig(
            bearer_token=credentials.bearer_token,
            rate_state_path=config.rate_state_path,
            window_seconds=config.rate_limit_window_seconds,
        )
    )
    policy = build_policy(args.policy, args.accept_keyword, args.accept_language)
    LOGGER.info("Acceptance policy: %r", policy)
    return CrawlOrchestrator(store, client, policy, config)


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = parse_args(argv)

    console_log_level = getattr(logging, args.log_level.upper(), logging.INFO)
    log_file = setup_crawl_logging(console_level=console_log_level, quiet=args.quiet, log_dir=args.log_dir)

    store: Optional[CorpusStore] = None
    orchestrator: Optional[CrawlOrchestrator] = None
    exit_code = 0
    try:
        config = build_config(args)
        store = open_store(config)
        if args.status:
            print(json.dumps({"corpus": config.corpus_name, **store.summary()}, indent=2))
        elif args.show is not None:
            profile = stored_profile_summary(store, args.show)
            if profile is None:
                LOGGER.error("%s is not in corpus %s", args.show, config.corpus_name)
                exit_code = 1
            else:
                print(json.dumps(profile, indent=2))
        else:
            seeds = collect_seeds(args)
            orchestrator = build_orchestrator(args, config, store)
            LOGGER.info("Corpus %s at %s (log: %s)", config.corpus_name, config.db_path, log_file)
            orchestrator.seed(seeds)
            orchestrator.run()
    except CrawlError as exc:
        LOGGER.critical("Crawl aborted: %s", exc.describe())
        LOGGER.critical("Re-run the same command to resume from the stored state.")
        exit_code = 1
    except KeyboardInterrupt:
        LOGGER.warning("Interrupted by user; flushing queued writes before exit")
        if orchestrator is not None:
            orchestrator.stop()
        exit_code = 130
    finally:
        if store is not None:
            try:
                store.close()
            except StorageError as exc:
                if exit_code == 0:
                    LOGGER.critical("Closing corpus store failed: %s", exc.describe())
                exit_code = 1
    return exit_code


if __name__ == "__main__":
    sys.exit(main())
