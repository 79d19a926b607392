"""
Deduplication window evaluation.

A single configurable policy replaces the per-variant redirect handlers:
each strategy looks for a prior click sharing a key within a time window.

Strategies:
  same_subject_and_address  - same phone and caller IP within W1 (60s)
  same_caller               - same caller IP and user agent within W2 (5 min)
  same_click_token          - same fbclid, any time (tokens are single-use)
  same_subject_recent_success - phone already registered in the CRM within
                              W3 (24h); suppresses only the CRM call

The first three suppress the record itself. When several match, the one with
the shortest window decides the classification. Every matching strategy
suppresses the CRM call.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Tuple

from leadlink.core.config import Settings
from leadlink.models.click import Click, ClickStatus, utc_now
from leadlink.services.click_store import ClickFilter, ClickStore

logger = logging.getLogger(__name__)

SAME_SUBJECT_AND_ADDRESS = "same_subject_and_address"
SAME_CALLER = "same_caller"
SAME_CLICK_TOKEN = "same_click_token"
SAME_SUBJECT_RECENT_SUCCESS = "same_subject_recent_success"


@dataclass(frozen=True)
class DedupPolicy:
    """Which strategies run and how far back each one looks."""
    same_subject_and_address: bool = True
    same_subject_window: timedelta = timedelta(seconds=60)
    same_caller: bool = False
    same_caller_window: timedelta = timedelta(minutes=5)
    same_click_token: bool = True
    same_subject_recent_success: bool = True
    recent_success_window: timedelta = timedelta(hours=24)
    record_duplicates: bool = False

    def __post_init__(self):
        if not any((
            self.same_subject_and_address,
            self.same_caller,
            self.same_click_token,
            self.same_subject_recent_success,
        )):
            raise ValueError("At least one deduplication strategy must be enabled")

    @classmethod
    def from_settings(cls, settings: Settings) -> "DedupPolicy":
        return cls(
            same_subject_and_address=settings.dedup_same_subject_enabled,
            same_subject_window=timedelta(seconds=settings.dedup_same_subject_window_seconds),
            same_caller=settings.dedup_same_caller_enabled,
            same_caller_window=timedelta(seconds=settings.dedup_same_caller_window_seconds),
            same_click_token=settings.dedup_click_token_enabled,
            same_subject_recent_success=settings.dedup_recent_success_enabled,
            recent_success_window=timedelta(seconds=settings.dedup_recent_success_window_seconds),
            record_duplicates=settings.dedup_record_duplicates,
        )


@dataclass(frozen=True)
class ClickCandidate:
    """Keys of an inbound click, already sanitized."""
    phone_number: str
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    fbclid: Optional[str] = None


@dataclass(frozen=True)
class DedupResult:
    is_duplicate: bool = False
    matched_event: Optional[Click] = None
    suppress_external_call: bool = False
    strategy: Optional[str] = None
    token_taken: bool = False  # the candidate fbclid already belongs to another click


class DeduplicationEvaluator:
    """Evaluate a candidate click against the store under a policy."""

    def __init__(
        self,
        store: ClickStore,
        policy: DedupPolicy,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.policy = policy
        self.clock = clock

    async def evaluate(self, candidate: ClickCandidate) -> DedupResult:
        now = self.clock()

        # (window, strategy, match) for record-suppressing strategies
        record_matches: List[Tuple[Optional[timedelta], str, Click]] = []
        suppress_external = False
        success_match: Optional[Click] = None
        token_taken = False

        if self.policy.same_subject_and_address and candidate.ip_address:
            match = await self.store.find_first(ClickFilter(
                equals={
                    "phone_number": candidate.phone_number,
                    "ip_address": candidate.ip_address,
                },
                created_gte=now - self.policy.same_subject_window,
            ))
            if match is not None:
                record_matches.append((self.policy.same_subject_window, SAME_SUBJECT_AND_ADDRESS, match))

        if self.policy.same_caller and candidate.ip_address and candidate.user_agent:
            match = await self.store.find_first(ClickFilter(
                equals={
                    "ip_address": candidate.ip_address,
                    "user_agent": candidate.user_agent,
                },
                created_gte=now - self.policy.same_caller_window,
            ))
            if match is not None:
                record_matches.append((self.policy.same_caller_window, SAME_CALLER, match))

        if self.policy.same_click_token and candidate.fbclid:
            match = await self.store.find_first(ClickFilter(
                equals={"fbclid": candidate.fbclid},
            ))
            if match is not None:
                token_taken = True
                # Unbounded lookback sorts after every windowed strategy
                record_matches.append((None, SAME_CLICK_TOKEN, match))

        if self.policy.same_subject_recent_success:
            success_match = await self.store.find_first(ClickFilter(
                equals={
                    "phone_number": candidate.phone_number,
                    "kommo_status": ClickStatus.SUCCESS.value,
                },
                created_gte=now - self.policy.recent_success_window,
            ))
            if success_match is not None:
                suppress_external = True

        if record_matches:
            record_matches.sort(key=lambda item: (item[0] is None, item[0] or timedelta(0)))
            _, strategy, matched = record_matches[0]
            logger.info(
                "Duplicate click for %s from %s (strategy=%s, matched=%s)",
                candidate.phone_number,
                candidate.ip_address,
                strategy,
                matched.id,
            )
            return DedupResult(
                is_duplicate=True,
                matched_event=matched,
                suppress_external_call=True,
                strategy=strategy,
                token_taken=token_taken,
            )

        if suppress_external:
            logger.info(
                "Phone %s already has a CRM lead from click %s, skipping registration",
                candidate.phone_number,
                success_match.id,
            )
            return DedupResult(
                is_duplicate=False,
                matched_event=success_match,
                suppress_external_call=True,
                strategy=SAME_SUBJECT_RECENT_SUCCESS,
            )

        return DedupResult()
