from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime
from typing import Literal, Protocol

from common.utils import now_utc

from ideaboard.ranking import Category

RefreshFailureReason = Literal["not_found", "forbidden", "oracle_unavailable"]
MIN_POTENTIAL_SCORE = 0
MAX_POTENTIAL_SCORE = 100


class OracleError(RuntimeError):
    pass


@dataclass(frozen=True)
class OracleVerdict:
    summary: str
    score: int


class ScoringOracle(Protocol):
    def analyze(self, title: str, description: str, body: str | None) -> OracleVerdict: ...


@dataclass(frozen=True)
class IdeaRecord:
    id: str
    owner_id: str | None
    title: str
    description: str
    category: Category
    status: str
    upvotes: int
    downvotes: int
    potential_score: int
    created_at: datetime
    updated_at: datetime
    original_description: str | None = None
    body_text: str | None = None

    @property
    def canonical_description(self) -> str:
        # A refresh overwrites description; the submitted text lives on in original_description.
        return self.original_description or self.description


@dataclass(frozen=True)
class ScoreRefreshRequest:
    idea_id: str
    requesting_owner_id: str


@dataclass(frozen=True)
class RefreshedIdea:
    idea: IdeaRecord
    summary: str
    score: int


@dataclass(frozen=True)
class RefreshFailure:
    reason: RefreshFailureReason
    detail: str | None = None


RefreshOutcome = RefreshedIdea | RefreshFailure


class IdeaStore(Protocol):
    def get_idea(self, idea_id: str) -> IdeaRecord | None: ...

    def apply_analysis(
        self,
        idea_id: str,
        *,
        owner_id: str,
        original_description: str,
        summary: str,
        score: int,
        updated_at: datetime,
    ) -> IdeaRecord | None: ...


def validate_verdict(verdict: object) -> OracleVerdict:
    if not isinstance(verdict, OracleVerdict):
        raise OracleError("Oracle returned an unexpected result type.")
    if not isinstance(verdict.summary, str) or not verdict.summary.strip():
        raise OracleError("Oracle summary must be a non-empty string.")
    score = verdict.score
    if isinstance(score, bool) or not isinstance(score, int):
        raise OracleError("Oracle score must be an integer.")
    if not MIN_POTENTIAL_SCORE <= score <= MAX_POTENTIAL_SCORE:
        raise OracleError(
            f"Oracle score must be within {MIN_POTENTIAL_SCORE}-{MAX_POTENTIAL_SCORE}."
        )
    return verdict


def refresh_idea(
    request: ScoreRefreshRequest,
    current: IdeaRecord | None,
    oracle: ScoringOracle,
    *,
    now: datetime | None = None,
) -> RefreshOutcome:
    """Re-score one idea with ``oracle`` on behalf of its owner.

    Ownership is checked before the oracle is called. Any oracle failure
    leaves ``current`` untouched and yields ``oracle_unavailable``; on
    success the summary, score and ``updated_at`` change together and the
    submitted text is pinned in ``original_description`` for later refreshes.
    """
    if current is None or current.id != request.idea_id:
        return RefreshFailure(reason="not_found")
    if current.owner_id is None or current.owner_id != request.requesting_owner_id:
        return RefreshFailure(reason="forbidden")

    try:
        verdict = validate_verdict(
            oracle.analyze(current.title, current.canonical_description, current.body_text)
        )
    except Exception as exc:
        return RefreshFailure(reason="oracle_unavailable", detail=str(exc) or type(exc).__name__)

    updated = replace(
        current,
        original_description=current.canonical_description,
        description=verdict.summary,
        potential_score=verdict.score,
        updated_at=now or now_utc(),
    )
    return RefreshedIdea(idea=updated, summary=verdict.summary, score=verdict.score)


def refresh_and_store(
    request: ScoreRefreshRequest,
    store: IdeaStore,
    oracle: ScoringOracle,
    *,
    now: datetime | None = None,
) -> RefreshOutcome:
    # No lock is held across the oracle call; concurrent refreshes are last-write-wins.
    current = store.get_idea(request.idea_id)
    outcome = refresh_idea(request, current, oracle, now=now)
    if isinstance(outcome, RefreshFailure):
        return outcome

    stored = store.apply_analysis(
        request.idea_id,
        owner_id=request.requesting_owner_id,
        original_description=outcome.idea.canonical_description,
        summary=outcome.summary,
        score=outcome.score,
        updated_at=outcome.idea.updated_at,
    )
    if stored is None:
        # The write only lands while the idea still belongs to the requester.
        if store.get_idea(request.idea_id) is None:
            return RefreshFailure(reason="not_found", detail="Idea was removed during analysis.")
        return RefreshFailure(reason="forbidden", detail="Idea changed owner during analysis.")
    return RefreshedIdea(idea=stored, summary=outcome.summary, score=outcome.score)
