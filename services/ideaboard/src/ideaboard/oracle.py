from __future__ import annotations

from typing import Any

import httpx

from ideaboard.refresh import (
    MAX_POTENTIAL_SCORE,
    MIN_POTENTIAL_SCORE,
    OracleError,
    OracleVerdict,
    ScoringOracle,
)

NEUTRAL_SCORE = 50
DEFAULT_TIMEOUT_SECONDS = 30.0


def total_from_breakdown(breakdown: dict[str, Any]) -> int:
    total = 0
    for criterion, value in breakdown.items():
        if isinstance(value, bool) or not isinstance(value, int):
            raise OracleError(f"Score criterion {criterion!r} must be an integer.")
        total += value
    return min(MAX_POTENTIAL_SCORE, max(MIN_POTENTIAL_SCORE, total))


def parse_verdict_payload(payload: Any) -> OracleVerdict:
    if not isinstance(payload, dict):
        raise OracleError("Scoring oracle response must be a JSON object.")

    summary = payload.get("summary", payload.get("ai_summary"))
    if not isinstance(summary, str):
        raise OracleError("Scoring oracle response is missing a summary.")

    if "score" in payload:
        score = payload["score"]
    elif isinstance(payload.get("score_breakdown"), dict):
        score = total_from_breakdown(payload["score_breakdown"])
    else:
        raise OracleError("Scoring oracle response is missing a score.")
    return OracleVerdict(summary=summary, score=score)


class HttpScoringOracle:
    """Scoring oracle reached over HTTP; one attempt per call, no retries."""

    def __init__(
        self,
        base_url: str,
        *,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        api_key: str | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self.api_key = api_key

    def headers(self) -> dict[str, str]:
        if not self.api_key:
            return {}
        return {"x-api-key": self.api_key}

    def analyze(self, title: str, description: str, body: str | None) -> OracleVerdict:
        try:
            with httpx.Client(timeout=self.timeout_seconds) as client:
                response = client.post(
                    f"{self.base_url}/analyze",
                    json={"title": title, "description": description, "body_text": body},
                    headers=self.headers(),
                )
        except httpx.HTTPError as exc:
            raise OracleError("Scoring oracle is unavailable.") from exc

        if response.status_code >= 400:
            raise OracleError(f"Scoring oracle returned HTTP {response.status_code}.")
        try:
            payload = response.json()
        except ValueError as exc:
            raise OracleError("Scoring oracle returned a non-JSON body.") from exc
        return parse_verdict_payload(payload)


class NeutralScoringOracle:
    def analyze(self, title: str, description: str, body: str | None) -> OracleVerdict:
        del title, body
        return OracleVerdict(summary=description, score=NEUTRAL_SCORE)


def build_scoring_oracle(
    base_url: str | None,
    *,
    timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
    api_key: str | None = None,
) -> ScoringOracle:
    if not base_url:
        return NeutralScoringOracle()
    return HttpScoringOracle(base_url, timeout_seconds=timeout_seconds, api_key=api_key)
