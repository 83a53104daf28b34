"""Candidate/job matching.

score_candidate() is a pure function: same inputs, same score, every
time.  It answers "what share of the job's required skills does this
candidate claim?" as an integer percentage:

    required = ["python", "sql", "aws"]
    skills   = ["Python 3", "PostgreSQL (SQL)"]      → 2/3 → 67

A required skill counts when it appears, case-insensitively, as a
substring of any candidate skill.  An empty requirement list scores 50
(nothing to compare against, so neither a match nor a miss).

Verification strength (High / Medium / Low, from the share of the
candidate's credentials that are verified) is reported NEXT TO the
score and used to break ties when ranking; it never changes the number.

MatchingService.assess() adds an optional narrative from an external
text generator.  That call is untrusted: failures and malformed output
give ``narrative=None, degraded=True`` and never touch the score.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass

from app.core.config import SETTINGS
from app.core.errors import ExternalCollaboratorError
from app.core.metrics import COLLABORATOR_FAILURES
from app.db.ledger import ledger
from app.models.credential import VERIFIED, Credential
from app.repos.ledger import CREDENTIALS, USERS, LedgerStore
from app.services.narrative_client import NarrativeClient, build_narrative_client

logger = logging.getLogger(__name__)

HIGH = "High"
MEDIUM = "Medium"
LOW = "Low"

_STRENGTH_RANK = {HIGH: 2, MEDIUM: 1, LOW: 0}
EMPTY_REQUIREMENTS_SCORE = 50


@dataclass(frozen=True, slots=True)
class MatchScore:
    percentage: int
    verification_strength: str
    matched_skills: tuple[str, ...]
    missing_skills: tuple[str, ...]


@dataclass(frozen=True, slots=True)
class RankedCandidate:
    candidate_id: str
    score: MatchScore


@dataclass(frozen=True, slots=True)
class MatchAssessment:
    candidate_id: str
    score: MatchScore
    narrative: str | None
    degraded: bool


def verification_strength(statuses: Iterable[str]) -> str:
    """High (≥70% verified), Medium (≥30%), else Low.  No credentials → Low."""
    statuses = list(statuses)
    if not statuses:
        return LOW
    ratio = sum(1 for s in statuses if s == VERIFIED) / len(statuses)
    if ratio >= 0.7:
        return HIGH
    if ratio >= 0.3:
        return MEDIUM
    return LOW


def score_candidate(
    candidate_skills: Sequence[str],
    verification_strength: str,
    required_skills: Sequence[str],
) -> MatchScore:
    if verification_strength not in _STRENGTH_RANK:
        raise ValueError("verification_strength must be High|Medium|Low")

    required = [r.strip() for r in required_skills if r and r.strip()]
    if not required:
        return MatchScore(EMPTY_REQUIREMENTS_SCORE, verification_strength, (), ())

    haystack = [s.lower() for s in candidate_skills if s]
    matched: list[str] = []
    missing: list[str] = []
    for skill in required:
        needle = skill.lower()
        if any(needle in s for s in haystack):
            matched.append(skill)
        else:
            missing.append(skill)

    # Half-up rounding; round() would send 0.5 to the even neighbour.
    percentage = (len(matched) * 200 + len(required)) // (2 * len(required))
    return MatchScore(percentage, verification_strength, tuple(matched), tuple(missing))


def rank_candidates(
    candidates: Iterable[tuple[str, MatchScore]],
) -> list[RankedCandidate]:
    """Score desc, then verification strength desc, then candidate id."""
    ranked = [RankedCandidate(cid, score) for cid, score in candidates]
    ranked.sort(
        key=lambda r: (
            -r.score.percentage,
            -_STRENGTH_RANK[r.score.verification_strength],
            r.candidate_id,
        )
    )
    return ranked


class MatchingService:
    def __init__(self, ledger: LedgerStore, narrative: NarrativeClient | None) -> None:
        self._ledger = ledger
        self._narrative = narrative

    async def candidate_profile(
        self, candidate_id: str
    ) -> tuple[list[str], str, list[Credential]]:
        """Declared skills + credential titles, and the strength signal."""
        user = await self._ledger.get(USERS, candidate_id)
        declared = user.body.get("skills", []) if user is not None else []
        skills = [s for s in declared if isinstance(s, str)]

        credentials = [
            Credential.from_body(d.body)
            for d in await self._ledger.find(CREDENTIALS, {"owner_id": candidate_id})
        ]
        credentials = [c for c in credentials if not c.is_deleted]
        skills.extend(c.title for c in credentials)
        strength = verification_strength(c.verification_status for c in credentials)
        return skills, strength, credentials

    async def assess(
        self,
        candidate_id: str,
        required_skills: Sequence[str],
        job_title: str | None = None,
    ) -> MatchAssessment:
        skills, strength, credentials = await self.candidate_profile(candidate_id)
        score = score_candidate(skills, strength, required_skills)

        if self._narrative is None:
            return MatchAssessment(candidate_id, score, None, degraded=False)

        candidate_data = {
            "candidate_id": candidate_id,
            "skills": skills,
            "verification_strength": strength,
            "credentials": [
                {"type": c.type, "title": c.title, "status": c.verification_status}
                for c in credentials
            ],
            "match_percentage": score.percentage,
        }
        job_requirements = {"title": job_title, "required_skills": list(required_skills)}
        try:
            narrative = await self._narrative.generate_match_narrative(
                candidate_data, job_requirements
            )
        except ExternalCollaboratorError as exc:
            COLLABORATOR_FAILURES.labels(collaborator="narrative").inc()
            logger.warning("Narrative unavailable for candidate=%s: %s", candidate_id, exc)
            return MatchAssessment(candidate_id, score, None, degraded=True)

        if not isinstance(narrative, str) or not narrative.strip():
            COLLABORATOR_FAILURES.labels(collaborator="narrative").inc()
            logger.warning("Malformed narrative for candidate=%s discarded", candidate_id)
            return MatchAssessment(candidate_id, score, None, degraded=True)

        return MatchAssessment(candidate_id, score, narrative.strip(), degraded=False)


# ---------------------------------------------------------------------------
# Module-level singleton
# ---------------------------------------------------------------------------

matching_service = MatchingService(ledger, build_narrative_client(SETTINGS))
