from __future__ import annotations

from typing import Literal

from fastapi import APIRouter
from pydantic import BaseModel, Field

from app.api.dependencies import CurrentPrincipal
from app.core.errors import ValidationError
from app.services.matching import MatchScore, matching_service, score_candidate

router = APIRouter(prefix="/v1/matching", tags=["matching"])


class ScoreIn(BaseModel):
    candidate_skills: list[str] = Field(default_factory=list, max_length=500)
    verification_strength: Literal["High", "Medium", "Low"]
    required_skills: list[str] = Field(default_factory=list, max_length=200)


class AssessIn(BaseModel):
    required_skills: list[str] = Field(default_factory=list, max_length=200)
    job_title: str | None = Field(default=None, max_length=200)


class MatchScoreOut(BaseModel):
    percentage: int
    verification_strength: str
    matched_skills: list[str]
    missing_skills: list[str]


class AssessmentOut(BaseModel):
    candidate_id: str
    score: MatchScoreOut
    narrative: str | None
    degraded: bool


def score_out(score: MatchScore) -> MatchScoreOut:
    return MatchScoreOut(
        percentage=score.percentage,
        verification_strength=score.verification_strength,
        matched_skills=list(score.matched_skills),
        missing_skills=list(score.missing_skills),
    )


@router.post("/score", response_model=MatchScoreOut)
async def score(
    body: ScoreIn,
    principal: CurrentPrincipal,
) -> MatchScoreOut:
    """Pure scoring over caller-supplied data.  Reads nothing."""
    try:
        result = score_candidate(
            body.candidate_skills, body.verification_strength, body.required_skills
        )
    except ValueError as e:
        raise ValidationError(str(e)) from None
    return score_out(result)


@router.post("/candidates/{candidate_id}/assess", response_model=AssessmentOut)
async def assess_candidate(
    candidate_id: str,
    body: AssessIn,
    principal: CurrentPrincipal,
) -> AssessmentOut:
    assessment = await matching_service.assess(
        candidate_id, body.required_skills, body.job_title
    )
    return AssessmentOut(
        candidate_id=assessment.candidate_id,
        score=score_out(assessment.score),
        narrative=assessment.narrative,
        degraded=assessment.degraded,
    )
