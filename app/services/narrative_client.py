"""Client for the external match-narrative generator.

The generator turns candidate data + job requirements into a short
human-readable explanation.  It is a black box: it can time out, return
a 5xx, or answer with something that is not the agreed shape.  Every
one of those becomes ExternalCollaboratorError here, so callers only
have one failure to handle.

Wire contract (POST NARRATIVE_URL):
    request   {"candidate": {...}, "job": {...}}
    response  {"narrative": "<text>"}
"""

from __future__ import annotations

import logging
from typing import Protocol, runtime_checkable

import httpx

from app.core.config import Settings
from app.core.errors import ExternalCollaboratorError

logger = logging.getLogger(__name__)

MAX_NARRATIVE_CHARS = 4000


@runtime_checkable
class NarrativeClient(Protocol):
    async def generate_match_narrative(
        self, candidate_data: dict, job_requirements: dict
    ) -> str: ...


class HttpNarrativeClient:
    def __init__(
        self,
        url: str,
        timeout: float = 5.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._url = url
        self._timeout = timeout
        self._transport = transport

    async def generate_match_narrative(
        self, candidate_data: dict, job_requirements: dict
    ) -> str:
        try:
            async with httpx.AsyncClient(
                timeout=self._timeout, transport=self._transport
            ) as client:
                resp = await client.post(
                    self._url,
                    json={"candidate": candidate_data, "job": job_requirements},
                )
                resp.raise_for_status()
                payload = resp.json()
        except httpx.HTTPError as exc:
            raise ExternalCollaboratorError("narrative", f"request failed: {exc}") from exc
        except ValueError as exc:
            raise ExternalCollaboratorError("narrative", "response is not JSON") from exc

        narrative = payload.get("narrative") if isinstance(payload, dict) else None
        if not isinstance(narrative, str) or not narrative.strip():
            raise ExternalCollaboratorError("narrative", "response has no narrative text")
        if len(narrative) > MAX_NARRATIVE_CHARS:
            logger.info("Narrative truncated from %d chars", len(narrative))
            narrative = narrative[:MAX_NARRATIVE_CHARS]
        return narrative


def build_narrative_client(settings: Settings) -> NarrativeClient | None:
    """None when NARRATIVE_URL is unset: assessments skip the narrative."""
    if not settings.narrative_url:
        return None
    return HttpNarrativeClient(
        settings.narrative_url, timeout=settings.narrative_timeout_seconds
    )
