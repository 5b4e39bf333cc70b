"""Narrative DORA insights via the OpenAI chat completions API.

Unlike a best-effort helper, failures here are reported: a missing API key or
a failed call raises ``InsightBackendFailure`` so the job records ``error``.
"""
from __future__ import annotations

import json
import logging
from typing import Any

from openai import AsyncOpenAI

from devx360.config import Settings
from devx360.errors import InsightBackendFailure

logger = logging.getLogger(__name__)


SECTION_HEADINGS = (
    "Deployment Frequency",
    "Lead Time for Changes",
    "Change Failure Rate",
    "Mean Time to Recovery",
    "Recommendations",
)

SYSTEM_KNOWLEDGE = """You are an expert engineering productivity coach reviewing a software team's DORA metrics.

## DORA Metrics Knowledge
1. **Deployment Frequency**: How often code is deployed to production.
   - Elite: Multiple deploys per day
   - High: Once per day to once per week
   - Medium: Once per week to once per month
   - Low: Less than once per month

2. **Lead Time for Changes**: Time from first commit to production deployment.
   - Elite: Less than 1 hour
   - High: Less than 1 day
   - Medium: Less than 1 week
   - Low: More than 1 week

3. **Change Failure Rate**: Percentage of deployments that needed a fix.
   - Elite: 0-15%
   - High: 16-30%
   - Medium: 31-45%
   - Low: 46-100%

4. **Mean Time to Recovery**: Time to resolve a production incident.
   - Elite: Less than 1 hour
   - High: Less than 1 day
   - Medium: 1 day to 1 week
   - Low: More than 1 week

Metrics are computed over trailing 7, 30 and 90 day windows. A null value means there was no data
for that metric in the window, not that the value is zero.

Answer in Markdown using exactly these second-level headings, in this order:
"""

SYSTEM_KNOWLEDGE += "\n".join(f"## {heading}" for heading in SECTION_HEADINGS)
SYSTEM_KNOWLEDGE += "\n\nUnder each heading give a short assessment with concrete numbers and one or two actionable suggestions.\n"


def _client(settings: Settings) -> tuple[AsyncOpenAI, str]:
    if not settings.openai_api_key:
        logger.warning("OPENAI_API_KEY not set")
        raise InsightBackendFailure("Narrative backend is not configured (OPENAI_API_KEY missing)")
    return AsyncOpenAI(api_key=settings.openai_api_key), settings.openai_model


async def generate_dora_narrative(payload: dict[str, Any], settings: Settings | None = None) -> str:
    """Ask the model for a sectioned review of ``payload``.

    Raises:
        InsightBackendFailure: The backend is not configured, the call failed
            or it returned no text.
    """
    client, model = _client(settings or Settings())
    messages = [
        {"role": "system", "content": SYSTEM_KNOWLEDGE},
        {"role": "user", "content": f"Team metrics:\n{json.dumps(payload, default=str, sort_keys=True)}"},
    ]
    try:
        resp = await client.chat.completions.create(
            model=model,
            messages=messages,
            temperature=0.4,
            max_tokens=900,
        )
    except Exception as exc:
        logger.error(f"LLM insight error: {exc}")
        raise InsightBackendFailure(f"Narrative backend call failed: {exc}") from exc

    content = resp.choices[0].message.content if resp.choices else None
    if not content or not content.strip():
        raise InsightBackendFailure("Narrative backend returned an empty response")
    return content.strip()
