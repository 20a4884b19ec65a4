"""
LLM On-chain Activity Adapter - natural language in, structured verdict out

The model gets the activity prompt plus the raw transfer data we fetched
for the window, and must answer with one JSON object:

    {"found": true|false, "summary": "<one or two sentences>"}

Any other shape is a failed call (CollaboratorError), never a guess. The
call goes through a bounded retry policy with a consecutive-failure circuit
breaker, so a model outage degrades into fast failures the oracle resolves
by policy.
"""

import json
import logging
from typing import Awaitable, Callable, Optional

from openai import AsyncOpenAI

from core.activity_oracle import OnchainActivityQuery, OnchainEvidence
from core.errors import CollaboratorError
from core.retry import CircuitBreaker, RetryPolicy

logger = logging.getLogger("deadhand.adapter.llm_activity")

SYSTEM_PROMPT = (
    "You are a blockchain activity analyst. You receive a question about a wallet "
    "and the raw transfer records for the period in question. Decide whether the wallet "
    "itself sent or received anything in that period. "
    'Respond with exactly one JSON object: {"found": <true|false>, "summary": "<short reason>"}. '
    "No prose outside the JSON."
)

# (user_address, window_seconds) -> raw evidence text, e.g. Token API transfers
EvidenceFn = Callable[[str, float], Awaitable[str]]


class LlmOnchainActivityQuery(OnchainActivityQuery):

    def __init__(self, client: Optional[AsyncOpenAI], model: str,
                 evidence_fn: Optional[EvidenceFn] = None,
                 retry: Optional[RetryPolicy] = None):
        self._client = client
        self.model = model
        self._evidence_fn = evidence_fn
        self._retry = retry or RetryPolicy(
            max_attempts=3,
            breaker=CircuitBreaker("llm-activity", failure_threshold=3),
        )

    async def query(self, prompt: str, *, user_address: str = "",
                    window_seconds: float = 0.0) -> OnchainEvidence:
        if self._client is None:
            raise CollaboratorError("activity model is not configured (OPENROUTER_API_KEY)")
        evidence = ""
        if self._evidence_fn is not None and user_address:
            evidence = await self._evidence_fn(user_address, window_seconds)
        return await self._retry.call(self._ask, prompt, evidence)

    async def _ask(self, prompt: str, evidence: str) -> OnchainEvidence:
        user_content = prompt
        if evidence:
            user_content += f"\n\nTransfer records:\n{evidence}"

        try:
            r = await self._client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": SYSTEM_PROMPT},
                    {"role": "user", "content": user_content},
                ],
                temperature=0.0,
                max_tokens=300,
                response_format={"type": "json_object"},
            )
        except Exception as e:
            raise CollaboratorError(f"activity model call failed: {e}") from e

        text = (r.choices[0].message.content or "").strip() if r.choices else ""
        verdict = parse_verdict(text)
        logger.debug(f"Activity verdict: found={verdict.found} ({verdict.summary[:80]})")
        return verdict


def parse_verdict(text: str) -> OnchainEvidence:
    """Strict JSON verdict parser. Tolerates a ```json fence, nothing else."""
    cleaned = text.strip()
    if cleaned.startswith("```"):
        cleaned = cleaned.strip("`")
        if cleaned.lower().startswith("json"):
            cleaned = cleaned[4:]
        cleaned = cleaned.strip()

    try:
        data = json.loads(cleaned)
    except json.JSONDecodeError as e:
        raise CollaboratorError(f"activity model returned non-JSON: {text[:120]!r}") from e

    if not isinstance(data, dict) or not isinstance(data.get("found"), bool):
        raise CollaboratorError(f"activity model verdict missing boolean 'found': {text[:120]!r}")

    return OnchainEvidence(found=data["found"], summary=str(data.get("summary", "")))
