"""
Artifact Generator - builds the data artifacts a provider commits.

Artifacts are JSON signal records. With a Google API key the content is
written by Gemini; otherwise a template is filled in.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from langchain_core.messages import HumanMessage
from langchain_core.rate_limiters import InMemoryRateLimiter
from langchain_google_genai import ChatGoogleGenerativeAI

from ..config import Config, config as default_config
from ..oracle_agent.scorer import content_digest

logger = logging.getLogger(__name__)

TEMPLATES: List[Dict[str, Any]] = [
    {
        "kind": "prediction",
        "content": "ETH is likely to trade above its 20-day moving average by the end of the week, "
                   "supported by rising on-chain volume and stable funding rates.",
        "confidence": 0.85,
    },
    {
        "kind": "signal",
        "content": "BUY signal for ETH: momentum turned positive on the daily chart while "
                   "exchange outflows increased for three consecutive days.",
        "confidence": 0.92,
    },
    {
        "kind": "analysis",
        "content": "Market sentiment is moderately bullish: open interest grew, volatility "
                   "compressed and stablecoin inflows to exchanges picked up.",
        "confidence": 0.78,
    },
]


class ArtifactGenerator:
    """Produce artifact records for a market."""

    def __init__(self, generator_config: Optional[Config] = None, llm=None):
        self.config = generator_config or default_config
        self._counter = 0

        if llm is not None:
            self.llm = llm
        elif self.config.google_api_key:
            rate_limiter = InMemoryRateLimiter(
                requests_per_second=0.2,
                check_every_n_seconds=0.1,
                max_bucket_size=1
            )
            self.llm = ChatGoogleGenerativeAI(
                model=self.config.llm_model,
                google_api_key=self.config.google_api_key,
                temperature=0.7,
                rate_limiter=rate_limiter
            )
        else:
            self.llm = None

        logger.info(f"ArtifactGenerator initialized ({'llm' if self.llm else 'templates'})")

    async def generate(self, market_id: int) -> Dict[str, Any]:
        """
        Build one artifact for ``market_id``.

        Returns:
            Artifact dict ready for upload, including the content hash oracles check
        """
        content = None
        if self.llm is not None:
            content = await self._generate_with_llm(market_id)

        if content is None:
            template = TEMPLATES[self._counter % len(TEMPLATES)]
            content = template["content"]
            kind, confidence = template["kind"], template["confidence"]
        else:
            kind, confidence = "signal", None

        self._counter += 1
        artifact = {
            "market_id": market_id,
            "kind": kind,
            "content": content,
            "content_hash": content_digest(content),
            "created_at": datetime.now(timezone.utc).isoformat(),
        }
        if confidence is not None:
            artifact["confidence"] = confidence

        logger.info(f"✓ Artifact generated for market {market_id}: {kind}")
        return artifact

    async def _generate_with_llm(self, market_id: int) -> Optional[str]:
        expectations = self.config.market_expectations.get(market_id, {})
        keywords = ", ".join(expectations.get("keywords", [])) or "none in particular"
        prompt = (
            f"Write a concise, realistic trading signal for market {market_id}. "
            f"Mention these topics where relevant: {keywords}. "
            f"Answer with the signal text only, two or three sentences."
        )
        try:
            response = await self.llm.ainvoke([HumanMessage(content=prompt)])
        except Exception as e:
            logger.error(f"Error generating artifact with LLM, using template: {e}")
            return None

        text = response.content if isinstance(response.content, str) else ""
        return text.strip() or None
