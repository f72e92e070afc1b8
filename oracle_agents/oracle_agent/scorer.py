"""
Artifact scorers used by oracle nodes.

A scorer grades an artifact against the task's expectations on three axes
in [0, 1]; the node combines them into the 0-100 score it submits.
"""

import hashlib
import json
import logging
import math
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from langchain_core.messages import HumanMessage
from langchain_core.rate_limiters import InMemoryRateLimiter
from langchain_google_genai import ChatGoogleGenerativeAI

from ..config import Config, config as default_config

logger = logging.getLogger(__name__)

QUALITY_WEIGHT = 0.6
ALIGNMENT_WEIGHT = 0.3
INTEGRITY_WEIGHT = 0.1


@dataclass
class ScoreBreakdown:
    """Per-axis grades in [0, 1]."""
    quality: float
    alignment: float
    integrity: float
    rationale: str = ""

    def __post_init__(self):
        for axis in ("quality", "alignment", "integrity"):
            value = float(getattr(self, axis))
            setattr(self, axis, min(1.0, max(0.0, value)))

    @property
    def composite(self) -> int:
        return composite_score(self)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "quality": round(self.quality, 4),
            "alignment": round(self.alignment, 4),
            "integrity": round(self.integrity, 4),
            "composite": self.composite,
            "rationale": self.rationale,
        }


def composite_score(breakdown: ScoreBreakdown) -> int:
    """round(100 * (0.6 quality + 0.3 alignment + 0.1 integrity)), halves rounded up."""
    weighted = (
        QUALITY_WEIGHT * breakdown.quality
        + ALIGNMENT_WEIGHT * breakdown.alignment
        + INTEGRITY_WEIGHT * breakdown.integrity
    )
    return min(100, max(0, math.floor(100 * weighted + 0.5)))


def parse_artifact(artifact: bytes) -> Optional[Dict[str, Any]]:
    """Decode a JSON artifact, or None when it is not a JSON object."""
    try:
        data = json.loads(artifact.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError):
        return None
    return data if isinstance(data, dict) else None


def content_digest(content: Any) -> str:
    """sha256 hex of an artifact's content field, as providers declare it."""
    if not isinstance(content, str):
        content = json.dumps(content, sort_keys=True)
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


class Scorer:
    """Interface of an artifact scorer."""

    name = "scorer"

    async def score(self, artifact: bytes, expectations: Dict[str, Any]) -> ScoreBreakdown:
        raise NotImplementedError


class HeuristicScorer(Scorer):
    """
    Deterministic scorer.

    - quality: valid JSON object, required fields present, enough content
    - alignment: share of expected keywords found in the artifact
    - integrity: declared content hash matches the content
    """

    name = "heuristic"

    DEFAULT_REQUIRED_FIELDS = ("content", "created_at")
    DEFAULT_MIN_LENGTH = 40

    async def score(self, artifact: bytes, expectations: Dict[str, Any]) -> ScoreBreakdown:
        return self.score_sync(artifact, expectations)

    def score_sync(self, artifact: bytes, expectations: Dict[str, Any]) -> ScoreBreakdown:
        required: List[str] = list(expectations.get("required_fields", self.DEFAULT_REQUIRED_FIELDS))
        min_length = int(expectations.get("min_length", self.DEFAULT_MIN_LENGTH))
        keywords: List[str] = [k.lower() for k in expectations.get("keywords", [])]

        data = parse_artifact(artifact)
        text = artifact.decode("utf-8", errors="replace")

        if data is None:
            length_ratio = min(1.0, len(text.strip()) / min_length) if min_length else 1.0
            quality = 0.3 * length_ratio
            integrity = 0.0
            notes = ["not a JSON object"]
        else:
            present = [f for f in required if data.get(f) not in (None, "", [], {})]
            field_ratio = len(present) / len(required) if required else 1.0
            content = data.get("content", "")
            content_text = content if isinstance(content, str) else json.dumps(content)
            length_ratio = min(1.0, len(content_text) / min_length) if min_length else 1.0
            quality = 0.4 + 0.4 * field_ratio + 0.2 * length_ratio
            notes = [f"{len(present)}/{len(required)} required fields"]

            declared = data.get("content_hash")
            if declared is None:
                integrity = 0.5
                notes.append("no content hash")
            elif declared == content_digest(content):
                integrity = 1.0
            else:
                integrity = 0.0
                notes.append("content hash mismatch")

        if keywords:
            lowered = text.lower()
            hits = sum(1 for k in keywords if k in lowered)
            alignment = hits / len(keywords)
            notes.append(f"{hits}/{len(keywords)} keywords")
        else:
            alignment = 1.0 if data is not None else 0.5

        return ScoreBreakdown(quality, alignment, integrity, rationale=", ".join(notes))


class LLMScorer(Scorer):
    """
    Gemini-backed scorer.

    Asks the model for a JSON object with the three axes. Unparsable or
    failed responses fall back to the heuristic scorer.
    """

    name = "llm"

    def __init__(self, scorer_config: Optional[Config] = None, llm=None):
        self.config = scorer_config or default_config
        self.fallback = HeuristicScorer()

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
                temperature=0.0,
                rate_limiter=rate_limiter
            )
        else:
            self.llm = None
            logger.warning("Google API key not configured - LLM scorer will use heuristic scores")

    def _build_prompt(self, artifact: bytes, expectations: Dict[str, Any]) -> str:
        text = artifact.decode("utf-8", errors="replace")[:8000]
        return f"""You are an independent oracle grading a data artifact submitted to a marketplace.

**Buyer expectations:**
{json.dumps(expectations, indent=2, sort_keys=True)}

**Artifact:**
{text}

Grade the artifact on three axes, each a number between 0 and 1:
- quality: completeness, structure and depth of the content
- alignment: how well it matches the expectations above
- integrity: internal consistency (declared hashes, sizes and values agree)

Respond with a single JSON object and nothing else:
{{"quality": <0-1>, "alignment": <0-1>, "integrity": <0-1>, "rationale": "<one sentence>"}}
"""

    def _parse_response(self, response_text: str) -> Optional[ScoreBreakdown]:
        match = re.search(r"\{.*\}", response_text, re.DOTALL)
        if not match:
            return None
        try:
            data = json.loads(match.group(0))
            return ScoreBreakdown(
                quality=float(data["quality"]),
                alignment=float(data["alignment"]),
                integrity=float(data["integrity"]),
                rationale=str(data.get("rationale", "")),
            )
        except (json.JSONDecodeError, KeyError, TypeError, ValueError):
            return None

    async def score(self, artifact: bytes, expectations: Dict[str, Any]) -> ScoreBreakdown:
        if self.llm is None:
            return await self.fallback.score(artifact, expectations)

        try:
            response = await self.llm.ainvoke([HumanMessage(content=self._build_prompt(artifact, expectations))])
        except Exception as e:
            logger.error(f"Error during LLM scoring, using heuristic: {e}")
            return await self.fallback.score(artifact, expectations)

        content = response.content if isinstance(response.content, str) else json.dumps(response.content)
        breakdown = self._parse_response(content)
        if breakdown is None:
            logger.warning("Unparsable LLM score, using heuristic")
            return await self.fallback.score(artifact, expectations)

        logger.info(f"✓ LLM score: {breakdown.composite}/100 - {breakdown.rationale}")
        return breakdown


def create_scorer(scorer_config: Optional[Config] = None) -> Scorer:
    cfg = scorer_config or default_config
    if cfg.scorer == "llm":
        return LLMScorer(cfg)
    return HeuristicScorer()
