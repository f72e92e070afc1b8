"""
Tests for artifact scoring.

Prerequisites:
- None (LLM mocked)

Run with: python -m pytest oracle_agents/tests/test_scorer.py
"""

import asyncio
import json
import logging
import unittest
from unittest.mock import AsyncMock, Mock

from oracle_agents.oracle_agent.scorer import (
    HeuristicScorer,
    LLMScorer,
    ScoreBreakdown,
    composite_score,
    content_digest,
    create_scorer,
)
from oracle_agents.tests.fakes import make_config

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)

CONTENT = "ETH momentum signal with rising volume and stable funding rates over the week"


def run_async(coro):
    """Helper to run async functions in sync tests."""
    return asyncio.run(coro)


def artifact(**overrides) -> bytes:
    data = {
        "content": CONTENT,
        "content_hash": content_digest(CONTENT),
        "created_at": "2026-01-01T00:00:00+00:00",
    }
    data.update(overrides)
    return json.dumps(data).encode()


class TestComposite(unittest.TestCase):
    """Test the weighted 0-100 score."""

    def test_weights(self):
        self.assertEqual(composite_score(ScoreBreakdown(1, 1, 1)), 100)
        self.assertEqual(composite_score(ScoreBreakdown(0, 0, 0)), 0)
        self.assertEqual(composite_score(ScoreBreakdown(0.9, 0.8, 1.0)), 88)
        self.assertEqual(composite_score(ScoreBreakdown(1.0, 0.0, 0.0)), 60)
        print("\n✓ Composite = 60% quality + 30% alignment + 10% integrity")

    def test_axes_are_clamped(self):
        breakdown = ScoreBreakdown(1.5, -0.2, 0.5)
        self.assertEqual(breakdown.quality, 1.0)
        self.assertEqual(breakdown.alignment, 0.0)
        self.assertEqual(breakdown.composite, 65)
        self.assertEqual(breakdown.to_dict()["composite"], 65)


class TestHeuristicScorer(unittest.TestCase):
    """Test the deterministic scorer."""

    def setUp(self):
        self.scorer = HeuristicScorer()

    def test_complete_artifact(self):
        result = self.scorer.score_sync(artifact(), {"keywords": ["ETH", "volume"]})
        self.assertEqual((result.quality, result.alignment, result.integrity), (1.0, 1.0, 1.0))
        self.assertEqual(result.composite, 100)

    def test_tampered_hash(self):
        result = self.scorer.score_sync(artifact(content_hash="00" * 32), {})
        self.assertEqual(result.integrity, 0.0)
        self.assertEqual(result.composite, 90)
        self.assertIn("content hash mismatch", result.rationale)

    def test_missing_hash_and_field(self):
        data = json.dumps({"content": CONTENT}).encode()
        result = self.scorer.score_sync(data, {})
        self.assertEqual(result.integrity, 0.5)
        self.assertAlmostEqual(result.quality, 0.8)

    def test_not_json(self):
        result = self.scorer.score_sync(b"just twenty chars...", {})
        self.assertEqual(result.integrity, 0.0)
        self.assertEqual(result.alignment, 0.5)
        self.assertAlmostEqual(result.quality, 0.15)

    def test_async_score_matches_sync(self):
        expected = self.scorer.score_sync(artifact(), {})
        self.assertEqual(run_async(self.scorer.score(artifact(), {})).composite, expected.composite)


class TestLLMScorer(unittest.TestCase):
    """Test the Gemini-backed scorer with a mocked model."""

    def _scorer(self, response=None, error=None):
        llm = Mock()
        if error is not None:
            llm.ainvoke = AsyncMock(side_effect=error)
        else:
            llm.ainvoke = AsyncMock(return_value=Mock(content=response))
        return LLMScorer(make_config(), llm=llm), llm

    def test_parses_model_json(self):
        scorer, llm = self._scorer(
            'Here you go: {"quality": 0.9, "alignment": 0.8, "integrity": 1.0, "rationale": "solid"}'
        )
        result = run_async(scorer.score(artifact(), {"keywords": ["eth"]}))

        self.assertEqual(result.composite, 88)
        self.assertEqual(result.rationale, "solid")
        prompt = llm.ainvoke.call_args[0][0][0].content
        self.assertIn("Buyer expectations", prompt)
        print("\n✓ LLM response parsed into a score breakdown")

    def test_unparsable_falls_back(self):
        scorer, _ = self._scorer("I cannot grade this")
        result = run_async(scorer.score(artifact(), {}))
        self.assertEqual(result.composite, 100)

    def test_model_error_falls_back(self):
        scorer, _ = self._scorer(error=RuntimeError("quota exceeded"))
        result = run_async(scorer.score(artifact(), {}))
        self.assertEqual(result.composite, 100)

    def test_no_key_uses_heuristic(self):
        scorer = LLMScorer(make_config(google_api_key=None))
        self.assertIsNone(scorer.llm)
        self.assertEqual(run_async(scorer.score(artifact(), {})).composite, 100)

    def test_factory(self):
        self.assertIsInstance(create_scorer(make_config(scorer="heuristic")), HeuristicScorer)
        self.assertIsInstance(create_scorer(make_config(scorer="llm")), LLMScorer)


if __name__ == '__main__':
    unittest.main()
