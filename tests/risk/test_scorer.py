"""Tests for the LLM risk scorer."""

import json

import httpx
import pytest
import respx

from copybot.core.types import TokenContext
from copybot.risk.scorer import (
    GEMINI_API_URL,
    OPENAI_API_URL,
    LLMRiskScorer,
    build_analysis_prompt,
    default_analysis,
    parse_ai_response,
)

MINT = "BonkMint11111111111111111111111111111111111"


@pytest.fixture
def context():
    return TokenContext(
        mint_address=MINT,
        name="Bonk",
        symbol="BONK",
        liquidity=120_000,
        market_cap=2_000_000,
        has_mint_authority=False,
    )


def openai_reply(content: str) -> httpx.Response:
    return httpx.Response(
        200, json={"choices": [{"message": {"role": "assistant", "content": content}}]}
    )


class TestParseAiResponse:
    """Test model output parsing."""

    def test_valid_json(self):
        """A well-formed answer is parsed as is."""
        analysis = parse_ai_response(
            'Here you go: {"score": 85, "reasoning": "Deep liquidity", '
            '"riskLevel": "LOW", "recommendation": "BUY"}'
        )

        assert analysis.score == 85
        assert analysis.reasoning == "Deep liquidity"
        assert analysis.risk_level == "LOW"
        assert analysis.recommendation == "BUY"

    def test_clamps_and_defaults(self):
        """Scores are clamped and unknown labels fall back to HIGH / SKIP."""
        analysis = parse_ai_response(
            '{"score": 140, "riskLevel": "moderate", "recommendation": "HODL"}'
        )

        assert analysis.score == 100
        assert analysis.risk_level == "HIGH"
        assert analysis.recommendation == "SKIP"
        assert analysis.reasoning == "No reasoning provided"

    def test_negative_score(self):
        """Negative scores clamp to zero."""
        assert parse_ai_response('{"score": -5}').score == 0

    def test_no_json(self):
        """Free text without JSON gives the conservative default."""
        analysis = parse_ai_response("I cannot help with that.")

        assert analysis == default_analysis("Failed to parse AI response")
        assert analysis.risk_level == "EXTREME"

    def test_non_string_reasoning(self):
        """Non-text reasoning is kept as text."""
        analysis = parse_ai_response('{"score": 90, "reasoning": 42}')

        assert analysis.score == 90
        assert analysis.reasoning == "42"

    def test_unrepresentable_score(self):
        """A score too large for an integer gives the default."""
        analysis = parse_ai_response('{"score": 1e999}')

        assert analysis == default_analysis("Failed to parse AI response")


class TestBuildPrompt:
    """Test prompt construction."""

    def test_includes_whale_and_metrics(self, context):
        """The prompt names the whale and formats metrics."""
        prompt = build_analysis_prompt(context, "Big Fish")

        assert "WHALE: Big Fish just bought this token" in prompt
        assert "Liquidity: $120,000" in prompt
        assert "Mint Authority: Revoked" in prompt
        assert "Freeze Authority: Unknown" in prompt

    def test_without_whale(self, context):
        """No whale line without a label."""
        assert "WHALE:" not in build_analysis_prompt(context)


class TestLLMRiskScorer:
    """Test provider calls and failure handling."""

    @pytest.mark.asyncio
    async def test_no_api_key(self, context):
        """Without a key every token scores zero."""
        scorer = LLMRiskScorer(api_key=None)

        analysis = await scorer.analyze_token(context)

        assert analysis.score == 0
        assert analysis.reasoning == "No AI API key configured"
        await scorer.close()

    @pytest.mark.asyncio
    @respx.mock
    async def test_openai(self, context):
        """OpenAI keys use chat completions with the configured model."""
        route = respx.post(OPENAI_API_URL).mock(
            return_value=openai_reply(
                '{"score": 82, "reasoning": "ok", "riskLevel": "LOW", "recommendation": "BUY"}'
            )
        )
        scorer = LLMRiskScorer(api_key="sk-test")

        analysis = await scorer.analyze_token(context, "Big Fish")

        assert scorer.provider == "openai"
        assert analysis.score == 82
        request = route.calls[0].request
        assert request.headers["authorization"] == "Bearer sk-test"
        assert json.loads(request.content)["model"] == "gpt-4o-mini"
        await scorer.close()

    @pytest.mark.asyncio
    @respx.mock
    async def test_gemini(self, context):
        """Keys starting with AIza are sent to Gemini."""
        route = respx.post(GEMINI_API_URL).mock(
            return_value=httpx.Response(
                200,
                json={
                    "candidates": [
                        {"content": {"parts": [{"text": '{"score": 55, "riskLevel": "MEDIUM"}'}]}}
                    ]
                },
            )
        )
        scorer = LLMRiskScorer(api_key="AIzaTestKey")

        analysis = await scorer.analyze_token(context)

        assert scorer.provider == "gemini"
        assert analysis.score == 55
        assert analysis.risk_level == "MEDIUM"
        assert route.calls[0].request.url.params["key"] == "AIzaTestKey"
        await scorer.close()

    @pytest.mark.asyncio
    @respx.mock
    async def test_api_error(self, context):
        """HTTP errors give the default analysis."""
        respx.post(OPENAI_API_URL).mock(return_value=httpx.Response(429, text="slow down"))
        scorer = LLMRiskScorer(api_key="sk-test")

        analysis = await scorer.analyze_token(context)

        assert analysis == default_analysis("API error")
        await scorer.close()

    @pytest.mark.asyncio
    @respx.mock
    async def test_network_error(self, context):
        """Transport errors give the default analysis."""
        respx.post(OPENAI_API_URL).mock(side_effect=httpx.ConnectError("down"))
        scorer = LLMRiskScorer(api_key="sk-test")

        analysis = await scorer.analyze_token(context)

        assert analysis == default_analysis("Analysis failed")
        await scorer.close()

    @pytest.mark.asyncio
    @respx.mock
    async def test_non_string_reasoning(self, context):
        """A numeric reasoning field still yields a scored verdict."""
        respx.post(OPENAI_API_URL).mock(
            return_value=openai_reply('{"score": 90, "reasoning": 42}')
        )
        scorer = LLMRiskScorer(api_key="sk-test")

        analysis = await scorer.analyze_token(context)

        assert analysis.score == 90
        assert analysis.reasoning == "42"
        await scorer.close()

    @pytest.mark.parametrize(
        "body",
        [
            {"choices": [{"message": None}]},
            {"choices": [None]},
            {"choices": [{"message": {"content": None}}]},
        ],
    )
    @pytest.mark.asyncio
    @respx.mock
    async def test_empty_message(self, context, body):
        """Replies without a message give the default analysis."""
        respx.post(OPENAI_API_URL).mock(return_value=httpx.Response(200, json=body))
        scorer = LLMRiskScorer(api_key="sk-test")

        analysis = await scorer.analyze_token(context)

        assert analysis.score == 0
        assert analysis.risk_level == "EXTREME"
        assert analysis.recommendation == "SKIP"
        await scorer.close()
