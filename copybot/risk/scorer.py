"""LLM risk oracle for copy-trade candidates (OpenAI or Gemini)."""

import json
import re
from typing import Any

import httpx
import structlog
from pydantic import ValidationError

from ..core.interfaces import RiskScorer
from ..core.types import TokenAnalysis, TokenContext

logger = structlog.get_logger(__name__)

OPENAI_API_URL = "https://api.openai.com/v1/chat/completions"
GEMINI_API_URL = (
    "https://generativelanguage.googleapis.com/v1beta/models/"
    "gemini-1.5-flash:generateContent"
)

SYSTEM_PROMPT = (
    "You are a crypto trading risk analyst. Analyze tokens and return JSON with "
    "score (0-100), reasoning, riskLevel (LOW/MEDIUM/HIGH/EXTREME), and "
    "recommendation (BUY/SKIP/CAUTION)."
)

_RISK_LEVELS = {"LOW", "MEDIUM", "HIGH", "EXTREME"}
_RECOMMENDATIONS = {"BUY", "SKIP", "CAUTION"}
_JSON_BLOCK = re.compile(r"\{.*\}", re.DOTALL)


def default_analysis(reason: str) -> TokenAnalysis:
    """Most conservative verdict, used whenever scoring fails."""
    return TokenAnalysis(
        score=0, reasoning=reason, risk_level="EXTREME", recommendation="SKIP"
    )


def _fmt_number(value: float | int | None) -> str:
    return f"{value:,}" if value is not None else "Unknown"


def _fmt_authority(value: bool | None) -> str:
    if value is None:
        return "Unknown"
    return "ACTIVE (warning)" if value else "Revoked"


def build_analysis_prompt(context: TokenContext, whale_label: str | None = None) -> str:
    """Prompt describing the token and the scoring guide."""
    whale_line = f"WHALE: {whale_label} just bought this token\n" if whale_label else ""
    top_holders = (
        f"{context.top_holders_percent}%"
        if context.top_holders_percent is not None
        else "Unknown"
    )
    return (
        "Analyze this Solana token for copy trading risk:\n\n"
        f"TOKEN: {context.symbol or 'Unknown'} ({context.name or 'Unknown'})\n"
        f"MINT: {context.mint_address}\n"
        f"{whale_line}\n"
        "METRICS:\n"
        f"- Liquidity: ${_fmt_number(context.liquidity)}\n"
        f"- Market Cap: ${_fmt_number(context.market_cap)}\n"
        f"- 24h Volume: ${_fmt_number(context.volume_24h)}\n"
        f"- Holders: {_fmt_number(context.holders)}\n"
        f"- Top 10 Holders: {top_holders}\n"
        f"- Mint Authority: {_fmt_authority(context.has_mint_authority)}\n"
        f"- Freeze Authority: {_fmt_authority(context.has_freeze_authority)}\n"
        f"- Token Age: {context.created_at or 'Unknown'}\n\n"
        "SCORING GUIDE:\n"
        "- 80-100: Safe to copy (good liquidity, revoked authorities, "
        "reasonable holder distribution)\n"
        "- 60-79: Proceed with caution\n"
        "- 40-59: High risk, not recommended\n"
        "- 0-39: Extreme risk, likely rug/scam\n\n"
        "Respond in JSON format:\n"
        "{\n"
        '    "score": <0-100>,\n'
        '    "reasoning": "<brief explanation>",\n'
        '    "riskLevel": "LOW|MEDIUM|HIGH|EXTREME",\n'
        '    "recommendation": "BUY|SKIP|CAUTION"\n'
        "}"
    )


def parse_ai_response(text: str) -> TokenAnalysis:
    """Extract a TokenAnalysis from free-form model output.

    The first ``{...}`` block is parsed; the score is clamped to 0..100 and
    unknown risk levels or recommendations fall back to HIGH / SKIP.
    """
    match = _JSON_BLOCK.search(str(text or ""))
    if not match:
        return default_analysis("Failed to parse AI response")

    try:
        parsed = json.loads(match.group(0))
        score = int(float(parsed.get("score") or 0))
    except (
        json.JSONDecodeError,
        TypeError,
        ValueError,
        AttributeError,
        OverflowError,
    ) as e:
        logger.warning("Failed to parse AI response", error=str(e))
        return default_analysis("Failed to parse AI response")

    risk_level = str(parsed.get("riskLevel") or "HIGH").upper()
    recommendation = str(parsed.get("recommendation") or "SKIP").upper()
    return TokenAnalysis(
        score=min(100, max(0, score)),
        reasoning=str(parsed.get("reasoning") or "No reasoning provided"),
        risk_level=risk_level if risk_level in _RISK_LEVELS else "HIGH",
        recommendation=recommendation if recommendation in _RECOMMENDATIONS else "SKIP",
    )


class LLMRiskScorer(RiskScorer):
    """Risk oracle backed by OpenAI chat completions or Gemini.

    Keys starting with ``AIza`` are Gemini keys; anything else is sent to
    OpenAI.
    """

    def __init__(
        self,
        api_key: str | None,
        model: str = "gpt-4o-mini",
        session: httpx.AsyncClient | None = None,
        timeout: float = 30.0,
        openai_url: str = OPENAI_API_URL,
        gemini_url: str = GEMINI_API_URL,
    ) -> None:
        self.api_key = api_key
        self.model = model
        self.session = session or httpx.AsyncClient(timeout=timeout)
        self.timeout = timeout
        self.openai_url = openai_url
        self.gemini_url = gemini_url

        if not api_key:
            logger.warning("No risk oracle API key configured, every token scores 0")

    @property
    def provider(self) -> str:
        if self.api_key and self.api_key.startswith("AIza"):
            return "gemini"
        return "openai"

    async def analyze_token(
        self, context: TokenContext, whale_label: str | None = None
    ) -> TokenAnalysis:
        """Score a token; returns the default analysis on any failure."""
        if not self.api_key:
            return default_analysis("No AI API key configured")

        prompt = build_analysis_prompt(context, whale_label)
        try:
            if self.provider == "gemini":
                text = await self._ask_gemini(prompt)
            else:
                text = await self._ask_openai(prompt)
        except httpx.HTTPStatusError as e:
            logger.error(
                "Risk oracle API error",
                provider=self.provider,
                status_code=e.response.status_code,
                response_text=e.response.text[:500],
            )
            return default_analysis("API error")
        except (
            httpx.HTTPError,
            ValueError,
            KeyError,
            IndexError,
            TypeError,
            AttributeError,
        ) as e:
            logger.error("Risk oracle call failed", provider=self.provider, error=str(e))
            return default_analysis("Analysis failed")

        try:
            analysis = parse_ai_response(text)
        except ValidationError as e:
            logger.error("Invalid risk oracle verdict", provider=self.provider, error=str(e))
            return default_analysis("Failed to parse AI response")

        logger.info(
            "Token scored",
            token_mint=context.mint_address,
            provider=self.provider,
            score=analysis.score,
            risk_level=analysis.risk_level,
        )
        return analysis

    async def _ask_openai(self, prompt: str) -> str:
        payload: dict[str, Any] = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": prompt},
            ],
            "temperature": 0.3,
            "max_tokens": 500,
        }
        response = await self.session.post(
            self.openai_url,
            json=payload,
            headers={"Authorization": f"Bearer {self.api_key}"},
            timeout=self.timeout,
        )
        response.raise_for_status()
        data = response.json()
        choice = (data.get("choices") or [{}])[0] or {}
        return (choice.get("message") or {}).get("content") or ""

    async def _ask_gemini(self, prompt: str) -> str:
        payload = {
            "contents": [{"parts": [{"text": prompt}]}],
            "generationConfig": {"temperature": 0.3, "maxOutputTokens": 500},
        }
        response = await self.session.post(
            self.gemini_url,
            params={"key": self.api_key},
            json=payload,
            timeout=self.timeout,
        )
        response.raise_for_status()
        data = response.json()
        candidates = data.get("candidates") or [{}]
        parts = ((candidates[0] or {}).get("content") or {}).get("parts") or [{}]
        return (parts[0] or {}).get("text") or ""

    async def close(self) -> None:
        """Close the HTTP session."""
        await self.session.aclose()
