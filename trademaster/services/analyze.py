import json
import logging
import re
import time
from collections.abc import Mapping

from openai import (
    APIConnectionError,
    APIStatusError,
    APITimeoutError,
    AuthenticationError,
    OpenAI,
    RateLimitError,
)

from trademaster.core.config import Settings, get_ai_keys, settings
from trademaster.jobs.errors import ProviderBadRequestError, ProviderTransientError
from trademaster.models import Trade, User
from trademaster.schemas.analysis import AnalysisRecord, PsychologyInsights, RiskAssessment

logger = logging.getLogger(__name__)

SUMMARY_FALLBACK_CHARS = 500
MAX_TOKENS = 2000

# One client per key (multi-key fallback)
_clients: dict[str, OpenAI] = {}

# When a key is rejected or throttled the next one is tried
KEY_FALLBACK_EXCEPTIONS = (AuthenticationError, RateLimitError)

SYSTEM_PROMPT = (
    "You are an expert trading analyst and psychology coach. Analyze trading decisions with focus on "
    "technical analysis, risk management, and trading psychology. Provide actionable insights and recommendations."
)

RESPONSE_FORMAT = """Please provide your analysis in the following JSON format:
{
  "summary": "Brief 2-3 sentence summary",
  "score": 85,
  "strengths": ["Strength 1", "Strength 2"],
  "weaknesses": ["Weakness 1", "Weakness 2"],
  "recommendations": ["Recommendation 1", "Recommendation 2"],
  "riskAssessment": {"level": "low|medium|high|very-high", "factors": ["Risk factor 1"]},
  "psychologyInsights": {
    "emotionalState": "confident|fearful|greedy|patient|impulsive|neutral",
    "biases": ["Bias 1"],
    "suggestions": ["Psychology suggestion 1"]
  },
  "confidence": 90
}"""


def _get_client_for_key(key: str, cfg: Settings) -> OpenAI:
    if key not in _clients:
        _clients[key] = OpenAI(
            api_key=key,
            base_url=cfg.ai_base_url,
            timeout=cfg.ai_timeout_seconds,
            # Retries belong to the job queue, not the SDK
            max_retries=0,
            default_headers={"HTTP-Referer": cfg.ai_app_url, "X-Title": cfg.ai_app_title},
        )
    return _clients[key]


def classify_provider_error(exc: Exception) -> Exception:
    """Maps an OpenAI SDK exception onto the queue's retryable/terminal taxonomy."""
    if isinstance(exc, APITimeoutError):
        return ProviderTransientError("AI provider timed out")
    if isinstance(exc, APIConnectionError):
        return ProviderTransientError(f"AI provider unreachable: {exc}")
    if isinstance(exc, APIStatusError):
        status = exc.status_code
        if status == 429 or status >= 500:
            return ProviderTransientError(f"AI provider error {status}: {exc.message}", status_code=status)
        return ProviderBadRequestError(f"AI provider rejected request {status}: {exc.message}", status_code=status)
    return exc


def _chat(messages: list[dict], cfg: Settings) -> str:
    """
    Sends the chat completion with each configured key in turn; an auth or rate
    limit error moves on to the next key. Provider errors leave as domain errors.
    """
    keys = get_ai_keys(cfg)
    if not keys:
        raise ProviderBadRequestError("OPENROUTER_API_KEY is not configured.")
    last_exc: Exception | None = None
    for key in keys:
        try:
            response = _get_client_for_key(key, cfg).chat.completions.create(
                model=cfg.ai_model,
                messages=messages,
                max_tokens=MAX_TOKENS,
                temperature=0.7,
                top_p=0.9,
            )
            # Some providers answer 200 with no choices; the executor turns "" into a degraded record
            if not response.choices or response.choices[0].message is None:
                logger.warning("AI reply had no choices, model=%s", cfg.ai_model)
                return ""
            return response.choices[0].message.content or ""
        except KEY_FALLBACK_EXCEPTIONS as e:
            last_exc = e
            logger.warning("AI key skipped (%s), trying next: %s", key[:12] + "...", e)
            continue
        except (APIConnectionError, APIStatusError) as e:
            logger.warning("AI provider call failed: %s", e)
            raise classify_provider_error(e) from e
    raise classify_provider_error(last_exc) from last_exc


def ping_ai(cfg: Settings | None = None) -> tuple[bool, float, str | None]:
    """
    Minimal single-token request for health checks.
    Returns: (success, latency_ms, error_message_or_none)
    """
    cfg = cfg or settings
    t0 = time.perf_counter()
    try:
        _chat([{"role": "user", "content": "Hi"}], cfg)
        return True, round((time.perf_counter() - t0) * 1000, 2), None
    except (ProviderTransientError, ProviderBadRequestError) as e:
        return False, round((time.perf_counter() - t0) * 1000, 2), str(e)[:500]


def _fmt(value, empty: str = "N/A") -> str:
    return empty if value is None or value == "" else str(value)


def _duration_hours(trade: Trade) -> float | None:
    if not trade.exit_time or not trade.entry_time:
        return None
    return round((trade.exit_time - trade.entry_time).total_seconds() / 3600, 2)


def build_trade_prompt(trade: Trade) -> str:
    duration = _duration_hours(trade)
    return f"""Analyze this trading decision and provide comprehensive insights:

TRADE DETAILS:
- Trading Pair: {trade.trade_pair}
- Trade Type: {trade.trade_type}
- Entry Price: {_fmt(trade.entry_price)}
- Exit Price: {_fmt(trade.exit_price, "Still Open")}
- Stop Loss: {_fmt(trade.stop_loss, "Not Set")}
- Take Profit: {_fmt(trade.take_profit, "Not Set")}
- Position Size: {trade.position_size}
- Timeframe: {trade.timeframe}
- Status: {trade.status}
- P&L: {_fmt(trade.pnl)}
- Risk/Reward Ratio: {_fmt(trade.risk_reward_ratio)}
- Strategy: {_fmt(trade.strategy, "Not specified")}
- Market Condition: {_fmt(trade.market_condition, "Unknown")}
- Trade Duration: {f"{duration} hours" if duration is not None else "Ongoing"}
- Notes: {_fmt(trade.notes, "No additional notes")}

{RESPONSE_FORMAT}

Focus on technical analysis quality, risk management, position sizing, entry/exit timing,
psychological factors and biases, what was done well and what to improve.
Provide actionable, specific feedback that will help improve future trading decisions."""


def build_insight_prompt(user: User, trades: list[Trade], period: str) -> str:
    lines = []
    for i, t in enumerate(trades, 1):
        lines.append(
            f"{i}. {t.trade_pair} {t.trade_type.upper()} | Entry: {_fmt(t.entry_price)} | "
            f"Exit: {_fmt(t.exit_price, 'Open')} | Status: {t.status} | P&L: {_fmt(t.pnl, 'Pending')}"
        )
    closed = [t for t in trades if t.pnl is not None]
    wins = [t for t in closed if t.pnl > 0]
    win_rate = round(len(wins) / len(closed) * 100) if closed else 0
    total_pnl = round(sum(t.pnl for t in closed), 2)
    trade_lines = "\n".join(lines) if lines else "No trades recorded."
    return f"""Review this trader's {period} and identify patterns across trades.

TRADER: plan={user.plan}, trades analyzed={len(trades)}, win rate={win_rate}%, total P&L={total_pnl}

TRADES:
{trade_lines}

{RESPONSE_FORMAT}

Score the overall performance for the period and focus on recurring strengths, recurring mistakes,
risk management habits and psychological patterns."""


def _clamp(value, default: int) -> int:
    try:
        number = int(round(float(value)))
    except (TypeError, ValueError):
        return default
    return min(max(number, 0), 100)


def _str_list(value) -> list[str]:
    if not isinstance(value, list):
        return []
    return [str(v) for v in value if v is not None]


def record_from_mapping(data: Mapping) -> AnalysisRecord:
    """Builds a record from provider JSON (camelCase) or our own field names."""
    risk = data.get("riskAssessment") or data.get("risk_assessment") or {}
    psych = data.get("psychologyInsights") or data.get("psychology_insights") or {}
    if not isinstance(risk, Mapping):
        risk = {}
    if not isinstance(psych, Mapping):
        psych = {}
    return AnalysisRecord(
        summary=str(data.get("summary") or ""),
        score=_clamp(data.get("score"), 50),
        confidence=_clamp(data.get("confidence"), 70),
        strengths=_str_list(data.get("strengths")),
        weaknesses=_str_list(data.get("weaknesses")),
        recommendations=_str_list(data.get("recommendations")),
        risk_assessment=RiskAssessment(
            level=str(risk.get("level") or "medium"),
            factors=_str_list(risk.get("factors")),
        ),
        psychology_insights=PsychologyInsights(
            emotional_state=str(psych.get("emotionalState") or psych.get("emotional_state") or "neutral"),
            biases=_str_list(psych.get("biases")),
            suggestions=_str_list(psych.get("suggestions")),
        ),
    )


def degraded_record(raw_text: str) -> AnalysisRecord:
    """Generic result used when the provider reply has no parseable JSON."""
    return AnalysisRecord(
        summary=(raw_text or "")[:SUMMARY_FALLBACK_CHARS],
        score=50,
        confidence=50,
        strengths=["Analysis completed"],
        weaknesses=["Detailed parsing unavailable"],
        recommendations=["Review trade manually"],
        degraded=True,
    )


_JSON_OBJECT = re.compile(r"\{[\s\S]*\}")


def parse_analysis(payload: str | Mapping | AnalysisRecord) -> AnalysisRecord:
    """Never raises: anything unparseable becomes a degraded record."""
    if isinstance(payload, AnalysisRecord):
        return payload
    if isinstance(payload, Mapping):
        return record_from_mapping(payload)
    text = payload if isinstance(payload, str) else str(payload)
    match = _JSON_OBJECT.search(text)
    if match:
        try:
            parsed = json.loads(match.group(0))
            if isinstance(parsed, Mapping):
                return record_from_mapping(parsed)
        except ValueError as e:
            logger.warning("Failed to parse analysis JSON: %s", e)
    return degraded_record(text)


def generate_trade_analysis(trade: Trade, cfg: Settings | None = None) -> str:
    cfg = cfg or settings
    logger.info("AI trade analysis started trade_id=%s pair=%s", trade.id, trade.trade_pair)
    return _chat(
        [
            {"role": "system", "content": SYSTEM_PROMPT},
            {"role": "user", "content": build_trade_prompt(trade)},
        ],
        cfg,
    )


def generate_overall_insight(subject: tuple[User, list[Trade]], cfg: Settings | None = None) -> str:
    cfg = cfg or settings
    user, trades = subject
    logger.info("AI overall insight started user_id=%s trades=%s", user.id, len(trades))
    return _chat(
        [
            {"role": "system", "content": SYSTEM_PROMPT},
            {"role": "user", "content": build_insight_prompt(user, trades, "recent trading history")},
        ],
        cfg,
    )


def generate_weekly_insight(subject: tuple[User, list[Trade]], cfg: Settings | None = None) -> str:
    """``trades`` is already limited to the last 7 days by the insight repository."""
    cfg = cfg or settings
    user, trades = subject
    logger.info("AI weekly insight started user_id=%s trades=%s", user.id, len(trades))
    return _chat(
        [
            {"role": "system", "content": SYSTEM_PROMPT},
            {"role": "user", "content": build_insight_prompt(user, trades, "last 7 days of trading")},
        ],
        cfg,
    )
