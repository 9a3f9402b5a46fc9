"""
AI service - Anthropic primary, OpenAI (or any OpenAI-compatible gateway) fallback.
Tool-calling chat completions for the visit agent.
Tracks cost, latency, and token usage for every call.
Daily spending cap via Redis to prevent runaway costs.

Rate limits (429) and payment/budget failures (402) are raised as their own
exception types: the conductor hands those conversations to a human without
messaging the customer.
"""
import json
import logging
import re
import time
from typing import Optional

logger = logging.getLogger(__name__)

# Cost per million tokens (input/output)
COST_TABLE = {
    "claude-haiku-4-5-20251001": {"input": 1.00, "output": 5.00},
    "claude-sonnet-4-5-20250929": {"input": 3.00, "output": 15.00},
    "gpt-4o-mini": {"input": 0.15, "output": 0.60},
    "gpt-4o": {"input": 2.50, "output": 10.00},
}

DAILY_SPEND_KEY = "visitflow:ai:daily_spend"
DAILY_SPEND_TTL = 86400  # 24 hours


class AIServiceError(Exception):
    """Completion provider failed for this turn."""
    pass


class AIRateLimitedError(AIServiceError):
    """Provider answered 429."""
    pass


class AIPaymentRequiredError(AIServiceError):
    """Provider answered 402, or the daily budget is spent."""
    pass


def calculate_cost(model: str, input_tokens: int, output_tokens: int) -> float:
    """Calculate cost in USD for a given model and token count."""
    costs = COST_TABLE.get(model, {"input": 1.0, "output": 5.0})
    return (input_tokens * costs["input"] + output_tokens * costs["output"]) / 1_000_000


def _sanitize_output_text(text: Optional[str]) -> str:
    """Remove hidden reasoning blocks returned by some providers."""
    if not text:
        return ""
    cleaned = re.sub(r"<think>.*?</think>", "", text, flags=re.DOTALL | re.IGNORECASE)
    return cleaned.strip()


def classify_provider_error(provider: str, error: Exception) -> AIServiceError:
    """Map an SDK exception to our error taxonomy by HTTP status."""
    status = getattr(error, "status_code", None)
    if status == 429:
        return AIRateLimitedError(f"{provider} rate limited")
    if status == 402:
        return AIPaymentRequiredError(f"{provider} payment required")
    return AIServiceError(f"{provider} error: {error}")


async def _check_daily_budget(cost_usd: float = 0.0) -> tuple[bool, float]:
    """
    Check if adding cost_usd would exceed the daily AI budget.
    Returns (allowed, current_spend).
    """
    try:
        from src.utils.dedup import get_redis
        from src.config import get_settings
        settings = get_settings()
        budget = settings.ai_daily_budget_usd

        redis = await get_redis()
        current_raw = await redis.get(DAILY_SPEND_KEY)
        current = float(current_raw) if current_raw else 0.0

        if current + cost_usd > budget:
            return False, current
        return True, current
    except Exception as e:
        logger.debug("Budget check failed (allowing): %s", str(e))
        return True, 0.0


async def _record_spend(cost_usd: float) -> None:
    """Record AI spend in Redis with TTL-based daily reset."""
    if cost_usd <= 0:
        return
    try:
        from src.utils.dedup import get_redis
        redis = await get_redis()
        pipe = redis.pipeline()
        pipe.incrbyfloat(DAILY_SPEND_KEY, cost_usd)
        pipe.expire(DAILY_SPEND_KEY, DAILY_SPEND_TTL)
        await pipe.execute()
    except Exception as e:
        logger.debug("Spend recording failed: %s", str(e))


async def generate_with_tools(
    messages: list[dict],
    tools: list[dict],
    max_tokens: Optional[int] = None,
    temperature: Optional[float] = None,
) -> dict:
    """
    Run one tool-enabled chat completion. Anthropic primary, OpenAI fallback.

    Args:
        messages: OpenAI-style [{"role": "system"|"user"|"assistant", "content": str}]
        tools: OpenAI-style function tool definitions

    Returns:
        {
            "content": str,
            "tool_calls": [{"id": str, "name": str, "arguments": dict}],
            "provider": str,
            "model": str,
            "latency_ms": int,
            "cost_usd": float,
            "input_tokens": int,
            "output_tokens": int,
        }

    Raises:
        AIRateLimitedError, AIPaymentRequiredError, AIServiceError
    """
    from src.config import get_settings
    settings = get_settings()

    allowed, current_spend = await _check_daily_budget()
    if not allowed:
        logger.warning(
            "AI daily budget exceeded: $%.4f spent of $%.2f limit",
            current_spend, settings.ai_daily_budget_usd,
        )
        raise AIPaymentRequiredError(
            f"Daily AI budget exceeded (${current_spend:.2f}/${settings.ai_daily_budget_usd:.2f})"
        )

    tokens = max_tokens or settings.openai_max_tokens
    temp = settings.openai_temperature if temperature is None else temperature

    providers = []
    if settings.anthropic_api_key:
        providers.append(("anthropic", _generate_anthropic))
    if settings.openai_api_key:
        providers.append(("openai", _generate_openai))
    if not providers:
        raise AIServiceError("No AI provider available (check API keys)")

    last_error: Optional[AIServiceError] = None
    last_cause: Optional[Exception] = None
    for name, call in providers:
        try:
            result = await call(messages, tools, tokens, temp)
            await _record_spend(result.get("cost_usd", 0.0))
            return result
        except Exception as e:
            logger.error("%s completion failed: %s", name, str(e), extra={"provider": name})
            last_error, last_cause = classify_provider_error(name, e), e

    raise last_error from last_cause


def _to_anthropic_messages(messages: list[dict]) -> tuple[str, list[dict]]:
    """Split out system prompts and merge consecutive same-role turns."""
    system = "\n\n".join(m["content"] for m in messages if m["role"] == "system" and m.get("content"))
    conversation: list[dict] = []
    for m in messages:
        if m["role"] == "system" or not m.get("content"):
            continue
        if conversation and conversation[-1]["role"] == m["role"]:
            conversation[-1]["content"] += "\n\n" + m["content"]
        else:
            conversation.append({"role": m["role"], "content": m["content"]})
    # Anthropic requires the first turn to come from the user
    while conversation and conversation[0]["role"] != "user":
        conversation.pop(0)
    return system, conversation


async def _generate_anthropic(
    messages: list[dict],
    tools: list[dict],
    max_tokens: int,
    temperature: float,
) -> dict:
    """Tool-calling completion using the Anthropic Messages API."""
    from anthropic import AsyncAnthropic
    from src.config import get_settings
    settings = get_settings()

    model = settings.anthropic_model
    client = AsyncAnthropic(
        api_key=settings.anthropic_api_key,
        timeout=settings.anthropic_timeout_seconds,
    )
    system, conversation = _to_anthropic_messages(messages)
    anthropic_tools = [
        {
            "name": t["function"]["name"],
            "description": t["function"].get("description", ""),
            "input_schema": t["function"]["parameters"],
        }
        for t in tools
    ]

    start = time.monotonic()
    response = await client.messages.create(
        model=model,
        max_tokens=max_tokens,
        temperature=temperature,
        system=system,
        messages=conversation,
        tools=anthropic_tools,
        tool_choice={"type": "auto"},
    )
    latency_ms = int((time.monotonic() - start) * 1000)

    content = ""
    tool_calls = []
    for block in response.content:
        if block.type == "text":
            content += block.text
        elif block.type == "tool_use":
            tool_calls.append({
                "id": block.id,
                "name": block.name,
                "arguments": dict(block.input or {}),
            })

    input_tokens = response.usage.input_tokens if response.usage else 0
    output_tokens = response.usage.output_tokens if response.usage else 0

    return {
        "content": _sanitize_output_text(content),
        "tool_calls": tool_calls,
        "provider": "anthropic",
        "model": model,
        "latency_ms": latency_ms,
        "cost_usd": calculate_cost(model, input_tokens, output_tokens),
        "input_tokens": input_tokens,
        "output_tokens": output_tokens,
    }


def _parse_arguments(raw: Optional[str]) -> dict:
    try:
        parsed = json.loads(raw or "{}")
    except json.JSONDecodeError:
        return {}
    return parsed if isinstance(parsed, dict) else {}


async def _generate_openai(
    messages: list[dict],
    tools: list[dict],
    max_tokens: int,
    temperature: float,
) -> dict:
    """Tool-calling completion using the OpenAI Chat Completions API."""
    from openai import AsyncOpenAI
    from src.config import get_settings
    settings = get_settings()

    model = settings.openai_model
    client = AsyncOpenAI(
        api_key=settings.openai_api_key,
        base_url=(settings.openai_base_url or None),
        timeout=settings.openai_timeout_seconds,
    )

    start = time.monotonic()
    response = await client.chat.completions.create(
        model=model,
        max_tokens=max_tokens,
        temperature=temperature,
        messages=messages,
        tools=tools,
        tool_choice="auto",
    )
    latency_ms = int((time.monotonic() - start) * 1000)

    message = response.choices[0].message if response.choices else None
    content = _sanitize_output_text(message.content if message else "")
    tool_calls = [
        {
            "id": tc.id,
            "name": tc.function.name,
            "arguments": _parse_arguments(tc.function.arguments),
        }
        for tc in ((message.tool_calls if message else None) or [])
        if getattr(tc, "function", None) is not None
    ]
    input_tokens = response.usage.prompt_tokens if response.usage else 0
    output_tokens = response.usage.completion_tokens if response.usage else 0

    return {
        "content": content,
        "tool_calls": tool_calls,
        "provider": "openai",
        "model": model,
        "latency_ms": latency_ms,
        "cost_usd": calculate_cost(model, input_tokens, output_tokens),
        "input_tokens": input_tokens,
        "output_tokens": output_tokens,
    }
