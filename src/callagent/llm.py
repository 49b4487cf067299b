"""
Reply generation over an OpenAI-compatible chat API (OpenAI or Groq).

Provides:
- The default phone-agent system prompt (the memory preamble)
- Startup model validation
- Structured replies: the model is asked for `{"reply": ..., "facts": {...}}`
  (JSON mode) and the envelope is validated with pydantic; anything else is
  treated as plain text, where inline fact annotations still work
"""

import asyncio
import json
from typing import Any, Dict, List, Optional

import httpx
import openai
import structlog
from openai import AsyncOpenAI
from pydantic import BaseModel, Field, ValidationError, field_validator

from src.callagent.collaborators import GeneratedReply, ProviderError, ProviderTimeout, ReplyGenerator
from src.callagent.config import Config, get_config
from src.callagent.memory import MemorySnapshot, Role

logger = structlog.get_logger(__name__)

STRUCTURED_REPLY_INSTRUCTIONS = """OUTPUT FORMAT (MANDATORY):
Respond with a single JSON object and nothing else:
{"reply": "<what you say to the caller>", "facts": {"<key>": "<value>"}}
- "reply" is spoken aloud: plain sentences, no lists, no markdown.
- "facts" holds details the caller just gave you (name, budget, city, timeline, property_type...).
  Use short snake_case keys. Use {} when there is nothing new."""

ANNOTATION_INSTRUCTIONS = """MEMORY:
When the caller gives you a detail worth remembering (name, budget, city, timeline,
property type...), append it at the end of your reply as [memory: key=value; key2=value2].
The annotation is removed before your reply is spoken."""


class ReplyEnvelope(BaseModel):
    """Structured reply contract."""

    reply: str
    facts: Dict[str, str] = Field(default_factory=dict)

    @field_validator("facts", mode="before")
    @classmethod
    def _stringify_facts(cls, value: Any) -> Dict[str, str]:
        if value is None:
            return {}
        if not isinstance(value, dict):
            raise ValueError("facts must be an object")
        return {
            str(k): str(v)
            for k, v in value.items()
            if v is not None and str(v).strip()
        }


def get_system_prompt(config: Optional[Config] = None) -> str:
    """
    Get the system prompt for the phone agent.

    `SYSTEM_PROMPT` replaces the built-in persona entirely.
    """
    if config is None:
        config = get_config()

    if config.system_prompt:
        return config.system_prompt

    return f"""You are {config.agent_name}, a professional and friendly real estate assistant for {config.company_name}, speaking with a caller on the phone.

CORE BEHAVIORS:
- Ask short, clear questions, one at a time
- Keep responses concise (1-2 sentences) - this is spoken audio
- Be warm and natural; use contractions
- If you don't understand something, ask for clarification
- Use what you already know about the caller instead of asking again

PHONE CALL GUIDELINES:
- Avoid lists, numbers in long sequences, and markdown
- Be patient with interruptions - they're normal in phone calls
- Never share information about other callers"""


def render_facts(facts: Dict[str, str]) -> str:
    lines = ["Known facts about the caller:"]
    lines.extend(f"- {key}: {value}" for key, value in facts.items())
    return "\n".join(lines)


def build_messages(snapshot: MemorySnapshot, *, structured: bool) -> List[Dict[str, str]]:
    """Build OpenAI-format messages: preamble, facts, output format, history."""
    messages: List[Dict[str, str]] = []
    if snapshot.preamble:
        messages.append({"role": "system", "content": snapshot.preamble})
    if snapshot.facts:
        messages.append({"role": "system", "content": render_facts(snapshot.facts)})
    messages.append({
        "role": "system",
        "content": STRUCTURED_REPLY_INSTRUCTIONS if structured else ANNOTATION_INSTRUCTIONS,
    })
    for message in snapshot.history:
        role = "user" if message.role == Role.CALLER else "assistant"
        messages.append({"role": role, "content": message.text})
    return messages


def parse_reply_payload(content: str, *, structured: bool) -> GeneratedReply:
    """Turn raw model output into a `GeneratedReply`, falling back to plain text."""
    content = (content or "").strip()
    if not structured:
        return GeneratedReply(text=content)

    try:
        envelope = ReplyEnvelope.model_validate_json(content)
    except ValidationError as e:
        logger.warning(
            "Structured reply invalid, using raw text",
            error_count=e.error_count(),
        )
        return GeneratedReply(text=content)

    return GeneratedReply(text=envelope.reply.strip(), facts=envelope.facts, structured=True)


async def validate_model(api_key: str, model_name: str, base_url: str) -> bool:
    """
    Validate that the configured model exists.

    Calls GET {base_url}/models (OpenAI and Groq share the endpoint).

    Raises:
        SystemExit: If the model doesn't exist or the API is unreachable (fail fast)
    """
    logger.info("Validating LLM model", model=model_name, base_url=base_url)

    async with httpx.AsyncClient() as client:
        try:
            response = await client.get(
                f"{base_url}/models",
                headers={"Authorization": f"Bearer {api_key}"},
                timeout=10.0,
            )
        except httpx.RequestError as e:
            logger.error("Failed to connect to LLM API", error=str(e))
            raise SystemExit(
                f"Failed to connect to LLM API: {e}\n"
                "Check your network connection and API key."
            )

    if response.status_code != 200:
        logger.error(
            "Failed to fetch LLM models",
            status_code=response.status_code,
            response=response.text[:200],
        )
        raise SystemExit(
            f"Failed to validate LLM model. API returned status {response.status_code}. "
            "Check your API key."
        )

    try:
        models = response.json().get("data", [])
    except json.JSONDecodeError:
        raise SystemExit("Failed to validate LLM model: /models returned invalid JSON")

    model_ids = [m.get("id") for m in models]
    if model_name not in model_ids:
        available = ", ".join(sorted(str(m) for m in model_ids)[:10])
        logger.error(
            "LLM model not found",
            requested_model=model_name,
            available_models=available,
        )
        raise SystemExit(
            f"Model '{model_name}' not found in available models.\n"
            f"Available models include: {available}\n"
            "Please update your .env file."
        )

    logger.info("LLM model validated successfully", model=model_name)
    return True


class OpenAIChatGenerator(ReplyGenerator):
    """
    Non-streaming chat completion client.

    Replies are short (one or two sentences) and synthesized as a whole, so
    streaming tokens would not lower the time to first audio.
    """

    def __init__(self, config: Optional[Config] = None, client: Optional[AsyncOpenAI] = None):
        if config is None:
            config = get_config()

        self.config = config
        self.model = config.llm_model
        self.timeout_seconds = config.llm_timeout_seconds
        self.structured = config.llm_structured_replies
        self._client = client or AsyncOpenAI(
            api_key=config.llm_api_key,
            base_url=config.llm_base_url,
            timeout=config.llm_timeout_seconds,
            max_retries=0,
        )

    async def validate_model(self) -> bool:
        return await validate_model(self.config.llm_api_key, self.model, self.config.llm_base_url)

    async def generate(self, snapshot: MemorySnapshot) -> GeneratedReply:
        messages = build_messages(snapshot, structured=self.structured)
        kwargs: Dict[str, Any] = {
            "model": self.model,
            "messages": messages,
            "max_tokens": self.config.llm_max_tokens,
            "temperature": self.config.llm_temperature,
        }
        if self.structured:
            kwargs["response_format"] = {"type": "json_object"}

        try:
            completion = await asyncio.wait_for(
                self._client.chat.completions.create(**kwargs),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError as e:
            raise ProviderTimeout("llm", f"no reply within {self.timeout_seconds}s") from e
        except openai.APITimeoutError as e:
            raise ProviderTimeout("llm", str(e)) from e
        except openai.OpenAIError as e:
            raise ProviderError("llm", f"{type(e).__name__}: {e}") from e

        content = completion.choices[0].message.content if completion.choices else None
        if not content or not content.strip():
            raise ProviderError("llm", "empty reply")

        return parse_reply_payload(content, structured=self.structured)

    async def close(self) -> None:
        await self._client.close()
