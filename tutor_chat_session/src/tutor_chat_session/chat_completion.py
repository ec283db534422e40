"""
OpenAI Chat Completion Service

Sends the student's message, with the replayed conversation context, to the
chat model using a mode-specific system prompt. Truncated answers are
continued up to MAX_CONTINUATIONS times.

Cancellation is plain asyncio task cancellation; it propagates into the
HTTP call.
"""

import logging
import os
from typing import Dict, List, Optional

from dotenv import load_dotenv
from openai import AsyncOpenAI

from tutor_chat_session.collaborators import ChatCompletionResult

load_dotenv()

logger = logging.getLogger(__name__)

MAX_CONTINUATIONS = 2

BASE_SYSTEM_PROMPT = (
    "You are BiocBot, a teaching assistant for a university biochemistry course. "
    "Stay within the course material and say so when a question falls outside it."
)

MODE_PROMPTS = {
    "protege": (
        "You are in protégé mode. The student has demonstrated good understanding. "
        "Engage them as a study partner, ask follow-up questions, and explore topics together."
    ),
    "tutor": (
        "You are in tutor mode. The student needs guidance. "
        "Provide clear explanations, examples, and step-by-step help."
    ),
}


def build_system_prompt(mode: str, course_id: Optional[str], unit_name: Optional[str]) -> str:
    prompt = f"{BASE_SYSTEM_PROMPT}\n\n{MODE_PROMPTS.get(mode, MODE_PROMPTS['tutor'])}"
    if course_id or unit_name:
        prompt += f"\n\nCourse: {course_id or 'unknown'}. Unit: {unit_name or 'unknown'}."
    return prompt


class OpenAIChatCompletionService:
    """ChatCompletionService backed by the OpenAI chat completions API."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        client: Optional[AsyncOpenAI] = None,
        max_tokens: int = 1000,
    ):
        self.model = model or os.getenv("OPENAI_MODEL", "gpt-4o-mini")
        api_key = api_key or os.getenv("OPENAI_API_KEY")
        self.llm_client = client or (AsyncOpenAI(api_key=api_key) if api_key else None)
        self.max_tokens = max_tokens

    async def send(
        self,
        message: str,
        mode: str,
        course_id: Optional[str],
        unit_name: Optional[str],
        conversation_context: Optional[List[Dict[str, str]]],
    ) -> ChatCompletionResult:
        if not self.llm_client:
            return ChatCompletionResult(success=False, message="Chat service is not configured.")

        messages = [{"role": "system", "content": build_system_prompt(mode, course_id, unit_name)}]
        messages.extend(conversation_context or [])
        messages.append({"role": "user", "content": message})

        response = await self.llm_client.chat.completions.create(
            model=self.model,
            messages=messages,
            temperature=0.5,
            max_tokens=self.max_tokens,
        )
        choice = response.choices[0]
        full_content = choice.message.content or ""

        continuations = 0
        while continuations < MAX_CONTINUATIONS and choice.finish_reason == "length":
            continuations += 1
            logger.info(f"⏩ [ChatCompletion] Requesting continuation {continuations}; length={len(full_content)}")
            tail = full_content[-200:]
            response = await self.llm_client.chat.completions.create(
                model=self.model,
                messages=messages + [
                    {"role": "assistant", "content": full_content},
                    {"role": "user", "content": (
                        "Continue the previous answer. Do not repeat earlier content. "
                        f"Pick up seamlessly from here: \"{tail}\""
                    )},
                ],
                temperature=0.6,
                max_tokens=800,
            )
            choice = response.choices[0]
            chunk = choice.message.content or ""
            if chunk:
                full_content += ("" if full_content.endswith("\n") else "\n") + chunk

        return ChatCompletionResult(success=bool(full_content), message=full_content)
