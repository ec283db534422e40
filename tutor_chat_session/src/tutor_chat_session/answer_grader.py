"""
AI Answer Grader

Grades free-text calibration answers with an LLM. Failures are raised to
the caller, which falls back to its own heuristic.
"""

import json
import os
import re
from typing import Optional

from dotenv import load_dotenv
from openai import AsyncOpenAI

from tutor_chat_session.collaborators import GradingResult

load_dotenv()


class OpenAIAnswerGrader:
    """AnswerGradingService backed by the OpenAI chat completions API."""

    def __init__(self, api_key: Optional[str] = None, model: Optional[str] = None, client: Optional[AsyncOpenAI] = None):
        self.model = model or os.getenv("OPENAI_MODEL", "gpt-4o-mini")
        api_key = api_key or os.getenv("OPENAI_API_KEY")
        self.llm_client = client or (AsyncOpenAI(api_key=api_key) if api_key else None)

    async def check(self, question: str, student_answer: str, expected_answer: str) -> GradingResult:
        """
        Raises:
            RuntimeError: if no client is configured
            ValueError / json.JSONDecodeError: if the reply is not usable
        """
        if not self.llm_client:
            raise RuntimeError("OpenAI client not configured")

        prompt = f"""Grade this student's answer to a calibration question.

Question: {question}
Expected answer: {expected_answer}
Student answer: {student_answer}

The answer is correct if it captures the key idea of the expected answer,
even when worded differently.

Return ONLY a JSON object with this exact format:
{{"correct": true or false, "feedback": "one or two sentences for the student"}}"""

        completion = await self.llm_client.chat.completions.create(
            model=self.model,
            messages=[
                {"role": "system", "content": "You are an educational evaluator. Return only valid JSON."},
                {"role": "user", "content": prompt}
            ],
            temperature=0.2,
            max_tokens=200,
            response_format={"type": "json_object"}
        )

        content = (completion.choices[0].message.content or "").strip()
        json_match = re.search(r'\{.*\}', content, re.DOTALL)
        result = json.loads(json_match.group(0) if json_match else content)

        correct = result.get("correct")
        if not isinstance(correct, bool):
            raise ValueError(f"Grader returned no boolean verdict: {content!r}")
        return GradingResult(correct=correct, feedback=str(result.get("feedback", "")))
