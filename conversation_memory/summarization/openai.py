"""
OpenAI chat summarizer.

One chat completion returns both the abbreviation and a proposed title, so
idle processing costs a single call per conversation.
"""

from __future__ import annotations

import json
import logging
import os

from openai import AsyncOpenAI

from ..tokens import truncate_tokens_from_start
from .base import Summarizer

logger = logging.getLogger(__name__)

SUMMARY_PROMPT = """Abbreviate the conversation below into a concise meeting-notes style summary (about 100-200 words).

Focus on key topics, important entities (names, projects, systems), decisions made or pending, open threads, and context needed for resuming.
Omit pleasantries, repetition and small talk. Write in third person, past tense.

Also name the conversation:
- title: exactly 3 lowercase words separated by hyphens, evocative rather than literal (e.g. "midnight-code-whispers")
- topics: 1-5 kebab-case tags (e.g. ["server-monitoring", "deployment"])

Return ONLY a JSON object:
{"abbreviation": "...", "title": "three-word-title", "topics": ["topic-one"]}"""


class OpenAISummarizer(Summarizer):
    """Summarizer backed by the OpenAI chat completions API."""

    def __init__(
        self,
        api_key: str,
        model: str = "gpt-4o-mini",
        base_url: str | None = None,
        max_input_tokens: int = 12000,
        temperature: float = 0.2,
    ):
        self.api_key = api_key
        self.model = model
        self.base_url = base_url
        self.max_input_tokens = max_input_tokens
        self.temperature = temperature
        self._client: AsyncOpenAI | None = None

    @classmethod
    def from_env(cls) -> OpenAISummarizer:
        """
        Create summarizer from environment variables.

        Required env vars:
            OPENAI_API_KEY: OpenAI API key

        Optional env vars:
            OPENAI_SUMMARY_MODEL: Chat model (default: gpt-4o-mini)
            OPENAI_BASE_URL: Custom base URL
        """
        api_key = os.environ.get("OPENAI_API_KEY")
        if not api_key:
            raise ValueError("OPENAI_API_KEY environment variable required")
        return cls(
            api_key=api_key,
            model=os.environ.get("OPENAI_SUMMARY_MODEL", "gpt-4o-mini"),
            base_url=os.environ.get("OPENAI_BASE_URL"),
        )

    @property
    def model_name(self) -> str:
        return self.model

    def _ensure_client(self) -> AsyncOpenAI:
        if self._client is None:
            self._client = AsyncOpenAI(api_key=self.api_key, base_url=self.base_url)
        return self._client

    async def summarize(self, transcript_text: str) -> str:
        # Long transcripts keep their most recent part
        transcript_text = truncate_tokens_from_start(transcript_text, self.max_input_tokens)

        response = await self._ensure_client().chat.completions.create(
            model=self.model,
            temperature=self.temperature,
            response_format={"type": "json_object"},
            messages=[
                {"role": "system", "content": "You are a conversation summarizer. Return only valid JSON."},
                {
                    "role": "user",
                    "content": f"{SUMMARY_PROMPT}\n\n---\n\nConversation transcript:\n\n{transcript_text}",
                },
            ],
        )
        content = response.choices[0].message.content or ""
        if not content.strip():
            raise ValueError("empty response from summarizer model")
        logger.debug("Summarizer reply: %s", json.dumps(content[:200]))
        return content

    async def close(self) -> None:
        if self._client:
            await self._client.close()
            self._client = None
