"""
Contextual chunk descriptions (contextual retrieval).

Asks a small chat model for a one-line description of each chunk, batched
CONTEXT_CHUNKS_PER_REQUEST chunks per call. The description is prepended to
the chunk text before embedding and shown in built contexts.

Best effort: any failure yields no context for the affected batch.
"""

import json
import logging
import re
from typing import List, Optional, Sequence

from openai import AsyncOpenAI

from codechat.config import (
    CONTEXT_CHUNKS_PER_REQUEST,
    CONTEXT_MAX_OUTPUT_TOKENS,
    CONTEXT_MODEL,
    HTTP_TIMEOUT_S,
    require_openai_key,
)
from codechat.parsing.chunker import ChunkDraft

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = """You are a code documentation assistant. You will receive multiple code chunks and must write a brief description for each one.

Rules for each description:
- Be specific about what the code does, not generic
- Mention the function/class name if provided
- Keep each description under 40 words
- No markdown, present tense, start directly with the description

Return ONLY a JSON array of strings, one per chunk, in input order."""

_JSON_ARRAY = re.compile(r"\[.*\]", re.DOTALL)


def build_batch_prompt(chunks: Sequence[ChunkDraft]) -> str:
    parts = [f"Generate brief descriptions for these {len(chunks)} code chunks:\n"]
    for index, chunk in enumerate(chunks, start=1):
        parts.append(f"--- CHUNK {index} ---")
        parts.append(f"File: {chunk.file_path}")
        parts.append(f"Lines: {chunk.start_line}-{chunk.end_line}")
        parts.append(f"Type: {chunk.chunk_type}")
        if chunk.symbol_name:
            parts.append(f"Name: {chunk.symbol_name}")
        parts.append(f"```{chunk.language}\n{chunk.content}\n```\n")
    parts.append(f"Return a JSON array with {len(chunks)} descriptions, one for each chunk in order.")
    return "\n".join(parts)


def parse_descriptions(text: Optional[str], expected: int) -> List[str]:
    """Extract a JSON string array from the reply, padded/truncated to `expected`."""
    if not text:
        return [""] * expected
    match = _JSON_ARRAY.search(text)
    if not match:
        logger.warning("[contextual] No JSON array in model reply")
        return [""] * expected
    try:
        items = json.loads(match.group(0))
    except json.JSONDecodeError as e:
        logger.warning(f"[contextual] Invalid JSON in model reply: {e}")
        return [""] * expected
    if not isinstance(items, list):
        return [""] * expected

    descriptions = [item.strip() if isinstance(item, str) else "" for item in items[:expected]]
    if len(descriptions) < expected:
        logger.warning(f"[contextual] Got {len(descriptions)} descriptions for {expected} chunks, padding")
        descriptions.extend([""] * (expected - len(descriptions)))
    return descriptions


class ContextualGenerator:
    """Attaches LLM-written descriptions to chunk drafts."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: str = CONTEXT_MODEL,
        chunks_per_request: int = CONTEXT_CHUNKS_PER_REQUEST,
        client: Optional[AsyncOpenAI] = None,
    ):
        self.model = model
        self.chunks_per_request = max(1, chunks_per_request)
        self._client = client or AsyncOpenAI(
            api_key=api_key or require_openai_key(),
            timeout=HTTP_TIMEOUT_S,
        )

    async def _describe_batch(self, chunks: Sequence[ChunkDraft]) -> List[str]:
        try:
            response = await self._client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": SYSTEM_PROMPT},
                    {"role": "user", "content": build_batch_prompt(chunks)},
                ],
                max_tokens=CONTEXT_MAX_OUTPUT_TOKENS,
                temperature=0,
            )
            text = response.choices[0].message.content
        except Exception as e:
            logger.error(f"[contextual] LLM call failed: {e}")
            return [""] * len(chunks)
        return parse_descriptions(text, len(chunks))

    async def add_context(self, chunks: List[ChunkDraft]) -> int:
        """
        Set `context` on each chunk in place.

        Returns:
            Number of chunks that received a description
        """
        described = 0
        for offset in range(0, len(chunks), self.chunks_per_request):
            batch = chunks[offset:offset + self.chunks_per_request]
            for chunk, description in zip(batch, await self._describe_batch(batch)):
                chunk.context = description or None
                described += 1 if description else 0
        logger.info(f"[contextual] Described {described}/{len(chunks)} chunks")
        return described
