"""Grounded answer synthesis: retrieve excerpts, then ask the chat model to cite them."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional, Union

from openai import AsyncOpenAI, OpenAIError

from app.config.logger import app_logger
from app.config.settings import settings
from app.models.knowledge_chunk import Collection
from app.services.errors import CompletionError, ConfigurationError
from app.services.retriever import Retriever
from app.services.vector_store import ScoredChunk

NO_RESULTS_ANSWER = (
    "No relevant information found in the knowledge base. "
    "Please ensure records have been synced and indexed."
)
EMPTY_COMPLETION_ANSWER = "Unable to generate answer."

SOURCE_SEPARATOR = "\n\n---\n\n"
SNIPPET_CHARS = 200
MAX_SOURCES = 5

SYSTEM_PROMPTS = {
    Collection.INCIDENT: (
        "You are a security incident analyst. Answer questions strictly from the provided "
        "incident record excerpts of an ISMS incident management system. If the excerpts do "
        "not contain the answer, say so. Cite sources using [Source N] notation. Be concise, "
        "accurate, and focus on patterns, trends, and actionable insights."
    ),
    Collection.CHANGE: (
        "You are a change management analyst. Answer questions strictly from the provided "
        "change record excerpts of an ISMS system. If the excerpts do not contain the answer, "
        "say so. Cite sources using [Source N] notation. Be concise, accurate, and focus on "
        "patterns, impact analysis, and actionable insights."
    ),
    Collection.DOCUMENT: (
        "You are an ISMS policy expert. Answer questions based on the provided policy "
        "document excerpts. If the excerpts do not contain the answer, say so. Cite sources "
        "using [Source N] notation. Be concise and accurate."
    ),
    None: (
        "You are an ISMS knowledge assistant. Answer questions strictly from the provided "
        "record excerpts. If the excerpts do not contain the answer, say so. Cite sources "
        "using [Source N] notation. Be concise and accurate."
    ),
}

EXCERPT_LABELS = {
    Collection.INCIDENT: ("incident records", "Incident Excerpts"),
    Collection.CHANGE: ("change records", "Change Excerpts"),
    Collection.DOCUMENT: ("ISMS policy excerpts", "Excerpts"),
    None: ("records", "Excerpts"),
}


@dataclass
class AnswerSource:
    reference: str
    title: str
    source_record_id: str
    similarity: float
    snippet: str


@dataclass
class Answer:
    answer: str
    sources: List[AnswerSource] = field(default_factory=list)


def build_context(results: List[ScoredChunk]) -> str:
    """Number the excerpts so the model can cite them as [Source N]."""
    return SOURCE_SEPARATOR.join(
        f"[Source {position}: {chunk.reference} - {chunk.title}]\n{chunk.content}"
        for position, chunk in enumerate(results, start=1)
    )


def build_sources(results: List[ScoredChunk]) -> List[AnswerSource]:
    return [
        AnswerSource(
            reference=chunk.reference,
            title=chunk.title,
            source_record_id=chunk.source_record_id,
            similarity=chunk.similarity,
            snippet=chunk.content[:SNIPPET_CHARS] + "...",
        )
        for chunk in results[:MAX_SOURCES]
    ]


class AnswerComposer:
    """Answers questions from the top retrieved chunks with numbered citations."""

    def __init__(
        self,
        retriever: Retriever,
        client: Optional[AsyncOpenAI] = None,
        model: str = settings.OPENAI_CHAT_MODEL,
        temperature: float = settings.OPENAI_TEMPERATURE,
        max_tokens: int = settings.OPENAI_MAX_TOKENS,
        context_limit: int = settings.DEFAULT_ASK_LIMIT,
    ):
        if client is None:
            if not settings.OPENAI_API_KEY:
                raise ConfigurationError("OPENAI_API_KEY must be configured")
            client = AsyncOpenAI(api_key=settings.OPENAI_API_KEY)
        self._retriever = retriever
        self._client = client
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.context_limit = context_limit

    async def ask(
        self,
        question: str,
        organization_id: str,
        collection: Optional[Union[Collection, str]] = None,
        folder_id: Optional[str] = None,
    ) -> Answer:
        """Answer from the indexed knowledge; no model call when nothing relevant is indexed."""
        collection = Collection(collection) if collection is not None else None
        results = await self._retriever.search(
            question,
            organization_id,
            collection=collection,
            folder_id=folder_id,
            limit=self.context_limit,
        )
        if not results:
            app_logger.info(f"No context for question in {organization_id}; skipping completion")
            return Answer(answer=NO_RESULTS_ANSWER, sources=[])

        records_label, excerpts_label = EXCERPT_LABELS[collection]
        user_prompt = (
            f"Based on these {records_label}, answer:\n\n"
            f"**Question:** {question}\n\n"
            f"**{excerpts_label}:**\n{build_context(results)}"
        )

        try:
            completion = await self._client.chat.completions.create(
                model=self.model,
                temperature=self.temperature,
                max_tokens=self.max_tokens,
                messages=[
                    {"role": "system", "content": SYSTEM_PROMPTS[collection]},
                    {"role": "user", "content": user_prompt},
                ],
            )
        except OpenAIError as exc:
            app_logger.error(f"Answer completion failed: {exc}")
            raise CompletionError(f"Chat completion failed: {exc}") from exc

        content = ""
        if completion.choices:
            content = completion.choices[0].message.content or ""

        app_logger.info(f"Answered question in {organization_id} from {len(results)} excerpts")
        return Answer(answer=content or EMPTY_COMPLETION_ANSWER, sources=build_sources(results))
