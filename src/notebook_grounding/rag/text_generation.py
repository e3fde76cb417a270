"""
Text-generation assist calls used by agentic retrieval.

The retrieval loop only needs two small calls from a language model:
decomposing a question into search queries and judging whether assembled
context is sufficient. Both sit behind plain protocols so any provider (or a
scripted fake) can be plugged in.
"""

import json
import logging
import re
from typing import List, Optional, Protocol

from .config import ConfigService
from .errors import AssistCallError, ConfigurationError
from .providers import ClientFactory, anthropic_factory


logger = logging.getLogger(__name__)

SUB_QUERY_PROMPT = """You are a search query optimizer. Given the user's question, generate 2-3 targeted search queries that would help find the most relevant information in a document collection. Each query should approach the topic from a different angle.

User question: "{question}"

Output a JSON array of strings, each being a search query. Output ONLY the JSON array, no markdown fences.
Example: ["query 1", "query 2", "query 3"]"""

SUFFICIENCY_PROMPT = """Given this question and the retrieved context, is the context sufficient to answer the question well? Answer with ONLY "yes" or "no".

Question: "{question}"

Retrieved context (first {limit} chars):
{context}"""

CODE_FENCE = re.compile(r"```(?:json)?\s*", re.IGNORECASE)


class TextGenerator(Protocol):
    """Pluggable text-generation capability."""

    def generate_text(self, prompt: str) -> str:
        ...


class SufficiencyJudge(Protocol):
    """Decides whether assembled context is adequate to answer a question."""

    def is_sufficient(self, question: str, context: str) -> bool:
        ...


class AnthropicTextGenerator:
    """Text generation through the Anthropic Messages API."""

    def __init__(
        self,
        config_service: ConfigService,
        client_factory: Optional[ClientFactory] = None,
        max_tokens: int = 256,
    ):
        self.config_service = config_service
        self.client_factory = client_factory or anthropic_factory(config_service)
        self.max_tokens = max_tokens

    def is_ready(self) -> bool:
        """Check if the generator has credentials."""
        return bool(self.config_service.current().generation_api_key)

    def generate_text(self, prompt: str) -> str:
        """
        Generate a completion for a single-turn prompt.

        Raises:
            ConfigurationError: If no API key is configured
        """
        config = self.config_service.current()
        if not config.generation_api_key:
            raise ConfigurationError("Text-generation API key not configured")

        client = self.client_factory.get()
        response = client.messages.create(
            model=config.generation_model,
            max_tokens=self.max_tokens,
            messages=[{"role": "user", "content": prompt}],
        )
        return "".join(
            getattr(block, "text", "") for block in response.content
        ).strip()


class SubQueryPlanner:
    """Decomposes a question into differently-angled search queries.

    Never blocks retrieval: any failure or malformed output falls back to the
    original question as the sole query.
    """

    def __init__(self, generator: Optional[TextGenerator], max_queries: int = 3):
        self.generator = generator
        self.max_queries = max_queries

    def plan(self, question: str) -> List[str]:
        if self.generator is None:
            return [question]
        try:
            raw = self.generator.generate_text(SUB_QUERY_PROMPT.format(question=question))
            queries = self.parse(raw)
        except Exception as e:
            logger.warning(f"Sub-query generation failed, using original question: {e}")
            return [question]

        if not queries:
            logger.warning("Sub-query generation returned no usable queries, using original question")
            return [question]
        return queries[:self.max_queries]

    @staticmethod
    def parse(raw: Optional[str]) -> List[str]:
        """Parse a JSON array of query strings, tolerating markdown fences.

        Returns:
            Non-empty query strings ([] if the output is malformed)
        """
        if not raw:
            return []
        cleaned = CODE_FENCE.sub("", raw).strip()
        try:
            parsed = json.loads(cleaned)
        except json.JSONDecodeError:
            return []
        if not isinstance(parsed, list):
            return []
        return [str(item).strip() for item in parsed if str(item).strip()]


class LLMSufficiencyJudge:
    """Asks the text-generation capability a strict yes/no sufficiency question."""

    def __init__(self, generator: TextGenerator, context_limit: int = 2000):
        self.generator = generator
        self.context_limit = context_limit

    def is_sufficient(self, question: str, context: str) -> bool:
        """
        Returns:
            False only when the model answers "no"

        Raises:
            AssistCallError: If the generation call fails
        """
        prompt = SUFFICIENCY_PROMPT.format(
            question=question,
            limit=self.context_limit,
            context=context[:self.context_limit],
        )
        try:
            answer = self.generator.generate_text(prompt)
        except Exception as e:
            raise AssistCallError(f"Sufficiency check failed: {e}") from e
        return not (answer or "").strip().lower().startswith("no")
