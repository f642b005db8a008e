"""
LLM Tie-breaker Module

Second-opinion classifier for documents whose keyword score falls in the
ambiguous band. Any chat model or runnable can be plugged in; a small
Ollama-backed runnable is provided for local inference.
"""

import logging
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from typing import Any, Optional

import requests
from langchain_core.output_parsers import JsonOutputParser
from langchain_core.prompts import ChatPromptTemplate
from langchain_core.runnables import Runnable, RunnableLambda
from pydantic import BaseModel, Field, ValidationError

from policy_engine.config import settings

logger = logging.getLogger(__name__)

EXCERPT_CHARS = 3000


class TieBreakerVerdict(BaseModel):
    """Structured answer expected from the model.

    Attributes:
        is_legal_document: Whether the excerpt comes from a legal document
        document_type: privacy_policy, terms_of_service, cookie_policy,
            data_processing_agreement, other_legal or not_legal
        confidence: Confidence score between 0 and 1
        reasoning: Brief explanation
    """
    is_legal_document: bool = Field(..., description="Whether the text is a legal document")
    document_type: str = Field(..., description="Kind of legal document")
    confidence: float = Field(..., ge=0.0, le=1.0, description="Confidence score between 0 and 1")
    reasoning: str = Field(default="", description="Brief explanation")


class TieBreakerError(Exception):
    """The tie-breaker could not produce a valid verdict in time."""


def ollama_runnable(host: Optional[str] = None, model: Optional[str] = None,
                    timeout: Optional[int] = None) -> Runnable:
    """
    Wrap the Ollama generate endpoint as a runnable taking a prompt value.

    Args:
        host: Ollama host, full URL or bare host name
        model: Ollama model name
        timeout: Request timeout in seconds
    """
    host = host or settings.ollama_host
    if not host.startswith("http"):
        host = f"http://{host}:11434"
    model = model or settings.ollama_model
    timeout = timeout or settings.llm_timeout

    def _generate(prompt_value: Any) -> str:
        prompt = prompt_value.to_string() if hasattr(prompt_value, "to_string") else str(prompt_value)
        response = requests.post(
            f"{host}/api/generate",
            json={"model": model, "prompt": prompt, "stream": False, "format": "json"},
            timeout=timeout,
        )
        response.raise_for_status()
        return response.json().get("response", "")

    return RunnableLambda(_generate)


class LLMTieBreaker:
    """Classifies an ambiguous text excerpt with an LLM."""

    def __init__(self, llm: Runnable, timeout: Optional[float] = None, model_name: str = "ollama"):
        """
        Initialize the tie-breaker.

        Args:
            llm: Chat model or runnable producing the JSON answer
            timeout: Seconds to wait for a verdict
            model_name: Name of the model (for logging)
        """
        self.llm = llm
        self.timeout = timeout if timeout is not None else settings.llm_timeout
        self.model_name = model_name
        self.parser = JsonOutputParser(pydantic_object=TieBreakerVerdict)
        self.prompt = self._create_prompt_template()
        self.chain = self.prompt | self.llm | self.parser

    def _create_prompt_template(self) -> ChatPromptTemplate:
        return ChatPromptTemplate.from_template(
            """
            Analyze this text excerpt and determine if it's from a privacy policy,
            terms of service, cookie policy, data processing agreement or other legal document.

            TEXT EXCERPT:
            {excerpt}

            Respond only with valid JSON matching this schema:
            {{
                "is_legal_document": "boolean",
                "document_type": "privacy_policy | terms_of_service | cookie_policy | data_processing_agreement | other_legal | not_legal",
                "confidence": "float between 0 and 1",
                "reasoning": "brief explanation"
            }}
            """
        )

    def adjudicate(self, text: str) -> TieBreakerVerdict:
        """
        Ask the model for a verdict on the first EXCERPT_CHARS characters.

        Raises:
            TieBreakerError: On timeout, transport failure or an invalid answer
        """
        excerpt = (text or "")[:EXCERPT_CHARS]
        if not excerpt.strip():
            raise TieBreakerError("Nothing to classify")

        executor = ThreadPoolExecutor(max_workers=1)
        future = executor.submit(self.chain.invoke, {"excerpt": excerpt})
        try:
            result = future.result(timeout=self.timeout)
            return TieBreakerVerdict(**result)
        except FutureTimeout:
            future.cancel()
            raise TieBreakerError(f"{self.model_name} did not answer within {self.timeout}s")
        except (ValidationError, TypeError) as e:
            raise TieBreakerError(f"Invalid verdict from {self.model_name}: {e}") from e
        except Exception as e:
            logger.debug(f"Tie-breaker call failed: {e}", exc_info=True)
            raise TieBreakerError(f"{self.model_name} call failed: {e}") from e
        finally:
            executor.shutdown(wait=False)


def build_tiebreaker() -> Optional[LLMTieBreaker]:
    """Tie-breaker configured from settings, or None when disabled."""
    if not settings.enable_llm_tiebreaker:
        return None
    logger.info(f"LLM tie-breaker enabled ({settings.ollama_model} at {settings.ollama_host})")
    return LLMTieBreaker(ollama_runnable(), model_name=settings.ollama_model)
