"""Text-generation port and its OpenAI adapter.

Components never talk to a model directly: they hand a ``ChatPromptTemplate``
and its variables to a :class:`TextGenerator`. The production adapter runs the
template through ``ChatOpenAI``; tests substitute a scripted generator.
"""
from __future__ import annotations

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Dict, List, Optional, Tuple, Type, TypeVar

from langchain_core.output_parsers import StrOutputParser
from langchain_core.prompts import ChatPromptTemplate
from langchain_openai import ChatOpenAI
from pydantic import BaseModel, ValidationError

from .config import Settings, get_settings
from .errors import CVOptimizerError, GenerationError, GenerationTimeout, NoGeneratedContent
from .logging_utils import DEBUG_ENABLED, format_with_request

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)
T = TypeVar("T")


def parse_json_from_llm(raw: str) -> Any:
    """
    Parse JSON from LLM output that may contain optional Markdown fences.

    Args:
        raw: Raw LLM output as a string.

    Returns:
        Parsed JSON payload.

    Raises:
        ValueError: If JSON parsing fails even after removing code fences.
    """

    text = (raw or "").strip()
    if not text:
        raise ValueError("LLM response was empty.")

    if text.startswith("```"):
        lines = text.splitlines()
        # Remove the opening ```... fence
        lines = lines[1:]
        if not lines:
            raise ValueError("LLM response started with a code fence but contained no content.")
        while lines and not lines[-1].strip():
            lines.pop()
        if lines and lines[-1].strip().startswith("```"):
            lines = lines[:-1]
        text = "\n".join(lines).strip()

    try:
        return json.loads(text)
    except json.JSONDecodeError as exc:
        raise ValueError(f"Failed to parse JSON: {exc}") from exc


def _snippet(raw: str, limit: int = 200) -> str:
    snippet = (raw or "").strip().replace("\n", " ")
    if len(snippet) > limit:
        snippet = snippet[:limit] + "..."
    return snippet


class TextGenerator(ABC):
    """Port for any chat-style text-generation backend."""

    @abstractmethod
    async def generate(
        self,
        name: str,
        prompt: ChatPromptTemplate,
        variables: Dict[str, Any],
        *,
        json_output: bool = True,
        temperature: float = 0.3,
        model: Optional[str] = None,
    ) -> str:
        """Render ``prompt`` with ``variables`` and return the model's text.

        ``name`` identifies the call site in logs. With ``json_output`` the
        backend must be asked for a JSON object response.
        """


class OpenAITextGenerator(TextGenerator):
    """``ChatOpenAI`` behind the generation port, bounded by a timeout."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self._models: Dict[Tuple[str, float], ChatOpenAI] = {}

    def _get_llm(self, model: str, temperature: float) -> ChatOpenAI:
        key = (model, temperature)
        if key not in self._models:
            self._models[key] = ChatOpenAI(model=model, temperature=temperature)
        return self._models[key]

    async def generate(
        self,
        name: str,
        prompt: ChatPromptTemplate,
        variables: Dict[str, Any],
        *,
        json_output: bool = True,
        temperature: float = 0.3,
        model: Optional[str] = None,
    ) -> str:
        llm = self._get_llm(model or self.settings.model_name, temperature)
        runnable = llm.bind(response_format={"type": "json_object"}) if json_output else llm
        chain = prompt | runnable | StrOutputParser()

        if DEBUG_ENABLED:
            logger.debug(format_with_request("Generation %s started (model=%s)"), name, llm.model_name)
        try:
            return await asyncio.wait_for(chain.ainvoke(variables), timeout=self.settings.generation_timeout)
        except asyncio.TimeoutError as exc:
            logger.warning(
                format_with_request("Generation %s timed out after %ss"), name, self.settings.generation_timeout
            )
            raise GenerationTimeout(f"{name} timed out") from exc
        except Exception as exc:
            logger.exception(format_with_request("Generation %s failed"), name)
            raise GenerationError(f"{name} failed: {exc}") from exc


async def generate_json(
    generator: TextGenerator,
    name: str,
    prompt: ChatPromptTemplate,
    variables: Dict[str, Any],
    *,
    invalid: Type[CVOptimizerError],
    temperature: float = 0.3,
    model: Optional[str] = None,
) -> Dict[str, Any]:
    """Run a JSON generation call and return the decoded object.

    Empty output raises :class:`NoGeneratedContent`; anything that is not a
    JSON object raises ``invalid``.
    """

    raw = await generator.generate(
        name, prompt, variables, json_output=True, temperature=temperature, model=model
    )
    if not raw or not raw.strip():
        raise NoGeneratedContent(f"{name} returned no content")

    try:
        payload = parse_json_from_llm(raw)
    except ValueError as exc:
        logger.warning(format_with_request("%s returned invalid JSON: %s"), name, _snippet(raw))
        raise invalid(f"{name} returned invalid JSON") from exc

    if not isinstance(payload, dict):
        logger.warning(format_with_request("%s returned a JSON %s"), name, type(payload).__name__)
        raise invalid(f"{name} returned {type(payload).__name__}, expected an object")
    return payload


async def gather_strict(*calls: Awaitable[T]) -> List[T]:
    """Run independent generation calls concurrently; re-raise the first failure.

    Every call runs to completion before the first failure is re-raised.
    """

    results = await asyncio.gather(*calls, return_exceptions=True)
    for result in results:
        if isinstance(result, BaseException):
            raise result
    return list(results)


def validate_output(
    model_cls: Type[ModelT], payload: Any, *, invalid: Type[CVOptimizerError], name: str
) -> ModelT:
    """Validate ``payload`` against ``model_cls`` or raise ``invalid``."""

    try:
        return model_cls.model_validate(payload)
    except ValidationError as exc:
        logger.warning(
            format_with_request("%s failed %s validation: %s"),
            name,
            model_cls.__name__,
            exc.errors(include_url=False),
        )
        raise invalid(f"{name}: {exc.error_count()} validation error(s) for {model_cls.__name__}") from exc
