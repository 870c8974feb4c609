"""Rewriting a single CV section from the chat, without inventing facts."""
from __future__ import annotations

import json
import logging
import re
from decimal import Decimal
from typing import Any, Iterable, List, Optional, Sequence, Set, Tuple, Union

from langchain_core.prompts import ChatPromptTemplate
from pydantic import ValidationError

from .config import Settings, get_settings
from .errors import (
    FabricatedContent,
    IncompleteSectionOutput,
    InvalidSectionSchema,
    MissingPrerequisite,
    NoGeneratedContent,
)
from .generation import TextGenerator, generate_json
from .logging_utils import format_with_request
from .models import ChatMessage, ExperienceSection, OptimizationResult, Position, TextSection

logger = logging.getLogger(__name__)

_GERMAN_CHARS = re.compile(r"[äöüßÄÖÜ]")
_GERMAN_WORDS = re.compile(r"(?:^|\s)(und|oder|für|mit|bei|[Dd]as|[Dd]ie|[Dd]er)(?:\s|$)")

_NUMBER_TOKEN = re.compile(r"\d+(?:[.,]\d+)*")
_WORD_TOKEN = re.compile(r"[^\W\d_]+")
_NUMBER_WORDS = {
    "one": 1, "two": 2, "three": 3, "four": 4, "five": 5, "six": 6, "seven": 7,
    "eight": 8, "nine": 9, "ten": 10, "eleven": 11, "twelve": 12, "thirteen": 13,
    "fourteen": 14, "fifteen": 15, "sixteen": 16, "seventeen": 17, "eighteen": 18,
    "nineteen": 19, "twenty": 20, "dozen": 12,
    "eins": 1, "zwei": 2, "drei": 3, "vier": 4, "fünf": 5, "sechs": 6, "sieben": 7,
    "acht": 8, "neun": 9, "zehn": 10, "elf": 11, "zwölf": 12, "zwanzig": 20,
}
_PRONOUN_WORDS = frozenset({"one", "eins"})


def detect_language(job_description: str) -> str:
    """Pick the output language for a whole CV from its job posting."""

    if _GERMAN_CHARS.search(job_description) or _GERMAN_WORDS.search(job_description):
        return "German"
    return "English"


def _normalize_number(token: str) -> Decimal:
    """Value of a digit token; a final group of exactly three digits marks thousands."""

    groups = re.split(r"[.,]", token)
    if len(groups) > 1 and len(groups[-1]) != 3:
        return Decimal("".join(groups[:-1]) + "." + groups[-1])
    return Decimal("".join(groups))


def _number_word_values(text: str, skip: Iterable[str] = ()) -> List[Tuple[str, Decimal]]:
    return [
        (word, Decimal(_NUMBER_WORDS[word]))
        for word in _WORD_TOKEN.findall(text.lower())
        if word in _NUMBER_WORDS and word not in skip
    ]


def known_numbers(texts: Iterable[str]) -> Set[Decimal]:
    """Numbers stated in ``texts``, as digits or as spelled-out number words."""

    numbers: Set[Decimal] = set()
    for text in texts:
        numbers.update(_normalize_number(token) for token in _NUMBER_TOKEN.findall(text))
        numbers.update(value for _, value in _number_word_values(text))
    return numbers


def novel_numbers(output: str, sources: Iterable[str]) -> List[str]:
    """Numbers in ``output``, digits or number words, that none of ``sources`` states."""

    allowed = known_numbers(sources)
    found = [(token, _normalize_number(token)) for token in _NUMBER_TOKEN.findall(output)]
    # "one" is skipped: "one of the" is not a count
    found += _number_word_values(output, skip=_PRONOUN_WORDS)
    novel = []
    for token, value in found:
        if value not in allowed and token not in novel:
            novel.append(token)
    return novel


def _content_texts(content: Union[TextSection, ExperienceSection]) -> List[str]:
    if isinstance(content, TextSection):
        return [content.text]
    texts: List[str] = []
    for position in content.positions:
        texts.extend(
            [
                position.company,
                position.title,
                position.start_date,
                position.end_date,
                position.location or "",
                position.description,
            ]
        )
    return texts


_OPTIMIZE_PROMPT = ChatPromptTemplate.from_messages(
    [
        (
            "system",
            "You are a professional CV optimizer that provides specific and actionable improvements "
            "based on factual information only. Never invent or assume details not explicitly "
            "provided. Respond with a single JSON object and nothing else.",
        ),
        (
            "human",
            "Based on the chat conversation about gaps and improvements, optimize the {section_name} "
            "section of a CV for the job below.\n\n"
            "Job Description:\n{job_description}\n\n"
            "Current Content:\n{current_content}\n\n"
            "Chat Context:\n{chat_context}\n\n"
            "Return JSON with this structure:\n"
            "{{\n"
            '  "optimizedContent": {content_shape},\n'
            '  "explanation": "<the changes made, referencing the parts of the chat that justify each one>",\n'
            '  "verificationNeeded": ["<information that is missing and must come from the candidate>"]\n'
            "}}\n\n"
            "Rules:\n"
            "1. Use only facts present in the current content or stated by the user in the chat.\n"
            "2. Never add numbers, percentages, counts or durations that do not appear in those two sources.\n"
            "3. When a gap can only be closed with information you do not have, do not invent it: add "
            "an entry to verificationNeeded describing exactly what is missing.\n"
            "4. Restructure and highlight existing content to match the job; keep a professional tone.\n"
            "5. Write everything in {target_language}.{shape_rules}",
        ),
    ]
)

_TEXT_SHAPE = '"<the optimized section text>"'
_EXPERIENCE_SHAPE = (
    '[{"company": "...", "title": "...", "startDate": "...", "endDate": "...", '
    '"location": "...", "description": "..."}]'
)
_EXPERIENCE_RULES = (
    "\n6. optimizedContent is an array with exactly {count} complete position object(s), in the "
    "same order as the input. Every object needs company, title, startDate, endDate and "
    "description; keep company and dates unchanged."
)


class SectionOptimizer:
    """Turns a section plus its clarification chat into a rewritten draft."""

    def __init__(self, generator: TextGenerator, settings: Optional[Settings] = None, temperature: float = 0.3):
        self.generator = generator
        self.settings = settings or get_settings()
        self.temperature = temperature

    async def optimize(
        self,
        current_content: Union[TextSection, ExperienceSection],
        chat_history: Sequence[ChatMessage],
        job_description: str,
        target_language: str,
        section_name: str = "section",
    ) -> OptimizationResult:
        if not job_description or not job_description.strip():
            raise MissingPrerequisite("job description is empty", user_message="Please provide a job description.")
        if not target_language:
            raise MissingPrerequisite("target language is not set")

        is_experience = isinstance(current_content, ExperienceSection)
        if is_experience:
            rendered = json.dumps(
                [position.model_dump(by_alias=True) for position in current_content.positions],
                ensure_ascii=False,
                indent=2,
            )
            content_shape = _EXPERIENCE_SHAPE
            shape_rules = _EXPERIENCE_RULES.format(count=len(current_content.positions))
        else:
            rendered = current_content.text
            content_shape = _TEXT_SHAPE
            shape_rules = ""

        payload = await generate_json(
            self.generator,
            "optimize_section",
            _OPTIMIZE_PROMPT,
            {
                "section_name": section_name,
                "job_description": job_description,
                "current_content": rendered,
                "chat_context": "\n\n".join(f"{message.role}: {message.content}" for message in chat_history),
                "content_shape": content_shape,
                "target_language": target_language,
                "shape_rules": shape_rules,
            },
            invalid=InvalidSectionSchema,
            temperature=self.temperature,
            model=self.settings.optimizer_model_name,
        )

        if is_experience:
            optimized = self._parse_positions(payload.get("optimizedContent"), current_content)
        else:
            optimized = self._parse_text(payload.get("optimizedContent"))

        explanation = payload.get("explanation") or ""
        verification = payload.get("verificationNeeded") or []
        if not isinstance(explanation, str):
            raise InvalidSectionSchema("explanation is not text")
        if not isinstance(verification, list) or not all(isinstance(item, str) for item in verification):
            raise InvalidSectionSchema("verificationNeeded is not a list of strings")

        self._check_facts(optimized, current_content, chat_history)

        if verification:
            explanation += "\n\nBefore proceeding, please clarify the following points:\n" + "\n".join(
                f"- {point}" for point in verification
            )
            logger.info(
                format_with_request("%s optimization left %d open verification item(s)"),
                section_name,
                len(verification),
            )

        return OptimizationResult(
            optimized_content=optimized,
            explanation=explanation.strip(),
            verification_needed=verification,
        )

    @staticmethod
    def _parse_text(raw: Any) -> TextSection:
        if raw is None:
            raise InvalidSectionSchema("optimizedContent is missing")
        if not isinstance(raw, str):
            raise InvalidSectionSchema(f"optimizedContent is a {type(raw).__name__}, expected text")
        if not raw.strip():
            raise NoGeneratedContent("optimizedContent is empty")
        return TextSection(text=raw.strip())

    @staticmethod
    def _parse_positions(raw: Any, current: ExperienceSection) -> ExperienceSection:
        if raw is None:
            raise InvalidSectionSchema("optimizedContent is missing")
        if not isinstance(raw, list):
            raise InvalidSectionSchema(f"optimizedContent is a {type(raw).__name__}, expected a list of positions")
        if not raw:
            raise NoGeneratedContent("optimizedContent holds no positions")
        if len(raw) != len(current.positions):
            raise InvalidSectionSchema(
                f"expected {len(current.positions)} position(s), got {len(raw)}"
            )

        positions = []
        for index, item in enumerate(raw):
            if not isinstance(item, dict):
                raise InvalidSectionSchema(f"position {index} is a {type(item).__name__}")
            try:
                positions.append(Position.model_validate(item))
            except ValidationError as exc:
                raise IncompleteSectionOutput(f"position {index} is incomplete") from exc
        return ExperienceSection(positions=positions)

    @staticmethod
    def _check_facts(
        optimized: Union[TextSection, ExperienceSection],
        current: Union[TextSection, ExperienceSection],
        chat_history: Sequence[ChatMessage],
    ) -> None:
        sources = _content_texts(current) + [message.content for message in chat_history if message.role == "user"]
        novel = novel_numbers("\n".join(_content_texts(optimized)), sources)
        if novel:
            logger.warning(format_with_request("Optimized content introduced unstated numbers: %s"), novel)
            raise FabricatedContent(f"unstated numbers in output: {', '.join(novel)}")

        if isinstance(optimized, ExperienceSection):
            for before, after in zip(current.positions, optimized.positions):
                for field in ("company", "start_date", "end_date"):
                    if getattr(before, field).strip() != getattr(after, field).strip():
                        logger.warning(
                            format_with_request("Optimized position changed %s: %r -> %r"),
                            field,
                            getattr(before, field),
                            getattr(after, field),
                        )
                        raise FabricatedContent(f"position {field} was changed")
