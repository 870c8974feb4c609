"""Job posting analysis: explicit + inferred requirement extraction."""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Literal, NamedTuple

from langchain_core.prompts import ChatPromptTemplate
from pydantic import ValidationError

from .errors import CVOptimizerError, GenerationError, IncompleteAnalysis, MissingPrerequisite, NoGeneratedContent
from .generation import TextGenerator, gather_strict, generate_json
from .logging_utils import format_with_request
from .models import (
    POSITION_NOT_SPECIFIED,
    UNKNOWN_EMPLOYER,
    UNTITLED_POSITION,
    CulturalFit,
    JobAnalysis,
    JobMeta,
    JobRequirement,
)

logger = logging.getLogger(__name__)

RequirementType = Literal["explicit", "inferred"]

_LIST_FIELDS = ("keyRequirements", "suggestedSkills", "recommendedHighlights")


_EXPLICIT_PROMPT = ChatPromptTemplate.from_messages(
    [
        (
            "system",
            "You analyze job postings for a CV tailoring tool. Report ONLY information that is "
            "directly stated in the posting. Never add industry assumptions. Respond with a single "
            "JSON object and nothing else.",
        ),
        (
            "human",
            "Job posting:\n{job_description}\n\n"
            "Return JSON with this structure:\n"
            "{{\n"
            '  "title": "<job title as written in the posting, or \\"{title_sentinel}\\" if none is stated>",\n'
            '  "keyRequirements": [{{"text": "<requirement>", "type": "explicit", "source": "<verbatim quote from the posting>"}}],\n'
            '  "suggestedSkills": [{{"text": "<skill>", "type": "explicit", "source": "<verbatim quote>"}}],\n'
            '  "culturalFit": "<culture and work environment as described in the posting, or an empty string>",\n'
            '  "recommendedHighlights": [{{"text": "<what a candidate should emphasise>", "type": "explicit", "source": "<verbatim quote>"}}]\n'
            "}}\n\n"
            "Rules:\n"
            "1. Every item must carry the exact sentence or phrase it comes from in \"source\".\n"
            "2. Leave out anything you cannot quote.\n"
            "3. Do not guess the title; use \"{title_sentinel}\" when it is not stated.",
        ),
    ]
)

_INFERRED_PROMPT = ChatPromptTemplate.from_messages(
    [
        (
            "system",
            "You are an experienced recruiter. Add the industry-standard expectations a hiring "
            "manager would hold for this role that the posting does NOT state. Be conservative: "
            "only include expectations that are near-universal for this kind of role. Respond with "
            "a single JSON object and nothing else.",
        ),
        (
            "human",
            "Job posting:\n{job_description}\n\n"
            "Return JSON with this structure:\n"
            "{{\n"
            '  "keyRequirements": [{{"text": "<unstated but expected requirement>", "type": "inferred"}}],\n'
            '  "suggestedSkills": [{{"text": "<unstated but expected skill>", "type": "inferred"}}],\n'
            '  "culturalFit": "<likely culture and work environment, inferred from the kind of role and company>",\n'
            '  "recommendedHighlights": [{{"text": "<what a candidate should emphasise>", "type": "inferred"}}]\n'
            "}}\n\n"
            "Rules:\n"
            "1. Do not repeat anything the posting already states.\n"
            "2. Never include a \"source\" field.",
        ),
    ]
)

_JOB_META_PROMPT = ChatPromptTemplate.from_messages(
    [
        (
            "system",
            "You extract job titles and employer names from job descriptions. Return only a JSON "
            'object with "jobTitle" and "employer" fields.',
        ),
        (
            "human",
            "Extract the job title and employer from this job description. If you can't find the "
            'employer, use "{unknown_employer}". If you can\'t find the job title, use '
            '"{untitled_position}".\n\n{job_description}',
        ),
    ]
)


class _PassResult(NamedTuple):
    title: str
    lists: Dict[str, List[JobRequirement]]
    cultural_fit: str


def _parse_items(raw_items: Any, pass_type: RequirementType, field: str) -> List[JobRequirement]:
    if raw_items is None:
        return []
    if not isinstance(raw_items, list):
        raise IncompleteAnalysis(f"{pass_type} pass: {field} is not a list")

    items: List[JobRequirement] = []
    for raw in raw_items:
        if isinstance(raw, str):
            raw = {"text": raw}
        if not isinstance(raw, dict):
            raise IncompleteAnalysis(f"{pass_type} pass: {field} holds a {type(raw).__name__}")
        raw = {"type": pass_type, **raw}
        try:
            item = JobRequirement.model_validate(raw)
        except ValidationError as exc:
            raise IncompleteAnalysis(f"{pass_type} pass: invalid item in {field}") from exc
        if item.type != pass_type:
            raise IncompleteAnalysis(f"{pass_type} pass returned a {item.type} item in {field}")
        items.append(item)
    return items


def _parse_pass(payload: Dict[str, Any], pass_type: RequirementType) -> _PassResult:
    lists = {field: _parse_items(payload.get(field), pass_type, field) for field in _LIST_FIELDS}

    cultural_fit = payload.get("culturalFit") or ""
    if not isinstance(cultural_fit, str):
        raise IncompleteAnalysis(f"{pass_type} pass: culturalFit is not text")

    title = payload.get("title")
    title = title.strip() if isinstance(title, str) else ""

    if not any(lists.values()) and not cultural_fit.strip():
        raise IncompleteAnalysis(f"{pass_type} pass produced no requirements")
    return _PassResult(title=title or POSITION_NOT_SPECIFIED, lists=lists, cultural_fit=cultural_fit.strip())


class RequirementExtractor:
    """Splits job analysis into an explicit and an inferred pass and merges them."""

    def __init__(self, generator: TextGenerator, temperature: float = 0.2):
        self.generator = generator
        self.temperature = temperature

    async def extract(self, job_description: str) -> JobAnalysis:
        if not job_description or not job_description.strip():
            raise MissingPrerequisite("job description is empty", user_message="Please provide a job description.")

        explicit, inferred = await gather_strict(
            self._run_pass("explicit", _EXPLICIT_PROMPT, job_description),
            self._run_pass("inferred", _INFERRED_PROMPT, job_description),
        )

        analysis = JobAnalysis(
            title=explicit.title,
            key_requirements=explicit.lists["keyRequirements"] + inferred.lists["keyRequirements"],
            suggested_skills=explicit.lists["suggestedSkills"] + inferred.lists["suggestedSkills"],
            cultural_fit=CulturalFit(explicit=explicit.cultural_fit, inferred=inferred.cultural_fit),
            recommended_highlights=explicit.lists["recommendedHighlights"] + inferred.lists["recommendedHighlights"],
        )
        logger.info(
            format_with_request("Job analysis for %r: %d explicit / %d inferred requirements"),
            analysis.title,
            sum(len(items) for items in explicit.lists.values()),
            sum(len(items) for items in inferred.lists.values()),
        )
        return analysis

    async def _run_pass(
        self, pass_type: RequirementType, prompt: ChatPromptTemplate, job_description: str
    ) -> _PassResult:
        name = f"{pass_type}_requirements"
        try:
            payload = await generate_json(
                self.generator,
                name,
                prompt,
                {"job_description": job_description, "title_sentinel": POSITION_NOT_SPECIFIED},
                invalid=IncompleteAnalysis,
                temperature=self.temperature,
            )
        except NoGeneratedContent as exc:
            raise IncompleteAnalysis(f"{pass_type} pass returned no content") from exc
        return _parse_pass(payload, pass_type)


async def extract_job_meta(generator: TextGenerator, job_description: str) -> JobMeta:
    """Best-effort job title / employer lookup; falls back to placeholders."""

    try:
        payload = await generate_json(
            generator,
            "job_meta",
            _JOB_META_PROMPT,
            {
                "job_description": job_description,
                "unknown_employer": UNKNOWN_EMPLOYER,
                "untitled_position": UNTITLED_POSITION,
            },
            invalid=GenerationError,
            temperature=0.0,
        )
    except CVOptimizerError as exc:
        logger.warning(format_with_request("Job meta extraction failed, using placeholders: %s"), exc)
        return JobMeta()

    title = payload.get("jobTitle")
    employer = payload.get("employer")
    return JobMeta(
        job_title=title.strip() if isinstance(title, str) and title.strip() else UNTITLED_POSITION,
        employer=employer.strip() if isinstance(employer, str) and employer.strip() else UNKNOWN_EMPLOYER,
    )
