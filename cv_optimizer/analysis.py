"""Scoring a CV (or one section, or one position) against a job description."""
from __future__ import annotations

import logging
from typing import Optional, Union

from langchain_core.prompts import ChatPromptTemplate

from .config import Settings, get_settings
from .errors import MalformedScoreOutput, MissingPrerequisite
from .generation import TextGenerator, generate_json, validate_output
from .logging_utils import format_with_request
from .models import (
    CVDocument,
    ExperienceAnalysis,
    MatchAnalysis,
    Position,
    PositionAnalysis,
    SectionKey,
    isolate_position,
)

logger = logging.getLogger(__name__)


_MATCH_PROMPT = ChatPromptTemplate.from_messages(
    [
        (
            "system",
            "You are a professional CV analyst specializing in job fit analysis and gap "
            "identification. You understand both explicit skills and their implied capabilities. "
            "For example, if someone knows Power BI and Python, they have data analysis and "
            "business intelligence capabilities.{optimized_system_note} Respond with a single JSON "
            "object and nothing else.",
        ),
        (
            "human",
            "Job Description:\n{job_description}\n\n"
            "CV Content:\n{cv_json}\n\n"
            "{version_note}\n\n"
            "Analyze the CV against the job requirements and return JSON with this structure:\n"
            "{{\n"
            '  "overallFit": {{"score": <integer 1-5>, "explanation": "<explanation referencing both documents>"}},\n'
            '  "seniorityFit": {{\n'
            '    "score": <integer 1-5, where 5 = perfect seniority match, 4 = slight mismatch, '
            "3 = moderate mismatch, 2 = significant mismatch, 1 = extreme mismatch; "
            "mismatch in EITHER direction (under- or over-qualified) lowers the score equally>,\n"
            '    "level": "<under-qualified | well-matched | over-qualified>",\n'
            '    "explanation": "<explanation of the seniority match or mismatch>",\n'
            '    "concerns": ["<concerns about being under- or over-qualified>"]\n'
            "  }},\n"
            '  "gapAnalysis": {{\n'
            '    "summary": {{"gaps": [], "strengths": [], "score": <integer 1-5>, "questions": []}},\n'
            '    "skills": {{"gaps": [], "strengths": [], "score": <integer 1-5>, "questions": []}},\n'
            '    "experience": {{"gaps": [], "strengths": [], "score": <integer 1-5>, "questions": []}},\n'
            '    "education": {{"gaps": [], "strengths": [], "score": <integer 1-5>, "questions": []}}\n'
            "  }},\n"
            '  "suggestedFocus": ["<sections that would benefit most from optimization>"]\n'
            "}}\n\n"
            "Important guidelines:\n"
            "1. Every score is an integer from 1 to 5.\n"
            "2. Seniority is a distance from the ideal level, not a quality score. Being "
            "substantially over-qualified must score as low as being substantially under-qualified: "
            "significant mismatch scores 2, vast mismatch scores 1, in either direction.\n"
            "3. Judge experience on the whole position list. A single highly relevant position can "
            "justify a high score; irrelevant positions must not reduce the score when a strong match "
            "exists. Count transferable skills from other positions as supporting evidence.\n"
            "4. Gaps are requirements the CV does not demonstrably satisfy; be specific and factual.\n"
            "5. Questions must be specific and aimed at verifying or clarifying actual gaps.\n"
            "6. Consider explicit skills and their reasonable implications.\n"
            "7. Sections that are empty were left out on purpose; do not comment on their absence "
            "outside their own rubric.{optimized_guideline}",
        ),
    ]
)

_ORIGINAL_NOTE = "This is the original CV. Provide a comprehensive analysis."
_OPTIMIZED_NOTE = "Evaluate the CV content exactly as given."
_OPTIMIZED_SYSTEM_NOTE = (
    " Evaluate only the content you are given; never reference or compare against earlier versions."
)
_OPTIMIZED_GUIDELINE = (
    "\n8. IMPORTANT: Only analyze the current content. Do not reference, assume or compare "
    "against any previous version of this CV."
)


_POSITION_PROMPT = ChatPromptTemplate.from_messages(
    [
        (
            "system",
            "You are an expert ATS (Applicant Tracking System) and recruitment consultant. "
            "Respond with a single JSON object and nothing else.",
        ),
        (
            "human",
            "Job Description:\n{job_description}\n\n"
            "Candidate CV (a single position):\n{cv_json}\n\n"
            "Analyze ONLY this position's relevance to the job requirements. Do not consider any "
            "experience or skills outside this position.\n\n"
            "Return JSON with this structure:\n"
            "{{\n"
            '  "positionAnalysis": {{\n'
            '    "score": <integer 1-5>,\n'
            '    "gaps": ["<gaps between this position and the job requirements>"],\n'
            '    "strengths": ["<strengths of this position that match the job requirements>"],\n'
            '    "questions": ["<questions that would clarify this position\'s fit>"],\n'
            '    "relevance": "<how this specific position relates to the job>"\n'
            "  }}\n"
            "}}\n\n"
            "Important:\n"
            "- Score only this position's direct relevance to the job.\n"
            "- Ignore any skill or experience not explicitly mentioned in this position.\n"
            "- Be critical and realistic; a position with little relevance must score low.",
        ),
    ]
)


_EXPERIENCE_PROMPT = ChatPromptTemplate.from_messages(
    [
        (
            "system",
            "You are a professional CV analyst specializing in evaluating how complete career "
            "histories match job requirements. You understand both direct relevance and "
            "transferable skills. Respond with a single JSON object and nothing else.",
        ),
        (
            "human",
            "Job Description:\n{job_description}\n\n"
            "Complete Experience:\n{experience_json}\n\n"
            "Analyze how the COMPLETE experience matches the job requirements. Return JSON with "
            "this structure:\n"
            "{{\n"
            '  "experienceAnalysis": {{\n'
            '    "score": <integer 1-5, where 5 = multiple highly relevant positions with strong '
            "matches, 4 = at least one highly relevant position plus some transferable experience, "
            "3 = one moderately relevant position or several with transferable skills, 2 = only "
            "positions with limited relevance, 1 = no position directly relevant to the role>,\n"
            '    "explanation": "<how the complete experience matches the job>",\n'
            '    "relevantPositions": ["<positions that directly contribute to job fit>"],\n'
            '    "transferableSkills": ["<skills from other positions that could be valuable>"],\n'
            '    "overallRelevance": "<how the combined experience fits the role>"\n'
            "  }}\n"
            "}}\n\n"
            "Guidelines:\n"
            "1. Consider how ALL positions might contribute to job fit.\n"
            "2. A single highly relevant position can justify a high score.\n"
            "3. Irrelevant positions must not reduce the score if there are relevant ones.\n"
            "4. Consider the progression across positions.",
        ),
    ]
)


def _require_job_description(job_description: str) -> None:
    if not job_description or not job_description.strip():
        raise MissingPrerequisite("job description is empty", user_message="Please provide a job description.")


class GapAnalyzer:
    """Scores a CV against a job description across the four rubrics plus seniority."""

    def __init__(self, generator: TextGenerator, temperature: float = 0.3):
        self.generator = generator
        self.temperature = temperature

    async def analyze(
        self,
        cv: CVDocument,
        job_description: str,
        *,
        is_optimized_pass: bool = False,
        scope_to_section: Optional[Union[SectionKey, str]] = None,
    ) -> MatchAnalysis:
        """Evaluate ``cv``; pure, nothing passed in is modified.

        ``scope_to_section`` blanks every other section before the call so the
        score reflects that section alone. ``is_optimized_pass`` tells the model
        to judge the content in absolute terms without any earlier version.
        """

        _require_job_description(job_description)
        if scope_to_section is not None:
            if isinstance(scope_to_section, str):
                scope_to_section = SectionKey.parse(scope_to_section)
            try:
                cv = cv.isolated(scope_to_section)
            except IndexError as exc:
                raise MissingPrerequisite(str(exc), user_message="That experience entry does not exist.") from exc

        payload = await generate_json(
            self.generator,
            "match_analysis",
            _MATCH_PROMPT,
            {
                "job_description": job_description,
                "cv_json": cv.to_prompt_json(),
                "version_note": _OPTIMIZED_NOTE if is_optimized_pass else _ORIGINAL_NOTE,
                "optimized_system_note": _OPTIMIZED_SYSTEM_NOTE if is_optimized_pass else "",
                "optimized_guideline": _OPTIMIZED_GUIDELINE if is_optimized_pass else "",
            },
            invalid=MalformedScoreOutput,
            temperature=self.temperature,
        )
        analysis = validate_output(MatchAnalysis, payload, invalid=MalformedScoreOutput, name="match_analysis")
        logger.info(
            format_with_request("Match analysis: overall=%d seniority=%d (%s) scope=%s optimized=%s"),
            analysis.overall_fit.score,
            analysis.seniority_fit.score,
            analysis.seniority_fit.level,
            scope_to_section or "cv",
            is_optimized_pass,
        )
        return analysis

    async def analyze_experience(self, cv: CVDocument, job_description: str) -> ExperienceAnalysis:
        """Holistic score of the whole experience list."""

        _require_job_description(job_description)
        if not cv.experience:
            raise MissingPrerequisite("CV has no experience entries", user_message="Your CV has no experience entries.")

        payload = await generate_json(
            self.generator,
            "experience_analysis",
            _EXPERIENCE_PROMPT,
            {
                "job_description": job_description,
                "experience_json": CVDocument(experience=cv.experience).model_dump_json(
                    by_alias=True, include={"experience"}, indent=2
                ),
            },
            invalid=MalformedScoreOutput,
            temperature=0.1,
        )
        return validate_output(
            ExperienceAnalysis,
            payload.get("experienceAnalysis"),
            invalid=MalformedScoreOutput,
            name="experience_analysis",
        )


class PositionAnalyzer:
    """Scores exactly one experience entry, isolated from the rest of the CV."""

    def __init__(self, generator: TextGenerator, settings: Optional[Settings] = None, temperature: float = 0.0):
        self.generator = generator
        self.settings = settings or get_settings()
        self.temperature = temperature

    async def analyze_position(self, position: Position, job_description: str) -> PositionAnalysis:
        _require_job_description(job_description)

        payload = await generate_json(
            self.generator,
            "position_analysis",
            _POSITION_PROMPT,
            {"job_description": job_description, "cv_json": isolate_position(position).to_prompt_json()},
            invalid=MalformedScoreOutput,
            temperature=self.temperature,
        )
        analysis = validate_output(
            PositionAnalysis,
            payload.get("positionAnalysis", payload),
            invalid=MalformedScoreOutput,
            name="position_analysis",
        )
        recommend_skip = analysis.score < self.settings.position_skip_threshold
        if recommend_skip:
            logger.info(
                format_with_request("Position %r at %r scored %d; recommending skip"),
                position.title,
                position.company,
                analysis.score,
            )
        return analysis.model_copy(update={"recommend_skip": recommend_skip, "original_analysis": None})

    async def analyze_position_at(self, cv: CVDocument, index: int, job_description: str) -> PositionAnalysis:
        try:
            position = cv.position(index)
        except IndexError as exc:
            raise MissingPrerequisite(str(exc), user_message="That experience entry does not exist.") from exc
        return await self.analyze_position(position, job_description)
