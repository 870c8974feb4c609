"""Cover letter generation from a (possibly optimized) CV."""
from __future__ import annotations

import logging

from langchain_core.prompts import ChatPromptTemplate

from .errors import InvalidSectionSchema, MissingPrerequisite
from .generation import TextGenerator, generate_json, validate_output
from .logging_utils import format_with_request
from .models import CoverLetter, CVDocument

logger = logging.getLogger(__name__)


_COVER_LETTER_PROMPT = ChatPromptTemplate.from_messages(
    [
        (
            "system",
            "You are an expert cover letter writer who creates compelling, personalized letters "
            "that highlight relevant experience and qualifications. You only use facts from the "
            "CV you are given. Respond with a single JSON object and nothing else.",
        ),
        (
            "human",
            "Write a cover letter based on this CV and job description.\n\n"
            "CV Content:\n{cv_text}\n\n"
            "Job Description:\n{job_description}\n\n"
            "Guidelines:\n"
            "1. Write in {target_language}.\n"
            "2. Structure: 3-4 paragraphs (introduction, body, conclusion).\n"
            "3. Highlight relevant experience and skills from the CV; do not add anything the CV does not state.\n"
            "4. Address key requirements from the job description.\n"
            "5. Keep a professional but engaging tone and stay under 400 words.\n"
            "6. Do not include contact information or a date.\n\n"
            "Return JSON with this structure:\n"
            "{{\n"
            '  "coverLetter": {{\n'
            '    "content": "<the full cover letter text>",\n'
            '    "highlights": ["<3-4 key points emphasized in the letter>"],\n'
            '    "keywordsUsed": ["<important keywords incorporated from the job description>"]\n'
            "  }}\n"
            "}}",
        ),
    ]
)


def cv_to_text(cv: CVDocument) -> str:
    """Plain-text rendering of a CV for prompts that read it as prose."""

    blocks = []
    for field, value in cv:
        if field == "experience":
            entries = [
                f"{position.title} at {position.company}\n{position.start_date} - {position.end_date}\n{position.description}"
                for position in value
            ]
            if entries:
                blocks.append("experience:\n" + "\n\n".join(entries))
        elif value:
            blocks.append(f"{field}: {value}")
    return "\n\n".join(blocks)


class CoverLetterWriter:
    def __init__(self, generator: TextGenerator, temperature: float = 0.7):
        self.generator = generator
        self.temperature = temperature

    async def write(self, cv: CVDocument, job_description: str, target_language: str) -> CoverLetter:
        if not job_description or not job_description.strip():
            raise MissingPrerequisite("job description is empty", user_message="Please provide a job description.")

        payload = await generate_json(
            self.generator,
            "cover_letter",
            _COVER_LETTER_PROMPT,
            {"cv_text": cv_to_text(cv), "job_description": job_description, "target_language": target_language},
            invalid=InvalidSectionSchema,
            temperature=self.temperature,
        )
        letter = validate_output(
            CoverLetter, payload.get("coverLetter"), invalid=InvalidSectionSchema, name="cover_letter"
        )
        logger.info(format_with_request("Cover letter written (%d words)"), len(letter.content.split()))
        return letter
