"""Typed errors raised by the analysis and optimization pipeline.

Every error carries a short ``user_message`` that can be shown as-is and a
stable ``code`` so callers can build retry/backoff policies without parsing
exception text. The underlying cause is chained with ``raise ... from``.
"""
from __future__ import annotations

from typing import Optional


class CVOptimizerError(Exception):
    """Base class for all pipeline errors."""

    code = "cv_optimizer_error"
    user_message = "Something went wrong while processing your CV."

    def __init__(self, detail: str = "", *, user_message: Optional[str] = None):
        super().__init__(detail or self.user_message)
        self.detail = detail
        if user_message is not None:
            self.user_message = user_message


class IncompleteAnalysis(CVOptimizerError):
    """One half of the two-pass job requirement extraction failed."""

    code = "incomplete_analysis"
    user_message = "The job posting could not be fully analyzed. Please try again."


class MalformedScoreOutput(CVOptimizerError):
    """A score was missing, non-integer, out of 1..5, or a rubric was missing."""

    code = "malformed_score_output"
    user_message = "The CV analysis came back in an unexpected format."


class InvalidSectionSchema(CVOptimizerError):
    """Generated section content does not match the expected shape."""

    code = "invalid_section_schema"
    user_message = "The optimized section could not be read."


class IncompleteSectionOutput(InvalidSectionSchema):
    """An experience entry came back with required fields missing."""

    code = "incomplete_section_output"
    user_message = "The optimized experience entry is missing required fields."


class NoGeneratedContent(CVOptimizerError):
    """The generation backend returned nothing."""

    code = "no_generated_content"
    user_message = "No content was generated. Please try again."


class FabricatedContent(CVOptimizerError):
    """Generated content introduced facts absent from the CV and the chat."""

    code = "fabricated_content"
    user_message = (
        "The suggestion contained details you have not provided. "
        "Please answer the open questions and try again."
    )


class PersistenceError(CVOptimizerError):
    """The external store failed; in-memory state is kept for a retry."""

    code = "persistence_error"
    user_message = "Saving failed. Your changes are kept, please retry."


class MissingPrerequisite(CVOptimizerError):
    """A required input (job description, analysis, position) is absent."""

    code = "missing_prerequisite"
    user_message = "Some required information is missing."


class GenerationError(CVOptimizerError):
    """The generation backend failed before producing output."""

    code = "generation_error"
    user_message = "The AI service is unavailable right now."


class GenerationTimeout(GenerationError):
    code = "generation_timeout"
    user_message = "The AI service took too long to respond."


class SectionBusy(CVOptimizerError):
    """An optimization for this section is already in flight."""

    code = "section_busy"
    user_message = "This section is still being optimized. Please wait."


class InvalidTransition(CVOptimizerError):
    """The requested action is not allowed in the section's current state."""

    code = "invalid_transition"
    user_message = "That action is not available right now."
