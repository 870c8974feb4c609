"""Pydantic models shared across the CV optimizer."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Annotated, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, StrictInt, field_validator, model_validator

POSITION_NOT_SPECIFIED = "Position Not Specified"
UNTITLED_POSITION = "Untitled Position"
UNKNOWN_EMPLOYER = "Unknown Employer"

Score = Annotated[StrictInt, Field(ge=1, le=5)]

TEXT_SECTIONS = (
    "summary",
    "skills",
    "education",
    "languages",
    "achievements",
    "development",
    "memberships",
)
EXPERIENCE_PREFIX = "experience_"

# Which scoring rubric re-scores a text section after it was rewritten.
SECTION_RUBRICS: Dict[str, str] = {
    "summary": "summary",
    "skills": "skills",
    "languages": "skills",
    "education": "education",
    "development": "education",
    "memberships": "education",
    "achievements": "experience",
}


class _AliasedModel(BaseModel):
    """Base for models exchanged with the generation backend in camelCase."""

    model_config = ConfigDict(populate_by_name=True)


# ---------------------------------------------------------------------------
# CV
# ---------------------------------------------------------------------------


class Position(_AliasedModel):
    """A single experience entry. Identity is its index in ``CVDocument.experience``."""

    company: str
    title: str
    start_date: str = Field(alias="startDate")
    end_date: str = Field(alias="endDate")
    location: Optional[str] = None
    description: str


@dataclass(frozen=True)
class SectionKey:
    """An addressable CV section: a text field or one experience position."""

    name: str
    index: Optional[int] = None

    @classmethod
    def parse(cls, raw: str) -> "SectionKey":
        if raw in TEXT_SECTIONS:
            return cls(name=raw)
        if raw.startswith(EXPERIENCE_PREFIX):
            suffix = raw[len(EXPERIENCE_PREFIX):]
            if suffix.isdigit():
                return cls(name="experience", index=int(suffix))
        raise ValueError(f"Unknown CV section key: {raw!r}")

    @property
    def is_experience(self) -> bool:
        return self.index is not None

    @property
    def rubric(self) -> str:
        return "experience" if self.is_experience else SECTION_RUBRICS[self.name]

    def __str__(self) -> str:
        if self.is_experience:
            return f"{EXPERIENCE_PREFIX}{self.index}"
        return self.name


class TextSection(BaseModel):
    kind: Literal["text"] = "text"
    text: str


class ExperienceSection(BaseModel):
    kind: Literal["experience"] = "experience"
    positions: List[Position]


SectionContent = Annotated[Union[TextSection, ExperienceSection], Field(discriminator="kind")]


class CVDocument(BaseModel):
    """Structured representation of the candidate CV."""

    name: str = ""
    contact: str = ""
    summary: str = ""
    skills: str = ""
    experience: List[Position] = Field(default_factory=list)
    education: str = ""
    languages: str = ""
    achievements: str = ""
    development: str = ""
    memberships: str = ""

    def position(self, index: int) -> Position:
        if index < 0 or index >= len(self.experience):
            raise IndexError(f"CV has no experience entry at index {index}")
        return self.experience[index]

    def section_content(self, key: SectionKey) -> Union[TextSection, ExperienceSection]:
        if key.is_experience:
            return ExperienceSection(positions=[self.position(key.index)])
        return TextSection(text=getattr(self, key.name))

    def with_section(self, key: SectionKey, content: Union[TextSection, ExperienceSection]) -> "CVDocument":
        """Return a copy with one section replaced; ``self`` is left untouched."""

        if key.is_experience:
            if not isinstance(content, ExperienceSection) or len(content.positions) != 1:
                raise ValueError(f"{key} expects exactly one position")
            self.position(key.index)
            experience = list(self.experience)
            experience[key.index] = content.positions[0]
            return self.model_copy(update={"experience": experience})
        if not isinstance(content, TextSection):
            raise ValueError(f"{key} expects text content")
        return self.model_copy(update={key.name: content.text})

    def isolated(self, key: SectionKey) -> "CVDocument":
        """Return a CV holding only ``key``; every other section is blank."""

        if key.is_experience:
            return isolate_position(self.position(key.index))
        return CVDocument(**{key.name: getattr(self, key.name)})

    def to_prompt_json(self) -> str:
        return self.model_dump_json(by_alias=True, indent=2)


def isolate_position(position: Position) -> CVDocument:
    """A CV payload containing exactly ``position`` and nothing else."""

    return CVDocument(experience=[position])


# ---------------------------------------------------------------------------
# Job analysis
# ---------------------------------------------------------------------------


class JobRequirement(BaseModel):
    """A requirement tagged as quoted from the posting or inferred."""

    text: str = Field(min_length=1)
    type: Literal["explicit", "inferred"]
    source: Optional[str] = None

    @field_validator("source", mode="before")
    @classmethod
    def _blank_source_is_none(cls, value):
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @model_validator(mode="after")
    def _check_source(self) -> "JobRequirement":
        if self.type == "explicit" and not self.source:
            raise ValueError("explicit requirements must quote their source")
        if self.type == "inferred" and self.source:
            raise ValueError("inferred requirements must not carry a source")
        return self


class CulturalFit(BaseModel):
    explicit: str = ""
    inferred: str = ""


class JobAnalysis(_AliasedModel):
    """Merged explicit + inferred reading of a job posting."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    title: str
    key_requirements: List[JobRequirement] = Field(default_factory=list, alias="keyRequirements")
    suggested_skills: List[JobRequirement] = Field(default_factory=list, alias="suggestedSkills")
    cultural_fit: CulturalFit = Field(default_factory=CulturalFit, alias="culturalFit")
    recommended_highlights: List[JobRequirement] = Field(default_factory=list, alias="recommendedHighlights")

    def requirements(self) -> List[JobRequirement]:
        return [*self.key_requirements, *self.suggested_skills, *self.recommended_highlights]


class JobMeta(_AliasedModel):
    job_title: str = Field(default=UNTITLED_POSITION, alias="jobTitle")
    employer: str = UNKNOWN_EMPLOYER


# ---------------------------------------------------------------------------
# Gap analysis
# ---------------------------------------------------------------------------


class GapAnalysis(BaseModel):
    """Result of one scoring rubric."""

    gaps: List[str] = Field(default_factory=list)
    strengths: List[str] = Field(default_factory=list)
    score: Score
    questions: List[str] = Field(default_factory=list)


class OverallFit(BaseModel):
    score: Score
    explanation: str = ""


class SeniorityFit(BaseModel):
    """Distance between the candidate's level and the role's level; 5 is a perfect match."""

    score: Score
    level: Literal["under-qualified", "well-matched", "over-qualified"]
    explanation: str = ""
    concerns: List[str] = Field(default_factory=list)

    @model_validator(mode="after")
    def _level_agrees_with_score(self) -> "SeniorityFit":
        """Score 5 is only ever well-matched, and well-matched never scores 2 or lower."""

        if self.score == 5 and self.level != "well-matched":
            raise ValueError(f"seniority score 5 contradicts level {self.level!r}")
        if self.level == "well-matched" and self.score <= 2:
            raise ValueError(f"well-matched seniority cannot score {self.score}")
        return self


class RubricSet(BaseModel):
    summary: GapAnalysis
    skills: GapAnalysis
    experience: GapAnalysis
    education: GapAnalysis


class MatchAnalysis(_AliasedModel):
    overall_fit: OverallFit = Field(alias="overallFit")
    seniority_fit: SeniorityFit = Field(alias="seniorityFit")
    gap_analysis: RubricSet = Field(alias="gapAnalysis")
    suggested_focus: List[str] = Field(default_factory=list, alias="suggestedFocus")

    @property
    def abort_available(self) -> bool:
        return self.seniority_fit.level == "over-qualified" or self.seniority_fit.score <= 2

    def rubric(self, name: str) -> GapAnalysis:
        return getattr(self.gap_analysis, name)


class PositionAnalysis(GapAnalysis):
    """Gap analysis scoped to a single experience entry."""

    model_config = ConfigDict(populate_by_name=True)

    relevance: str = ""
    recommend_skip: bool = Field(default=False, alias="recommendSkip")
    original_analysis: Optional[PositionAnalysis] = Field(default=None, alias="originalAnalysis")


class ExperienceAnalysis(_AliasedModel):
    """Holistic reading of the whole experience list."""

    score: Score
    explanation: str = ""
    relevant_positions: List[str] = Field(default_factory=list, alias="relevantPositions")
    transferable_skills: List[str] = Field(default_factory=list, alias="transferableSkills")
    overall_relevance: str = Field(default="", alias="overallRelevance")


# ---------------------------------------------------------------------------
# Optimization
# ---------------------------------------------------------------------------


class ChatMessage(BaseModel):
    role: Literal["system", "user", "assistant"]
    content: str


class OptimizationResult(_AliasedModel):
    optimized_content: SectionContent = Field(alias="optimizedContent")
    explanation: str = ""
    verification_needed: List[str] = Field(default_factory=list, alias="verificationNeeded")


class CoverLetter(_AliasedModel):
    content: str = Field(min_length=1)
    highlights: List[str]
    keywords_used: List[str] = Field(alias="keywordsUsed")
