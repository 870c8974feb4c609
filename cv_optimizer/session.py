"""Per-section optimization state machine for one candidate-job pairing.

Each section key moves through ``UNVISITED -> IN_DISCUSSION -> OPTIMIZED ->
ACCEPTED``; ``SKIPPED`` is the other terminal state. Only accepted drafts make
it into the merged CV, every other section keeps the base CV's content.
"""
from __future__ import annotations

import asyncio
import uuid
from enum import Enum
from typing import Dict, List, Optional, Tuple, Union

from pydantic import BaseModel, Field

from .analysis import GapAnalyzer, PositionAnalyzer
from .config import Settings, get_settings
from .errors import InvalidTransition, MissingPrerequisite, SectionBusy
from .generation import TextGenerator
from .graph import build_initial_analysis_graph
from .logging_utils import format_with_request, get_logger
from .models import (
    ChatMessage,
    CVDocument,
    ExperienceSection,
    GapAnalysis,
    JobAnalysis,
    JobMeta,
    MatchAnalysis,
    PositionAnalysis,
    SectionContent,
    SectionKey,
    TextSection,
)
from .optimizer import SectionOptimizer, detect_language
from .requirements import RequirementExtractor
from .stores import ApplicationStore, CVStore

logger = get_logger("session")


class SectionStatus(str, Enum):
    UNVISITED = "unvisited"
    IN_DISCUSSION = "in_discussion"
    OPTIMIZED = "optimized"
    ACCEPTED = "accepted"
    SKIPPED = "skipped"


_DISCUSSING = (SectionStatus.IN_DISCUSSION, SectionStatus.OPTIMIZED)


class SectionState(BaseModel):
    key: str
    status: SectionStatus = SectionStatus.UNVISITED
    chat_history: List[ChatMessage] = Field(default_factory=list)
    draft_content: Optional[SectionContent] = None
    latest_analysis: Optional[Union[PositionAnalysis, GapAnalysis]] = None
    explanation: str = ""
    verification_needed: List[str] = Field(default_factory=list)

    @property
    def accepted(self) -> bool:
        return self.status == SectionStatus.ACCEPTED

    def reset(self) -> None:
        self.chat_history = []
        self.draft_content = None
        self.latest_analysis = None
        self.explanation = ""
        self.verification_needed = []


class SessionContext(BaseModel):
    """Everything the session needs from outside, owned by the caller.

    ``load`` is the only place that reads from storage; ``OptimizationSession.save``
    the only place that writes.
    """

    base_cv: CVDocument
    job_description: str
    target_language: str
    job_meta: JobMeta = Field(default_factory=JobMeta)
    job_analysis: Optional[JobAnalysis] = None
    initial_analysis: Optional[MatchAnalysis] = None
    position_analyses: Dict[int, PositionAnalysis] = Field(default_factory=dict)
    application_id: Optional[str] = None

    @classmethod
    def create(cls, cv: CVDocument, job_description: str) -> "SessionContext":
        return cls(
            base_cv=cv.model_copy(deep=True),
            job_description=job_description,
            target_language=detect_language(job_description),
        )

    @classmethod
    async def load(cls, store: CVStore, job_description: str) -> "SessionContext":
        return cls.create(await store.fetch_current_cv(), job_description)


class SaveResult(BaseModel):
    application_id: str
    optimized_cv: CVDocument
    final_analysis: MatchAnalysis


class OptimizationSession:
    """Coordinates extraction, scoring and rewriting for one CV and one job."""

    def __init__(
        self,
        context: SessionContext,
        generator: TextGenerator,
        store: Optional[ApplicationStore] = None,
        settings: Optional[Settings] = None,
    ):
        self.context = context
        self.generator = generator
        self.store = store
        self.settings = settings or get_settings()
        self.extractor = RequirementExtractor(generator)
        self.gap_analyzer = GapAnalyzer(generator)
        self.position_analyzer = PositionAnalyzer(generator, self.settings)
        self.optimizer = SectionOptimizer(generator, self.settings)

        self.session_id = uuid.uuid4().hex
        self.sections: Dict[str, SectionState] = {}
        self.aborted = False
        self._locks: Dict[str, asyncio.Lock] = {}
        self._revisions: Dict[str, int] = {}
        self._final: Optional[Tuple[CVDocument, MatchAnalysis]] = None

    # ------------------------------------------------------------------
    # Initial analysis
    # ------------------------------------------------------------------

    async def initialize(self) -> MatchAnalysis:
        """Run requirement extraction and all initial scoring concurrently."""

        self._ensure_active()
        self._require_job_description()

        graph = build_initial_analysis_graph(
            self.generator, self.extractor, self.gap_analyzer, self.position_analyzer
        )
        result = await graph.ainvoke(
            {"cv": self.context.base_cv, "job_description": self.context.job_description}
        )
        self.context.job_analysis = result["job_analysis"]
        self.context.initial_analysis = result["match_analysis"]
        self.context.position_analyses = result.get("position_analyses", {})
        self.context.job_meta = result.get("job_meta", JobMeta())
        logger.info(
            format_with_request("Session %s initialized for %r (%s, %d positions)"),
            self.session_id,
            self.context.job_meta.job_title,
            self.context.target_language,
            len(self.context.position_analyses),
        )
        return self.context.initial_analysis

    # ------------------------------------------------------------------
    # Section transitions
    # ------------------------------------------------------------------

    def state(self, key: str) -> SectionState:
        """Return the state for ``key``, creating it as unvisited."""

        self._ensure_active()
        section_key = self._parse_key(key)
        canonical = str(section_key)
        if canonical not in self.sections:
            self.sections[canonical] = SectionState(key=canonical)
        return self.sections[canonical]

    def open_section(self, key: str) -> SectionState:
        state = self.state(key)
        if state.status in _DISCUSSING:
            return state
        if state.status != SectionStatus.UNVISITED:
            raise InvalidTransition(f"{state.key} is already {state.status.value}")

        seed = self._seed_message(SectionKey.parse(state.key))
        state.chat_history = [seed]
        state.status = SectionStatus.IN_DISCUSSION
        logger.info(format_with_request("Session %s opened %s"), self.session_id, state.key)
        return state

    async def submit_message(self, key: str, text: str) -> SectionState:
        """Append a user turn, rewrite the section and re-score the draft."""

        state = self.state(key)
        if state.status not in _DISCUSSING:
            raise InvalidTransition(f"{state.key} is not open for discussion")
        if not text or not text.strip():
            raise MissingPrerequisite("empty chat message", user_message="Please enter a message.")

        lock = self._locks.setdefault(state.key, asyncio.Lock())
        if lock.locked():
            raise SectionBusy(f"{state.key} already has an optimization in flight")

        async with lock:
            revision = self._revisions.get(state.key, 0)
            section_key = SectionKey.parse(state.key)
            history = state.chat_history + [ChatMessage(role="user", content=text.strip())]

            result = await self.optimizer.optimize(
                self.context.base_cv.section_content(section_key),
                history,
                self.context.job_description,
                self.context.target_language,
                section_name=self._section_label(section_key),
            )
            analysis = await self._rescore(section_key, result.optimized_content)

            if self.aborted or self._revisions.get(state.key, 0) != revision:
                raise InvalidTransition(f"{state.key} changed while it was being optimized")

            state.chat_history = history + [ChatMessage(role="assistant", content=result.explanation)]
            state.draft_content = result.optimized_content
            state.latest_analysis = analysis
            state.explanation = result.explanation
            state.verification_needed = list(result.verification_needed)
            state.status = SectionStatus.OPTIMIZED

        logger.info(
            format_with_request("Session %s optimized %s: score %d, %d open question(s)"),
            self.session_id,
            state.key,
            analysis.score,
            len(state.verification_needed),
        )
        return state

    def start_over(self, key: str) -> SectionState:
        state = self.state(key)
        if state.status not in _DISCUSSING:
            raise InvalidTransition(f"{state.key} cannot start over from {state.status.value}")
        self._ensure_idle(state.key)

        seed = self._seed_message(SectionKey.parse(state.key))
        state.reset()
        state.chat_history = [seed]
        state.status = SectionStatus.IN_DISCUSSION
        self._bump(state.key)
        return state

    def accept(self, key: str) -> SectionState:
        state = self.state(key)
        if state.status != SectionStatus.OPTIMIZED or state.draft_content is None:
            raise InvalidTransition(f"{state.key} has no draft to accept")
        self._ensure_idle(state.key)

        if state.verification_needed:
            logger.warning(
                format_with_request("Session %s accepted %s with unresolved items: %s"),
                self.session_id,
                state.key,
                state.verification_needed,
            )
        state.status = SectionStatus.ACCEPTED
        self._bump(state.key)
        return state

    def skip(self, key: str) -> SectionState:
        state = self.state(key)
        if state.status not in (SectionStatus.UNVISITED, *_DISCUSSING):
            raise InvalidTransition(f"{state.key} cannot be skipped from {state.status.value}")
        self._ensure_idle(state.key)

        state.reset()
        state.status = SectionStatus.SKIPPED
        self._bump(state.key)
        return state

    def before_after(self, key: str) -> Tuple[Optional[GapAnalysis], Optional[GapAnalysis]]:
        """Initial and latest analysis of a section, for side-by-side display."""

        state = self.state(key)
        section_key = SectionKey.parse(state.key)
        before: Optional[GapAnalysis]
        if section_key.is_experience:
            before = self.context.position_analyses.get(section_key.index)
        elif self.context.initial_analysis is not None:
            before = self.context.initial_analysis.rubric(section_key.rubric)
        else:
            before = None
        return before, state.latest_analysis

    # ------------------------------------------------------------------
    # Session-level actions
    # ------------------------------------------------------------------

    def merged_cv(self) -> CVDocument:
        """Base CV with every accepted draft substituted in place."""

        self._ensure_active()
        merged = self.context.base_cv
        for key, state in self.sections.items():
            if state.accepted and state.draft_content is not None:
                merged = merged.with_section(SectionKey.parse(key), state.draft_content)
        return merged

    @property
    def abort_available(self) -> bool:
        analysis = self.context.initial_analysis
        return not self.aborted and analysis is not None and analysis.abort_available

    def abort(self) -> None:
        """Drop every draft and chat; nothing is persisted."""

        if not self.abort_available:
            raise InvalidTransition("abort is only offered for a seniority mismatch")
        discarded = len(self.sections)
        self.sections = {}
        self._final = None
        self._revisions = {key: revision + 1 for key, revision in self._revisions.items()}
        self.aborted = True
        logger.info(
            format_with_request("Session %s aborted; %d section(s) discarded"), self.session_id, discarded
        )

    async def save(self) -> SaveResult:
        """Score the merged CV once and persist it with the application record.

        A failed store call leaves the session untouched; the final analysis is
        kept so a retry does not run it again.
        """

        self._ensure_active()
        self._require_job_description()
        if self.store is None:
            raise MissingPrerequisite("no application store configured")
        for key, lock in self._locks.items():
            if lock.locked():
                raise SectionBusy(f"{key} is still being optimized")

        merged = self.merged_cv()
        if self._final is not None and self._final[0] == merged:
            final_analysis = self._final[1]
        else:
            has_accepted = any(state.accepted for state in self.sections.values())
            final_analysis = await self.gap_analyzer.analyze(
                merged, self.context.job_description, is_optimized_pass=has_accepted
            )
            self._final = (merged, final_analysis)

        application_id = self.context.application_id
        if application_id is None:
            application_id = await self.store.create_application_record(
                self.context.base_cv,
                self.context.job_description,
                self.context.job_meta.job_title,
                self.context.job_meta.employer,
            )
            self.context.application_id = application_id
        await self.store.update_application_record(application_id, merged, final_analysis)

        logger.info(
            format_with_request("Session %s saved application %s (overall %d)"),
            self.session_id,
            application_id,
            final_analysis.overall_fit.score,
        )
        return SaveResult(application_id=application_id, optimized_cv=merged, final_analysis=final_analysis)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _ensure_active(self) -> None:
        if self.aborted:
            raise InvalidTransition("session was aborted")

    def _ensure_idle(self, key: str) -> None:
        lock = self._locks.get(key)
        if lock is not None and lock.locked():
            raise SectionBusy(f"{key} is still being optimized")

    def _bump(self, key: str) -> None:
        self._revisions[key] = self._revisions.get(key, 0) + 1

    def _require_job_description(self) -> None:
        if not self.context.job_description.strip():
            raise MissingPrerequisite("no job description", user_message="Please provide a job description first.")

    def _parse_key(self, key: str) -> SectionKey:
        try:
            section_key = SectionKey.parse(key)
        except ValueError as exc:
            raise MissingPrerequisite(str(exc), user_message="Unknown CV section.") from exc
        if section_key.is_experience and section_key.index >= len(self.context.base_cv.experience):
            raise MissingPrerequisite(
                f"CV has no experience entry at index {section_key.index}",
                user_message="That experience entry does not exist.",
            )
        return section_key

    def _section_label(self, key: SectionKey) -> str:
        if key.is_experience:
            position = self.context.base_cv.position(key.index)
            return f"experience entry ({position.title} at {position.company})"
        return key.name

    def _seed_message(self, key: SectionKey) -> ChatMessage:
        self._require_job_description()

        if key.is_experience:
            analysis = self.context.position_analyses.get(key.index)
            if analysis is None:
                raise MissingPrerequisite(
                    f"position {key.index} has not been analyzed",
                    user_message="Please run the analysis before optimizing this position.",
                )
            position = self.context.base_cv.position(key.index)
            lines = [f"Let's look at your role as {position.title} at {position.company}."]
            if analysis.relevance:
                lines += ["", analysis.relevance]
            if analysis.gaps:
                lines += ["", "Gaps I noticed:"] + [f"- {gap}" for gap in analysis.gaps]
            if analysis.questions:
                lines += ["", "Could you tell me more about:"] + [f"- {question}" for question in analysis.questions]
            else:
                lines += ["", "What else did you do in this role that relates to the job?"]
            if analysis.recommend_skip:
                lines += ["", "This position has little relevance to the job; you may want to skip it."]
            return ChatMessage(role="assistant", content="\n".join(lines))

        if self.context.initial_analysis is None:
            raise MissingPrerequisite(
                "initial analysis has not been run",
                user_message="Please run the analysis before optimizing sections.",
            )
        questions = self.context.initial_analysis.rubric(key.rubric).questions
        if questions:
            content = (
                f"Let's discuss the gaps in your {key.name}. I have some questions that will help me "
                "provide better optimization suggestions:\n\n" + "\n".join(questions)
            )
        else:
            content = f"Let's work on your {key.name}. Is there anything you would like to add or emphasize?"
        return ChatMessage(role="assistant", content=content)

    async def _rescore(
        self, key: SectionKey, content: Union[TextSection, ExperienceSection]
    ) -> Union[GapAnalysis, PositionAnalysis]:
        if isinstance(content, ExperienceSection):
            analysis = await self.position_analyzer.analyze_position(
                content.positions[0], self.context.job_description
            )
            return analysis.model_copy(
                update={"original_analysis": self.context.position_analyses.get(key.index)}
            )

        draft_cv = self.context.base_cv.with_section(key, content)
        match = await self.gap_analyzer.analyze(
            draft_cv, self.context.job_description, is_optimized_pass=True, scope_to_section=key
        )
        return match.rubric(key.rubric)
