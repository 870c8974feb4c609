"""LangGraph workflow for the initial analysis of a candidate-job pairing."""
from __future__ import annotations

from typing import Dict, TypedDict

from langgraph.graph import END, START, StateGraph

from .analysis import GapAnalyzer, PositionAnalyzer
from .generation import TextGenerator, gather_strict
from .models import CVDocument, JobAnalysis, JobMeta, MatchAnalysis, PositionAnalysis
from .requirements import RequirementExtractor, extract_job_meta


class InitialAnalysisState(TypedDict, total=False):
    """Shared state passed between graph nodes."""

    cv: CVDocument
    job_description: str
    job_analysis: JobAnalysis
    match_analysis: MatchAnalysis
    position_analyses: Dict[int, PositionAnalysis]
    job_meta: JobMeta


def build_initial_analysis_graph(
    generator: TextGenerator,
    extractor: RequirementExtractor,
    gap_analyzer: GapAnalyzer,
    position_analyzer: PositionAnalyzer,
):
    """Create the initial-analysis graph.

    The four nodes are independent, so they all hang off the entry point and
    run concurrently: requirement extraction, the full-CV match analysis, the
    per-position analyses and the job title/employer lookup. The first node
    error aborts the run and propagates to the caller.
    """

    async def extract_requirements(state: InitialAnalysisState) -> InitialAnalysisState:
        return {"job_analysis": await extractor.extract(state["job_description"])}

    async def score_match(state: InitialAnalysisState) -> InitialAnalysisState:
        return {"match_analysis": await gap_analyzer.analyze(state["cv"], state["job_description"])}

    async def score_positions(state: InitialAnalysisState) -> InitialAnalysisState:
        experience = state["cv"].experience
        analyses = await gather_strict(
            *(position_analyzer.analyze_position(position, state["job_description"]) for position in experience)
        )
        return {"position_analyses": dict(enumerate(analyses))}

    async def lookup_job_meta(state: InitialAnalysisState) -> InitialAnalysisState:
        return {"job_meta": await extract_job_meta(generator, state["job_description"])}

    workflow = StateGraph(InitialAnalysisState)
    workflow.add_node("extract_requirements", extract_requirements)
    workflow.add_node("score_match", score_match)
    workflow.add_node("score_positions", score_positions)
    workflow.add_node("lookup_job_meta", lookup_job_meta)

    for node in ("extract_requirements", "score_match", "score_positions", "lookup_job_meta"):
        workflow.add_edge(START, node)
        workflow.add_edge(node, END)

    return workflow.compile()
