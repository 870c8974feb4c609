import asyncio
import copy
import json

import pytest

from cv_optimizer.analysis import GapAnalyzer, PositionAnalyzer
from cv_optimizer.config import Settings
from cv_optimizer.errors import MalformedScoreOutput, MissingPrerequisite
from cv_optimizer.models import SectionKey
from cv_optimizer.requirements import RequirementExtractor

from fakes import FakeGenerator, match_payload, position_payload


def _analyze(generator, cv, job_description, **kwargs):
    return asyncio.run(GapAnalyzer(generator).analyze(cv, job_description, **kwargs))


def test_match_analysis_parses_all_rubrics(generator, cv, job_description):
    analysis = _analyze(generator, cv, job_description)

    assert analysis.overall_fit.score == 4
    assert analysis.seniority_fit.level == "well-matched"
    assert analysis.rubric("summary").score == 3
    assert analysis.rubric("summary").questions == ["Have you managed stakeholders directly?"]
    assert analysis.rubric("skills").strengths == ["Python matches the 5+ years of Python requirement"]
    assert analysis.suggested_focus == ["summary", "skills"]


def _broken(mutate):
    payload = match_payload()
    mutate(payload)
    return payload


@pytest.mark.parametrize(
    "payload",
    [
        _broken(lambda p: p["overallFit"].update(score=6)),
        _broken(lambda p: p["overallFit"].update(score=0)),
        _broken(lambda p: p["overallFit"].update(score="4")),
        _broken(lambda p: p["gapAnalysis"]["skills"].update(score=3.5)),
        _broken(lambda p: p["gapAnalysis"].pop("education")),
        _broken(lambda p: p.pop("seniorityFit")),
        _broken(lambda p: p["seniorityFit"].update(level="senior")),
        _broken(lambda p: p["seniorityFit"].update(score=5, level="over-qualified")),
        _broken(lambda p: p["seniorityFit"].update(score=2, level="well-matched")),
    ],
)
def test_malformed_scores_are_rejected(cv, job_description, payload):
    generator = FakeGenerator({"match_analysis": payload})

    with pytest.raises(MalformedScoreOutput):
        _analyze(generator, cv, job_description)


def test_non_json_analysis_is_malformed(cv, job_description):
    with pytest.raises(MalformedScoreOutput):
        _analyze(FakeGenerator({"match_analysis": "The candidate looks great!"}), cv, job_description)


def test_seniority_rubric_penalizes_both_directions(generator, cv, job_description):
    _analyze(generator, cv, job_description)
    prompt = generator.prompts("match_analysis")[0]

    assert "mismatch in EITHER direction" in prompt
    assert "over-qualified must score as low as being substantially under-qualified" in prompt


def _score_seniority(variables, prompt):
    cv = json.loads(variables["cv_json"])
    if "Chief Data Officer" in cv["summary"]:
        return match_payload(seniority=1, level="over-qualified")
    if "intern" in cv["summary"]:
        return match_payload(seniority=1, level="under-qualified")
    return match_payload()


def test_over_and_under_qualification_score_alike(cv, job_description):
    generator = FakeGenerator({"match_analysis": _score_seniority})
    veteran = cv.model_copy(update={"summary": "Chief Data Officer with 20 years of leadership."})
    graduate = cv.model_copy(update={"summary": "Recent graduate, data intern for 6 months."})

    over = _analyze(generator, veteran, job_description)
    under = _analyze(generator, graduate, job_description)

    assert over.seniority_fit.level == "over-qualified"
    assert under.seniority_fit.level == "under-qualified"
    assert over.seniority_fit.score <= 2
    assert under.seniority_fit.score <= 2
    assert over.abort_available and under.abort_available


def test_sample_scenario(generator, cv, job_description):
    job = asyncio.run(RequirementExtractor(generator).extract(job_description))
    analysis = _analyze(generator, cv, job_description)

    assert any(
        item.type == "explicit" and "5+ years of Python" in item.source for item in job.key_requirements
    )
    assert any("Python" in strength for strength in analysis.rubric("skills").strengths)
    assert analysis.rubric("skills").score >= 4
    assert "Python, SQL, 6 years consulting" in generator.prompts("match_analysis")[0]


@pytest.mark.parametrize("level", ["over-qualified", "under-qualified"])
def test_significant_seniority_mismatch_offers_abort(cv, job_description, level):
    generator = FakeGenerator({"match_analysis": match_payload(seniority=2, level=level)})

    analysis = _analyze(generator, cv, job_description)
    assert analysis.seniority_fit.score == 2
    assert analysis.abort_available


def test_original_and_optimized_passes_use_different_framing(generator, cv, job_description):
    _analyze(generator, cv, job_description)
    _analyze(generator, cv, job_description, is_optimized_pass=True)
    original, optimized = generator.prompts("match_analysis")

    assert "This is the original CV" in original
    assert "previous version" not in original
    assert "This is the original CV" not in optimized
    assert "Do not reference, assume or compare against any previous version" in optimized


def test_scoped_analysis_sends_only_that_section(generator, cv, job_description):
    _analyze(generator, cv, job_description, scope_to_section="skills")
    sent = json.loads(generator.calls[0]["variables"]["cv_json"])

    assert sent["skills"] == cv.skills
    assert sent["summary"] == ""
    assert sent["name"] == ""
    assert sent["experience"] == []


def test_analysis_does_not_modify_the_cv(generator, cv, job_description):
    before = cv.model_copy(deep=True)
    _analyze(generator, cv, job_description, scope_to_section=SectionKey.parse("experience_1"))

    assert cv == before


def test_scope_to_missing_position(generator, cv, job_description):
    with pytest.raises(MissingPrerequisite):
        _analyze(generator, cv, job_description, scope_to_section="experience_5")
    assert generator.calls == []


def test_analysis_needs_a_job_description(generator, cv):
    with pytest.raises(MissingPrerequisite):
        _analyze(generator, cv, "")


def test_position_analysis_sees_only_its_position(generator, cv, job_description, settings):
    analyzer = PositionAnalyzer(generator, settings)
    analysis = asyncio.run(analyzer.analyze_position_at(cv, 0, job_description))
    prompt = generator.prompts("position_analysis")[0]

    assert analysis.score == 5
    assert "Northwind" in prompt
    assert "Contoso" not in prompt
    assert "Fabrikam" not in prompt
    assert cv.name not in prompt
    assert cv.skills not in prompt


def test_position_analysis_ignores_the_rest_of_the_cv(generator, cv, job_description, settings):
    other = cv.model_copy(deep=True)
    other.experience[1].description = "Led a 40 person analytics department with stakeholder reporting."
    other.skills = "Stakeholder management, Python, Tableau"
    analyzer = PositionAnalyzer(generator, settings)

    first = asyncio.run(analyzer.analyze_position_at(cv, 0, job_description))
    second = asyncio.run(analyzer.analyze_position_at(other, 0, job_description))
    prompts = generator.prompts("position_analysis")

    assert prompts[0] == prompts[1]
    assert first.gaps == second.gaps
    assert first.strengths == second.strengths


def test_low_scoring_position_is_recommended_for_skip(generator, cv, job_description, settings):
    analyzer = PositionAnalyzer(generator, settings)

    barista = asyncio.run(analyzer.analyze_position_at(cv, 2, job_description))
    analyst = asyncio.run(analyzer.analyze_position_at(cv, 1, job_description))

    assert barista.score == 1
    assert barista.recommend_skip
    assert analyst.score == 3
    assert not analyst.recommend_skip
    assert barista.original_analysis is None


def test_skip_threshold_is_configurable(generator, cv, job_description):
    analyzer = PositionAnalyzer(generator, Settings(position_skip_threshold=4))

    assert asyncio.run(analyzer.analyze_position_at(cv, 1, job_description)).recommend_skip


def test_position_analysis_accepts_an_unwrapped_payload(cv, job_description, settings):
    payload = position_payload(4, relevance="Direct match.")["positionAnalysis"]
    analyzer = PositionAnalyzer(FakeGenerator({"position_analysis": payload}), settings)

    analysis = asyncio.run(analyzer.analyze_position(cv.experience[0], job_description))
    assert analysis.score == 4
    assert analysis.relevance == "Direct match."


@pytest.mark.parametrize("score", [0, 6, "5", None])
def test_position_analysis_rejects_bad_scores(cv, job_description, settings, score):
    payload = copy.deepcopy(position_payload(3))
    payload["positionAnalysis"]["score"] = score
    analyzer = PositionAnalyzer(FakeGenerator({"position_analysis": payload}), settings)

    with pytest.raises(MalformedScoreOutput):
        asyncio.run(analyzer.analyze_position(cv.experience[0], job_description))


def test_position_index_out_of_range(generator, cv, job_description, settings):
    with pytest.raises(MissingPrerequisite):
        asyncio.run(PositionAnalyzer(generator, settings).analyze_position_at(cv, 3, job_description))


def test_holistic_experience_analysis(cv, job_description):
    generator = FakeGenerator(
        {
            "experience_analysis": {
                "experienceAnalysis": {
                    "score": 4,
                    "explanation": "Northwind is a direct match.",
                    "relevantPositions": ["Data Consultant at Northwind"],
                    "transferableSkills": ["SQL from Contoso"],
                    "overallRelevance": "Strong consulting track record.",
                }
            }
        }
    )

    analysis = asyncio.run(GapAnalyzer(generator).analyze_experience(cv, job_description))
    prompt = generator.prompts("experience_analysis")[0]

    assert analysis.score == 4
    assert analysis.relevant_positions == ["Data Consultant at Northwind"]
    assert "Fabrikam Bakery" in prompt
    assert "Irrelevant positions must not reduce the score" in prompt
    assert cv.summary not in prompt


def test_holistic_experience_analysis_requirements(cv, job_description):
    generator = FakeGenerator({"experience_analysis": {"score": 4}})
    analyzer = GapAnalyzer(generator)

    with pytest.raises(MalformedScoreOutput):
        asyncio.run(analyzer.analyze_experience(cv, job_description))
    with pytest.raises(MissingPrerequisite):
        asyncio.run(analyzer.analyze_experience(cv.model_copy(update={"experience": []}), job_description))
