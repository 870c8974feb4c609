import json

import pytest

from cv_optimizer.config import Settings
from cv_optimizer.models import CVDocument, Position

from fakes import EXPLICIT_PASS, INFERRED_PASS, FakeGenerator, match_payload, position_payload

JOB_DESCRIPTION = (
    "Senior Data Consultant\n"
    "Acme Analytics is hiring. 5+ years of Python and stakeholder management required.\n"
    "You will work closely with clients in a collaborative team."
)

POSITION_SCORES = {"Northwind": 5, "Contoso": 3, "Fabrikam Bakery": 1}


@pytest.fixture
def job_description():
    return JOB_DESCRIPTION


@pytest.fixture
def settings():
    return Settings(generation_timeout=5, position_skip_threshold=2)


@pytest.fixture
def cv():
    return CVDocument(
        name="Jane Doe",
        contact="jane@example.com",
        summary="Consultant with a background in analytics.",
        skills="Python, SQL, 6 years consulting",
        experience=[
            Position(
                company="Northwind",
                title="Data Consultant",
                start_date="01/2019",
                end_date="Present",
                location="Berlin",
                description="Built Python reporting pipelines for clients. Managed a team of 5.",
            ),
            Position(
                company="Contoso",
                title="Analyst",
                start_date="03/2016",
                end_date="12/2018",
                description="Analyzed sales data with SQL.",
            ),
            Position(
                company="Fabrikam Bakery",
                title="Barista",
                start_date="06/2014",
                end_date="02/2016",
                description="Prepared coffee and handled the till.",
            ),
        ],
        education="B.Sc. Economics",
        languages="English (native)",
    )


def score_position(variables, prompt):
    """Position analysis keyed on the single company in the payload."""

    payload = json.loads(variables["cv_json"])
    company = payload["experience"][0]["company"]
    score = POSITION_SCORES.get(company, 4)
    return position_payload(
        score,
        relevance=f"{company} experience relevance.",
        gaps=[f"No stakeholder management at {company}"],
        strengths=[f"Worked at {company}"],
        questions=[f"Did you present to stakeholders at {company}?"],
    )


@pytest.fixture
def generator():
    return FakeGenerator(
        {
            "explicit_requirements": EXPLICIT_PASS,
            "inferred_requirements": INFERRED_PASS,
            "match_analysis": match_payload(
                summary={
                    "gaps": ["Summary does not mention stakeholders"],
                    "strengths": [],
                    "score": 3,
                    "questions": ["Have you managed stakeholders directly?"],
                },
                skills={
                    "gaps": [],
                    "strengths": ["Python matches the 5+ years of Python requirement"],
                    "score": 4,
                    "questions": [],
                },
            ),
            "position_analysis": score_position,
            "job_meta": {"jobTitle": "Senior Data Consultant", "employer": "Acme Analytics"},
        }
    )
