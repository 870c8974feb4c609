import asyncio
import json
from decimal import Decimal

import pytest

from cv_optimizer.errors import (
    FabricatedContent,
    IncompleteSectionOutput,
    InvalidSectionSchema,
    MissingPrerequisite,
    NoGeneratedContent,
)
from cv_optimizer.models import ChatMessage, ExperienceSection, TextSection
from cv_optimizer.optimizer import SectionOptimizer, detect_language, known_numbers, novel_numbers

from fakes import FakeGenerator

SEED = ChatMessage(role="assistant", content="Have you managed stakeholders directly? How many people did you lead?")


def _chat(*user_turns):
    return [SEED] + [ChatMessage(role="user", content=turn) for turn in user_turns]


def _optimize(response, content, chat, job_description, settings, language="English"):
    generator = FakeGenerator({"optimize_section": response})
    optimizer = SectionOptimizer(generator, settings)
    result = asyncio.run(optimizer.optimize(content, chat, job_description, language, section_name="summary"))
    return result, generator


@pytest.mark.parametrize(
    "text,language",
    [
        ("Wir suchen einen Berater für unser Team.", "German"),
        ("Erfahrung mit Python und SQL", "German"),
        ("Senior consultant, remote, Python and SQL.", "English"),
        ("Arbeitsort ist der Hauptsitz in Berlin", "German"),
        ("Die Stelle ist ab sofort zu besetzen.", "German"),
        ("Der Hauptsitz liegt in Berlin.", "German"),
    ],
)
def test_detect_language(text, language):
    assert detect_language(text) == language


def test_known_numbers_reads_digits_and_number_words():
    assert known_numbers(["Managed a team of 5", "ran twelve workshops", "since 2019, 1.500 users"]) >= {
        Decimal(5),
        Decimal(12),
        Decimal(2019),
        Decimal(1500),
    }


def test_novel_numbers():
    assert novel_numbers("Led 5 people for 3 years", ["team of five"]) == ["3"]
    assert novel_numbers("Started in 01/2019", ["01/2019"]) == []


def test_decimal_numbers_keep_their_fraction():
    assert novel_numbers("Grew revenue by 1.5 million and 1,500 users", ["Led a team of 15"]) == ["1.5", "1,500"]
    assert novel_numbers("Umsatz um 1,5 Mio. gesteigert", ["Revenue grew by 1.5 million"]) == []
    assert novel_numbers("Served 1,500 users", ["1.500 Nutzer betreut"]) == []


def test_spelled_out_numbers_in_output_are_checked():
    assert novel_numbers("Led twelve workshops over three years", ["Managed a team of 5", "I ran 12 workshops."]) == [
        "three"
    ]
    assert novel_numbers("One of five analysts", ["Team of 5"]) == []


def test_text_optimization(cv, job_description, settings):
    response = {
        "optimizedContent": "Analytics consultant who presents results directly to client stakeholders.",
        "explanation": "Added stakeholder work you described in the chat.",
        "verificationNeeded": [],
    }
    result, generator = _optimize(
        response, TextSection(text=cv.summary), _chat("I present results to client stakeholders."), job_description, settings
    )
    call = generator.calls[0]

    assert result.optimized_content == TextSection(
        text="Analytics consultant who presents results directly to client stakeholders."
    )
    assert result.explanation == "Added stakeholder work you described in the chat."
    assert call["model"] == settings.optimizer_model_name
    assert "user: I present results to client stakeholders." in call["prompt"]
    assert cv.summary in call["prompt"]
    assert "Write everything in English." in call["prompt"]


def test_open_questions_are_appended_to_the_explanation(cv, job_description, settings):
    response = {
        "optimizedContent": "Analytics consultant with client-facing delivery experience.",
        "explanation": "Reworded the summary.",
        "verificationNeeded": ["How many stakeholders did you report to?", "Which industries?"],
    }
    result, _ = _optimize(response, TextSection(text=cv.summary), _chat("I worked with clients."), job_description, settings)

    assert result.verification_needed == ["How many stakeholders did you report to?", "Which industries?"]
    assert result.explanation == (
        "Reworded the summary.\n\n"
        "Before proceeding, please clarify the following points:\n"
        "- How many stakeholders did you report to?\n"
        "- Which industries?"
    )


def test_unstated_numbers_are_rejected(cv, job_description, settings):
    response = {
        "optimizedContent": "Consultant who managed a team of 8 and grew revenue by 30%.",
        "explanation": "Quantified the impact.",
        "verificationNeeded": [],
    }
    with pytest.raises(FabricatedContent):
        _optimize(response, TextSection(text="Managed a team of 5."), _chat("I led the team."), job_description, settings)


def test_unstated_spelled_out_counts_are_rejected(cv, job_description, settings):
    response = {
        "optimizedContent": "Managed a team of 5 and led twelve client workshops over three years.",
        "explanation": "Added the workshops.",
        "verificationNeeded": [],
    }
    with pytest.raises(FabricatedContent):
        _optimize(
            response, TextSection(text="Managed a team of 5."), _chat("I worked with clients."), job_description, settings
        )


def test_numbers_from_the_chat_are_allowed(cv, job_description, settings):
    response = {
        "optimizedContent": "Managed a team of 5 and ran 12 stakeholder workshops.",
        "explanation": "Added the workshops.",
        "verificationNeeded": [],
    }
    result, _ = _optimize(
        response, TextSection(text="Managed a team of 5."), _chat("I ran twelve stakeholder workshops."), job_description, settings
    )
    assert "12 stakeholder workshops" in result.optimized_content.text


def test_numbers_from_assistant_turns_do_not_count(cv, job_description, settings):
    chat = [ChatMessage(role="assistant", content="Did you lead 10 people?"), ChatMessage(role="user", content="Yes, I did.")]
    response = {"optimizedContent": "Led 10 people.", "explanation": "", "verificationNeeded": []}

    with pytest.raises(FabricatedContent):
        _optimize(response, TextSection(text="Team lead."), chat, job_description, settings)


def _position_json(position, **changes):
    data = position.model_dump(by_alias=True)
    data.update(changes)
    return data


def test_experience_optimization_keeps_identity_fields(cv, job_description, settings):
    position = cv.experience[0]
    rewritten = _position_json(
        position, description="Built Python reporting pipelines with client stakeholders. Managed a team of 5."
    )
    response = {"optimizedContent": [rewritten], "explanation": "Highlighted stakeholders.", "verificationNeeded": []}

    result, generator = _optimize(
        response, ExperienceSection(positions=[position]), _chat("The pipelines were used by client stakeholders."), job_description, settings
    )
    prompt = generator.calls[0]["prompt"]

    assert isinstance(result.optimized_content, ExperienceSection)
    assert result.optimized_content.positions[0].company == "Northwind"
    assert result.optimized_content.positions[0].description.startswith("Built Python reporting pipelines with client")
    assert "exactly 1 complete position object(s)" in prompt
    assert '"startDate": "01/2019"' in prompt


@pytest.mark.parametrize(
    "changes",
    [{"company": "Northwind Consulting Group"}, {"startDate": "01/2018"}, {"endDate": "12/2023"}],
)
def test_experience_identity_changes_are_rejected(cv, job_description, settings, changes):
    position = cv.experience[0]
    response = {"optimizedContent": [_position_json(position, **changes)], "explanation": "", "verificationNeeded": []}
    chat = _chat("Northwind Consulting Group, 01/2018 until 12/2023.")

    with pytest.raises(FabricatedContent):
        _optimize(response, ExperienceSection(positions=[position]), chat, job_description, settings)


def test_incomplete_position_is_rejected(cv, job_description, settings):
    position = cv.experience[0]
    partial = _position_json(position)
    del partial["description"]
    response = {"optimizedContent": [partial], "explanation": "", "verificationNeeded": []}

    with pytest.raises(IncompleteSectionOutput):
        _optimize(response, ExperienceSection(positions=[position]), _chat("ok"), job_description, settings)


@pytest.mark.parametrize(
    "optimized",
    [
        "A paragraph instead of positions.",
        {"company": "Northwind"},
        ["not a position"],
        None,
    ],
)
def test_experience_shape_errors(cv, job_description, settings, optimized):
    position = cv.experience[0]
    response = {"explanation": "", "verificationNeeded": []}
    if optimized is not None:
        response["optimizedContent"] = optimized

    with pytest.raises(InvalidSectionSchema):
        _optimize(response, ExperienceSection(positions=[position]), _chat("ok"), job_description, settings)


def test_experience_must_return_one_entry_per_input(cv, job_description, settings):
    position = cv.experience[0]
    response = {
        "optimizedContent": [_position_json(position), _position_json(position)],
        "explanation": "",
        "verificationNeeded": [],
    }

    with pytest.raises(InvalidSectionSchema) as excinfo:
        _optimize(response, ExperienceSection(positions=[position]), _chat("ok"), job_description, settings)
    assert not isinstance(excinfo.value, IncompleteSectionOutput)


@pytest.mark.parametrize(
    "response,content_kind",
    [
        ("", "text"),
        ({"optimizedContent": "   ", "explanation": ""}, "text"),
        ({"optimizedContent": [], "explanation": ""}, "experience"),
    ],
)
def test_empty_generation_is_reported(cv, job_description, settings, response, content_kind):
    content = TextSection(text=cv.summary) if content_kind == "text" else ExperienceSection(positions=cv.experience[:1])

    with pytest.raises(NoGeneratedContent):
        _optimize(response, content, _chat("ok"), job_description, settings)


@pytest.mark.parametrize(
    "response",
    [
        "Here is your new summary: great consultant.",
        {"optimizedContent": ["a", "b"], "explanation": ""},
        {"optimizedContent": "Fine.", "explanation": ["not", "text"]},
        {"optimizedContent": "Fine.", "verificationNeeded": "check dates"},
    ],
)
def test_text_shape_errors(cv, job_description, settings, response):
    with pytest.raises(InvalidSectionSchema):
        _optimize(response, TextSection(text=cv.summary), _chat("ok"), job_description, settings)


def test_optimizer_writes_in_the_target_language(cv, settings):
    german_posting = "Wir suchen einen Datenberater für unser Team in München."
    response = {"optimizedContent": "Berater mit Erfahrung in Datenanalyse.", "explanation": "", "verificationNeeded": []}

    _, generator = _optimize(
        response, TextSection(text=cv.summary), _chat("ok"), german_posting, settings, language=detect_language(german_posting)
    )
    assert "Write everything in German." in generator.calls[0]["prompt"]


def test_optimizer_prerequisites(cv, settings):
    optimizer = SectionOptimizer(FakeGenerator(), settings)

    with pytest.raises(MissingPrerequisite):
        asyncio.run(optimizer.optimize(TextSection(text=cv.summary), _chat("ok"), " ", "English"))
    with pytest.raises(MissingPrerequisite):
        asyncio.run(optimizer.optimize(TextSection(text=cv.summary), _chat("ok"), "Data consultant", ""))


def test_experience_prompt_carries_the_rendered_position(cv, job_description, settings):
    position = cv.experience[1]
    response = {"optimizedContent": [_position_json(position)], "explanation": "", "verificationNeeded": []}

    _, generator = _optimize(response, ExperienceSection(positions=[position]), _chat("ok"), job_description, settings)
    rendered = generator.calls[0]["variables"]["current_content"]

    assert json.loads(rendered) == [position.model_dump(by_alias=True)]
