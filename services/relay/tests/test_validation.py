import pytest

from services.relay.app.validation import (
    FILE_NOT_STRING,
    FILE_TOO_LARGE,
    INCOMPLETE_AGENT,
    MISSING_FIELDS,
    MISSING_MODEL,
    validate_question_request,
)

VALID = {"question": "How do I write a GlideRecord query?", "type": "script_include", "aiModel": "gpt-4o"}


def _with(**changes):
    body = dict(VALID)
    for key, value in changes.items():
        if value is None:
            body.pop(key, None)
        else:
            body[key] = value
    return body


def test_valid_request_with_ai_model():
    result = validate_question_request(VALID)
    assert result
    assert result.errors == []


def test_valid_request_with_agent_models_only():
    body = _with(aiModel=None, agentModels=[{"agent": "orchestration", "model": "gpt-4o"}])
    assert validate_question_request(body)


@pytest.mark.parametrize(
    "body",
    [
        _with(question=None),
        _with(type=None),
        _with(question=""),
        {},
        ["not", "an", "object"],
    ],
)
def test_missing_question_or_type(body):
    result = validate_question_request(body)
    assert not result
    assert result.message == MISSING_FIELDS


def test_missing_fields_reported_before_model_errors():
    result = validate_question_request({"type": "business_rule"})
    assert result.message == MISSING_FIELDS


@pytest.mark.parametrize("agent_models", [None, []])
def test_requires_ai_model_or_agent_models(agent_models):
    body = _with(aiModel=None)
    if agent_models is not None:
        body["agentModels"] = agent_models
    assert validate_question_request(body).message == MISSING_MODEL


def test_agent_entry_needs_agent_and_model():
    body = _with(agentModels=[{"agent": "business_rule"}])
    assert validate_question_request(body).message == INCOMPLETE_AGENT


def test_unknown_agent_name_is_rejected():
    body = _with(agentModels=[{"agent": "orchestration", "model": "a"}, {"agent": "hacker", "model": "b"}])
    assert validate_question_request(body).message == (
        "Invalid agent name: hacker. Allowed agents: orchestration, business_rule, client_script, script_include"
    )


def test_file_must_be_string():
    assert validate_question_request(_with(file={"name": "x.png"})).message == FILE_NOT_STRING


def test_file_size_limit():
    assert validate_question_request(_with(file="A" * 11), max_file_chars=10).message == FILE_TOO_LARGE
    assert validate_question_request(_with(file="A" * 10), max_file_chars=10)


def test_empty_file_is_ignored():
    assert validate_question_request(_with(file=""))
