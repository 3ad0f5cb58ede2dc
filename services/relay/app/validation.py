import logging
from typing import Any, Dict, List, Optional

from jsonschema import Draft7Validator
from jsonschema.exceptions import ValidationError

logger = logging.getLogger(__name__)

ALLOWED_AGENTS = ["orchestration", "business_rule", "client_script", "script_include"]

# ~10 MB of base64
DEFAULT_MAX_FILE_CHARS = int(10 * 1024 * 1024 * 1.33)

MISSING_FIELDS = "Missing required fields: question and type are required"
MISSING_MODEL = "Either aiModel or agentModels with at least one agent configuration must be provided"
INCOMPLETE_AGENT = "Each agent configuration must have both agent and model properties"
FILE_NOT_STRING = "File must be a base64 encoded string"
FILE_TOO_LARGE = "File too large (max 10MB)"


class ValidationResult:
    """Result of question request validation."""

    def __init__(self, is_valid: bool, errors: List[str] = None):
        self.is_valid = is_valid
        self.errors = errors or []

    def __bool__(self):
        return self.is_valid

    @property
    def message(self) -> Optional[str]:
        return self.errors[0] if self.errors else None

    def to_dict(self) -> Dict[str, Any]:
        return {"valid": self.is_valid, "errors": self.errors}


def question_request_schema(max_file_chars: int = DEFAULT_MAX_FILE_CHARS) -> Dict[str, Any]:
    return {
        "$schema": "http://json-schema.org/draft-07/schema#",
        "type": "object",
        "required": ["question", "type"],
        "properties": {
            "question": {"type": "string"},
            "type": {"type": "string"},
            "agentModels": {
                "type": "array",
                "items": {
                    "type": "object",
                    "required": ["agent", "model"],
                    "properties": {
                        "agent": {"enum": ALLOWED_AGENTS},
                    },
                },
            },
            "file": {"type": "string", "maxLength": max_file_chars},
        },
        "anyOf": [
            {"required": ["aiModel"]},
            {"required": ["agentModels"], "properties": {"agentModels": {"minItems": 1}}},
        ],
    }


class QuestionRequestValidator:
    """
    Validates raw question bodies against a draft-07 schema and reports the
    first failure, in field order, as a client-facing message.

    Falsy values (empty strings, null, false, 0) count as absent, so an
    empty question is reported as missing rather than as a type error.
    """

    def __init__(self, max_file_chars: int = DEFAULT_MAX_FILE_CHARS):
        self.max_file_chars = max_file_chars
        self._validator = Draft7Validator(question_request_schema(max_file_chars))

    def validate(self, body: Any) -> ValidationResult:
        if not isinstance(body, dict):
            return ValidationResult(False, [MISSING_FIELDS])
        present = {k: v for k, v in body.items() if _present(v)}
        if isinstance(present.get("agentModels"), list):
            present["agentModels"] = [_strip_absent(item) for item in present["agentModels"]]

        errors = sorted(self._validator.iter_errors(present), key=_rank)
        if not errors:
            return ValidationResult(True)
        messages = [_message_for(error, present) for error in errors]
        logger.debug(f"Question request rejected: {messages}")
        return ValidationResult(False, messages)


def validate_question_request(body: Any, max_file_chars: int = DEFAULT_MAX_FILE_CHARS) -> ValidationResult:
    return QuestionRequestValidator(max_file_chars).validate(body)


def _present(value: Any) -> bool:
    if isinstance(value, list):
        return True
    return bool(value)


def _strip_absent(item: Any) -> Any:
    if isinstance(item, dict):
        return {k: v for k, v in item.items() if _present(v)}
    return item


def _field(error: ValidationError) -> str:
    path = list(error.absolute_path)
    if path:
        return str(path[0])
    if error.validator == "required":
        # "'question' is a required property"
        return "question"
    return ""


_ORDER = ["question", "type", "", "agentModels", "file"]


def _rank(error: ValidationError):
    field = _field(error)
    position = _ORDER.index(field) if field in _ORDER else len(_ORDER)
    return position, list(error.absolute_path)


def _message_for(error: ValidationError, body: Dict[str, Any]) -> str:
    field = _field(error)
    path = list(error.absolute_path)
    if field in ("question", "type"):
        return MISSING_FIELDS
    if field == "" and error.validator == "anyOf":
        return MISSING_MODEL
    if field == "agentModels":
        if len(path) >= 3 and path[2] == "agent":
            agent = body["agentModels"][path[1]].get("agent")
            return f"Invalid agent name: {agent}. Allowed agents: {', '.join(ALLOWED_AGENTS)}"
        if len(path) == 2 and error.validator == "required":
            return INCOMPLETE_AGENT
        if len(path) == 1 and error.validator == "minItems":
            return MISSING_MODEL
        return INCOMPLETE_AGENT
    if field == "file":
        if error.validator == "maxLength":
            return FILE_TOO_LARGE
        return FILE_NOT_STRING
    return error.message
