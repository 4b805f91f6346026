"""Request validation performed before any provider call."""

from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING

import jsonschema

from parley.types import Origin, RuntimeMessage, Severity

if TYPE_CHECKING:
    from parley.llm.providers.base import ProviderExecutor, Request

logger = logging.getLogger(__name__)


def _error(text: str) -> RuntimeMessage:
    return RuntimeMessage(Severity.ERROR, Origin.VALIDATION, text)


def validate_json_schema(raw: str) -> str | None:
    """Return an error description if *raw* is not a usable JSON Schema."""
    try:
        schema = json.loads(raw)
    except (json.JSONDecodeError, ValueError) as exc:
        return f"JSON output schema is not valid JSON: {exc}"
    if not isinstance(schema, dict):
        return "JSON output schema must be a JSON object"
    try:
        jsonschema.validators.validator_for(schema).check_schema(schema)
    except jsonschema.SchemaError as exc:
        return f"JSON output schema is invalid: {exc.message}"
    return None


def validate_request(
    request: Request,
    wants_streaming: bool = False,
    executor: ProviderExecutor | None = None,
    *,
    allow_empty: bool = False,
) -> list[RuntimeMessage]:
    """
    Validate *request* and record the caller's streaming intent on it.

    Returns every problem found, not just the first; the session turns
    error-severity messages into a single validation error.  *allow_empty*
    accepts a body without interactions (a greeting needs none).
    """
    request.wants_streaming = wants_streaming
    messages: list[RuntimeMessage] = []

    if len(request.body) == 0 and not allow_empty:
        messages.append(_error("Request has no interactions"))
    if not request.provider:
        messages.append(_error("Provider is required"))
    if request.body.json_output_schema:
        problem = validate_json_schema(request.body.json_output_schema)
        if problem:
            messages.append(_error(problem))

    if executor is not None:
        messages.extend(executor.validate(request) or [])

    if messages:
        logger.debug("Request validation produced %d message(s)", len(messages))
    return messages


def has_errors(messages: list[RuntimeMessage]) -> bool:
    return any(m.severity == Severity.ERROR for m in messages)
