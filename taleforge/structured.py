"""Structured extraction: LLM text output validated against a pydantic schema.

generate_structured() makes one call, parses the reply and validates it.
On malformed output it sends exactly one repair request carrying the
validation error and the JSON schema; a second failure raises
MalformedOutputError.
"""

from __future__ import annotations

import json
import logging
from typing import TypeVar

from pydantic import BaseModel, ValidationError

from taleforge.cancellation import CancelToken
from taleforge.config import ServiceConfig
from taleforge.llm import LLM, MalformedOutputError

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)


def _strip_fences(text: str) -> str:
    cleaned = text.strip()
    if cleaned.startswith("```"):
        lines = cleaned.split("\n")
        lines = [l for l in lines[1:] if not l.strip().startswith("```")]
        cleaned = "\n".join(lines)
    return cleaned


def parse_structured(text: str, schema: type[M]) -> M:
    """Parse JSON from LLM output, stripping markdown fences, and validate it."""
    cleaned = _strip_fences(text)
    try:
        data = json.loads(cleaned)
    except json.JSONDecodeError as e:
        raise MalformedOutputError(f"Output is not valid JSON: {e}") from e
    if not isinstance(data, dict):
        raise MalformedOutputError(
            f"Expected a JSON object, got {type(data).__name__}"
        )
    try:
        return schema.model_validate(data)
    except ValidationError as e:
        raise MalformedOutputError(
            f"Output does not match {schema.__name__}: {e.error_count()} error(s)"
        ) from e


def _repair_prompt(original: str, reply: str, error: Exception, schema: type[BaseModel]) -> str:
    return (
        f"{original}\n\n"
        "Your previous reply could not be used:\n"
        f"{reply}\n\n"
        f"Problem: {error}\n\n"
        "Reply again with a single JSON object that matches this schema exactly. "
        "Return only the JSON, no other text.\n"
        f"{json.dumps(schema.model_json_schema())}"
    )


async def generate_structured(
    llm: LLM,
    stage: str,
    prompt: str,
    schema: type[M],
    *,
    system: str = "",
    options: ServiceConfig | None = None,
    cancel: CancelToken | None = None,
    timeout: float | None = None,
) -> M:
    """Generate and validate structured output, with one repair attempt.

    LLMError subclasses other than MalformedOutputError, OperationCancelled
    and OperationTimeout propagate unchanged.
    """

    if cancel is None:
        cancel = CancelToken()

    async def _call(text: str) -> str:
        coro = llm(stage, text, system=system, options=options)
        return await cancel.run(coro, timeout=timeout)

    reply = await _call(prompt)
    try:
        return parse_structured(reply, schema)
    except MalformedOutputError as first:
        logger.warning("malformed %s output, attempting repair: %s", stage, first)
        repair = _repair_prompt(prompt, reply, first, schema)

    reply = await _call(repair)
    result = parse_structured(reply, schema)
    logger.debug("repair succeeded for stage=%s", stage)
    return result
