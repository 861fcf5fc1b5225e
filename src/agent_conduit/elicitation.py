"""Elicitation schema coercion.

Some stdio backends (Codex over MCP) ask for approval with an elicitation
request that declares the JSON Schema its answer must satisfy. This module
turns an abstract decision (``approved``, ``approved_for_session``,
``denied``, ``abort``) into a concrete value that fits that schema, and
pulls the interesting fields (tool call id, command, cwd) out of the
loosely shaped request params.

Coercion never produces a value that violates the declared type of the
schema (or property) it fills.
"""

from __future__ import annotations

import json
from typing import Any

_UNSET: Any = object()

_APPROVED_NEEDLES = ("allow", "approve", "approved", "yes", "true", "accept", "ok", "confirm")
_DENIED_NEEDLES = ("deny", "denied", "no", "false", "reject", "abort", "cancel")

_DECISION_KEYS = frozenset({"decision", "action", "outcome"})
_APPROVAL_KEYS = frozenset({"approved", "approve", "allow", "allowed", "confirm", "confirmed", "accept"})
_REASON_KEYS = frozenset({"reason"})

_SCHEMA_KEYS = ("requestedSchema", "requested_schema", "schema", "jsonSchema", "json_schema")
_NESTED_KEYS = ("request", "payload", "data")
_ARGUMENT_KEYS = ("arguments", "args", "payload", "data", "request", "input")

_TOOL_CALL_ID_KEYS = (
    "codex_call_id",
    "codex_mcp_tool_call_id",
    "codex_event_id",
    "request_id",
    "requestId",
    "call_id",
    "tool_call_id",
    "toolCallId",
    "mcp_tool_call_id",
    "mcpToolCallId",
    "id",
)
_COMMAND_KEYS = (
    "codex_command",
    "command",
    "cmd",
    "command_line",
    "commandLine",
    "shell_command",
    "shellCommand",
    "raw_command",
    "rawCommand",
    "argv",
    "args",
)
_CWD_KEYS = ("codex_cwd", "cwd", "workdir", "workDir", "working_directory", "workingDirectory")
_PROMPT_KEYS = ("prompt", "message", "text")
_DESCRIPTION_KEYS = ("title", "description", "label")


def is_approval(decision: str) -> bool:
    """True for ``approved`` and ``approved_for_session``."""
    return decision in ("approved", "approved_for_session")


# ---------------------------------------------------------------------------
# Schema inspection
# ---------------------------------------------------------------------------


def _schema_types(schema: dict) -> list[str]:
    t = schema.get("type")
    if isinstance(t, str):
        return [t]
    if isinstance(t, list):
        return [x for x in t if isinstance(x, str)]
    return []


def _primary_type(schema: dict) -> str | None:
    types = [t for t in _schema_types(schema) if t != "null"]
    if types:
        return types[0]
    return "null" if _schema_types(schema) else None


def enum_values(schema: Any) -> list[str] | None:
    """String literals allowed by ``enum`` or a ``oneOf``/``anyOf`` of consts."""
    if not isinstance(schema, dict):
        return None
    raw_enum = schema.get("enum")
    if isinstance(raw_enum, list):
        values = [v for v in raw_enum if isinstance(v, str) and v]
        if values:
            return values
    for key in ("oneOf", "anyOf"):
        options = schema.get(key)
        if not isinstance(options, list):
            continue
        values = [
            opt["const"]
            for opt in options
            if isinstance(opt, dict) and isinstance(opt.get("const"), str) and opt["const"]
        ]
        if values:
            return values
    return None


def _allowed_literals(schema: dict) -> list[Any] | None:
    if isinstance(schema.get("enum"), list):
        return list(schema["enum"])
    for key in ("oneOf", "anyOf"):
        options = schema.get(key)
        if isinstance(options, list) and options and all(
            isinstance(opt, dict) and "const" in opt for opt in options
        ):
            return [opt["const"] for opt in options]
    if "const" in schema:
        return [schema["const"]]
    return None


def _fits_type(value: Any, schema_type: str) -> bool:
    if schema_type == "boolean":
        return isinstance(value, bool)
    if schema_type == "integer":
        return isinstance(value, int) and not isinstance(value, bool)
    if schema_type == "number":
        return isinstance(value, (int, float)) and not isinstance(value, bool)
    if schema_type == "string":
        return isinstance(value, str)
    if schema_type == "array":
        return isinstance(value, list)
    if schema_type == "object":
        return isinstance(value, dict)
    if schema_type == "null":
        return value is None
    return True


def fits_schema(schema: Any, value: Any) -> bool:
    """Shallow check that ``value`` matches the literals and type ``schema`` declares."""
    if not isinstance(schema, dict):
        return True
    literals = _allowed_literals(schema)
    if literals is not None and value not in literals:
        return False
    types = _schema_types(schema)
    if types and not any(_fits_type(value, t) for t in types):
        return False
    return True


# ---------------------------------------------------------------------------
# Coercion
# ---------------------------------------------------------------------------


def pick_enum_value(values: list[str], decision: str) -> str:
    """Pick the literal that best expresses ``decision``.

    Exact decision-name match first, then a keyword match, then the first
    value for approvals and the last one for denials.
    """
    if decision in values:
        return decision
    lowered = decision.lower()
    if lowered in values:
        return lowered

    normalized = [v.lower() for v in values]
    needles = _APPROVED_NEEDLES if is_approval(decision) else _DENIED_NEEDLES
    for needle in needles:
        for idx, value in enumerate(normalized):
            if needle in value:
                return values[idx]
    return values[0] if is_approval(decision) else values[-1]


def fallback_content(decision: str, reason: str | None = None) -> dict[str, Any]:
    """Answer used when the backend declared no schema at all."""
    approved = is_approval(decision)
    content: dict[str, Any] = {"decision": decision, "approved": approved, "allow": approved}
    if reason:
        content["reason"] = reason
    return content


def coerce_value(schema: Any, decision: str, reason: str | None = None) -> Any:
    """Coerce ``decision`` into a value satisfying ``schema``.

    Returns the module's unset sentinel when the schema gives nothing to go
    on (no enum, no type, no properties); callers decide the fallback.
    """
    if not isinstance(schema, dict):
        return _UNSET

    values = enum_values(schema)
    if values:
        return pick_enum_value(values, decision)
    if "const" in schema:
        return schema["const"]

    properties = schema.get("properties")
    if isinstance(properties, dict) and properties:
        return _coerce_object(schema, properties, decision, reason)

    approved = is_approval(decision)
    schema_type = _primary_type(schema)
    if schema_type == "boolean":
        return approved
    if schema_type in ("number", "integer"):
        return 1 if approved else 0
    if schema_type == "string":
        return decision
    if schema_type == "array":
        items = schema.get("items")
        item = coerce_value(items, decision, reason)
        if item is _UNSET or isinstance(item, (dict, list)):
            item = decision
        return [item]
    if schema_type == "object":
        return fallback_content(decision, reason)
    if schema_type == "null":
        return None
    return _UNSET


def _preferred_value(key: str, decision: str, reason: str | None) -> Any:
    name = key.lower()
    if name in _DECISION_KEYS:
        return decision
    if name in _APPROVAL_KEYS:
        return is_approval(decision)
    if name in _REASON_KEYS and reason:
        return reason
    return _UNSET


def _coerce_object(schema: dict, properties: dict, decision: str, reason: str | None) -> dict[str, Any]:
    required = [k for k in schema.get("required") or [] if isinstance(k, str)]
    content: dict[str, Any] = {}

    for key, sub in properties.items():
        preferred = _preferred_value(key, decision, reason)
        if preferred is _UNSET:
            continue
        if fits_schema(sub, preferred):
            content[key] = preferred
            continue
        value = coerce_value(sub, decision, reason)
        if value is not _UNSET:
            content[key] = value

    for key in required:
        if key in content or key not in properties:
            continue
        value = coerce_value(properties[key], decision, reason)
        if value is not _UNSET:
            content[key] = value

    if not content:
        fallback_key = required[0] if required and required[0] in properties else next(iter(properties))
        value = coerce_value(properties[fallback_key], decision, reason)
        content[fallback_key] = decision if value is _UNSET else value

    return content


def build_elicitation_content(decision: str, schema: Any = None, reason: str | None = None) -> Any:
    """Produce the ``content`` of an elicitation answer for ``schema``."""
    value = coerce_value(schema, decision, reason)
    if value is _UNSET:
        return fallback_content(decision, reason)
    return value


def build_elicitation_result(decision: str, schema: Any = None, reason: str | None = None) -> dict[str, Any]:
    """Wrap the coerced content in an MCP elicitation result."""
    if is_approval(decision):
        action = "accept"
    elif decision == "abort":
        action = "cancel"
    else:
        action = "decline"
    result: dict[str, Any] = {
        "action": action,
        "content": build_elicitation_content(decision, schema, reason),
        "decision": decision,
    }
    if reason:
        result["reason"] = reason
    return result


# ---------------------------------------------------------------------------
# Request param extraction
# ---------------------------------------------------------------------------


def _normalize_text(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    stripped = value.strip()
    return stripped or None


def _parse_schema_candidate(raw: Any) -> dict | None:
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError:
            return None
    return raw if isinstance(raw, dict) else None


def extract_requested_schema(params: dict) -> dict | None:
    """Find the declared response schema in elicitation params."""
    for key in _SCHEMA_KEYS:
        parsed = _parse_schema_candidate(params.get(key))
        if parsed is not None:
            return parsed
    for key in _NESTED_KEYS:
        nested = params.get(key)
        if isinstance(nested, dict):
            parsed = extract_requested_schema(nested)
            if parsed is not None:
                return parsed
    return None


def _pick_string(record: dict, keys: tuple[str, ...]) -> str | None:
    for key in keys:
        if key in record:
            value = _normalize_text(record[key])
            if value:
                return value
    return None


def _nested_records(params: dict) -> list[dict]:
    return [params[k] for k in _ARGUMENT_KEYS if isinstance(params.get(k), dict)]


def extract_tool_call_id(params: dict) -> str | None:
    """Tool call id from the params or their nested argument records."""
    for record in [params, *_nested_records(params)]:
        for key in _TOOL_CALL_ID_KEYS:
            value = record.get(key)
            if isinstance(value, str) and value:
                return value
    return None


def _command_from_value(value: Any) -> list[str] | None:
    if isinstance(value, list):
        parts: list[str] = []
        for item in value:
            if isinstance(item, str) and item.strip():
                parts.append(item)
            elif isinstance(item, dict):
                candidate = next(
                    (t for t in (_normalize_text(item.get(k)) for k in ("text", "value", "arg", "command", "cmd")) if t),
                    None,
                )
                if candidate:
                    parts.append(candidate)
        return parts or None

    text = _normalize_text(value)
    if text:
        return [text]
    if not isinstance(value, dict):
        return None
    for key in _COMMAND_KEYS:
        if key in value:
            extracted = _command_from_value(value[key])
            if extracted:
                return extracted
    return None


def extract_command(params: dict) -> list[str] | None:
    """Command argv the backend wants to run, if any."""
    direct = _command_from_value(params)
    if direct:
        return direct
    for key in _ARGUMENT_KEYS:
        extracted = _command_from_value(params.get(key))
        if extracted:
            return extracted
    return None


def extract_cwd(params: dict) -> str | None:
    for record in [params, *_nested_records(params)]:
        value = _pick_string(record, _CWD_KEYS)
        if value:
            return value
    return None


def extract_prompt(params: dict) -> tuple[str | None, str | None]:
    """Return ``(prompt, description)`` text from the params."""
    for record in [params, *_nested_records(params)]:
        prompt = _pick_string(record, _PROMPT_KEYS)
        description = _pick_string(record, _DESCRIPTION_KEYS)
        if prompt or description:
            return prompt, description
    return None, None
