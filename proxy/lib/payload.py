#!/usr/bin/env python3
"""
JSON payload fixes for the LM Studio proxy.

Two additive repairs, both returning new objects instead of mutating the input:
    - tool parameter schemas without a "type" get type "object" (and an empty
      "properties" if that is missing too)
    - usage blocks get input_tokens_details / output_tokens_details defaults

Body-level wrappers parse raw bytes and report failures as values so the
caller can forward the original bytes untouched.
"""

import json
import logging
from dataclasses import dataclass
from typing import Any, Optional, Tuple

logger = logging.getLogger('lmstudio-proxy').getChild('payload')

# Defaults inserted into usage blocks that lack them
USAGE_DETAIL_DEFAULTS = {
    'input_tokens_details': {'cached_tokens': 0},
    'output_tokens_details': {'reasoning_tokens': 0},
}


@dataclass(frozen=True)
class PatchOutcome:
    """Result of patching a raw JSON body.

    error is set when the body could not be parsed or re-encoded; body is then
    the original bytes.
    """
    body: bytes
    changed: bool = False
    error: Optional[str] = None

    @property
    def failed(self) -> bool:
        return self.error is not None


def complete_schema(parameters: Any) -> Any:
    """Return parameters with type/properties filled in, or the same object."""
    if not isinstance(parameters, dict) or 'type' in parameters:
        return parameters
    fixed = dict(parameters)
    fixed['type'] = 'object'
    if 'properties' not in fixed:
        fixed['properties'] = {}
    return fixed


def complete_usage(usage: Any) -> Any:
    """Return usage with missing token detail blocks added, or the same object."""
    if not isinstance(usage, dict):
        return usage
    missing = [key for key in USAGE_DETAIL_DEFAULTS if key not in usage]
    if not missing:
        return usage
    fixed = dict(usage)
    for key in missing:
        fixed[key] = dict(USAGE_DETAIL_DEFAULTS[key])
    return fixed


def _patch_tool(tool: Any) -> Any:
    if not isinstance(tool, dict):
        return tool

    # Nested function-calling form wins; flat form only without a "function" key
    if 'function' in tool:
        function = tool['function']
        if not isinstance(function, dict) or 'parameters' not in function:
            return tool
        fixed = complete_schema(function['parameters'])
        if fixed is function['parameters']:
            return tool
        return {**tool, 'function': {**function, 'parameters': fixed}}

    if 'parameters' not in tool:
        return tool
    fixed = complete_schema(tool['parameters'])
    if fixed is tool['parameters']:
        return tool
    return {**tool, 'parameters': fixed}


def patch_request(doc: Any) -> Tuple[Any, int]:
    """Complete the parameter schemas of every tool in a request document.

    Returns (document, number of schemas fixed). The input document is
    returned as-is when nothing needed fixing.
    """
    if not isinstance(doc, dict):
        return doc, 0
    tools = doc.get('tools')
    if not isinstance(tools, list):
        return doc, 0

    fixed_count = 0
    patched_tools = []
    for tool in tools:
        patched = _patch_tool(tool)
        if patched is not tool:
            fixed_count += 1
        patched_tools.append(patched)

    if not fixed_count:
        return doc, 0
    return {**doc, 'tools': patched_tools}, fixed_count


def patch_response(doc: Any) -> Tuple[Any, bool]:
    """Add missing usage token details to a response document.

    Returns (document, changed).
    """
    if not isinstance(doc, dict) or 'usage' not in doc:
        return doc, False
    fixed = complete_usage(doc['usage'])
    if fixed is doc['usage']:
        return doc, False
    return {**doc, 'usage': fixed}, True


def parse_json(raw: bytes) -> Tuple[Any, Optional[str]]:
    """Parse raw bytes as JSON. Returns (document, error message)."""
    try:
        return json.loads(raw), None
    except (ValueError, RecursionError) as e:
        return None, f"{type(e).__name__}: {e}"


def encode_json(doc: Any) -> bytes:
    """Compact UTF-8 encoding; raises ValueError for NaN/Infinity."""
    return json.dumps(doc, separators=(',', ':'), ensure_ascii=False, allow_nan=False).encode('utf-8')


def _fix_body(raw: bytes, patch) -> Tuple[PatchOutcome, Any]:
    doc, error = parse_json(raw)
    if error:
        return PatchOutcome(body=raw, error=error), 0
    patched, result = patch(doc)
    if not result:
        return PatchOutcome(body=raw), result
    try:
        body = encode_json(patched)
    except (ValueError, RecursionError) as e:
        return PatchOutcome(body=raw, error=f"{type(e).__name__}: {e}"), result
    return PatchOutcome(body=body, changed=True), result


def fix_request_body(raw: bytes) -> PatchOutcome:
    """Parse, patch and re-encode a request body.

    Unchanged bodies are returned byte-for-byte; nothing is re-encoded.
    """
    outcome, fixed_count = _fix_body(raw, patch_request)
    if outcome.changed:
        logger.info(f"Fixed {fixed_count} tool parameter schema(s)")
    return outcome


def fix_response_body(raw: bytes) -> PatchOutcome:
    """Parse, patch and re-encode a non-streaming response body."""
    outcome, _ = _fix_body(raw, patch_response)
    if outcome.changed:
        logger.info("Fixed usage details in response")
    return outcome
