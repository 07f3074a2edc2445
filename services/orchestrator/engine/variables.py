"""Resolution of {{ placeholder }} variables against environment values and prior responses.

Two kinds of placeholder are understood:

* plain names (``{{baseUrl}}``) looked up in a flat name -> value map
* flow paths into responses collected earlier in the run:
  ``{{alias.$section.path}}``, ``{{$section.path}}`` (alias omitted: search
  the most recently completed response first) or a bare dotted path, which
  targets ``$body``. Sections are ``$body``, ``$headers``, ``$status`` and
  ``$statusText``; paths accept dots and bracket indices (``items[0].name``).

Unresolved placeholders are left verbatim in the output and reported by name.
"""

import json
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Set
from shared.constants import (
    FLOW_SECTIONS,
    SECTION_BODY,
    SECTION_HEADERS,
    SECTION_STATUS,
    SECTION_STATUS_TEXT,
)
from shared.types import HttpResponseResult

PLACEHOLDER_PATTERN = re.compile(r"\{\{([^}]+)\}\}")
FLOW_PATH_PATTERN = re.compile(r"^[a-zA-Z_$][a-zA-Z0-9_$]*")
ALIAS_PATTERN = re.compile(r"^([a-zA-Z_][a-zA-Z0-9_]*)\.")


@dataclass
class ResolveResult:
    resolved: str
    unresolved: List[str] = field(default_factory=list)


@dataclass
class FlowResolveResult:
    resolved: str
    unresolved: List[str] = field(default_factory=list)
    resolved_from_flow: List[str] = field(default_factory=list)


@dataclass
class VariableReference:
    alias: Optional[str]
    section: str
    path: List[str]


@dataclass
class FlowContext:
    """Responses of the nodes completed so far in one run, keyed by alias.

    Append-only: a node writes its response once, after it completes.
    """
    responses: Dict[str, HttpResponseResult] = field(default_factory=dict)
    execution_order: List[str] = field(default_factory=list)

    def add(self, alias: str, response: HttpResponseResult) -> None:
        self.responses[alias] = response
        if alias in self.execution_order:
            self.execution_order.remove(alias)
        self.execution_order.append(alias)

    def get(self, alias: str) -> Optional[HttpResponseResult]:
        if alias in self.responses:
            return self.responses[alias]
        lowered = alias.lower()
        for key, response in self.responses.items():
            if key.lower() == lowered:
                return response
        return None


def _lookup(variables: Mapping[str, str], name: str) -> Optional[str]:
    if name in variables:
        return variables[name]
    lowered = name.lower()
    for key, value in variables.items():
        if key.lower() == lowered:
            return value
    return None


def resolve_parameterized_value(value: str, variables: Mapping[str, str]) -> ResolveResult:
    unresolved: List[str] = []

    def replace(match: re.Match) -> str:
        name = match.group(1).strip()
        found = _lookup(variables, name)
        if found is None:
            unresolved.append(name)
            return match.group(0)
        return found

    resolved = PLACEHOLDER_PATTERN.sub(replace, value or "")
    return ResolveResult(resolved=resolved, unresolved=unresolved)


def extract_variables(text: str) -> List[str]:
    return [match.group(1).strip() for match in PLACEHOLDER_PATTERN.finditer(text or "")]


def has_unresolved_variables(text: str) -> bool:
    return PLACEHOLDER_PATTERN.search(text or "") is not None


def is_flow_path(name: str) -> bool:
    return FLOW_PATH_PATTERN.match(name) is not None


def get_alias_from_path(path: str) -> Optional[str]:
    match = ALIAS_PATTERN.match(path)
    return match.group(1) if match else None


def parse_flow_path(path: str) -> List[str]:
    """Splits `a.b[0].c` into ['a', 'b', '0', 'c']"""
    parts: List[str] = []
    current = ""
    i = 0
    while i < len(path):
        char = path[i]
        if char == ".":
            if current:
                parts.append(current)
                current = ""
        elif char == "[":
            if current:
                parts.append(current)
                current = ""
            i += 1
            while i < len(path) and path[i] != "]":
                current += path[i]
                i += 1
            if current:
                parts.append(current)
                current = ""
        elif char != "]":
            current += char
        i += 1
    if current:
        parts.append(current)
    return parts


def parse_variable_reference(name: str) -> VariableReference:
    parts = parse_flow_path(name)
    if not parts:
        return VariableReference(alias=None, section=SECTION_BODY, path=[])
    if parts[0] in FLOW_SECTIONS:
        return VariableReference(alias=None, section=parts[0], path=parts[1:])
    if len(parts) >= 2 and parts[1] in FLOW_SECTIONS:
        return VariableReference(alias=parts[0], section=parts[1], path=parts[2:])
    return VariableReference(alias=None, section=SECTION_BODY, path=parts)


def value_to_string(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        return str(int(value)) if value.is_integer() else repr(value)
    return json.dumps(value, separators=(",", ":"), ensure_ascii=False)


def _traverse_json(value: Any, path: List[str]) -> Optional[str]:
    for key in path:
        if value is None:
            return None
        if isinstance(value, list):
            try:
                index = int(key)
            except ValueError:
                return None
            if index < 0 or index >= len(value):
                return None
            value = value[index]
        elif isinstance(value, dict):
            if key in value:
                value = value[key]
                continue
            matching = next((k for k in value if k.lower() == key.lower()), None)
            if matching is None:
                return None
            value = value[matching]
        else:
            return None
    return value_to_string(value)


def _header_value(headers: Mapping[str, str], name: str) -> Optional[str]:
    lowered = name.lower()
    for key, value in headers.items():
        if key.lower() == lowered:
            return value
    return None


def _resolve_body(response: HttpResponseResult, path: List[str]) -> Optional[str]:
    content_type = _header_value(response.headers, "content-type") or ""
    if "json" not in content_type.lower():
        return response.body if not path else None
    try:
        parsed = json.loads(response.body)
    except ValueError:
        return response.body if not path else None
    return _traverse_json(parsed, path)


def resolve_path_in_response(response: HttpResponseResult, section: str, path: List[str]) -> Optional[str]:
    if section == SECTION_STATUS:
        return str(response.status)
    if section == SECTION_STATUS_TEXT:
        return response.status_text
    if section == SECTION_HEADERS:
        if not path:
            return json.dumps(response.headers, separators=(",", ":"))
        return _header_value(response.headers, path[0])
    if section == SECTION_BODY:
        return _resolve_body(response, path)
    return None


def resolve_flow_path(name: str, flow_context: FlowContext, allowed_aliases: Optional[Set[str]] = None) -> Optional[str]:
    """Resolves one flow-path reference.

    With `allowed_aliases`, only responses of those aliases (compared
    case-insensitively) are visible.
    """
    reference = parse_variable_reference(name)
    allowed = {alias.lower() for alias in allowed_aliases} if allowed_aliases is not None else None

    if reference.alias is not None:
        if allowed is not None and reference.alias.lower() not in allowed:
            return None
        response = flow_context.get(reference.alias)
        if response is None:
            return None
        return resolve_path_in_response(response, reference.section, reference.path)

    for alias in reversed(flow_context.execution_order):
        if allowed is not None and alias.lower() not in allowed:
            continue
        response = flow_context.responses.get(alias)
        if response is None:
            continue
        value = resolve_path_in_response(response, reference.section, reference.path)
        if value is not None:
            return value
    return None


def resolve_flow_variables(template: str, variables: Mapping[str, str], flow_context: FlowContext) -> FlowResolveResult:
    """Environment pass first, then flow-context pass for whatever is left"""
    env_result = resolve_parameterized_value(template, variables)
    unresolved: List[str] = []
    resolved_from_flow: List[str] = []

    def replace(match: re.Match) -> str:
        name = match.group(1).strip()
        if is_flow_path(name):
            value = resolve_flow_path(name, flow_context)
            if value is not None:
                resolved_from_flow.append(name)
                return value
        unresolved.append(name)
        return match.group(0)

    resolved = PLACEHOLDER_PATTERN.sub(replace, env_result.resolved)
    return FlowResolveResult(resolved=resolved, unresolved=unresolved, resolved_from_flow=resolved_from_flow)


def extract_variables_from_request(request) -> Set[str]:
    """Every placeholder name used by a stored request definition"""
    texts: List[str] = []
    url, query = request.url_parts()
    texts.append(url)
    for row in list(request.header) + query:
        texts.extend([row.key, row.value])

    body = request.body
    if body is not None:
        if body.raw:
            texts.append(body.raw)
        for row in body.urlencoded:
            texts.extend([row.key, row.value])
        for form_field in body.formdata:
            texts.append(form_field.key)
            if form_field.type == "text":
                texts.append(form_field.value)

    names: Set[str] = set()
    for text in texts:
        names.update(extract_variables(text))
    return names


def flow_context_to_dynamic_env_vars(
    flow_context: FlowContext,
    allowed_node_ids: Iterable[str],
    node_aliases: Mapping[str, str],
    request,
) -> Dict[str, str]:
    """Maps each placeholder of `request` that resolves against an allowed node's response to its value"""
    allowed_aliases = {node_aliases[nid] for nid in allowed_node_ids if nid in node_aliases}
    env_vars: Dict[str, str] = {}
    for name in sorted(extract_variables_from_request(request)):
        value = resolve_flow_path(name, flow_context, allowed_aliases)
        if value is not None:
            env_vars[name] = value
    return env_vars
