"""Turns a stored request definition into a transport-ready PreparedRequest."""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Sequence, Set, Union
from urllib.parse import urlencode, urlsplit, urlunsplit
from services.orchestrator.domain.collaborators import FileResolver
from services.orchestrator.domain.models import (
    AuthProfile,
    BodyMode,
    CollectionBody,
    CollectionRequest,
    Environment,
    FileReference,
    FormDataBody,
    FormDataEntry,
    KeyValueRow,
    PreparedRequest,
    RequestBody,
)
from services.orchestrator.engine.variables import resolve_parameterized_value
from shared.constants import (
    DEFAULT_BINARY_CONTENT_TYPE,
    DEFAULT_RAW_CONTENT_TYPE,
    GLOBAL_ENVIRONMENT_NAME,
    RAW_LANGUAGE_CONTENT_TYPES,
    URLENCODED_CONTENT_TYPE,
)
from shared.exceptions import (
    FileResolutionError,
    RequestBuildError,
    UnresolvedVariablesError,
    extract_error_message,
)
from shared.utils import utc_now


@dataclass
class RequestBuildResult:
    request: Optional[PreparedRequest] = None
    error: Optional[RequestBuildError] = None
    warnings: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.request is not None and self.error is None

    @property
    def unresolved(self) -> List[str]:
        return list(getattr(self.error, "unresolved", []))


def build_env_vars_map(
    environments: Sequence[Environment],
    environment_id: Optional[str],
    dynamic_vars: Optional[Mapping[str, str]] = None,
) -> Dict[str, str]:
    """global environment < active environment < dynamic variables"""
    env_vars: Dict[str, str] = {}

    global_env = next((e for e in environments if e.name.lower() == GLOBAL_ENVIRONMENT_NAME), None)
    if global_env is not None:
        env_vars.update({v.key: v.value for v in global_env.values if v.enabled})

    if environment_id:
        active_env = next((e for e in environments if e.id == environment_id), None)
        if active_env is not None:
            env_vars.update({v.key: v.value for v in active_env.values if v.enabled})

    if dynamic_vars:
        env_vars.update(dynamic_vars)
    return env_vars


def _active_rows(rows: Sequence[KeyValueRow]) -> List[KeyValueRow]:
    return [row for row in rows if row.key and row.key.strip() and not row.disabled]


def _resolve(value: str, env_vars: Mapping[str, str], unresolved: Set[str]) -> str:
    result = resolve_parameterized_value(value or "", env_vars)
    unresolved.update(result.unresolved)
    return result.resolved


def get_dict_from_header_rows(
    rows: Sequence[KeyValueRow],
    env_vars: Mapping[str, str],
    unresolved: Set[str],
) -> Dict[str, Union[str, List[str]]]:
    headers: Dict[str, Union[str, List[str]]] = {}
    for row in _active_rows(rows):
        key = _resolve(row.key, env_vars, unresolved).strip()
        value = _resolve(row.value, env_vars, unresolved)
        existing = headers.get(key)
        if existing is None:
            headers[key] = value
        elif isinstance(existing, list):
            existing.append(value)
        else:
            headers[key] = [existing, value]
    return headers


def get_params_from_param_rows(
    rows: Sequence[KeyValueRow],
    env_vars: Mapping[str, str],
    unresolved: Set[str],
) -> str:
    pairs = [
        (_resolve(row.key, env_vars, unresolved).strip(), _resolve(row.value, env_vars, unresolved))
        for row in _active_rows(rows)
    ]
    return urlencode(pairs)


async def resolve_file_reference(ref: FileReference, file_resolver: FileResolver) -> bytes:
    try:
        return await file_resolver.read_file(ref.path)
    except FileResolutionError as e:
        raise FileResolutionError(
            f"File not found: {ref.file_name} at {ref.path}. Please re-upload the file.",
            path=ref.path,
        ) from e
    except Exception as e:
        raise FileResolutionError(
            f"Failed to read file: {ref.file_name}. {extract_error_message(e)}",
            path=ref.path,
        ) from e


async def convert_body_to_payload(
    body: Optional[CollectionBody],
    env_vars: Mapping[str, str],
    unresolved: Set[str],
    file_resolver: Optional[FileResolver] = None,
    warnings: Optional[List[str]] = None,
) -> RequestBody:
    warnings = warnings if warnings is not None else []
    if body is None or body.mode == BodyMode.NONE:
        return None

    if body.mode == BodyMode.RAW:
        return _resolve(body.raw or "", env_vars, unresolved)

    if body.mode == BodyMode.URLENCODED:
        return {
            _resolve(row.key, env_vars, unresolved): _resolve(row.value, env_vars, unresolved)
            for row in _active_rows(body.urlencoded)
        }

    if body.mode == BodyMode.FORMDATA:
        form = FormDataBody()
        for form_field in body.formdata:
            if not form_field.key or not form_field.key.strip() or form_field.disabled:
                continue
            key = _resolve(form_field.key, env_vars, unresolved)
            if form_field.type == "file":
                ref = form_field.file
                if ref is None:
                    continue
                content = await _read_optional_file(ref, file_resolver, warnings)
                if content is not None:
                    form.entries.append(FormDataEntry(
                        key=key,
                        type="file",
                        value=content,
                        file_name=ref.file_name,
                        content_type=ref.content_type,
                    ))
            else:
                form.entries.append(FormDataEntry(
                    key=key,
                    type="text",
                    value=_resolve(form_field.value, env_vars, unresolved),
                ))
        return form

    if body.mode == BodyMode.FILE and body.file is not None:
        return await _read_optional_file(body.file, file_resolver, warnings)

    return None


async def _read_optional_file(
    ref: FileReference,
    file_resolver: Optional[FileResolver],
    warnings: List[str],
) -> Optional[bytes]:
    if file_resolver is None:
        message = f"No file resolver configured; skipping file {ref.file_name or ref.path}"
        warnings.append(message)
        logging.warning(message, extra={"path": ref.path})
        return None
    try:
        return await resolve_file_reference(ref, file_resolver)
    except FileResolutionError as e:
        warnings.append(e.message)
        logging.warning("Failed to resolve file", extra={"path": ref.path, "error": e.message})
        return None


def get_content_type_for_body(body: Optional[CollectionBody]) -> Optional[str]:
    if body is None or body.mode == BodyMode.NONE:
        return None
    if body.mode == BodyMode.RAW:
        language = body.options.raw.language if body.options and body.options.raw else None
        if not language:
            return DEFAULT_RAW_CONTENT_TYPE
        return RAW_LANGUAGE_CONTENT_TYPES.get(language, DEFAULT_RAW_CONTENT_TYPE)
    if body.mode == BodyMode.URLENCODED:
        return URLENCODED_CONTENT_TYPE
    if body.mode == BodyMode.FILE:
        return (body.file.content_type if body.file else None) or DEFAULT_BINARY_CONTENT_TYPE
    # formdata: the transport sets it along with the multipart boundary
    return None


def is_url_in_domains(url: str, domains: Sequence[str]) -> bool:
    try:
        hostname = (urlsplit(url).hostname or "").lower()
    except ValueError:
        return False
    if not hostname:
        return False

    for domain in domains:
        normalized = domain.strip().lower()
        if not normalized:
            continue
        if normalized.startswith("*."):
            if hostname.endswith("." + normalized[2:]):
                return True
        elif normalized.startswith("."):
            base = normalized[1:]
            if hostname == base or hostname.endswith("." + base):
                return True
        elif hostname == normalized:
            return True
    return False


def get_auth_for_request(auth: Optional[AuthProfile], url: str) -> Optional[AuthProfile]:
    """Returns the profile when it is enabled, unexpired and allowed for the URL's host"""
    if auth is None or not auth.enabled:
        return None

    if auth.expiry_date is not None:
        expiry = auth.expiry_date
        if expiry.tzinfo is None:
            expiry = expiry.replace(tzinfo=utc_now().tzinfo)
        if expiry <= utc_now():
            logging.warning("Auth profile is expired", extra={"auth_id": auth.id, "auth_name": auth.name})
            return None

    if auth.domain_filters and not is_url_in_domains(url, auth.domain_filters):
        return None
    return auth


def _ensure_protocol(url: str) -> str:
    if url.startswith("http://") or url.startswith("https://"):
        return url
    return f"https://{url}"


def _query_of(url: str) -> str:
    try:
        return urlsplit(url).query
    except ValueError:
        return ""


def _strip_query(url: str) -> str:
    try:
        parts = urlsplit(url)
    except ValueError:
        return url
    return urlunsplit((parts.scheme, parts.netloc, parts.path, "", parts.fragment))


def _has_header(headers: Mapping[str, object], name: str) -> bool:
    return any(key.lower() == name.lower() for key in headers)


async def build_http_request(
    request: CollectionRequest,
    request_id: str,
    environment_id: Optional[str],
    environments: Sequence[Environment],
    auths: Sequence[AuthProfile],
    default_auth_id: Optional[str] = None,
    dynamic_vars: Optional[Mapping[str, str]] = None,
    file_resolver: Optional[FileResolver] = None,
) -> RequestBuildResult:
    env_vars = build_env_vars_map(environments, environment_id, dynamic_vars)
    unresolved: Set[str] = set()
    warnings: List[str] = []

    url_template, query_rows = request.url_parts()
    url = _ensure_protocol(_resolve(url_template, env_vars, unresolved))
    headers = get_dict_from_header_rows(request.header, env_vars, unresolved)

    auth_id = request.auth_id or default_auth_id
    auth = next((a for a in auths if a.id == auth_id), None) if auth_id else None
    request_auth = get_auth_for_request(auth, url)

    params = get_params_from_param_rows(query_rows, env_vars, unresolved)
    body = await convert_body_to_payload(request.body, env_vars, unresolved, file_resolver, warnings)

    if request.body is not None and request.body.mode != BodyMode.NONE and not _has_header(headers, "content-type"):
        content_type = get_content_type_for_body(request.body)
        if content_type:
            headers["Content-Type"] = content_type

    if unresolved:
        names = sorted(unresolved)
        logging.warning("Unresolved placeholders", extra={"request_id": request_id, "unresolved": names})
        return RequestBuildResult(error=UnresolvedVariablesError.from_names(names), warnings=warnings)

    return RequestBuildResult(
        request=PreparedRequest(
            id=request_id,
            method=request.method.upper(),
            url=_strip_query(url),
            params=params or _query_of(url) or None,
            headers=headers,
            body=body,
            auth=request_auth,
            env_vars=env_vars,
            validation=request.validation,
        ),
        warnings=warnings,
    )
