"""HTTP transport backed by `requests`."""

import asyncio
import base64
import logging
import os
import time
from typing import Any, Dict, List, Optional, Set, Tuple
from urllib.parse import urlencode
import requests
from requests.auth import HTTPBasicAuth, HTTPDigestAuth
from requests.exceptions import ConnectionError, RequestException, Timeout
from services.orchestrator.domain.models import AuthProfile, AuthType, FormDataBody, PreparedRequest
from services.transport.validation import execute_validation
from shared.constants import DEFAULT_HTTP_TIMEOUT_SECONDS
from shared.types import HttpResponseResult, TransportResult

TEXT_CONTENT_MARKERS = ("text/", "json", "xml", "javascript", "html", "x-www-form-urlencoded")


def _encode_secret(value: str, enabled: bool) -> str:
    if not enabled:
        return value
    return base64.b64encode(value.encode("utf-8")).decode("ascii")


def _flatten_headers(headers: Dict[str, Any]) -> Dict[str, str]:
    return {
        key: ", ".join(value) if isinstance(value, list) else str(value)
        for key, value in headers.items()
    }


def _is_text_content(content_type: str) -> bool:
    content_type = (content_type or "").lower()
    return not content_type or any(marker in content_type for marker in TEXT_CONTENT_MARKERS)


class RequestsTransport:
    """Sends PreparedRequests with `requests` on a worker thread.

    Network errors come back as failure results; the request's validation
    rules are evaluated against every response received. An injected
    session is shared by all worker threads; without one, every call opens
    its own short-lived session.
    """

    def __init__(self, timeout: float = None, session: requests.Session = None):
        self.timeout = timeout or float(os.getenv("FLOW_HTTP_TIMEOUT_SECONDS", DEFAULT_HTTP_TIMEOUT_SECONDS))
        self.session = session
        self._cancelled: Set[str] = set()

    def cancel_request(self, request_id: str) -> None:
        self._cancelled.add(request_id)

    async def execute_request(self, request: PreparedRequest) -> TransportResult:
        started = time.perf_counter()
        try:
            response = await asyncio.to_thread(self._send, request)
            if request.id in self._cancelled:
                return TransportResult.failure("Request cancelled")
        except Timeout as e:
            return TransportResult.failure(f"Request timed out: {str(e)}")
        except ConnectionError as e:
            return TransportResult.failure(f"Network error: {str(e)}")
        except RequestException as e:
            return TransportResult.failure(f"Request failed: {str(e)}")
        finally:
            self._cancelled.discard(request.id)
        elapsed_ms = round((time.perf_counter() - started) * 1000, 2)

        result = self._to_response_result(request, response, elapsed_ms)
        if request.validation is not None and request.validation.enabled:
            result.validation_result = execute_validation(request.validation, result, request.env_vars)

        logging.info("HTTP request completed", extra={
            "request_id": request.id,
            "method": request.method,
            "url": request.url,
            "status_code": result.status,
            "elapsed_ms": elapsed_ms,
        })
        return TransportResult.success(result)

    def _send(self, request: PreparedRequest) -> requests.Response:
        headers = _flatten_headers(request.headers)
        params = request.params
        auth, params = self._apply_auth(request.auth, headers, params)
        data, files = self._encode_body(request.body)
        kwargs = dict(params=params, headers=headers, data=data, files=files, auth=auth, timeout=self.timeout)

        if self.session is not None:
            return self.session.request(request.method, request.url, **kwargs)
        with requests.Session() as session:
            return session.request(request.method, request.url, **kwargs)

    def _apply_auth(
        self,
        profile: Optional[AuthProfile],
        headers: Dict[str, str],
        params: Optional[str],
    ) -> Tuple[Any, Optional[str]]:
        if profile is None:
            return None, params

        if profile.type == AuthType.API_KEY and profile.key:
            value = (profile.prefix or "") + _encode_secret(profile.value or "", profile.base64_encode)
            if profile.send_in == "query":
                extra = urlencode([(profile.key, value)])
                return None, f"{params}&{extra}" if params else extra
            headers[profile.key] = value
            return None, params

        if profile.type == AuthType.BASIC:
            return HTTPBasicAuth(profile.username or "", profile.password or ""), params

        if profile.type == AuthType.DIGEST:
            return HTTPDigestAuth(profile.username or "", profile.password or ""), params

        if profile.type == AuthType.OAUTH2_REFRESH and profile.access_token:
            headers["Authorization"] = f"Bearer {profile.access_token}"
            return None, params

        return None, params

    def _encode_body(self, body: Any):
        if body is None:
            return None, None
        if isinstance(body, FormDataBody):
            files: List[Tuple[str, tuple]] = []
            for entry in body.entries:
                if entry.type == "file":
                    files.append((entry.key, (entry.file_name, entry.value, entry.content_type)))
                else:
                    files.append((entry.key, (None, entry.value)))
            return None, files
        if isinstance(body, str):
            return body.encode("utf-8"), None
        return body, None

    def _to_response_result(
        self, request: PreparedRequest, response: requests.Response, elapsed_ms: float
    ) -> HttpResponseResult:
        content = response.content or b""
        headers = dict(response.headers)
        content_type = response.headers.get("content-type", "")

        if _is_text_content(content_type):
            body, is_encoded = content.decode(response.encoding or "utf-8", errors="replace"), False
        else:
            body, is_encoded = base64.b64encode(content).decode("ascii"), True

        return HttpResponseResult(
            id=request.id,
            status=response.status_code,
            status_text=response.reason or "",
            elapsed_time=elapsed_ms,
            size=len(content),
            body=body,
            headers=headers,
            is_encoded=is_encoded,
        )
