"""Stored request, environment and auth definitions consumed by the engine."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, List, Any, Optional, Union
from pydantic import Field
from shared.types import CamelModel


class BodyMode(str, Enum):
    NONE = "none"
    RAW = "raw"
    URLENCODED = "urlencoded"
    FORMDATA = "formdata"
    FILE = "file"


class AuthType(str, Enum):
    API_KEY = "apiKey"
    BASIC = "basic"
    DIGEST = "digest"
    OAUTH2_REFRESH = "oauth2Refresh"


class KeyValueRow(CamelModel):
    key: str = ""
    value: str = ""
    disabled: bool = False
    description: Optional[str] = None


class FileReference(CamelModel):
    path: str
    file_name: str = ""
    content_type: Optional[str] = None
    size: Optional[int] = None


class FormField(CamelModel):
    key: str = ""
    type: str = "text"
    value: str = ""
    file: Optional[FileReference] = None
    disabled: bool = False


class RawOptions(CamelModel):
    language: str = "text"


class BodyOptions(CamelModel):
    raw: Optional[RawOptions] = None


class CollectionBody(CamelModel):
    mode: BodyMode = BodyMode.NONE
    raw: Optional[str] = None
    urlencoded: List[KeyValueRow] = Field(default_factory=list)
    formdata: List[FormField] = Field(default_factory=list)
    file: Optional[FileReference] = None
    options: Optional[BodyOptions] = None


class CollectionUrl(CamelModel):
    raw: str = ""
    query: List[KeyValueRow] = Field(default_factory=list)


class ValidationRule(CamelModel):
    id: str
    name: str = ""
    category: str
    operator: str
    value: Optional[Any] = None
    value2: Optional[Any] = None
    header_name: Optional[str] = None
    json_path: Optional[str] = None
    case_sensitive: bool = False
    enabled: bool = True


class RequestValidation(CamelModel):
    enabled: bool = True
    rules: List[ValidationRule] = Field(default_factory=list)


class CollectionRequest(CamelModel):
    method: str = "GET"
    url: Union[str, CollectionUrl] = ""
    query: Optional[List[KeyValueRow]] = None
    header: List[KeyValueRow] = Field(default_factory=list)
    body: Optional[CollectionBody] = None
    validation: Optional[RequestValidation] = None
    auth_id: Optional[str] = None

    def url_parts(self):
        """Returns (url string, query rows); explicit `query` wins over `url.query`"""
        if isinstance(self.url, CollectionUrl):
            url_string, query = self.url.raw, list(self.url.query)
        else:
            url_string, query = self.url or "", []
        if self.query:
            query = list(self.query)
        return url_string, query


class CollectionItem(CamelModel):
    id: Optional[str] = None
    name: str = ""
    request: Optional[CollectionRequest] = None
    item: Optional[List["CollectionItem"]] = None
    validation: Optional[RequestValidation] = None


class CollectionInfo(CamelModel):
    name: str = ""
    id: Optional[str] = Field(default=None, alias="_postman_id")


class Collection(CamelModel):
    info: CollectionInfo = Field(default_factory=CollectionInfo)
    item: List[CollectionItem] = Field(default_factory=list)
    filename: Optional[str] = None


class EnvironmentVariable(CamelModel):
    key: str
    value: str = ""
    type: str = "default"
    enabled: bool = True


class Environment(CamelModel):
    id: str
    name: str
    values: List[EnvironmentVariable] = Field(default_factory=list)


class AuthProfile(CamelModel):
    id: str
    name: str = ""
    type: AuthType
    enabled: bool = True
    domain_filters: List[str] = Field(default_factory=list)
    expiry_date: Optional[datetime] = None
    base64_encode: bool = False
    # apiKey
    key: Optional[str] = None
    value: Optional[str] = None
    send_in: str = "header"
    prefix: Optional[str] = None
    # basic / digest
    username: Optional[str] = None
    password: Optional[str] = None
    # oauth2Refresh
    token_url: Optional[str] = None
    client_id: Optional[str] = None
    client_secret: Optional[str] = None
    refresh_token: Optional[str] = None
    scope: Optional[str] = None
    access_token: Optional[str] = None


class RequestOverrides(CamelModel):
    headers: Optional[List[KeyValueRow]] = None
    params: Optional[List[KeyValueRow]] = None
    body: Optional[CollectionBody] = None
    variables: Optional[Dict[str, str]] = None
    auth_id: Optional[str] = None
    validation: Optional[RequestValidation] = None


@dataclass
class FormDataEntry:
    key: str
    type: str
    value: Union[str, bytes]
    file_name: Optional[str] = None
    content_type: Optional[str] = None


@dataclass
class FormDataBody:
    entries: List[FormDataEntry] = field(default_factory=list)


RequestBody = Union[str, Dict[str, str], bytes, FormDataBody, None]


@dataclass
class PreparedRequest:
    """Transport-ready request. `url` carries no query string; params travel separately."""
    id: str
    method: str
    url: str
    params: Optional[str] = None
    headers: Dict[str, Union[str, List[str]]] = field(default_factory=dict)
    body: RequestBody = None
    auth: Optional[AuthProfile] = None
    env_vars: Dict[str, str] = field(default_factory=dict)
    validation: Optional[RequestValidation] = None
