"""Centralized constants"""

# Redis
REDIS_KEY_TTL_SECONDS = 7 * 24 * 60 * 60  # 7 days
REDIS_FLOWS_KEY = "flows"
REDIS_COLLECTIONS_KEY = "collections"
REDIS_ENVIRONMENTS_KEY = "environments"
REDIS_AUTHS_KEY = "auths"
REDIS_RUN_KEY_PREFIX = "run"

# Transport
DEFAULT_HTTP_TIMEOUT_SECONDS = 30

# Status ranges (lower inclusive, upper exclusive)
SUCCESS_STATUS_MIN = 200
SUCCESS_STATUS_MAX = 400
STRICT_SUCCESS_STATUS_MAX = 300

# Auto-layout
LAYOUT_HORIZONTAL_SPACING = 350
LAYOUT_VERTICAL_SPACING = 100
LAYOUT_START_X = 50
LAYOUT_START_Y = 50

# Flow-path sections
SECTION_BODY = "$body"
SECTION_HEADERS = "$headers"
SECTION_STATUS = "$status"
SECTION_STATUS_TEXT = "$statusText"
FLOW_SECTIONS = {SECTION_BODY, SECTION_HEADERS, SECTION_STATUS, SECTION_STATUS_TEXT}

# Environments
GLOBAL_ENVIRONMENT_NAME = "global"

# Content types
DEFAULT_BINARY_CONTENT_TYPE = "application/octet-stream"
URLENCODED_CONTENT_TYPE = "application/x-www-form-urlencoded"
RAW_LANGUAGE_CONTENT_TYPES = {
    "json": "application/json",
    "xml": "application/xml",
    "html": "text/html",
    "text": "text/plain",
    "csv": "text/csv",
}
DEFAULT_RAW_CONTENT_TYPE = "text/plain"

# Default validation
DEFAULT_VALIDATION_RULE_ID = "default-status-success"
