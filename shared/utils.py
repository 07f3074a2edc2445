"""Shared utilities."""

import random
import string
import time
from datetime import datetime, timezone

_ID_ALPHABET = string.ascii_lowercase + string.digits


def _random_suffix(length: int = 7) -> str:
    return "".join(random.choices(_ID_ALPHABET, k=length))


def _generate_id(prefix: str) -> str:
    return f"{prefix}-{int(time.time() * 1000)}-{_random_suffix()}"


def generate_flow_id() -> str:
    return _generate_id("flow")


def generate_node_id() -> str:
    return _generate_id("node")


def generate_connector_id() -> str:
    return _generate_id("conn")


def generate_execution_id(reference_id: str) -> str:
    return f"{reference_id}-{int(time.time() * 1000)}"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def utc_now_iso() -> str:
    return utc_now().isoformat().replace("+00:00", "Z")
