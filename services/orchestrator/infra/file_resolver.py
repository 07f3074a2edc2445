"""Reads file bodies referenced by stored requests from local disk."""

import asyncio
from pathlib import Path
from typing import Optional, Union
from shared.exceptions import FileResolutionError


class LocalFileResolver:

    def __init__(self, base_dir: Optional[Union[str, Path]] = None):
        self.base_dir = Path(base_dir) if base_dir else None

    def _locate(self, path: str) -> Path:
        candidate = Path(path).expanduser()
        if self.base_dir is not None and not candidate.is_absolute():
            candidate = self.base_dir / candidate
        return candidate

    async def read_file(self, path: str) -> bytes:
        location = self._locate(path)
        try:
            return await asyncio.to_thread(location.read_bytes)
        except OSError as e:
            raise FileResolutionError(f"Cannot read file {location}: {e.strerror or e}", path=str(location)) from e
