"""Filesystem-backed page storage rooted at the pages directory.

All page paths are relative to the pages directory (e.g. "daily-notes/2026-02-04.md").
Every operation validates its path first so nothing can be read or written outside
the tree.
"""

import os
from pathlib import Path
from typing import Optional

import aiofiles
import aiofiles.os
from pydantic import BaseModel

from page_changes.core.errors import InvalidPathError, PageNotFoundError, PageStorageError


class Page(BaseModel):
    path: str
    content: str


def ensure_md_extension(relative_path: str) -> str:
    """Ensure a page path has the .md extension."""
    if relative_path.endswith(".md"):
        return relative_path
    return f"{relative_path}.md"


class PageStorage:
    """Reads, writes and deletes markdown pages under a single directory."""

    def __init__(self, pages_dir: Path):
        self.pages_dir = Path(pages_dir)

    def validate_path(self, relative_path: str) -> bool:
        """Check that a relative path is safe and stays within the pages directory."""
        if not relative_path or not relative_path.strip():
            return False
        if "\0" in relative_path:
            return False
        if os.path.isabs(relative_path) or relative_path.startswith(("/", "\\")):
            return False

        normalized = os.path.normpath(relative_path)
        if normalized == ".." or normalized.startswith(".." + os.sep):
            return False

        root = os.path.abspath(self.pages_dir)
        resolved = os.path.abspath(os.path.join(root, normalized))
        # The pages directory itself is not a page
        return resolved.startswith(root + os.sep)

    def resolve_page_path(self, relative_path: str) -> Path:
        """Resolve a relative page path to an absolute path, rejecting traversal."""
        if not self.validate_path(relative_path):
            raise InvalidPathError(
                f'Invalid path: "{relative_path}" - path traversal detected or invalid characters',
                relative_path,
            )
        return self.pages_dir / os.path.normpath(relative_path)

    async def read_page(self, relative_path: str) -> Page:
        """Read a page by its relative path."""
        normalized = ensure_md_extension(relative_path)
        file_path = self.resolve_page_path(normalized)
        try:
            async with aiofiles.open(file_path, encoding="utf-8", newline="") as f:
                content = await f.read()
        except FileNotFoundError as e:
            raise PageNotFoundError(f'Page not found: "{normalized}"', normalized) from e
        except (OSError, UnicodeDecodeError) as e:
            raise PageStorageError(f'Failed to read page: "{normalized}"', normalized) from e
        return Page(path=normalized, content=content)

    async def write_page(self, relative_path: str, content: str) -> Page:
        """Write a page, creating parent directories if needed."""
        normalized = ensure_md_extension(relative_path)
        file_path = self.resolve_page_path(normalized)
        try:
            await aiofiles.os.makedirs(file_path.parent, exist_ok=True)
            async with aiofiles.open(file_path, "w", encoding="utf-8", newline="") as f:
                await f.write(content)
        except OSError as e:
            raise PageStorageError(f'Failed to write page: "{normalized}"', normalized) from e
        return Page(path=normalized, content=content)

    async def delete_page(self, relative_path: str) -> None:
        normalized = ensure_md_extension(relative_path)
        file_path = self.resolve_page_path(normalized)
        try:
            await aiofiles.os.remove(file_path)
        except FileNotFoundError as e:
            raise PageNotFoundError(f'Page not found: "{normalized}"', normalized) from e
        except OSError as e:
            raise PageStorageError(f'Failed to delete page: "{normalized}"', normalized) from e

    async def page_size(self, relative_path: str) -> Optional[int]:
        """Size of a page in bytes, or None if it does not exist."""
        file_path = self.resolve_page_path(ensure_md_extension(relative_path))
        try:
            stat = await aiofiles.os.stat(file_path)
        except OSError:
            return None
        return stat.st_size
