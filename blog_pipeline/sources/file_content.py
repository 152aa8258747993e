"""Read reference material from local files.

Plain-text formats are read as UTF-8; PDFs go through PyPDF2. Like the URL
fetcher, every failure comes back as a bracketed sentinel string instead of
an exception.
"""

import asyncio
import logging
from pathlib import Path
from typing import Iterable

from PyPDF2 import PdfReader
from PyPDF2.errors import PdfReadError

logger = logging.getLogger(__name__)

DEFAULT_MAX_FILE_BYTES = 50 * 1024 * 1024

TEXT_EXTENSIONS = frozenset({
    ".txt", ".md", ".markdown", ".json", ".xml", ".csv",
    ".cs", ".java", ".py", ".js", ".ts", ".jsx", ".tsx",
    ".html", ".htm", ".css", ".scss", ".less",
    ".yaml", ".yml", ".toml", ".ini", ".conf",
    ".sql", ".sh", ".bat", ".ps1",
    ".log", ".config", ".properties",
})

DOCUMENT_EXTENSIONS = frozenset({".pdf", ".docx", ".doc"})

SEPARATOR = "=" * 80


def pdf_to_text(path: Path) -> str:
    """Extract text page by page, tagging each page with its number."""
    reader = PdfReader(str(path))
    pages = []
    for number, page in enumerate(reader.pages, 1):
        text = page.extract_text() or ""
        if text.strip():
            pages.append(f"[Page {number}]\n{text.strip()}")
    return "\n\n".join(pages)


class FileContentReader:
    """Reads allowlisted files up to a size cap."""

    def __init__(self, max_bytes: int = DEFAULT_MAX_FILE_BYTES):
        self.max_bytes = max_bytes

    def _read_sync(self, path: Path) -> str:
        extension = path.suffix.lower()

        if not path.is_file():
            logger.warning(f"File not found: {path}")
            return f"[File not found: {path}]"

        if extension not in TEXT_EXTENSIONS and extension not in DOCUMENT_EXTENSIONS:
            logger.warning(f"Unsupported file type {extension}: {path}")
            return f"[Unsupported file type: {extension or '(none)'}]\nFile: {path}"

        size = path.stat().st_size
        if size > self.max_bytes:
            logger.warning(f"File too large ({size:,} bytes): {path}")
            return (
                f"[File too large: {size // (1024 * 1024)}MB, "
                f"maximum is {self.max_bytes // (1024 * 1024)}MB]\nFile: {path}"
            )

        if extension == ".pdf":
            content = pdf_to_text(path)
            if not content:
                return "[PDF has no extractable text]"
        elif extension in (".docx", ".doc"):
            return f"[{extension} documents are not supported; convert to .pdf or .md]\nFile: {path}"
        else:
            content = path.read_text(encoding="utf-8", errors="replace")

        logger.info(f"Read file {path}: {len(content):,} chars")
        return content

    async def read_file(self, file_path: str) -> str:
        """Read one file, returning its text or a sentinel on failure."""
        path = Path(file_path.strip()).expanduser()
        try:
            return await asyncio.to_thread(self._read_sync, path)
        except PermissionError:
            logger.error(f"Permission denied reading {path}")
            return f"[Permission denied: {path}]"
        except (OSError, PdfReadError) as e:
            logger.error(f"Failed to read {path}: {e}")
            return f"[Unable to read file: {path}]\nError: {e}"

    async def read_many(self, file_paths: Iterable[str]) -> str:
        sections = []
        for file_path in file_paths:
            if not file_path or not file_path.strip():
                continue
            content = await self.read_file(file_path)
            path = Path(file_path.strip())
            sections.append(f"{SEPARATOR}\nFile: {path.name}\nPath: {path}\n{SEPARATOR}\n{content}")
        return "\n\n".join(sections)
