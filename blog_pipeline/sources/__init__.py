"""Reference material acquisition.

ReferenceLoader turns a task's inline text, URLs and file paths into the
single reference document handed to the research stage.
"""

import logging
from typing import Optional

from blog_pipeline.executor.schemas import BlogTask
from blog_pipeline.sources.file_content import FileContentReader
from blog_pipeline.sources.web_content import WebContentFetcher

logger = logging.getLogger(__name__)

NO_REFERENCE_MATERIAL = "(no reference material provided)"


class ReferenceLoader:
    """Assemble reference material for a task."""

    def __init__(
        self,
        fetcher: Optional[WebContentFetcher] = None,
        reader: Optional[FileContentReader] = None,
    ):
        self.fetcher = fetcher or WebContentFetcher()
        self.reader = reader or FileContentReader()

    async def load(self, task: BlogTask) -> str:
        parts = []
        if task.reference_content.strip():
            parts.append(task.reference_content.strip())
        if task.reference_urls:
            fetched = await self.fetcher.fetch_many(task.reference_urls)
            if fetched:
                parts.append(fetched)
        if task.reference_files:
            read = await self.reader.read_many(task.reference_files)
            if read:
                parts.append(read)

        if not parts:
            return NO_REFERENCE_MATERIAL
        content = "\n\n".join(parts)
        logger.info(
            f"[task={task.task_id}] Reference material: {len(content):,} chars "
            f"({len(task.reference_urls)} urls, {len(task.reference_files)} files)"
        )
        return content


__all__ = ["ReferenceLoader", "WebContentFetcher", "FileContentReader"]
