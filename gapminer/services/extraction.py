"""Default extraction capability: PDF and plain-text files."""

import logging
from pathlib import Path
from typing import Protocol, Union

from pypdf import PdfReader
from pypdf.errors import PdfReadError

logger = logging.getLogger(__name__)


class Extractor(Protocol):
    """The only extraction surface the pipeline depends on."""

    def extract(self, file_ref: str) -> str:
        ...


class FileExtractor:
    """Resolve a content reference to text from the local filesystem.

    References ending in ``.pdf`` are read page by page with pypdf; anything
    else is read as UTF-8 text. Relative references resolve against ``root``.
    """

    def __init__(self, root: Union[str, Path, None] = None):
        self.root = Path(root) if root else None

    def _resolve(self, file_ref: str) -> Path:
        path = Path(file_ref)
        if self.root is not None and not path.is_absolute():
            path = self.root / path
        return path

    def _read_pdf(self, path: Path, file_ref: str) -> str:
        try:
            reader = PdfReader(path)
            pages = [page.extract_text() or "" for page in reader.pages]
        except PdfReadError as e:
            raise ValueError(f"Unreadable PDF {file_ref}: {e}") from e

        text = "\n\n".join(p for p in pages if p.strip())
        logger.debug(f"Read {len(text)} characters from {len(pages)} pages of {file_ref}")
        return text

    def extract(self, file_ref: str) -> str:
        path = self._resolve(file_ref)
        if not path.is_file():
            raise ValueError(f"Content reference not found: {file_ref}")

        if path.suffix.lower() == ".pdf":
            text = self._read_pdf(path, file_ref)
        else:
            text = path.read_text(encoding="utf-8", errors="replace")

        if not text.strip():
            raise ValueError(f"Content reference is empty: {file_ref}")
        return text
