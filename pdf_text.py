"""Extract statement text from PDF files.

Two backends are available: pypdf (in-process, plain or layout mode) and the
poppler ``pdftotext`` tool run as a subprocess. The parsing core only ever
sees the returned text.
"""

from __future__ import annotations

import logging
import shutil
import subprocess
from pathlib import Path
from typing import Dict, Protocol, Union

from pypdf import PdfReader
from pypdf.errors import PyPdfError


logger = logging.getLogger(__name__)

PathLike = Union[str, Path]


class ExtractionError(RuntimeError):
    kind = "extraction"


class TextExtractor(Protocol):
    name: str

    def extract_text(self, pdf_path: PathLike, layout: bool = False) -> str:
        ...


def _require_file(pdf_path: PathLike) -> Path:
    path = Path(pdf_path)
    if not path.is_file():
        raise ExtractionError(f"PDF not found: {path}")
    return path


class PypdfExtractor:
    name = "pypdf"

    def extract_text(self, pdf_path: PathLike, layout: bool = False) -> str:
        path = _require_file(pdf_path)
        try:
            reader = PdfReader(str(path))
            if not reader.pages:
                raise ExtractionError(f"PDF has no pages: {path}")
            pages = []
            for page in reader.pages:
                if layout:
                    pages.append(page.extract_text(extraction_mode="layout") or "")
                else:
                    pages.append(page.extract_text() or "")
        except (PyPdfError, OSError) as exc:
            raise ExtractionError(f"Could not read PDF {path}: {exc}") from exc
        logger.debug("Extracted %d page(s) from %s with pypdf (layout=%s)", len(pages), path, layout)
        return "\n".join(pages)


class PdftotextExtractor:
    name = "pdftotext"

    def __init__(self, executable: str = "pdftotext") -> None:
        self.executable = executable

    def extract_text(self, pdf_path: PathLike, layout: bool = False) -> str:
        path = _require_file(pdf_path)
        exe = shutil.which(self.executable)
        if exe is None:
            raise ExtractionError(f"{self.executable} is not installed or not on PATH")

        cmd = [exe]
        if layout:
            cmd.append("-layout")
        cmd.extend([str(path), "-"])
        try:
            completed = subprocess.run(cmd, capture_output=True, check=False)
        except OSError as exc:
            raise ExtractionError(f"Could not run {self.executable}: {exc}") from exc
        if completed.returncode != 0:
            stderr = completed.stderr.decode("utf-8", errors="replace").strip()
            raise ExtractionError(
                f"{self.executable} exited with status {completed.returncode} for {path}: {stderr}"
            )
        logger.debug("Extracted %s with %s (layout=%s)", path, self.executable, layout)
        return completed.stdout.decode("utf-8", errors="replace")


EXTRACTORS: Dict[str, type] = {
    PypdfExtractor.name: PypdfExtractor,
    PdftotextExtractor.name: PdftotextExtractor,
}


def get_extractor(backend: str) -> TextExtractor:
    try:
        return EXTRACTORS[backend]()
    except KeyError:
        raise ExtractionError(
            f"Unknown extraction backend {backend!r}; expected one of {', '.join(sorted(EXTRACTORS))}"
        ) from None


def extract_text(pdf_path: PathLike, layout: bool = False, backend: str = "pypdf") -> str:
    return get_extractor(backend).extract_text(pdf_path, layout=layout)
