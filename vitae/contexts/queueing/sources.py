"""
Raw-text providers: where the queue reads a document's extracted text.

The ingestion side (upload, validation, text extraction) is owned elsewhere;
the queue only stores an opaque input reference on the job and reads the text
by value when the worker picks the job up.
"""

import re
import threading
import uuid
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, Optional

from vitae.contexts.queueing.exceptions import InputNotFoundError

# Input references become file names, so keep them to a safe alphabet
_SAFE_REF = re.compile(r"^[A-Za-z0-9_.-]+$")


class TextProvider(ABC):
    """Narrow interface to the ingestion subsystem."""

    @abstractmethod
    def get_text(self, input_ref: str) -> str:
        """
        Return the extracted text for an upload reference.

        Raises:
            InputNotFoundError: If nothing is stored under input_ref
        """
        pass

    @abstractmethod
    def put(self, text: str, input_ref: Optional[str] = None) -> str:
        """Store text and return its reference (generated when not given)."""
        pass

    @abstractmethod
    def discard(self, input_ref: str) -> bool:
        """Remove stored text. Returns False if nothing was stored."""
        pass


class InMemoryTextProvider(TextProvider):
    """Text held in a dict; for tests and single-process use."""

    def __init__(self, texts: Optional[Dict[str, str]] = None):
        self._texts: Dict[str, str] = dict(texts or {})
        self._lock = threading.Lock()

    def get_text(self, input_ref: str) -> str:
        with self._lock:
            if input_ref not in self._texts:
                raise InputNotFoundError(input_ref)
            return self._texts[input_ref]

    def put(self, text: str, input_ref: Optional[str] = None) -> str:
        input_ref = input_ref or uuid.uuid4().hex
        with self._lock:
            self._texts[input_ref] = text
        return input_ref

    def discard(self, input_ref: str) -> bool:
        with self._lock:
            return self._texts.pop(input_ref, None) is not None


class DirectoryTextProvider(TextProvider):
    """
    Text stored as {root}/{input_ref}.txt (UTF-8).

    Lets separate processes (API, worker, CLI) share uploads through a directory.
    """

    def __init__(self, root: Path):
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)

    def _path(self, input_ref: str) -> Path:
        if not input_ref or not _SAFE_REF.match(input_ref) or input_ref.startswith("."):
            raise ValueError(f"Invalid input reference: {input_ref!r}")
        return self.root / f"{input_ref}.txt"

    def get_text(self, input_ref: str) -> str:
        path = self._path(input_ref)
        if not path.exists():
            raise InputNotFoundError(input_ref)
        return path.read_text(encoding="utf-8")

    def put(self, text: str, input_ref: Optional[str] = None) -> str:
        input_ref = input_ref or uuid.uuid4().hex
        path = self._path(input_ref)

        # Write to a temp file and rename so readers never see a partial file
        temp_path = path.with_suffix(".tmp")
        temp_path.write_text(text, encoding="utf-8")
        temp_path.replace(path)
        return input_ref

    def discard(self, input_ref: str) -> bool:
        path = self._path(input_ref)
        if not path.exists():
            return False
        path.unlink()
        return True
