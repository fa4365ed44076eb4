"""Reading and rewriting the document part of a .docx zip archive."""

import io
import zipfile
from pathlib import Path
from typing import Union

from errors import ArchiveError

DOCUMENT_PART = "word/document.xml"


class DocxPackage:
    """In-memory zip archive whose body lives in ``word/document.xml``."""

    def __init__(self, data: bytes, name: str = "document"):
        self.data = data
        self.name = name
        try:
            with zipfile.ZipFile(io.BytesIO(data)) as archive:
                if DOCUMENT_PART not in archive.namelist():
                    raise ArchiveError(f"{name}: archive has no {DOCUMENT_PART}")
                self._xml = archive.read(DOCUMENT_PART).decode("utf-8")
        except zipfile.BadZipFile as e:
            raise ArchiveError(f"{name}: not a zip archive ({e})") from e
        except UnicodeDecodeError as e:
            raise ArchiveError(f"{name}: {DOCUMENT_PART} is not UTF-8 ({e})") from e

    @classmethod
    def from_bytes(cls, data: bytes, name: str = "document") -> "DocxPackage":
        return cls(data, name)

    @classmethod
    def from_path(cls, path: Union[str, Path]) -> "DocxPackage":
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"File not found: {path}")
        return cls(path.read_bytes(), path.name)

    @property
    def xml(self) -> str:
        return self._xml

    def with_document(self, xml: str) -> bytes:
        """A copy of the archive with the document part replaced."""
        buffer = io.BytesIO()
        with zipfile.ZipFile(io.BytesIO(self.data)) as source, \
                zipfile.ZipFile(buffer, "w", zipfile.ZIP_DEFLATED) as target:
            for info in source.infolist():
                if info.filename == DOCUMENT_PART:
                    target.writestr(DOCUMENT_PART, xml.encode("utf-8"))
                else:
                    target.writestr(info, source.read(info.filename), compress_type=zipfile.ZIP_DEFLATED)
        return buffer.getvalue()

    def save(self, path: Union[str, Path], xml: str) -> Path:
        path = Path(path)
        path.write_bytes(self.with_document(xml))
        return path
