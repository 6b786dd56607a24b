"""Multipart form building and upload progress reporting."""

from __future__ import annotations

import mimetypes
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, BinaryIO, Callable, Iterable, Mapping, Sequence, Union

from urllib3 import encode_multipart_formdata

FieldValue = Union[str, int, float, bool, "UploadFile"]


@dataclass(frozen=True)
class UploadFile:
    """File payload for a multipart upload."""

    content: bytes
    filename: str
    content_type: str | None = None

    @classmethod
    def from_path(
        cls, path: str | Path, *, content_type: str | None = None
    ) -> UploadFile:
        file_path = Path(path)
        return cls(
            content=file_path.read_bytes(),
            filename=file_path.name,
            content_type=content_type,
        )

    @classmethod
    def from_stream(
        cls,
        stream: BinaryIO,
        filename: str,
        *,
        content_type: str | None = None,
    ) -> UploadFile:
        return cls(content=stream.read(), filename=filename, content_type=content_type)

    @property
    def size(self) -> int:
        return len(self.content)

    @property
    def mime_type(self) -> str:
        if self.content_type:
            return self.content_type
        guessed, _ = mimetypes.guess_type(self.filename)
        return guessed or "application/octet-stream"


class FormData:
    """Ordered multipart form fields; repeated names are allowed."""

    def __init__(self, fields: Iterable[tuple[str, FieldValue]] = ()) -> None:
        self._fields: list[tuple[str, FieldValue]] = []
        for name, value in fields:
            self.append(name, value)

    def __len__(self) -> int:
        return len(self._fields)

    def __iter__(self):
        return iter(self._fields)

    def append(self, name: str, value: FieldValue) -> None:
        self._fields.append((name, value))

    def names(self) -> list[str]:
        return [name for name, _ in self._fields]

    def files(self) -> list[UploadFile]:
        return [value for _, value in self._fields if isinstance(value, UploadFile)]

    def encode(self, boundary: str | None = None) -> tuple[bytes, str]:
        """Encode as ``multipart/form-data``; returns ``(body, content_type)``."""
        encoded: list[tuple[str, Any]] = []
        for name, value in self._fields:
            if isinstance(value, UploadFile):
                encoded.append((name, (value.filename, value.content, value.mime_type)))
            elif isinstance(value, bool):
                encoded.append((name, "true" if value else "false"))
            else:
                encoded.append((name, str(value)))
        return encode_multipart_formdata(encoded, boundary=boundary)

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> FormData:
        """Build a form from a mapping; list values become ``name[index]`` fields."""
        form = cls()
        for key, value in data.items():
            if isinstance(value, (list, tuple)):
                for index, item in enumerate(value):
                    if isinstance(item, UploadFile) and key.endswith("[]"):
                        form.append(key, item)
                    else:
                        form.append(f"{key}[{index}]", item)
            else:
                form.append(key, value)
        return form


def build_upload_form(
    file: UploadFile | Sequence[UploadFile],
    *,
    field_name: str = "file",
    additional_fields: Mapping[str, str | int | float | bool] | None = None,
    filename: str | None = None,
) -> FormData:
    """Build the form for one or many files plus extra scalar fields.

    Multiple files are sent as ``field[0]``, ``field[1]``... unless the field
    name already ends with ``[]``. ``filename`` overrides every file's name.
    """
    form = FormData()
    if isinstance(file, UploadFile):
        form.append(field_name, _renamed(file, filename))
    else:
        for index, item in enumerate(file):
            name = field_name if field_name.endswith("[]") else f"{field_name}[{index}]"
            form.append(name, _renamed(item, filename))
    for key, value in (additional_fields or {}).items():
        form.append(key, value)
    return form


def _renamed(file: UploadFile, filename: str | None) -> UploadFile:
    if filename is None:
        return file
    return UploadFile(content=file.content, filename=filename, content_type=file.content_type)


@dataclass(frozen=True)
class UploadProgressEvent:
    loaded: int
    total: int
    percentage: int
    speed: float
    estimated_time: float


class UploadProgressTracker:
    """Turns raw ``(loaded, total)`` byte counts into progress events.

    Speed is measured over the delta since the previous event, and the
    remaining time is the remaining bytes divided by that speed. A byte
    count lower than the previous one marks a new attempt and restarts
    the measurement.
    """

    def __init__(
        self,
        on_progress: Callable[[UploadProgressEvent], Any],
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._on_progress = on_progress
        self._clock = clock
        self._last_loaded = 0
        self._last_time = clock()

    def __call__(self, loaded: int, total: int) -> UploadProgressEvent:
        now = self._clock()
        if loaded < self._last_loaded:
            # a retried attempt starts again from the first byte
            self._last_loaded = 0
            self._last_time = now
        elapsed = now - self._last_time
        delta = loaded - self._last_loaded
        speed = delta / elapsed if elapsed > 0 else 0.0
        remaining = max(0, total - loaded)
        estimated = remaining / speed if speed > 0 else 0.0
        percentage = round(loaded / total * 100) if total > 0 else 100

        event = UploadProgressEvent(
            loaded=loaded,
            total=total,
            percentage=percentage,
            speed=speed,
            estimated_time=estimated,
        )
        self._last_loaded = loaded
        self._last_time = now
        self._on_progress(event)
        return event


@dataclass(frozen=True)
class FileValidation:
    valid: bool
    error: str | None = None


def validate_file(
    file: UploadFile,
    *,
    max_size: int | None = None,
    allowed_types: Sequence[str] | None = None,
    allowed_extensions: Sequence[str] | None = None,
) -> FileValidation:
    """Check size, MIME type and extension before uploading."""
    if max_size is not None and file.size > max_size:
        return FileValidation(
            False,
            f"File size ({format_file_size(file.size)}) exceeds maximum "
            f"allowed size ({format_file_size(max_size)})",
        )
    if allowed_types is not None and file.mime_type not in allowed_types:
        return FileValidation(
            False,
            f"File type ({file.mime_type}) is not allowed. "
            f"Allowed types: {', '.join(allowed_types)}",
        )
    if allowed_extensions is not None:
        extension = Path(file.filename).suffix.lstrip(".").lower()
        if not extension or extension not in allowed_extensions:
            return FileValidation(
                False,
                f"File extension (.{extension}) is not allowed. "
                f"Allowed extensions: {', '.join(allowed_extensions)}",
            )
    return FileValidation(True)


_SIZE_UNITS = ("Bytes", "KB", "MB", "GB", "TB")


def format_file_size(size: int | float) -> str:
    if size <= 0:
        return "0 Bytes"
    value = float(size)
    exponent = 0
    while value >= 1024 and exponent < len(_SIZE_UNITS) - 1:
        value /= 1024
        exponent += 1
    return f"{round(value, 2):g} {_SIZE_UNITS[exponent]}"


def format_upload_speed(bytes_per_second: float) -> str:
    return f"{format_file_size(bytes_per_second)}/s"


def format_time_remaining(seconds: float) -> str:
    if seconds < 60:
        return f"{round(seconds)}s"
    if seconds < 3600:
        return f"{round(seconds / 60)}m"
    return f"{round(seconds / 3600)}h"
