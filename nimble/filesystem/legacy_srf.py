"""Reader for the line-oriented legacy SRF manifest format.

Layout::

    ADDON:<name>:<file count>:<mod checksum>
    <FILE|PBO>:<path>:<length>:<part count>:<file checksum>
    <part path>:<start>:<length>:<part checksum>
    ...

Each file line is followed by exactly ``part count`` part lines.
"""

from __future__ import annotations

from pydantic import ValidationError

from nimble.exceptions import FormatError
from nimble.models.manifest import FileKind
from nimble.schemas.srf import SrfFile, SrfMod, SrfPart

LEGACY_MAGIC = "ADDON"

_LEGACY_TYPES = {"FILE": FileKind.FILE, "PBO": FileKind.PBO}


def is_legacy_srf(text: str) -> bool:
    return text.startswith(LEGACY_MAGIC)


def _parse_int(value: str, what: str, line_no: int) -> int:
    try:
        number = int(value)
    except ValueError:
        raise FormatError(
            f"Legacy SRF line {line_no}: {what} is not an integer: {value!r}"
        ) from None
    if number < 0:
        raise FormatError(f"Legacy SRF line {line_no}: {what} is negative")
    return number


def _split_tail(line: str, count: int, what: str, line_no: int) -> list[str]:
    """Split off ``count`` colon-separated trailing fields; the head may contain colons."""
    fields = line.rsplit(":", count)
    if len(fields) != count + 1:
        raise FormatError(f"Legacy SRF line {line_no}: malformed {what} line")
    return fields


def parse_legacy_srf(text: str) -> SrfMod:
    """Parse a legacy SRF document into the wire schema.

    Raises FormatError on any structural problem, including missing lines.
    """
    lines = text.splitlines()
    if not lines:
        raise FormatError("Legacy SRF is empty")

    magic_and_rest = lines[0].split(":", 1)
    if len(magic_and_rest) != 2 or magic_and_rest[0] != LEGACY_MAGIC:
        raise FormatError("Legacy SRF line 1: missing ADDON header")
    name, count, mod_checksum = _split_tail(magic_and_rest[1], 2, "addon", 1)
    file_count = _parse_int(count, "file count", 1)

    files: list[SrfFile] = []
    cursor = 1
    for _ in range(file_count):
        if cursor >= len(lines):
            raise FormatError("Legacy SRF ended before all files were listed")
        line_no = cursor + 1
        kind_and_rest = lines[cursor].split(":", 1)
        if len(kind_and_rest) != 2 or kind_and_rest[0] not in _LEGACY_TYPES:
            raise FormatError(f"Legacy SRF line {line_no}: unknown file type")
        path, length, part_count, checksum = _split_tail(kind_and_rest[1], 3, "file", line_no)
        cursor += 1

        parts: list[SrfPart] = []
        for _ in range(_parse_int(part_count, "part count", line_no)):
            if cursor >= len(lines):
                raise FormatError("Legacy SRF ended before all parts were listed")
            part_line_no = cursor + 1
            part_path, start, part_length, part_checksum = _split_tail(
                lines[cursor], 3, "part", part_line_no
            )
            try:
                parts.append(
                    SrfPart(
                        path=part_path,
                        start=_parse_int(start, "part start", part_line_no),
                        length=_parse_int(part_length, "part length", part_line_no),
                        checksum=part_checksum,
                    )
                )
            except ValidationError as exc:
                raise FormatError(f"Legacy SRF line {part_line_no}: {exc}") from None
            cursor += 1

        try:
            files.append(
                SrfFile(
                    path=path,
                    length=_parse_int(length, "file length", line_no),
                    checksum=checksum,
                    type=_LEGACY_TYPES[kind_and_rest[0]],
                    parts=parts,
                )
            )
        except ValidationError as exc:
            raise FormatError(f"Legacy SRF line {line_no}: {exc}") from None

    try:
        return SrfMod(name=name, checksum=mod_checksum, files=files)
    except ValidationError as exc:
        raise FormatError(f"Legacy SRF header: {exc}") from None
