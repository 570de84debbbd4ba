"""Wire schema of mod manifests (``mod.srf``)."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_pascal

from nimble.models.manifest import FileKind

_DIGEST_PATTERN = r"^[0-9A-Fa-f]{32}$"


class _SrfModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_pascal, populate_by_name=True, extra="ignore")


class SrfPart(_SrfModel):
    """One block of a file."""

    path: str
    start: int = Field(ge=0)
    length: int = Field(ge=0)
    checksum: str = Field(pattern=_DIGEST_PATTERN)

    @field_validator("checksum")
    @classmethod
    def _upper(cls, value: str) -> str:
        return value.upper()


class SrfFile(_SrfModel):
    """One file of a mod with its ordered parts."""

    path: str = Field(min_length=1)
    length: int = Field(ge=0)
    checksum: str = Field(pattern=_DIGEST_PATTERN)
    type: FileKind = FileKind.FILE
    parts: list[SrfPart] = Field(default_factory=list)
    modified_time: int | None = Field(default=None, description="Cache only: mtime in ns")

    @field_validator("checksum")
    @classmethod
    def _upper(cls, value: str) -> str:
        return value.upper()


class SrfMod(_SrfModel):
    """A complete mod manifest as served by a repository or cached locally."""

    name: str
    checksum: str = Field(pattern=_DIGEST_PATTERN)
    block_size: int | None = Field(default=None, ge=1)
    files: list[SrfFile] = Field(default_factory=list)
    cache_version: int | None = Field(default=None, description="Cache only: schema version")

    @field_validator("checksum")
    @classmethod
    def _upper(cls, value: str) -> str:
        return value.upper()
