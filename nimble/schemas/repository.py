"""Schema of the remote repository description (``repo.json``)."""

from __future__ import annotations

from ipaddress import IPv4Address, IPv6Address

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


class _RepoModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class RepositoryMod(_RepoModel):
    """A mod listed by the repository."""

    mod_name: str = Field(min_length=1)
    checksum: str = Field(alias="checkSum")
    enabled: bool = True

    @field_validator("mod_name")
    @classmethod
    def validate_mod_name(cls, value: str) -> str:
        # Mod names become directory names directly under the store root.
        if value in (".", "..") or any(c in value for c in "/\\:\0"):
            raise ValueError(f"Mod name must be a single directory name: {value!r}")
        return value


class BasicAuth(_RepoModel):
    """HTTP basic credentials the repository asks clients to use."""

    username: str
    password: str


class Server(_RepoModel):
    """A game server advertised by the repository."""

    name: str
    address: IPv4Address | IPv6Address
    port: int = Field(ge=1, le=65535)
    password: str = ""
    battle_eye: bool = False


class Repository(_RepoModel):
    """Authoritative listing of the mods a client should hold."""

    repo_name: str
    checksum: str
    required_mods: list[RepositoryMod]
    optional_mods: list[RepositoryMod] = Field(default_factory=list)
    client_parameters: str = ""
    repo_basic_authentication: BasicAuth | None = None
    version: str
    servers: list[Server] = Field(default_factory=list)

    def select_mods(
        self, include_optional: bool = False, names: list[str] | None = None
    ) -> list[RepositoryMod]:
        """Return the mods to synchronize, in repository order.

        Raises ValueError if ``names`` mentions a mod the repository does not list.
        """
        candidates = list(self.required_mods)
        if include_optional:
            candidates.extend(self.optional_mods)
        if not names:
            return candidates
        listed = {mod.mod_name.lower(): mod for mod in self.required_mods + self.optional_mods}
        unknown = [name for name in names if name.lower() not in listed]
        if unknown:
            raise ValueError(f"Mods not listed by the repository: {', '.join(unknown)}")
        wanted = {name.lower() for name in names}
        return [mod for mod in listed.values() if mod.mod_name.lower() in wanted]
