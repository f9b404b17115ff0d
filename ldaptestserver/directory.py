from __future__ import annotations
from typing import Iterable, Iterator, Mapping, NamedTuple, Sequence
from dataclasses import dataclass
from types import MappingProxyType


class MalformedEntry(ValueError):
    """
    Directory record rejected at load time
    """


class Domain(NamedTuple):
    name: str  # example.com
    dc: str  # "dc=example,dc=com"

    @classmethod
    def make(cls, name: str):
        return Domain(
            name=name,
            dc=",".join(f"dc={part}" for part in name.split(".")),
        )


DOMAIN = Domain.make("example.com")


@dataclass(frozen=True, slots=True)
class Single:
    value: str

    def __iter__(self) -> Iterator[str]:
        yield self.value


@dataclass(frozen=True, slots=True)
class Multi:
    values: tuple[str, ...]

    def __iter__(self) -> Iterator[str]:
        return iter(self.values)


AttributeValue = Single | Multi


def _attribute_value(name: str, value: str | Sequence[str]) -> AttributeValue:
    if isinstance(value, str):
        return Single(value)
    if isinstance(value, (list, tuple)) and all(
        isinstance(item, str) for item in value
    ):
        return Multi(tuple(value))
    raise MalformedEntry(
        f"attribute {name!r} must be a string or a list of strings, "
        f"got {value!r}"
    )


class DirectoryEntry:
    """
    One immutable directory record.

    Attribute values are either `Single` or `Multi`. The `mail` attribute
    is mandatory and single-valued; it names the entry (see `dn`).
    """

    __slots__ = ("attributes", "mail")

    attributes: Mapping[str, AttributeValue]
    mail: str

    def __init__(self, attributes: Mapping[str, AttributeValue]):
        mail = attributes.get("mail")
        if not isinstance(mail, Single):
            raise MalformedEntry(
                f"entry {dict(attributes)!r} has no single-valued `mail`"
            )
        for name, value in attributes.items():
            if not isinstance(value, (Single, Multi)):
                raise MalformedEntry(
                    f"attribute {name!r} must be Single or Multi, "
                    f"got {value!r}"
                )
        object.__setattr__(
            self, "attributes", MappingProxyType(dict(attributes))
        )
        object.__setattr__(self, "mail", mail.value)

    def __setattr__(self, name: str, value: object) -> None:
        raise AttributeError(f"{type(self).__name__} is immutable")

    @classmethod
    def from_record(
        cls, record: Mapping[str, str | Sequence[str]]
    ) -> DirectoryEntry:
        """
        Build an entry from plain configuration data, e.g.
        `{"mail": "adam@example.com", "objectClass": ["top", "person"]}`
        """
        return cls(
            {
                name: _attribute_value(name, value)
                for name, value in record.items()
            }
        )

    def dn(self, domain: Domain = DOMAIN) -> str:
        return f"mail={self.mail},{domain.dc}"

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, DirectoryEntry):
            return NotImplemented
        return self.attributes == other.attributes

    def __hash__(self) -> int:
        return hash(self.mail)

    def __repr__(self) -> str:
        return f"DirectoryEntry({self.mail!r})"


class DirectoryStore(Sequence[DirectoryEntry]):
    """
    Read-only, ordered list of entries. Order decides which entry
    a search returns when several match.
    """

    def __init__(self, entries: Iterable[DirectoryEntry] = ()):
        self._entries = tuple(entries)

    @classmethod
    def from_records(
        cls, records: Iterable[Mapping[str, str | Sequence[str]]]
    ) -> DirectoryStore:
        return cls(DirectoryEntry.from_record(record) for record in records)

    def __getitem__(self, index):
        return self._entries[index]

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[DirectoryEntry]:
        return iter(self._entries)


class CredentialStore(Mapping[str, str]):
    """
    Principal DN to secret. Keys are matched as exact strings.
    """

    def __init__(self, credentials: Mapping[str, str] | None = None):
        self._credentials = MappingProxyType(dict(credentials or {}))

    def __getitem__(self, principal_dn: str) -> str:
        return self._credentials[principal_dn]

    def __len__(self) -> int:
        return len(self._credentials)

    def __iter__(self) -> Iterator[str]:
        return iter(self._credentials)
