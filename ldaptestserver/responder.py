"""
Bind and search handling over the in-memory directory.

The transport hands in decoded `BindRequest` / `SearchRequest` objects and
encodes whatever comes back. Nothing here performs I/O or mutates shared
state, so one `Responder` can serve any number of connections.
"""
from __future__ import annotations
from typing import Callable, Iterable, NamedTuple, Sequence
from enum import IntEnum
from time import monotonic
import logging

from .directory import CredentialStore, DirectoryEntry, DirectoryStore
from .directory import DOMAIN, Domain, Multi, Single
from .filters import Filter, evaluate

log = logging.getLogger(__name__)


class ResultCode(IntEnum):
    success = 0
    protocolError = 2
    timeLimitExceeded = 3
    invalidCredentials = 49


class TimeLimitExceeded(Exception):
    """
    The search deadline passed before the scan finished
    """


class BindRequest(NamedTuple):
    principal_dn: str
    secret: str


class BindResponse(NamedTuple):
    result_code: ResultCode
    diagnostic_message: str = ""


class SearchRequest(NamedTuple):
    base_dn: str
    filter: Filter
    attributes: Sequence[str] = ()
    time_limit: int = 0  # seconds, 0 = no limit


class SearchResultEntry(NamedTuple):
    dn: str
    attributes: list[tuple[str, str]]


class SearchResultDone(NamedTuple):
    result_code: ResultCode
    diagnostic_message: str = ""


class Authenticator:
    def __init__(self, credentials: CredentialStore):
        self.credentials = credentials

    def authenticate(self, principal_dn: str, secret: str) -> ResultCode:
        # unknown principal and wrong secret are indistinguishable
        if self.credentials.get(principal_dn) == secret:
            return ResultCode.success
        log.warning("Bind failed User=%s, Pass=%s", principal_dn, secret)
        return ResultCode.invalidCredentials


def find_first_match(
    filter: Filter,
    entries: Iterable[DirectoryEntry],
    deadline: float | None = None,
    clock: Callable[[], float] = monotonic,
    unknown_matches: bool = True,
) -> DirectoryEntry | None:
    """
    Return the first entry in store order that satisfies `filter`.

    Only one entry is ever returned, even when more would match.
    Raises `TimeLimitExceeded` once `clock()` reaches `deadline`.
    """
    for entry in entries:
        if deadline is not None and clock() >= deadline:
            raise TimeLimitExceeded(filter)
        if evaluate(filter, entry, unknown_matches):
            return entry
    return None


def build_entry_attributes(
    entry: DirectoryEntry, requested: Iterable[str]
) -> list[tuple[str, str]]:
    """
    Flatten the requested attributes of `entry` into (name, value) pairs.

    Multi-valued attributes produce one pair per value. Attributes the
    entry lacks are skipped. Requesting nothing returns nothing.
    """
    pairs: list[tuple[str, str]] = []
    for name in requested:
        match entry.attributes.get(name):
            case Single(value):
                pairs.append((name, value))
            case Multi(values):
                pairs.extend((name, value) for value in values)
    return pairs


class Responder:
    def __init__(
        self,
        credentials: CredentialStore,
        directory: DirectoryStore,
        domain: Domain = DOMAIN,
        unknown_filter_matches: bool = True,
        clock: Callable[[], float] = monotonic,
    ):
        self.authenticator = Authenticator(credentials)
        self.directory = directory
        self.domain = domain
        self.unknown_filter_matches = unknown_filter_matches
        self.clock = clock

    def bind(self, request: BindRequest) -> BindResponse:
        result = self.authenticator.authenticate(
            request.principal_dn, request.secret
        )
        if result is ResultCode.success:
            return BindResponse(result)
        return BindResponse(result, "invalid credentials")

    def search(
        self, request: SearchRequest
    ) -> list[SearchResultEntry | SearchResultDone]:
        log.info("Request BaseDn=%s", request.base_dn)
        log.info("Request Filter=%r", request.filter)
        log.info("Request FilterString=%s", request.filter)
        log.info("Request Attributes=%s", list(request.attributes))
        log.info("Request TimeLimit=%d", request.time_limit)
        deadline = None
        if request.time_limit > 0:
            deadline = self.clock() + request.time_limit
        try:
            entry = find_first_match(
                request.filter,
                self.directory,
                deadline=deadline,
                clock=self.clock,
                unknown_matches=self.unknown_filter_matches,
            )
        except TimeLimitExceeded:
            log.warning("time limit exceeded for %s", request.filter)
            return [
                SearchResultDone(
                    ResultCode.timeLimitExceeded, "time limit exceeded"
                )
            ]
        if entry is None:
            return [SearchResultDone(ResultCode.success)]
        return [
            SearchResultEntry(
                dn=entry.dn(self.domain),
                attributes=build_entry_attributes(entry, request.attributes),
            ),
            SearchResultDone(ResultCode.success),
        ]
