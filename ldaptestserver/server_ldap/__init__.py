from __future__ import annotations
from typing import AsyncGenerator, Literal, cast

# https://raw.githubusercontent.com/pyasn1/pyasn1-modules/02f9c577bcd0ad9fedfb0fd5dc598d323f7984bf/pyasn1_modules/rfc2251.py

import asyncio
import logging
import signal
from pathlib import Path
from pydantic import BaseModel, Field
from pyasn1.type import univ, tag, namedtype, namedval, constraint
from pyasn1.codec.ber import decoder, encoder
from pyasn1.error import PyAsn1Error, SubstrateUnderrunError

from ..directory import CredentialStore, DirectoryStore, Domain
from ..filters import And, EqualityMatch, Filter as FilterExpression
from ..filters import Not, Or, Other, escape
from .. import responder

log = logging.getLogger(__name__)

maxInt = univ.Integer(2147483647)

# Depth of nested and/or/not a search may use; deeper filters are answered
# with protocolError. pyasn1 can't express the recursive Filter directly.
MAX_FILTER_DEPTH = 32


def _text(value: univ.OctetString) -> str:
    return value.asOctets().decode("utf-8", "surrogateescape")


# --- Minimal ASN.1 types (very reduced) ---
class MessageID(univ.Integer):
    pass


class LDAPString(univ.OctetString):
    pass


class AttributeValue(univ.OctetString):
    pass


class AttributeDescription(LDAPString):
    pass


class LDAPDN(LDAPString):
    pass


class Attribute(univ.Sequence):
    componentType = namedtype.NamedTypes(
        namedtype.NamedType("type", AttributeDescription()),
        namedtype.NamedType(
            "vals", univ.SetOf(componentType=AttributeValue())
        ),
    )


class PartialAttributeList(univ.SequenceOf):
    componentType = Attribute()


class SaslCredentials(univ.Sequence):
    componentType = namedtype.NamedTypes(
        namedtype.NamedType("mechanism", LDAPString()),
        namedtype.OptionalNamedType("credentials", univ.OctetString()),
    )


class AuthenticationChoice(univ.Choice):
    componentType = namedtype.NamedTypes(
        namedtype.NamedType(
            "simple",
            univ.OctetString().subtype(
                implicitTag=tag.Tag(
                    tag.tagClassContext, tag.tagFormatSimple, 0
                )
            ),
        ),
        namedtype.NamedType(
            "sasl",
            SaslCredentials().subtype(
                implicitTag=tag.Tag(
                    tag.tagClassContext, tag.tagFormatConstructed, 3
                )
            ),
        ),
    )


class BindRequest(univ.Sequence):
    tagSet = univ.Sequence.tagSet.tagImplicitly(
        tag.Tag(tag.tagClassApplication, tag.tagFormatConstructed, 0)
    )
    componentType = namedtype.NamedTypes(
        namedtype.NamedType(
            "version",
            univ.Integer().subtype(
                subtypeSpec=constraint.ValueRangeConstraint(1, 127)
            ),
        ),
        namedtype.NamedType("name", LDAPDN()),
        namedtype.NamedType("authentication", AuthenticationChoice()),
    )

    def request(self) -> responder.BindRequest:
        """
        Only valid for simple binds
        """
        return responder.BindRequest(
            principal_dn=_text(self["name"]),
            secret=_text(self["authentication"]["simple"]),
        )

    async def process(
        self, msgid: int, handler: responder.Responder
    ) -> AsyncGenerator[bytes, None]:
        method = self["authentication"].getName()
        if method != "simple":
            # only simple binds are supported, anything else can't succeed
            log.warning(
                "unsupported bind method %s for %s",
                method,
                _text(self["name"]),
            )
            yield encode_response(
                msgid,
                responder.BindResponse(
                    responder.ResultCode.invalidCredentials,
                    "invalid credentials",
                ),
            )
            return
        yield encode_response(msgid, handler.bind(self.request()))


class UnbindRequest(univ.Null):
    tagSet = univ.Null.tagSet.tagImplicitly(
        tag.Tag(tag.tagClassApplication, tag.tagFormatSimple, 2)
    )

    async def process(
        self, msgid: int, handler: responder.Responder
    ) -> AsyncGenerator[bytes, None]:
        log.debug("UnbindRequest")
        return
        yield


class ResultCode(univ.Enumerated):
    namedValues = namedval.NamedValues(
        *((code.name, code.value) for code in responder.ResultCode)
    )


class LDAPResult(univ.Sequence):
    componentType = namedtype.NamedTypes(
        namedtype.NamedType("resultCode", ResultCode()),
        namedtype.NamedType("matchedDN", LDAPDN()),
        namedtype.NamedType("diagnosticMessage", LDAPString()),
    )


class BindResponse(LDAPResult):
    tagSet = univ.Sequence.tagSet.tagImplicitly(
        tag.Tag(tag.tagClassApplication, tag.tagFormatConstructed, 1)
    )


class SearchResultDone(LDAPResult):
    tagSet = univ.Sequence.tagSet.tagImplicitly(
        tag.Tag(tag.tagClassApplication, tag.tagFormatConstructed, 5)
    )


class AttributeValueAssertion(univ.Sequence):
    componentType = namedtype.NamedTypes(
        namedtype.NamedType("attributeDesc", AttributeDescription()),
        namedtype.NamedType("assertionValue", univ.OctetString()),
    )


def _context(number: int, constructed: bool = True) -> tag.Tag:
    return tag.Tag(
        tag.tagClassContext,
        tag.tagFormatConstructed if constructed else tag.tagFormatSimple,
        number,
    )


class SubstringFilter(univ.Sequence):
    componentType = namedtype.NamedTypes(
        namedtype.NamedType("type", AttributeDescription()),
        namedtype.NamedType(
            "substrings",
            univ.SequenceOf(
                componentType=univ.Choice(
                    componentType=namedtype.NamedTypes(
                        namedtype.NamedType(
                            "initial",
                            LDAPString().subtype(
                                implicitTag=_context(0, False)
                            ),
                        ),
                        namedtype.NamedType(
                            "any",
                            LDAPString().subtype(
                                implicitTag=_context(1, False)
                            ),
                        ),
                        namedtype.NamedType(
                            "final",
                            LDAPString().subtype(
                                implicitTag=_context(2, False)
                            ),
                        ),
                    )
                )
            ),
        ),
    )


class MatchingRuleAssertion(univ.Sequence):
    componentType = namedtype.NamedTypes(
        namedtype.OptionalNamedType(
            "matchingRule",
            LDAPString().subtype(implicitTag=_context(1, False)),
        ),
        namedtype.OptionalNamedType(
            "type",
            AttributeDescription().subtype(implicitTag=_context(2, False)),
        ),
        namedtype.NamedType(
            "matchValue",
            univ.OctetString().subtype(implicitTag=_context(3, False)),
        ),
        namedtype.DefaultedNamedType(
            "dnAttributes",
            univ.Boolean()
            .subtype(implicitTag=_context(4, False))
            .subtype(value=0),
        ),
    )


def _describe(op: str, value) -> str:
    """String form of filters the evaluator treats as `Other`"""
    if op == "present":
        return f"({_text(value)}=*)"
    if op == "substrings":
        parts = {"initial": "", "final": ""}
        middle: list[str] = []
        for item in value["substrings"]:
            name = item.getName()
            if name == "any":
                middle.append(escape(_text(item.getComponent())))
            else:
                parts[name] = escape(_text(item.getComponent()))
        pattern = "*".join([parts["initial"], *middle, parts["final"]])
        return f"({_text(value['type'])}={pattern})"
    if op == "extensibleMatch":
        rule = value.getComponentByName("matchingRule", instantiate=False)
        attr = value.getComponentByName("type", instantiate=False)
        text = "" if attr is univ.noValue else _text(attr)
        if value["dnAttributes"]:
            text += ":dn"
        if rule is not univ.noValue:
            text += f":{_text(rule)}"
        return f"({text}:={escape(_text(value['matchValue']))})"
    sign = {"greaterOrEqual": ">=", "lessOrEqual": "<=", "approxMatch": "~="}
    return (
        f"({_text(value['attributeDesc'])}{sign[op]}"
        f"{escape(_text(value['assertionValue']))})"
    )


class FilterTooDeep(ValueError):
    pass


def _build(value) -> FilterExpression:
    # past the innermost level operands are kept as raw BER
    if isinstance(value, univ.Any):
        raise FilterTooDeep(
            f"filter nested deeper than {MAX_FILTER_DEPTH} levels"
        )
    return value.build()


class FilterChoice(univ.Choice):
    def build(self) -> FilterExpression:
        """
        Raises `FilterTooDeep` when and/or/not nest past MAX_FILTER_DEPTH
        """
        op = self.getName()
        value = self.getComponent()
        if op == "and":
            return And(tuple(_build(item) for item in value))
        if op == "or":
            return Or(tuple(_build(item) for item in value))
        if op == "not":
            return Not(_build(value))
        if op == "equalityMatch":
            return EqualityMatch(
                _text(value["attributeDesc"]), _text(value["assertionValue"])
            )
        return Other(op, _describe(op, value))


def _filter_level(inner: FilterChoice | univ.Any) -> type[FilterChoice]:
    """
    One level of the recursive Filter CHOICE. The innermost level gets
    `Any` operands, so deeper filters still decode and `build()` can
    reject them.
    """
    # fmt: off
    nested = [
        namedtype.NamedType('and', univ.SetOf(componentType=inner).subtype(
            implicitTag=_context(0))),
        namedtype.NamedType('or', univ.SetOf(componentType=inner).subtype(
            implicitTag=_context(1))),
        namedtype.NamedType('not', inner.subtype(implicitTag=_context(2))),
    ]
    simple = [
        namedtype.NamedType('equalityMatch', AttributeValueAssertion().subtype(
            implicitTag=_context(3))),
        namedtype.NamedType('substrings', SubstringFilter().subtype(
            implicitTag=_context(4))),
        namedtype.NamedType('greaterOrEqual', AttributeValueAssertion().subtype(
            implicitTag=_context(5))),
        namedtype.NamedType('lessOrEqual', AttributeValueAssertion().subtype(
            implicitTag=_context(6))),
        namedtype.NamedType('present', AttributeDescription().subtype(
            implicitTag=_context(7, False))),
        namedtype.NamedType('approxMatch', AttributeValueAssertion().subtype(
            implicitTag=_context(8))),
        namedtype.NamedType('extensibleMatch', MatchingRuleAssertion().subtype(
            implicitTag=_context(9))),
    ]
    # fmt: on
    return cast(
        "type[FilterChoice]",
        type(
            "Filter",
            (FilterChoice,),
            {"componentType": namedtype.NamedTypes(*nested, *simple)},
        ),
    )


def _make_filter() -> type[FilterChoice]:
    filter_type = _filter_level(univ.Any())
    for _ in range(MAX_FILTER_DEPTH):
        filter_type = _filter_level(filter_type())
    return filter_type


Filter = _make_filter()


class SearchRequest(univ.Sequence):
    tagSet = univ.Sequence.tagSet.tagImplicitly(
        tag.Tag(tag.tagClassApplication, tag.tagFormatConstructed, 3)
    )

    componentType = namedtype.NamedTypes(
        namedtype.NamedType("baseObject", LDAPDN()),
        namedtype.NamedType(
            "scope",
            univ.Enumerated(
                namedValues=namedval.NamedValues(
                    ("baseObject", 0), ("singleLevel", 1), ("wholeSubtree", 2)
                )
            ),
        ),
        namedtype.NamedType(
            "derefAliases",
            univ.Enumerated(
                namedValues=namedval.NamedValues(
                    ("neverDerefAliases", 0),
                    ("derefInSearching", 1),
                    ("derefFindingBaseObj", 2),
                    ("derefAlways", 3),
                )
            ),
        ),
        namedtype.NamedType(
            "sizeLimit",
            univ.Integer().subtype(
                subtypeSpec=constraint.ValueRangeConstraint(0, maxInt)
            ),
        ),
        namedtype.NamedType(
            "timeLimit",
            univ.Integer().subtype(
                subtypeSpec=constraint.ValueRangeConstraint(0, maxInt)
            ),
        ),
        namedtype.NamedType("typesOnly", univ.Boolean()),
        namedtype.NamedType("filter", Filter()),
        namedtype.NamedType(
            "attributes", univ.SequenceOf(componentType=LDAPString())
        ),
    )

    def request(self) -> responder.SearchRequest:
        return responder.SearchRequest(
            base_dn=_text(self["baseObject"]),
            filter=self["filter"].build(),
            attributes=[_text(attr) for attr in self["attributes"]],
            time_limit=int(self["timeLimit"]),
        )

    async def process(
        self, msgid: int, handler: responder.Responder
    ) -> AsyncGenerator[bytes, None]:
        try:
            request = self.request()
        except FilterTooDeep as e:
            log.error("rejected search: %s", e)
            yield encode_response(
                msgid,
                responder.SearchResultDone(
                    responder.ResultCode.protocolError, str(e)
                ),
            )
            return
        for response in handler.search(request):
            yield encode_response(msgid, response)


class SearchResultEntry(univ.Sequence):
    tagSet = univ.Sequence.tagSet.tagImplicitly(
        tag.Tag(tag.tagClassApplication, tag.tagFormatConstructed, 4)
    )
    componentType = namedtype.NamedTypes(
        namedtype.NamedType("objectName", LDAPDN()),
        namedtype.NamedType("attributes", PartialAttributeList()),
    )


class LDAPMessage(univ.Sequence):
    componentType = namedtype.NamedTypes(
        namedtype.NamedType("messageID", MessageID()),
        namedtype.NamedType(
            "protocolOp",
            univ.Choice(
                componentType=namedtype.NamedTypes(
                    namedtype.NamedType("bindRequest", BindRequest()),
                    namedtype.NamedType("bindResponse", BindResponse()),
                    namedtype.NamedType("unbindRequest", UnbindRequest()),
                    namedtype.NamedType("searchRequest", SearchRequest()),
                    namedtype.NamedType("searchResEntry", SearchResultEntry()),
                    namedtype.NamedType("searchResDone", SearchResultDone()),
                )
            ),
        ),
        namedtype.OptionalNamedType("controls", univ.Any()),
    )


def _result(
    result: LDAPResult, result_code: int, diag: str, matched_dn: str = ""
) -> LDAPResult:
    result["resultCode"] = result_code
    result["matchedDN"] = matched_dn.encode()
    result["diagnosticMessage"] = diag.encode()
    return result


def encode_response(
    msgid: int,
    response: (
        responder.BindResponse
        | responder.SearchResultEntry
        | responder.SearchResultDone
    ),
) -> bytes:
    lm = LDAPMessage()
    lm.setComponentByName("messageID", msgid)
    match response:
        case responder.BindResponse(result_code, diag):
            lm["protocolOp"].setComponentByName(
                "bindResponse", _result(BindResponse(), result_code, diag)
            )
        case responder.SearchResultDone(result_code, diag):
            lm["protocolOp"].setComponentByName(
                "searchResDone",
                _result(SearchResultDone(), result_code, diag),
            )
        case responder.SearchResultEntry(dn, attributes):
            sre = SearchResultEntry()
            sre["objectName"] = dn.encode()
            attrs_seq = PartialAttributeList()
            # one attribute per pair, so multi-valued ones repeat the name
            for name, value in attributes:
                attr = Attribute()
                attr["type"] = name.encode()
                vals_set = univ.SetOf(componentType=AttributeValue())
                vals_set.append(value.encode())
                attr["vals"] = vals_set
                attrs_seq.append(attr)
            sre["attributes"] = attrs_seq
            lm["protocolOp"].setComponentByName("searchResEntry", sre)
    return encoder.encode(lm)


# --- Connection handler ---
class LDAPProtocol:
    def __init__(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        handler: responder.Responder,
    ):
        self.reader = reader
        self.writer = writer
        self.handler = handler
        self.addr = writer.get_extra_info("peername")

    async def run(self):
        log.debug("connection from %s", self.addr)
        try:
            async for lm in self._parse_messages():
                if not await self._handle_message(lm):
                    break
        except asyncio.IncompleteReadError:
            pass
        except PyAsn1Error as e:
            log.error("unsupported message from %s: %s", self.addr, e)
        finally:
            self.writer.close()
            await self.writer.wait_closed()
            log.debug("connection from %s closed", self.addr)

    async def _parse_messages(self):
        buf = b""
        while chunk := await self.reader.read(4096):
            buf += chunk
            while buf:
                try:
                    lm, buf = cast(
                        tuple[LDAPMessage, bytes],
                        decoder.decode(buf, asn1Spec=LDAPMessage()),
                    )
                except SubstrateUnderrunError:
                    # need more data; continue reading
                    break
                yield lm

    async def _handle_message(self, lm: LDAPMessage) -> bool:
        """
        Returns False when the client asked to close the connection
        """
        msgid = int(lm.getComponentByName("messageID"))
        op = lm.getComponentByName("protocolOp").getComponent()
        log.debug("PROCESSING %s", type(op).__name__)
        if not isinstance(op, (BindRequest, SearchRequest, UnbindRequest)):
            log.error(
                "unexpected %s from %s, closing", type(op).__name__, self.addr
            )
            return False
        async for response in op.process(msgid, self.handler):
            self.writer.write(response)
        await self.writer.drain()
        return not isinstance(op, UnbindRequest)


SAMPLE_CREDENTIALS = {
    "mail=bind@example.com,dc=example,dc=com": "1234",
    "mail=adam@example.com,dc=example,dc=com": "adam1234",
    "mail=john@example.com,dc=example,dc=com": "john1234",
}

SAMPLE_ENTRIES: list[dict[str, str | list[str]]] = [
    {
        "cn": "Adam Doe",
        "mail": "adam@example.com",
        "uid": "199",
        "objectClass": [
            "Gperson",
            "Gstaff",
            "top",
            "posixAccount",
            "inetOrgPerson",
        ],
    },
    {
        "cn": "John Doe",
        "mail": "john@example.com",
        "uid": "11",
        "objectClass": [
            "Gperson",
            "Gstudent",
            "top",
            "posixAccount",
            "inetOrgPerson",
        ],
    },
]


class Config(BaseModel, strict=True):
    host: str = "127.0.0.1"
    port: int = 10000
    domain: str = Field("example.com", examples=["example.com"])
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    unknown_filter_matches: bool = Field(
        True,
        description="whether filter kinds other than &, |, ! and = "
        "match every entry",
    )
    credentials: dict[str, str] = Field(
        default_factory=lambda: dict(SAMPLE_CREDENTIALS),
        description="principal DN to password",
    )
    entries: list[dict[str, str | list[str]]] = Field(
        default_factory=lambda: [dict(entry) for entry in SAMPLE_ENTRIES],
        description="directory entries, each must have a `mail` string",
    )

    def create_responder(self) -> responder.Responder:
        """
        Raises `MalformedEntry` for entries without a usable `mail`
        """
        return responder.Responder(
            credentials=CredentialStore(self.credentials),
            directory=DirectoryStore.from_records(self.entries),
            domain=Domain.make(self.domain),
            unknown_filter_matches=self.unknown_filter_matches,
        )


class LDAPServer:
    """
    Listener that hands every connection to its own `LDAPProtocol`.
    `close()` also drops connections that are still open.
    """

    def __init__(self, handler: responder.Responder):
        self.handler = handler
        self._server: asyncio.Server | None = None
        self._connections: set[asyncio.Task] = set()

    async def start(self, host: str, port: int) -> tuple[str, int]:
        self._server = await asyncio.start_server(
            self._handle_client, host, port
        )
        return self._server.sockets[0].getsockname()[:2]

    async def _handle_client(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> None:
        task = asyncio.current_task()
        assert task is not None
        self._connections.add(task)
        try:
            await LDAPProtocol(reader, writer, self.handler).run()
        finally:
            self._connections.discard(task)

    async def close(self) -> None:
        assert self._server is not None, "server was not started"
        self._server.close()
        for task in tuple(self._connections):
            task.cancel()
        await asyncio.gather(*self._connections, return_exceptions=True)
        await self._server.wait_closed()


async def _server_main(config: Config) -> None:
    handler = config.create_responder()
    server = LDAPServer(handler)
    addr = await server.start(config.host, config.port)
    log.info(
        "ldaptestserver listening on %s and serving %s with %d entries",
        addr,
        handler.domain.name,
        len(handler.directory),
    )
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for signum in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(signum, stop.set)
    try:
        await stop.wait()
        log.info("stopping server")
    finally:
        await server.close()
    log.info("done")


def main():
    from argparse import ArgumentParser

    parser = ArgumentParser(description="minimal LDAP server for testing")
    parser.add_argument("config", nargs="?", default="config_ldap.json")
    parser.add_argument("--host")
    parser.add_argument("--port", "-p", type=int)
    parser.add_argument(
        "--log-level", choices=("DEBUG", "INFO", "WARNING", "ERROR")
    )
    args = parser.parse_args()
    config_path = Path(args.config)
    if config_path.exists():
        config = Config.model_validate_json(config_path.read_text())
    else:
        config = Config()
    overrides = {
        name: value
        for name, value in (
            ("host", args.host),
            ("port", args.port),
            ("log_level", args.log_level),
        )
        if value is not None
    }
    config = config.model_copy(update=overrides)

    logging.basicConfig(
        level=config.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    if not config_path.exists():
        log.info("%s not found, using sample directory", config_path)
    asyncio.run(_server_main(config))


if __name__ == "__main__":
    main()
