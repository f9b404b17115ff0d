from __future__ import annotations
import asyncio
import json
from unittest import IsolatedAsyncioTestCase, TestCase
from pydantic import ValidationError
from pyasn1.codec.ber import decoder, encoder
from pyasn1.error import SubstrateUnderrunError

from ..directory import CredentialStore, DirectoryStore, MalformedEntry
from ..filters import And, EqualityMatch, Filter as FilterExpression
from ..filters import Not, Or, Other
from . import (
    MAX_FILTER_DEPTH,
    BindRequest,
    Config,
    Filter,
    FilterTooDeep,
    LDAPMessage,
    LDAPServer,
    SearchRequest,
    UnbindRequest,
    encode_response,
)
from .. import responder

BIND_DN = "mail=bind@example.com,dc=example,dc=com"


def fill_filter(choice, expression: FilterExpression) -> None:
    match expression:
        case And(children) | Or(children):
            choice.setComponentByName(
                "and" if isinstance(expression, And) else "or"
            )
            items = choice.getComponent()
            for child in children:
                item = items.componentType.clone()
                fill_filter(item, child)
                items.append(item)
        case Not(child):
            choice.setComponentByName("not")
            fill_filter(choice.getComponent(), child)
        case EqualityMatch(attribute, value):
            choice.setComponentByName("equalityMatch")
            ava = choice.getComponent()
            ava["attributeDesc"] = attribute.encode()
            ava["assertionValue"] = value.encode()
        case Other("present", attribute):
            choice["present"] = attribute.encode()


def message(msgid: int, name: str, op) -> bytes:
    lm = LDAPMessage()
    lm.setComponentByName("messageID", msgid)
    lm["protocolOp"].setComponentByName(name, op)
    return encoder.encode(lm)


def bind_request(msgid: int, dn: str, password: str) -> bytes:
    br = BindRequest()
    br["version"] = 3
    br["name"] = dn.encode()
    br["authentication"]["simple"] = password.encode()
    return message(msgid, "bindRequest", br)


def search_request(
    msgid: int,
    expression: FilterExpression,
    attributes: list[str],
    time_limit: int = 0,
) -> bytes:
    sr = SearchRequest()
    sr["baseObject"] = b"dc=example,dc=com"
    sr["scope"] = "wholeSubtree"
    sr["derefAliases"] = "neverDerefAliases"
    sr["sizeLimit"] = 0
    sr["timeLimit"] = time_limit
    sr["typesOnly"] = False
    fill_filter(sr["filter"], expression)
    for attr in attributes:
        sr["attributes"].append(attr.encode())
    return message(msgid, "searchRequest", sr)


def _tlv(tag: int, content: bytes) -> bytes:
    if len(content) < 0x80:
        return bytes([tag, len(content)]) + content
    size = len(content).to_bytes((len(content).bit_length() + 7) // 8, "big")
    return bytes([tag, 0x80 | len(size)]) + size + content


def deep_search_request(msgid: int, depth: int) -> bytes:
    """
    `(uid=199)` wrapped in `depth` nots, encoded by hand since the
    Filter type stops at MAX_FILTER_DEPTH
    """
    expression = _tlv(0xA3, _tlv(0x04, b"uid") + _tlv(0x04, b"199"))
    for _ in range(depth):
        expression = _tlv(0xA2, expression)
    body = (
        _tlv(0x04, b"dc=example,dc=com")
        + _tlv(0x0A, b"\x02")
        + _tlv(0x0A, b"\x00")
        + _tlv(0x02, b"\x00")
        + _tlv(0x02, b"\x00")
        + _tlv(0x01, b"\x00")
        + expression
        + _tlv(0x30, _tlv(0x04, b"uid"))
    )
    return _tlv(0x30, _tlv(0x02, bytes([msgid])) + _tlv(0x63, body))


def decode_all(data: bytes) -> list[LDAPMessage]:
    messages: list[LDAPMessage] = []
    while data:
        lm, data = decoder.decode(data, asn1Spec=LDAPMessage())
        messages.append(lm)
    return messages


def summarize(lm: LDAPMessage):
    op = lm["protocolOp"]
    name = op.getName()
    value = op.getComponent()
    if name == "searchResEntry":
        return (
            int(lm["messageID"]),
            name,
            value["objectName"].asOctets().decode(),
            [
                (
                    attr["type"].asOctets().decode(),
                    [val.asOctets().decode() for val in attr["vals"]],
                )
                for attr in value["attributes"]
            ],
        )
    return (
        int(lm["messageID"]),
        name,
        int(value["resultCode"]),
        value["diagnosticMessage"].asOctets().decode(),
    )


class FilterDecodingTest(TestCase):
    def roundtrip(self, expression: FilterExpression) -> FilterExpression:
        sr = SearchRequest()
        sr["baseObject"] = b""
        sr["scope"] = 2
        sr["derefAliases"] = 0
        sr["sizeLimit"] = 0
        sr["timeLimit"] = 7
        sr["typesOnly"] = False
        fill_filter(sr["filter"], expression)
        sr["attributes"].append(b"uid")
        decoded, rest = decoder.decode(
            encoder.encode(sr), asn1Spec=SearchRequest()
        )
        self.assertEqual(rest, b"")
        request = decoded.request()
        self.assertEqual(request.attributes, ["uid"])
        self.assertEqual(request.time_limit, 7)
        return request.filter

    def test_nested(self):
        expression = And(
            (
                EqualityMatch("objectClass", "Gperson"),
                Not(EqualityMatch("objectClass", "Gstudent")),
                Or((EqualityMatch("uid", "1"), EqualityMatch("uid", "2"))),
            )
        )
        self.assertEqual(self.roundtrip(expression), expression)

    def test_present_is_other(self):
        self.assertEqual(
            self.roundtrip(Other("present", "objectClass")),
            Other("present", "(objectClass=*)"),
        )

    def test_max_depth(self):
        expression: FilterExpression = EqualityMatch("uid", "199")
        for _ in range(MAX_FILTER_DEPTH):
            expression = Not(expression)
        self.assertEqual(self.roundtrip(expression), expression)

    def test_too_deep(self):
        (lm,) = decode_all(deep_search_request(4, MAX_FILTER_DEPTH + 1))
        with self.assertRaises(FilterTooDeep):
            lm["protocolOp"].getComponent().request()

    def test_non_ascii(self):
        expression = EqualityMatch("cn", "Адам")
        self.assertEqual(self.roundtrip(expression), expression)

    def test_filter_type_nests(self):
        self.assertIn("and", Filter.componentType)
        self.assertIn("equalityMatch", Filter.componentType)


class EncodeResponseTest(TestCase):
    def test_multi_valued_attributes_repeat(self):
        data = encode_response(
            5,
            responder.SearchResultEntry(
                dn="mail=a@j.c,dc=j,dc=c",
                attributes=[("objectClass", "top"), ("objectClass", "x")],
            ),
        )
        (lm,) = decode_all(data)
        self.assertEqual(
            summarize(lm),
            (
                5,
                "searchResEntry",
                "mail=a@j.c,dc=j,dc=c",
                [("objectClass", ["top"]), ("objectClass", ["x"])],
            ),
        )

    def test_bind_response(self):
        (lm,) = decode_all(
            encode_response(
                1,
                responder.BindResponse(
                    responder.ResultCode.invalidCredentials,
                    "invalid credentials",
                ),
            )
        )
        self.assertEqual(
            summarize(lm), (1, "bindResponse", 49, "invalid credentials")
        )


class ConfigTest(TestCase):
    def test_defaults(self):
        config = Config()
        self.assertEqual((config.host, config.port), ("127.0.0.1", 10000))
        handler = config.create_responder()
        self.assertEqual(len(handler.directory), 2)
        self.assertEqual(
            handler.bind(responder.BindRequest(BIND_DN, "1234")).result_code,
            responder.ResultCode.success,
        )

    def test_from_json(self):
        config = Config.model_validate_json(
            json.dumps(
                {
                    "port": 10389,
                    "domain": "example.org",
                    "unknown_filter_matches": False,
                    "credentials": {"mail=a@j.c,dc=example,dc=org": "pw"},
                    "entries": [{"mail": "a@j.c", "objectClass": ["top"]}],
                }
            )
        )
        handler = config.create_responder()
        self.assertFalse(handler.unknown_filter_matches)
        self.assertEqual(
            handler.directory[0].dn(handler.domain),
            "mail=a@j.c,dc=example,dc=org",
        )

    def test_strict(self):
        with self.assertRaises(ValidationError):
            Config.model_validate_json('{"port": "10000"}')
        with self.assertRaises(ValidationError):
            Config.model_validate_json('{"entries": [{"mail": 1}]}')

    def test_malformed_entry(self):
        config = Config.model_validate_json('{"entries": [{"cn": "x"}]}')
        with self.assertRaises(MalformedEntry):
            config.create_responder()


class ServerTest(IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.server = LDAPServer(Config().create_responder())
        host, port = await self.server.start("127.0.0.1", 0)
        self.reader, self.writer = await asyncio.open_connection(host, port)

    async def asyncTearDown(self):
        self.writer.close()
        await self.server.close()

    async def exchange(self, request: bytes, count: int) -> list:
        self.writer.write(request)
        await self.writer.drain()
        buf = b""
        messages: list = []
        while len(messages) < count:
            chunk = await asyncio.wait_for(self.reader.read(4096), 5)
            self.assertTrue(chunk, "connection closed early")
            buf += chunk
            try:
                messages.extend(decode_all(buf))
            except SubstrateUnderrunError:
                continue
            buf = b""
        return [summarize(lm) for lm in messages]

    async def test_bind(self):
        self.assertEqual(
            await self.exchange(bind_request(1, BIND_DN, "1234"), 1),
            [(1, "bindResponse", 0, "")],
        )

    async def test_bind_wrong_password(self):
        with self.assertLogs("ldaptestserver.responder", "WARNING"):
            responses = await self.exchange(
                bind_request(1, BIND_DN, "4321"), 1
            )
        self.assertEqual(
            responses, [(1, "bindResponse", 49, "invalid credentials")]
        )

    async def test_search(self):
        await self.exchange(bind_request(1, BIND_DN, "1234"), 1)
        self.assertEqual(
            await self.exchange(
                search_request(
                    2, EqualityMatch("mail", "adam@example.com"), ["uid"]
                ),
                2,
            ),
            [
                (
                    2,
                    "searchResEntry",
                    "mail=adam@example.com,dc=example,dc=com",
                    [("uid", ["199"])],
                ),
                (2, "searchResDone", 0, ""),
            ],
        )

    async def test_search_nonexistent(self):
        self.assertEqual(
            await self.exchange(
                search_request(
                    3,
                    EqualityMatch("mail", "nonexistent@example.com"),
                    ["uid"],
                ),
                1,
            ),
            [(3, "searchResDone", 0, "")],
        )

    async def test_search_staff(self):
        staff = And(
            (
                EqualityMatch("objectClass", "Gperson"),
                Not(EqualityMatch("objectClass", "Gstudent")),
            )
        )
        responses = await self.exchange(search_request(4, staff, ["cn"]), 2)
        self.assertEqual(
            responses[0],
            (
                4,
                "searchResEntry",
                "mail=adam@example.com,dc=example,dc=com",
                [("cn", ["Adam Doe"])],
            ),
        )

    async def test_pipelined_requests(self):
        data = bind_request(1, BIND_DN, "1234") + search_request(
            2, EqualityMatch("uid", "11"), ["mail"]
        )
        self.assertEqual(
            await self.exchange(data, 3),
            [
                (1, "bindResponse", 0, ""),
                (
                    2,
                    "searchResEntry",
                    "mail=john@example.com,dc=example,dc=com",
                    [("mail", ["john@example.com"])],
                ),
                (2, "searchResDone", 0, ""),
            ],
        )

    async def test_unbind_closes(self):
        self.writer.write(message(9, "unbindRequest", UnbindRequest("")))
        await self.writer.drain()
        self.assertEqual(
            await asyncio.wait_for(self.reader.read(), 5), b""
        )

    async def test_search_at_max_depth(self):
        self.assertEqual(
            await self.exchange(deep_search_request(5, MAX_FILTER_DEPTH), 2),
            [
                (
                    5,
                    "searchResEntry",
                    "mail=adam@example.com,dc=example,dc=com",
                    [("uid", ["199"])],
                ),
                (5, "searchResDone", 0, ""),
            ],
        )

    async def test_search_too_deep(self):
        with self.assertLogs("ldaptestserver.server_ldap", "ERROR"):
            responses = await self.exchange(
                deep_search_request(6, MAX_FILTER_DEPTH + 1), 1
            )
        self.assertEqual(
            responses,
            [
                (
                    6,
                    "searchResDone",
                    2,
                    f"filter nested deeper than {MAX_FILTER_DEPTH} levels",
                )
            ],
        )
        # the connection stays usable
        self.assertEqual(
            await self.exchange(bind_request(7, BIND_DN, "1234"), 1),
            [(7, "bindResponse", 0, "")],
        )

    async def test_server_side_operation_closes(self):
        with self.assertLogs("ldaptestserver.server_ldap", "ERROR"):
            self.writer.write(
                encode_response(
                    1, responder.BindResponse(responder.ResultCode.success)
                )
            )
            await self.writer.drain()
            self.assertEqual(
                await asyncio.wait_for(self.reader.read(), 5), b""
            )


class BindMethodTest(IsolatedAsyncioTestCase):
    def setUp(self):
        self.handler = responder.Responder(
            CredentialStore({"cn=nobody": ""}), DirectoryStore()
        )

    async def bind(self, br: BindRequest) -> list:
        data = b""
        async for response in br.process(1, self.handler):
            data += response
        return [summarize(lm) for lm in decode_all(data)]

    async def test_sasl_is_rejected(self):
        br = BindRequest()
        br["version"] = 3
        br["name"] = b"cn=nobody"
        br["authentication"].setComponentByName("sasl")
        br["authentication"]["sasl"]["mechanism"] = b"PLAIN"
        with self.assertLogs("ldaptestserver.server_ldap", "WARNING"):
            responses = await self.bind(br)
        self.assertEqual(
            responses, [(1, "bindResponse", 49, "invalid credentials")]
        )

    async def test_simple_empty_secret(self):
        br = BindRequest()
        br["version"] = 3
        br["name"] = b"cn=nobody"
        br["authentication"]["simple"] = b""
        self.assertEqual(await self.bind(br), [(1, "bindResponse", 0, "")])
