"""RFC 3161 time-stamp requests, responses and TSTInfo structures."""

from __future__ import annotations

import hashlib
import secrets
import urllib.request
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import BinaryIO, Callable, Iterator, Optional, Union

CONTENT_TYPE_TS_QUERY = "application/timestamp-query"
CONTENT_TYPE_TS_REPLY = "application/timestamp-reply"
NONCE_BYTES = 16

OID_SIGNED_DATA = "1.2.840.113549.1.7.2"
OID_TST_INFO = "1.2.840.113549.1.9.16.1.4"

_HASH_OIDS = {
    "md5": "1.2.840.113549.2.5",
    "sha1": "1.3.14.3.2.26",
    "sha224": "2.16.840.1.101.3.4.2.4",
    "sha256": "2.16.840.1.101.3.4.2.1",
    "sha384": "2.16.840.1.101.3.4.2.2",
    "sha512": "2.16.840.1.101.3.4.2.3",
}
_OID_HASHES = {oid: name for name, oid in _HASH_OIDS.items()}

_TAG_BOOLEAN = 0x01
_TAG_INTEGER = 0x02
_TAG_BIT_STRING = 0x03
_TAG_OCTET_STRING = 0x04
_TAG_OID = 0x06
_TAG_UTF8 = 0x0C
_TAG_GENERALIZED_TIME = 0x18
_TAG_SEQUENCE = 0x30
_STRING_TAGS = {0x0C, 0x13, 0x14, 0x16, 0x1A}


class TimestampError(Exception):
    """Raised for malformed, unsupported or unsuccessful time-stamp data."""


# --- DER / BER primitives -------------------------------------------------


def _encode_length(n: int) -> bytes:
    if n < 0x80:
        return bytes([n])
    body = n.to_bytes((n.bit_length() + 7) // 8, "big")
    return bytes([0x80 | len(body)]) + body


def _tlv(tag: Union[int, bytes], content: bytes) -> bytes:
    tag_bytes = bytes([tag]) if isinstance(tag, int) else tag
    return tag_bytes + _encode_length(len(content)) + content


def _read_header(data: bytes, pos: int) -> tuple[bytes, Optional[int], int]:
    """Return (tag bytes, content length or None if indefinite, content start)."""
    try:
        start = pos
        first = data[pos]
        pos += 1
        if first & 0x1F == 0x1F:
            while data[pos] & 0x80:
                pos += 1
            pos += 1
        tag = data[start:pos]
        length_byte = data[pos]
        pos += 1
        if length_byte == 0x80:
            return tag, None, pos
        if length_byte & 0x80:
            count = length_byte & 0x7F
            if pos + count > len(data):
                raise TimestampError("truncated length")
            length = int.from_bytes(data[pos:pos + count], "big")
            pos += count
        else:
            length = length_byte
    except IndexError as exc:
        raise TimestampError("truncated data") from exc
    if pos + length > len(data):
        raise TimestampError("truncated content")
    return tag, length, pos


@dataclass(frozen=True)
class _Element:
    tag: int
    content: bytes
    raw: bytes


def _parse_one(data: bytes, pos: int = 0) -> tuple[_Element, int]:
    tag, length, start = _read_header(data, pos)
    if length is None:
        raise TimestampError("indefinite length in DER")
    end = start + length
    return _Element(tag[0], data[start:end], data[pos:end]), end


def _parse_exact(data: bytes) -> _Element:
    element, end = _parse_one(data)
    if end != len(data):
        raise TimestampError("trailing data")
    return element


def _children(content: bytes) -> list[_Element]:
    items = []
    pos = 0
    while pos < len(content):
        element, pos = _parse_one(content, pos)
        items.append(element)
    return items


def _ber_to_der(data: bytes) -> bytes:
    def convert(pos: int) -> tuple[bytes, int]:
        tag, length, start = _read_header(data, pos)
        constructed = bool(tag[0] & 0x20)
        if length is None:
            if not constructed:
                raise TimestampError("indefinite length on primitive value")
            parts = []
            p = start
            while data[p:p + 2] != b"\x00\x00":
                if p >= len(data):
                    raise TimestampError("missing end-of-contents")
                part, p = convert(p)
                parts.append(part)
            return _tlv(tag, b"".join(parts)), p + 2
        end = start + length
        if not constructed:
            return _tlv(tag, data[start:end]), end
        parts = []
        p = start
        while p < end:
            part, p = convert(p)
            parts.append(part)
        if p != end:
            raise TimestampError("malformed constructed value")
        return _tlv(tag, b"".join(parts)), end

    der, end = convert(0)
    if end != len(data):
        raise TimestampError("trailing data")
    return der


def _encode_int(value: int) -> bytes:
    length = max(1, (value + (value < 0)).bit_length() // 8 + 1)
    return _tlv(_TAG_INTEGER, value.to_bytes(length, "big", signed=True))


def _decode_int(element: _Element) -> int:
    if element.tag != _TAG_INTEGER and element.tag & 0xC0 != 0x80:
        raise TimestampError("expected INTEGER")
    if not element.content:
        raise TimestampError("empty INTEGER")
    return int.from_bytes(element.content, "big", signed=True)


def _encode_oid(oid: str) -> bytes:
    arcs = [int(a) for a in oid.split(".")]
    if len(arcs) < 2:
        raise TimestampError(f"invalid OID {oid!r}")
    out = bytearray()
    for arc in [arcs[0] * 40 + arcs[1], *arcs[2:]]:
        chunk = [arc & 0x7F]
        arc >>= 7
        while arc:
            chunk.append(0x80 | (arc & 0x7F))
            arc >>= 7
        out.extend(reversed(chunk))
    return _tlv(_TAG_OID, bytes(out))


def _decode_oid(element: _Element) -> str:
    if element.tag != _TAG_OID or not element.content:
        raise TimestampError("expected OBJECT IDENTIFIER")
    values = []
    acc = 0
    for byte in element.content:
        acc = (acc << 7) | (byte & 0x7F)
        if not byte & 0x80:
            values.append(acc)
            acc = 0
    first = values[0]
    head = [min(first // 40, 2), first - 40 * min(first // 40, 2)]
    return ".".join(str(v) for v in head + values[1:])


def _decode_generalized_time(element: _Element) -> datetime:
    if element.tag != _TAG_GENERALIZED_TIME:
        raise TimestampError("expected GeneralizedTime")
    text = element.content.decode("ascii")
    if not text.endswith("Z"):
        raise TimestampError(f"unsupported GeneralizedTime {text!r}")
    main, _, frac = text[:-1].partition(".")
    try:
        moment = datetime.strptime(main, "%Y%m%d%H%M%S").replace(tzinfo=timezone.utc)
    except ValueError as exc:
        raise TimestampError(f"invalid GeneralizedTime {text!r}") from exc
    if frac:
        moment += timedelta(microseconds=int((frac + "000000")[:6]))
    return moment


class _Cursor:
    """Sequential reader over the children of a SEQUENCE."""

    def __init__(self, items: list[_Element]):
        self._items = items
        self._pos = 0

    def peek(self) -> Optional[_Element]:
        return self._items[self._pos] if self._pos < len(self._items) else None

    def take(self, tag: Optional[int] = None) -> _Element:
        element = self.peek()
        if element is None or (tag is not None and element.tag != tag):
            raise TimestampError("unexpected structure")
        self._pos += 1
        return element

    def take_if(self, tag: int) -> Optional[_Element]:
        element = self.peek()
        if element is not None and element.tag == tag:
            self._pos += 1
            return element
        return None

    def done(self) -> bool:
        return self._pos >= len(self._items)


def _sequence(element: _Element) -> _Cursor:
    if element.tag != _TAG_SEQUENCE:
        raise TimestampError("expected SEQUENCE")
    return _Cursor(_children(element.content))


# --- Structures ------------------------------------------------------------


@dataclass(frozen=True)
class Accuracy:
    """Accuracy of a time-stamp's generation time."""

    seconds: int = 0
    millis: int = 0
    micros: int = 0

    def duration(self) -> timedelta:
        return timedelta(seconds=self.seconds, milliseconds=self.millis,
                         microseconds=self.micros)

    @classmethod
    def _from_element(cls, element: _Element) -> "Accuracy":
        values = {"seconds": 0, "millis": 0, "micros": 0}
        names = {_TAG_INTEGER: "seconds", 0x80: "millis", 0x81: "micros"}
        for child in _sequence(element)._items:
            name = names.get(child.tag)
            if name is None:
                raise TimestampError("unexpected Accuracy field")
            values[name] = _decode_int(child)
        return cls(**values)


@dataclass(eq=False)
class MessageImprint:
    """Hash algorithm and digest of the time-stamped data."""

    hash_algorithm: str
    hashed_message: bytes
    parameters: Optional[bytes] = None

    def hash(self) -> str:
        name = _OID_HASHES.get(self.hash_algorithm)
        if name is None or name not in hashlib.algorithms_available:
            raise TimestampError("unsupported hash algorithm")
        return name

    def to_der(self) -> bytes:
        algorithm = _encode_oid(self.hash_algorithm) + (self.parameters or b"")
        return _tlv(_TAG_SEQUENCE, _tlv(_TAG_SEQUENCE, algorithm)
                    + _tlv(_TAG_OCTET_STRING, self.hashed_message))

    @classmethod
    def from_der(cls, der: bytes) -> "MessageImprint":
        return cls._from_element(_parse_exact(der))

    @classmethod
    def _from_element(cls, element: _Element) -> "MessageImprint":
        cursor = _sequence(element)
        algorithm = _sequence(cursor.take(_TAG_SEQUENCE))
        oid = _decode_oid(algorithm.take())
        params = algorithm.peek()
        digest = cursor.take(_TAG_OCTET_STRING).content
        if not cursor.done():
            raise TimestampError("trailing MessageImprint fields")
        return cls(oid, digest, params.raw if params is not None else None)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, MessageImprint):
            return NotImplemented
        if self.hash_algorithm != other.hash_algorithm:
            return False
        mine = _param_content(self.parameters)
        theirs = _param_content(other.parameters)
        if (mine or theirs) and self.parameters != other.parameters:
            return False
        return self.hashed_message == other.hashed_message

    __hash__ = None  # type: ignore[assignment]


def _param_content(raw: Optional[bytes]) -> bytes:
    return _parse_exact(raw).content if raw else b""


def new_message_imprint(hash_name: str, data: Union[bytes, BinaryIO]) -> MessageImprint:
    """Digest data (bytes or a binary stream) with the named hash."""
    oid = _HASH_OIDS.get(hash_name)
    if oid is None or hash_name not in hashlib.algorithms_available:
        raise TimestampError("unsupported hash algorithm")
    digest = hashlib.new(hash_name)
    if isinstance(data, (bytes, bytearray, memoryview)):
        digest.update(data)
    else:
        for chunk in iter(lambda: data.read(65536), b""):
            digest.update(chunk)
    return MessageImprint(oid, digest.digest())


@dataclass(frozen=True)
class PKIFreeText:
    """A sequence of UTF8String values."""

    items: tuple[bytes, ...] = ()

    def append(self, text: str) -> "PKIFreeText":
        return PKIFreeText(self.items + (_tlv(_TAG_UTF8, text.encode("utf-8")),))

    def strings(self) -> list[str]:
        result = []
        for raw in self.items:
            element = _parse_exact(raw)
            if element.tag not in _STRING_TAGS:
                raise TimestampError("expected string in PKIFreeText")
            result.append(element.content.decode("utf-8"))
        return result

    def __len__(self) -> int:
        return len(self.items)

    def _to_der(self) -> bytes:
        return _tlv(_TAG_SEQUENCE, b"".join(self.items))


@dataclass(frozen=True)
class PKIStatusInfo:
    """Status of a time-stamp response."""

    status: int
    status_string: PKIFreeText = field(default_factory=PKIFreeText)
    fail_info: Optional[tuple[int, ...]] = None

    def get_error(self) -> Optional[TimestampError]:
        """Return an error describing an unsuccessful status, or None."""
        if self.status == 0:
            return None
        return TimestampError(str(self))

    def __str__(self) -> str:
        fail = ""
        if self.fail_info:
            fail = " FailInfo(0b%s)" % "".join(str(b) for b in self.fail_info)
        status = ""
        if len(self.status_string):
            try:
                status = " StatusString(%s)" % ",".join(self.status_string.strings())
            except TimestampError:
                status = ""
        return f"Bad TimeStampResp: Status({self.status}){status}{fail}"

    def _to_der(self) -> bytes:
        body = _encode_int(self.status)
        if len(self.status_string):
            body += self.status_string._to_der()
        if self.fail_info is not None:
            bits = self.fail_info
            unused = (8 - len(bits) % 8) % 8
            padded = list(bits) + [0] * unused
            octets = bytes(
                int("".join(str(b) for b in padded[i:i + 8]), 2)
                for i in range(0, len(padded), 8)
            )
            body += _tlv(_TAG_BIT_STRING, bytes([unused]) + octets)
        return _tlv(_TAG_SEQUENCE, body)

    @classmethod
    def _from_element(cls, element: _Element) -> "PKIStatusInfo":
        cursor = _sequence(element)
        status = _decode_int(cursor.take(_TAG_INTEGER))
        text = PKIFreeText()
        strings = cursor.take_if(_TAG_SEQUENCE)
        if strings is not None:
            text = PKIFreeText(tuple(c.raw for c in _children(strings.content)))
        fail_info = None
        bit_string = cursor.take_if(_TAG_BIT_STRING)
        if bit_string is not None:
            content = bit_string.content
            if not content or content[0] > 7:
                raise TimestampError("invalid BIT STRING")
            total = (len(content) - 1) * 8 - content[0]
            fail_info = tuple(
                (content[1 + i // 8] >> (7 - i % 8)) & 1 for i in range(total)
            )
        if not cursor.done():
            raise TimestampError("trailing PKIStatusInfo fields")
        return cls(status, text, fail_info)


@dataclass(frozen=True)
class EncapsulatedContentInfo:
    """The content type and (optional) content of a CMS SignedData."""

    econtent_type: str
    econtent: Optional[bytes] = None


@dataclass
class Info:
    """A TSTInfo structure."""

    version: int
    policy: str
    message_imprint: MessageImprint
    serial_number: int
    gen_time: datetime
    accuracy: Accuracy = field(default_factory=Accuracy)
    ordering: bool = False
    nonce: Optional[int] = None
    tsa: Optional[bytes] = None
    extensions: Optional[bytes] = None

    def before(self, t: datetime) -> bool:
        """Whether the latest possible generation time is at or before t."""
        return self.gen_time_max() <= t

    def after(self, t: datetime) -> bool:
        """Whether the earliest possible generation time is at or after t."""
        return self.gen_time_min() >= t

    def gen_time_max(self) -> datetime:
        return self.gen_time + self.accuracy.duration()

    def gen_time_min(self) -> datetime:
        return self.gen_time - self.accuracy.duration()


def parse_info(eci: EncapsulatedContentInfo) -> Info:
    """Parse a TSTInfo out of an encapsulated content info."""
    if eci.econtent_type != OID_TST_INFO:
        raise TimestampError("wrong content type")
    if eci.econtent is None:
        raise TimestampError("missing EContent for non data type")
    cursor = _sequence(_parse_exact(eci.econtent))
    version = _decode_int(cursor.take(_TAG_INTEGER))
    policy = _decode_oid(cursor.take(_TAG_OID))
    imprint = MessageImprint._from_element(cursor.take(_TAG_SEQUENCE))
    serial = _decode_int(cursor.take(_TAG_INTEGER))
    gen_time = _decode_generalized_time(cursor.take(_TAG_GENERALIZED_TIME))
    accuracy = cursor.take_if(_TAG_SEQUENCE)
    ordering = cursor.take_if(_TAG_BOOLEAN)
    nonce = cursor.take_if(_TAG_INTEGER)
    tsa = cursor.take_if(0xA0)
    extensions = cursor.take_if(0xA1)
    if not cursor.done():
        raise TimestampError("trailing data")
    return Info(
        version=version,
        policy=policy,
        message_imprint=imprint,
        serial_number=serial,
        gen_time=gen_time,
        accuracy=Accuracy._from_element(accuracy) if accuracy else Accuracy(),
        ordering=bool(ordering and ordering.content != b"\x00"),
        nonce=_decode_int(nonce) if nonce else None,
        tsa=tsa.raw if tsa else None,
        extensions=extensions.raw if extensions else None,
    )


def _encapsulated_content(token: bytes) -> EncapsulatedContentInfo:
    content_info = _sequence(_parse_exact(token))
    if _decode_oid(content_info.take(_TAG_OID)) != OID_SIGNED_DATA:
        raise TimestampError("wrong content type")
    explicit = content_info.take(0xA0)
    signed_data = _sequence(_parse_exact(explicit.content))
    signed_data.take(_TAG_INTEGER)
    signed_data.take(0x31)
    eci = _sequence(signed_data.take(_TAG_SEQUENCE))
    econtent_type = _decode_oid(eci.take(_TAG_OID))
    wrapped = eci.take_if(0xA0)
    econtent = None
    if wrapped is not None:
        inner = _parse_exact(wrapped.content)
        if inner.tag != _TAG_OCTET_STRING:
            raise TimestampError("expected OCTET STRING eContent")
        econtent = inner.content
    return EncapsulatedContentInfo(econtent_type, econtent)


HTTPClient = Callable[[urllib.request.Request], object]


@dataclass
class Request:
    """A TimeStampReq."""

    version: int = 1
    message_imprint: Optional[MessageImprint] = None
    req_policy: Optional[str] = None
    nonce: Optional[int] = None
    cert_req: bool = False
    extensions: Optional[bytes] = None

    def matches(self, info: Info) -> bool:
        """Whether a TSTInfo's imprint and nonce match this request."""
        if self.message_imprint != info.message_imprint:
            return False
        return self.nonce == info.nonce

    def to_der(self) -> bytes:
        if self.message_imprint is None:
            raise TimestampError("missing message imprint")
        body = _encode_int(self.version) + self.message_imprint.to_der()
        if self.req_policy is not None:
            body += _encode_oid(self.req_policy)
        if self.nonce is not None:
            body += _encode_int(self.nonce)
        if self.cert_req:
            body += _tlv(_TAG_BOOLEAN, b"\xff")
        if self.extensions is not None:
            body += _tlv(0xA1, self.extensions)
        return _tlv(_TAG_SEQUENCE, body)

    def do(self, url: str, client: Optional[HTTPClient] = None) -> "Response":
        """POST this request to a time-stamp authority and parse the reply."""
        send = client or urllib.request.urlopen
        http_request = urllib.request.Request(
            url, data=self.to_der(), method="POST",
            headers={"Content-Type": CONTENT_TYPE_TS_QUERY},
        )
        reply = send(http_request)
        content_type = reply.headers.get("Content-Type")  # type: ignore[attr-defined]
        if content_type != CONTENT_TYPE_TS_REPLY:
            raise TimestampError(f"Bad content-type: {content_type}")
        return parse_response(reply.read())  # type: ignore[attr-defined]


@dataclass
class Response:
    """A TimeStampResp; the token is kept as DER-encoded ContentInfo."""

    status: PKIStatusInfo
    time_stamp_token: Optional[bytes] = None

    def info(self) -> Info:
        """Extract the TSTInfo without validating the signature."""
        error = self.status.get_error()
        if error is not None:
            raise error
        if self.time_stamp_token is None:
            raise TimestampError("missing TimeStampToken")
        return parse_info(_encapsulated_content(self.time_stamp_token))

    def to_der(self) -> bytes:
        return _tlv(_TAG_SEQUENCE, self.status._to_der() + (self.time_stamp_token or b""))


def parse_response(ber: bytes) -> Response:
    """Parse a BER-encoded TimeStampResp."""
    cursor = _sequence(_parse_exact(_ber_to_der(ber)))
    status = PKIStatusInfo._from_element(cursor.take(_TAG_SEQUENCE))
    token = cursor.take_if(_TAG_SEQUENCE)
    if not cursor.done():
        raise TimestampError("trailing data")
    return Response(status, token.raw if token else None)


def generate_nonce() -> int:
    """Return a random 128-bit nonce."""
    return int.from_bytes(secrets.token_bytes(NONCE_BYTES), "big")


def _iter_children(der: bytes) -> Iterator[bytes]:
    for child in _children(_parse_exact(der).content):
        yield child.raw