"""The RDP standard security layer: connect data, server crypto info and PDUs.

Builds the client's GCC conference-create user data, parses the server's
response (version and crypto information, including RSA keys sent in
the proprietary format or in X.509 certificates), encrypts the client
random, and wraps outgoing PDUs with the security header, MAC and RC4
encryption.
"""

from __future__ import annotations

import logging
import struct
from dataclasses import dataclass, field

from cryptography import x509

from rdpsweep.crypto import (
    EXPONENT_SIZE,
    MAX_MODULUS_SIZE,
    RANDOM_SIZE,
    SessionKeys,
    certificate_public_key,
    rsa_encrypt,
)

logger = logging.getLogger(__name__)

SEC_CLIENT_RANDOM = 0x0001
SEC_ENCRYPT = 0x0008
SEC_LICENCE_NEG = 0x0080

SEC_RSA_MAGIC = 0x31415352
SEC_PADDING_SIZE = 8
SEC_MODULUS_SIZE = 64

SEC_TAG_SRV_INFO = 0x0C01
SEC_TAG_SRV_CRYPT = 0x0C02
SEC_TAG_SRV_CHANNELS = 0x0C03

SEC_TAG_CLI_INFO = 0xC001
SEC_TAG_CLI_CRYPT = 0xC002
SEC_TAG_CLI_CHANNELS = 0xC003
SEC_TAG_CLI_CLUSTER = 0xC004

SEC_TAG_PUBKEY = 0x0006
SEC_TAG_KEYSIG = 0x0008

SEC_CC_REDIRECTION_SUPPORTED = 0x00000001
SEC_CC_REDIRECT_SESSIONID_FIELD_VALID = 0x00000002
SEC_CC_REDIRECT_VERSION_3 = 0x02

_CLIENT_INFO_LENGTH = 216
_HOSTNAME_FIELD = 32
_MAX_HOSTNAME_CHARS = 15


class SecurityError(Exception):
    """Raised when security-layer data is malformed or unacceptable."""


@dataclass(frozen=True)
class Channel:
    """A static virtual channel requested by the client."""

    name: str
    flags: int = 0

    def encoded_name(self) -> bytes:
        """The channel name as the 8-byte field sent on the wire."""
        raw = self.name.encode("ascii")
        if len(raw) > 8:
            raise ValueError(f"channel name {self.name!r} is longer than 8 bytes")
        return raw.ljust(8, b"\0")


@dataclass(frozen=True)
class ClientSettings:
    """What the client announces about itself in the connect data."""

    hostname: str = ""
    width: int = 800
    height: int = 600
    keylayout: int = 0x409
    keyboard_type: int = 4
    keyboard_subtype: int = 0
    keyboard_functionkeys: int = 12
    rdp5: bool = True
    server_depth: int = 16
    console_session: bool = False
    redirect_session_id: int = 0
    encryption: bool = True
    channels: tuple[Channel, ...] = ()


@dataclass(frozen=True)
class ServerCryptInfo:
    """The server's encryption settings, random and RSA public key."""

    rc4_key_size: int
    crypt_level: int
    server_random: bytes
    exponent: bytes
    modulus: bytes
    uses_certificate: bool


@dataclass
class ServerInfo:
    """What the server said in its connect response."""

    major_version: int = 0
    minor_version: int = 0
    crypt_info: ServerCryptInfo | None = None
    crypt_error: str | None = None
    channel_data: bytes | None = None

    @property
    def rdp4_only(self) -> bool:
        """True when the server speaks only RDP version 4 (8-bit colour)."""
        return self.major_version == 1


class _Reader:
    """Little-endian reads from a byte string, raising on truncation."""

    def __init__(self, data: bytes) -> None:
        self.data = bytes(data)
        self.pos = 0

    @property
    def remaining(self) -> int:
        return len(self.data) - self.pos

    def take(self, count: int) -> bytes:
        if count < 0 or self.pos + count > len(self.data):
            raise SecurityError(
                f"truncated data: need {count} bytes at offset {self.pos}"
            )
        chunk = self.data[self.pos:self.pos + count]
        self.pos += count
        return chunk

    def skip(self, count: int) -> None:
        self.take(count)

    def u8(self) -> int:
        return self.take(1)[0]

    def u16(self) -> int:
        return int.from_bytes(self.take(2), "little")

    def u32(self) -> int:
        return int.from_bytes(self.take(4), "little")


def _hostname_field(hostname: str) -> bytes:
    host = hostname[:_MAX_HOSTNAME_CHARS]
    hostlen = min(2 * len(host), 30)
    return host.encode("utf-16-le")[:hostlen].ljust(_HOSTNAME_FIELD, b"\0")


def build_mcs_data(settings: ClientSettings, selected_protocol: int) -> bytes:
    """Build the GCC conference-create request carrying the client data blocks."""
    channels = settings.channels
    length = 162 + 76 + 12 + 4
    if channels:
        length += len(channels) * 12 + 8

    out = bytearray()
    out += struct.pack(">HHBH", 5, 0x14, 0x7C, 1)
    out += struct.pack(">H", length | 0x8000)
    out += struct.pack(">HHB", 8, 16, 0)
    out += struct.pack("<H", 0xC001)
    out += b"\0"
    out += struct.pack("<I", 0x61637544)  # OEM id "Duca"
    out += struct.pack(">H", (length - 14) | 0x8000)

    out += struct.pack(
        "<HHHHHHHHII",
        SEC_TAG_CLI_INFO,
        _CLIENT_INFO_LENGTH,
        4 if settings.rdp5 else 1,
        8,
        settings.width,
        settings.height,
        0xCA01,
        0xAA03,
        settings.keylayout,
        2600,
    )
    out += _hostname_field(settings.hostname)
    out += struct.pack(
        "<III",
        settings.keyboard_type,
        settings.keyboard_subtype,
        settings.keyboard_functionkeys,
    )
    out += bytes(64)
    out += struct.pack("<HHI", 0xCA01, 1, 0)
    out += struct.pack("<BHBI", settings.server_depth, 0x0700, 0, 1)
    out += bytes(64)
    out += struct.pack("<I", selected_protocol)

    cluster_flags = SEC_CC_REDIRECTION_SUPPORTED | (SEC_CC_REDIRECT_VERSION_3 << 2)
    if settings.console_session or settings.redirect_session_id != 0:
        cluster_flags |= SEC_CC_REDIRECT_SESSIONID_FIELD_VALID
    out += struct.pack(
        "<HHII", SEC_TAG_CLI_CLUSTER, 12, cluster_flags, settings.redirect_session_id
    )

    out += struct.pack(
        "<HHII", SEC_TAG_CLI_CRYPT, 12, 0x3 if settings.encryption else 0, 0
    )

    if channels:
        logger.debug("requesting %d channels", len(channels))
        out += struct.pack(
            "<HHI", SEC_TAG_CLI_CHANNELS, len(channels) * 12 + 8, len(channels)
        )
        for channel in channels:
            logger.debug("requesting channel %s", channel.name)
            out += channel.encoded_name()
            out += struct.pack(">I", channel.flags)

    return bytes(out)


def _parse_public_key(reader: _Reader) -> tuple[bytes, bytes]:
    magic = reader.u32()
    if magic != SEC_RSA_MAGIC:
        raise SecurityError(f"RSA magic 0x{magic:x}")
    modulus_len = reader.u32() - SEC_PADDING_SIZE
    if not SEC_MODULUS_SIZE <= modulus_len <= MAX_MODULUS_SIZE:
        raise SecurityError(
            f"Bad server public key size ({modulus_len * 8} bits)"
        )
    reader.skip(8)
    exponent = reader.take(EXPONENT_SIZE)
    modulus = reader.take(modulus_len)
    reader.skip(SEC_PADDING_SIZE)
    return exponent, modulus


def parse_public_key(data: bytes) -> tuple[bytes, bytes]:
    """Parse a proprietary RSA public key blob; return ``(exponent, modulus)``."""
    return _parse_public_key(_Reader(data))


def _parse_proprietary(reader: _Reader, end: int) -> tuple[bytes, bytes]:
    reader.skip(8)
    exponent = b""
    modulus = b""
    while reader.pos < end:
        tag = reader.u16()
        length = reader.u16()
        next_tag = reader.pos + length
        if tag == SEC_TAG_PUBKEY:
            exponent, modulus = _parse_public_key(_Reader(reader.data[reader.pos:]))
            logger.debug("got public key, RDP4-style")
        elif tag == SEC_TAG_KEYSIG:
            logger.debug("server key signature present; not verified")
        else:
            logger.debug("unimplemented crypt tag 0x%x", tag)
        reader.pos = next_tag
    if reader.pos != len(reader.data):
        raise SecurityError("crypto information does not end where expected")
    return exponent, modulus


def _load_certificate(der: bytes, what: str) -> x509.Certificate:
    try:
        return x509.load_der_x509_certificate(der)
    except ValueError as exc:
        raise SecurityError(f"Couldn't load {what} from server") from exc


def _parse_certificates(reader: _Reader) -> tuple[bytes, bytes]:
    count = reader.u32()
    if count < 2:
        raise SecurityError("Server didn't send enough X509 certificates")
    for left in range(count, 2, -1):
        ignored = reader.take(reader.u32())
        logger.debug("ignoring certificate, %d left", left)
        try:
            x509.load_der_x509_certificate(ignored)
        except ValueError:
            logger.debug("got a bad intermediate certificate")

    _load_certificate(reader.take(reader.u32()), "CA Certificate")
    server_der = reader.take(reader.u32())
    _load_certificate(server_der, "Certificate")
    try:
        exponent, modulus = certificate_public_key(server_der)
    except ValueError as exc:
        raise SecurityError(f"Didn't parse X509 correctly: {exc}") from exc
    reader.skip(16)
    if not SEC_MODULUS_SIZE <= len(modulus) <= MAX_MODULUS_SIZE:
        raise SecurityError(
            f"Bad server public key size ({len(modulus) * 8} bits)"
        )
    return exponent, modulus


def parse_crypt_info(data: bytes) -> ServerCryptInfo | None:
    """Parse the server security data block.

    Returns None when the server selects no encryption.
    """
    reader = _Reader(data)
    rc4_key_size = reader.u32()
    crypt_level = reader.u32()
    if crypt_level == 0:
        return None
    random_len = reader.u32()
    rsa_info_len = reader.u32()
    if random_len != RANDOM_SIZE:
        raise SecurityError(f"random len {random_len}, expected {RANDOM_SIZE}")
    server_random = reader.take(random_len)

    end = reader.pos + rsa_info_len
    if end > len(reader.data):
        raise SecurityError("RSA information extends past the end of the data")

    flags = reader.u32()
    if flags & 1:
        logger.info("RDP4 encryption w/ RSA and RC4")
        exponent, modulus = _parse_proprietary(reader, end)
        uses_certificate = False
    else:
        logger.info("RDP5 encryption w/ certificate")
        exponent, modulus = _parse_certificates(reader)
        uses_certificate = True

    return ServerCryptInfo(
        rc4_key_size=rc4_key_size,
        crypt_level=crypt_level,
        server_random=server_random,
        exponent=exponent,
        modulus=modulus,
        uses_certificate=uses_certificate,
    )


def parse_mcs_response(data: bytes) -> ServerInfo:
    """Parse the server data blocks of a conference-create response."""
    reader = _Reader(data)
    reader.skip(21)
    length_byte = reader.u8()
    if length_byte & 0x80:
        reader.u8()

    info = ServerInfo()
    while reader.remaining > 0:
        tag = reader.u16()
        length = reader.u16()
        if length <= 4:
            break
        block = reader.take(length - 4)
        if tag == SEC_TAG_SRV_INFO:
            block_reader = _Reader(block)
            info.major_version = block_reader.u16()
            info.minor_version = block_reader.u16()
            logger.info("[+] version = v%u.%u", info.major_version, info.minor_version)
        elif tag == SEC_TAG_SRV_CRYPT:
            try:
                info.crypt_info = parse_crypt_info(block)
            except SecurityError as exc:
                logger.debug("failed to parse crypt info: %s", exc)
                info.crypt_error = str(exc)
        elif tag == SEC_TAG_SRV_CHANNELS:
            info.channel_data = block
        else:
            logger.debug("unimplemented response tag 0x%x", tag)
    return info


def encrypt_client_random(client_random: bytes, crypt_info: ServerCryptInfo) -> bytes:
    """Encrypt the client random with the server's RSA key."""
    client_random = bytes(client_random)
    if len(client_random) != RANDOM_SIZE:
        raise SecurityError(f"client random must be {RANDOM_SIZE} bytes")
    if not crypt_info.modulus:
        raise SecurityError("server sent no public key")
    return rsa_encrypt(client_random, crypt_info.modulus, crypt_info.exponent)


def wrap_pdu(
    payload: bytes,
    flags: int,
    keys: SessionKeys | None,
    licence_done: bool,
) -> bytes:
    """Add the security header to a PDU, signing and encrypting it if asked."""
    payload = bytes(payload)
    header = b""
    if not licence_done or flags & SEC_ENCRYPT:
        header = struct.pack("<I", flags & 0xFFFFFFFF)
    if flags & SEC_ENCRYPT:
        if keys is None:
            raise SecurityError("encryption requested without session keys")
        signature = keys.sign(payload)
        return header + signature + keys.encrypt(payload)
    return header + payload


def build_client_random_pdu(
    encrypted_random: bytes, flags: int = SEC_CLIENT_RANDOM
) -> bytes:
    """Build the PDU that carries the encrypted client random to the server."""
    encrypted_random = bytes(encrypted_random)
    body = (
        struct.pack("<I", len(encrypted_random) + SEC_PADDING_SIZE)
        + encrypted_random
        + bytes(SEC_PADDING_SIZE)
    )
    return wrap_pdu(body, flags, None, False)


__all__ = [
    "Channel",
    "ClientSettings",
    "SecurityError",
    "ServerCryptInfo",
    "ServerInfo",
    "build_client_random_pdu",
    "build_mcs_data",
    "encrypt_client_random",
    "parse_crypt_info",
    "parse_mcs_response",
    "parse_public_key",
    "wrap_pdu",
]

_ = field  # dataclass helpers imported for type completeness