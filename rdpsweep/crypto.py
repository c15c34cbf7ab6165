"""Cryptographic primitives of the RDP standard security layer.

Covers RC4, raw little-endian RSA, the SSLv3-like key derivation
(SHA-1 and MD5 combined), the packet MAC, periodic key updates and
extraction of the RSA public key from a server certificate.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
from dataclasses import dataclass, field

from cryptography import x509

logger = logging.getLogger(__name__)

RANDOM_SIZE = 32
EXPONENT_SIZE = 4
MAX_MODULUS_SIZE = 256
KEY_UPDATE_INTERVAL = 4096

_PAD_54 = bytes([54]) * 40
_PAD_92 = bytes([92]) * 48
_40BIT_PREFIX = b"\xd1\x26\x9e"

_OID_RSA_ENCRYPTION = bytes.fromhex("2a864886f70d010101")
_OID_MD5_WITH_RSA = bytes.fromhex("2a864886f70d010104")
_OID_SHA_WITH_RSA = bytes.fromhex("2b0e03020f")
_RSA_KEY_OIDS = {_OID_RSA_ENCRYPTION, _OID_MD5_WITH_RSA, _OID_SHA_WITH_RSA}


def _md5(*parts: bytes) -> bytes:
    digest = hashlib.md5(usedforsecurity=False)
    for part in parts:
        digest.update(part)
    return digest.digest()


def _sha1(*parts: bytes) -> bytes:
    digest = hashlib.sha1(usedforsecurity=False)
    for part in parts:
        digest.update(part)
    return digest.digest()


def _exact(name: str, value: bytes, size: int) -> bytes:
    value = bytes(value)
    if len(value) != size:
        raise ValueError(f"{name} must be {size} bytes, got {len(value)}")
    return value


class RC4:
    """An RC4 stream cipher; successive calls continue the key stream."""

    def __init__(self, key: bytes) -> None:
        key = bytes(key)
        if not key:
            raise ValueError("RC4 key must not be empty")
        state = list(range(256))
        j = 0
        for i in range(256):
            j = (j + state[i] + key[i % len(key)]) & 0xFF
            state[i], state[j] = state[j], state[i]
        self._state = state
        self._i = 0
        self._j = 0

    def crypt(self, data: bytes) -> bytes:
        """Encrypt or decrypt ``data`` (the operation is its own inverse)."""
        state = self._state
        i, j = self._i, self._j
        out = bytearray()
        for byte in bytes(data):
            i = (i + 1) & 0xFF
            j = (j + state[i]) & 0xFF
            state[i], state[j] = state[j], state[i]
            out.append(byte ^ state[(state[i] + state[j]) & 0xFF])
        self._i, self._j = i, j
        return bytes(out)


def rsa_encrypt(data: bytes, modulus: bytes, exponent: bytes) -> bytes:
    """Raw RSA on little-endian numbers; the result is as long as the modulus."""
    n = int.from_bytes(bytes(modulus), "little")
    if n == 0:
        raise ValueError("RSA modulus must not be zero")
    e = int.from_bytes(bytes(exponent), "little")
    x = int.from_bytes(bytes(data), "little")
    return pow(x, e, n).to_bytes(len(modulus), "little")


def hash_48(data: bytes, salt1: bytes, salt2: bytes, salt: int | str) -> bytes:
    """The 48-byte transformation used for the master secret and key block."""
    data = _exact("data", data, 48)
    salt1 = _exact("salt1", salt1, RANDOM_SIZE)
    salt2 = _exact("salt2", salt2, RANDOM_SIZE)
    base = ord(salt) if isinstance(salt, str) else salt
    out = bytearray()
    for i in range(3):
        pad = bytes([(base + i) & 0xFF]) * (i + 1)
        shasig = _sha1(pad, data, salt1, salt2)
        out += _md5(data, shasig)
    return bytes(out)


def hash_16(data: bytes, salt1: bytes, salt2: bytes) -> bytes:
    """The 16-byte transformation used to derive export keys."""
    return _md5(
        _exact("data", data, 16),
        _exact("salt1", salt1, RANDOM_SIZE),
        _exact("salt2", salt2, RANDOM_SIZE),
    )


def hash_sha1_16(data: bytes, salt1: bytes) -> bytes:
    """SHA-1 over two 16-byte blocks."""
    return _sha1(_exact("data", data, 16), _exact("salt1", salt1, 16))


def hash_to_string(data: bytes) -> str:
    """Lower-case hexadecimal text of a hash."""
    return bytes(data).hex()


def make_40bit(key: bytes) -> bytes:
    """Reduce key entropy from 64 to 40 bits by fixing the first three bytes."""
    key = bytes(key)
    if len(key) < 3:
        raise ValueError("key must be at least 3 bytes")
    return _40BIT_PREFIX + key[3:]


def sign(session_key: bytes, data: bytes, siglen: int) -> bytes:
    """The packet MAC: SHA-1 then MD5 over the key, pads, length and data."""
    if not 0 <= siglen <= 16:
        raise ValueError("signature length must be between 0 and 16")
    session_key = bytes(session_key)
    data = bytes(data)
    lenhdr = (len(data) & 0xFFFFFFFF).to_bytes(4, "little")
    shasig = _sha1(session_key, _PAD_54, lenhdr, data)
    return _md5(session_key, _PAD_92, shasig)[:siglen]


def update_key(key: bytes, update_key: bytes, key_len: int) -> bytes:
    """Derive the next RC4 key from the current one and its update key."""
    if key_len not in (8, 16):
        raise ValueError("key length must be 8 or 16")
    key = _exact("key", key, 16)
    base = _exact("update key", update_key, 16)[:key_len]
    shasig = _sha1(base, _PAD_54, key[:key_len])
    fresh = _md5(base, _PAD_92, shasig)
    head = RC4(fresh[:key_len]).crypt(fresh[:key_len])
    result = head + fresh[key_len:]
    if key_len == 8:
        result = make_40bit(result)
    return result


def hmac_md5(key: bytes, msg: bytes) -> bytes:
    """HMAC with MD5."""
    return hmac.new(bytes(key), bytes(msg), "md5").digest()


def _read_tlv(data: bytes, pos: int) -> tuple[int, int, int]:
    """Read one DER element; return its tag, content start and content end."""
    if pos + 2 > len(data):
        raise ValueError("truncated DER element")
    tag = data[pos]
    length = data[pos + 1]
    pos += 2
    if length & 0x80:
        count = length & 0x7F
        if count == 0 or pos + count > len(data):
            raise ValueError("bad DER length")
        length = int.from_bytes(data[pos:pos + count], "big")
        pos += count
    end = pos + length
    if end > len(data):
        raise ValueError("truncated DER element")
    return tag, pos, end


def _children(data: bytes, start: int, end: int) -> list[tuple[int, int, int]]:
    items = []
    while start < end:
        item = _read_tlv(data, start)
        items.append(item)
        start = item[2]
    return items


def _subject_text(cert: x509.Certificate) -> str:
    try:
        return cert.subject.rfc4514_string()
    except ValueError:
        return ""


def certificate_public_key(der: bytes) -> tuple[bytes, bytes]:
    """Extract the RSA key of a DER certificate as little-endian bytes.

    Returns ``(exponent, modulus)``: the exponent padded to four bytes,
    the modulus as long as the key. Certificates that label the key
    with an RSA signature algorithm instead of plain RSA are accepted.
    """
    der = bytes(der)
    try:
        cert = x509.load_der_x509_certificate(der)
    except ValueError as exc:
        raise ValueError(f"cannot read certificate: {exc}") from exc
    subject = _subject_text(cert)
    if subject:
        logger.info("subject = %s", subject)
    else:
        logger.info("can't get certificate subject name")

    tbs = cert.tbs_certificate_bytes
    tag, start, end = _read_tlv(tbs, 0)
    fields = _children(tbs, start, end)
    if fields and fields[0][0] == 0xA0:
        fields = fields[1:]
    if len(fields) < 6:
        raise ValueError("certificate has no public key")
    _, spki_start, spki_end = fields[5]
    spki = _children(tbs, spki_start, spki_end)
    if len(spki) < 2 or spki[0][0] != 0x30 or spki[1][0] != 0x03:
        raise ValueError("malformed public key info")
    alg = _children(tbs, spki[0][1], spki[0][2])
    if not alg or alg[0][0] != 0x06:
        raise ValueError("malformed public key algorithm")
    oid = tbs[alg[0][1]:alg[0][2]]
    if oid not in _RSA_KEY_OIDS:
        raise ValueError("failed to extract public-key: not an RSA key")

    bits = tbs[spki[1][1]:spki[1][2]]
    if not bits or bits[0] != 0:
        raise ValueError("malformed public key bit string")
    key_der = bits[1:]
    _, key_start, key_end = _read_tlv(key_der, 0)
    numbers = _children(key_der, key_start, key_end)
    if len(numbers) < 2 or numbers[0][0] != 0x02 or numbers[1][0] != 0x02:
        raise ValueError("malformed RSA public key")
    n = int.from_bytes(key_der[numbers[0][1]:numbers[0][2]], "big")
    e = int.from_bytes(key_der[numbers[1][1]:numbers[1][2]], "big")
    mod_len = (n.bit_length() + 7) // 8
    exp_len = (e.bit_length() + 7) // 8
    if exp_len > EXPONENT_SIZE or mod_len > MAX_MODULUS_SIZE:
        raise ValueError("problem extracting RSA exponent, modulus")
    return e.to_bytes(EXPONENT_SIZE, "little"), n.to_bytes(mod_len, "little")


@dataclass
class SessionKeys:
    """Signing and RC4 keys of one session, with their update schedule."""

    sign_key: bytes
    encrypt_key: bytes
    decrypt_key: bytes
    encrypt_update_key: bytes
    decrypt_update_key: bytes
    key_len: int
    encrypt_use_count: int = 0
    decrypt_use_count: int = 0
    _encryptor: RC4 = field(init=False, repr=False)
    _decryptor: RC4 = field(init=False, repr=False)

    def __post_init__(self) -> None:
        self._encryptor = RC4(self.encrypt_key[:self.key_len])
        self._decryptor = RC4(self.decrypt_key[:self.key_len])

    @classmethod
    def from_randoms(
        cls, client_random: bytes, server_random: bytes, rc4_key_size: int
    ) -> SessionKeys:
        """Derive the keys from the two 32-byte randoms.

        A key size of 1 selects 40-bit keys; anything else 128-bit.
        """
        client_random = _exact("client random", client_random, RANDOM_SIZE)
        server_random = _exact("server random", server_random, RANDOM_SIZE)
        pre_master = client_random[:24] + server_random[:24]
        master = hash_48(pre_master, client_random, server_random, "A")
        key_block = hash_48(master, client_random, server_random, "X")

        sign_key = key_block[:16]
        decrypt_key = hash_16(key_block[16:32], client_random, server_random)
        encrypt_key = hash_16(key_block[32:48], client_random, server_random)

        if rc4_key_size == 1:
            logger.debug("40-bit encryption enabled")
            sign_key = make_40bit(sign_key)
            decrypt_key = make_40bit(decrypt_key)
            encrypt_key = make_40bit(encrypt_key)
            key_len = 8
        else:
            logger.debug("128-bit encryption enabled")
            key_len = 16

        return cls(
            sign_key=sign_key,
            encrypt_key=encrypt_key,
            decrypt_key=decrypt_key,
            encrypt_update_key=encrypt_key,
            decrypt_update_key=decrypt_key,
            key_len=key_len,
        )

    def encrypt(self, data: bytes) -> bytes:
        """Encrypt one outgoing packet, updating the key every 4096 packets."""
        if self.encrypt_use_count == KEY_UPDATE_INTERVAL:
            self.encrypt_key = update_key(
                self.encrypt_key, self.encrypt_update_key, self.key_len
            )
            self._encryptor = RC4(self.encrypt_key[:self.key_len])
            self.encrypt_use_count = 0
        result = self._encryptor.crypt(data)
        self.encrypt_use_count += 1
        return result

    def decrypt(self, data: bytes) -> bytes:
        """Decrypt one incoming packet, updating the key every 4096 packets."""
        if self.decrypt_use_count == KEY_UPDATE_INTERVAL:
            self.decrypt_key = update_key(
                self.decrypt_key, self.decrypt_update_key, self.key_len
            )
            self._decryptor = RC4(self.decrypt_key[:self.key_len])
            self.decrypt_use_count = 0
        result = self._decryptor.crypt(data)
        self.decrypt_use_count += 1
        return result

    def sign(self, data: bytes) -> bytes:
        """The 8-byte MAC of a packet under the session's signing key."""
        return sign(self.sign_key[:self.key_len], data, 8)