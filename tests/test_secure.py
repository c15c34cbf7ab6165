import datetime
import struct

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID

from rdpsweep.crypto import RC4, SessionKeys
from rdpsweep.secure import (
    SEC_CC_REDIRECT_SESSIONID_FIELD_VALID,
    SEC_CC_REDIRECT_VERSION_3,
    SEC_CC_REDIRECTION_SUPPORTED,
    SEC_CLIENT_RANDOM,
    SEC_ENCRYPT,
    SEC_RSA_MAGIC,
    SEC_TAG_CLI_CHANNELS,
    SEC_TAG_CLI_CLUSTER,
    SEC_TAG_CLI_CRYPT,
    SEC_TAG_CLI_INFO,
    SEC_TAG_PUBKEY,
    SEC_TAG_SRV_CRYPT,
    SEC_TAG_SRV_INFO,
    Channel,
    ClientSettings,
    SecurityError,
    ServerCryptInfo,
    build_client_random_pdu,
    build_mcs_data,
    encrypt_client_random,
    parse_crypt_info,
    parse_mcs_response,
    parse_public_key,
    wrap_pdu,
)

SERVER_RANDOM = bytes(range(32))
CLIENT_RANDOM = bytes(range(100, 132))


@pytest.fixture(scope="module")
def private_key():
    return rsa.generate_private_key(public_exponent=65537, key_size=1024)


@pytest.fixture(scope="module")
def certificate_der(private_key):
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, "test-server")])
    cert = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(private_key.public_key())
        .serial_number(1)
        .not_valid_before(datetime.datetime(2020, 1, 1))
        .not_valid_after(datetime.datetime(2030, 1, 1))
        .sign(private_key, hashes.SHA256())
    )
    return cert.public_bytes(serialization.Encoding.DER)


def _modulus(key):
    return key.public_key().public_numbers().n.to_bytes(128, "little")


def _exponent(key):
    return key.public_key().public_numbers().e.to_bytes(4, "little")


def _proprietary_key(modulus, exponent, magic=SEC_RSA_MAGIC):
    return (
        struct.pack("<II", magic, len(modulus) + 8)
        + bytes(8)
        + exponent
        + modulus
        + bytes(8)
    )


def _crypt_block(rsa_info, level=2, random=SERVER_RANDOM, rsa_len=None):
    length = len(rsa_info) if rsa_len is None else rsa_len
    return struct.pack("<IIII", 2, level, len(random), length) + random + rsa_info


def _rdp4_crypt(key):
    blob = _proprietary_key(_modulus(key), _exponent(key))
    rsa_info = struct.pack("<I", 1) + bytes(8) + struct.pack("<HH", SEC_TAG_PUBKEY, len(blob)) + blob
    return _crypt_block(rsa_info)


def _x509_crypt(ca_der, cert_der, count=2):
    rsa_info = (
        struct.pack("<II", 0x80000002, count)
        + struct.pack("<I", len(ca_der)) + ca_der
        + struct.pack("<I", len(cert_der)) + cert_der
        + bytes(16)
    )
    return _crypt_block(rsa_info)


def _response(*blocks):
    body = b"".join(struct.pack("<HH", tag, len(data) + 4) + data for tag, data in blocks)
    return bytes(21) + b"\x81\x2a" + body


def _client_blocks(data):
    pos = 23
    found = {}
    while pos < len(data):
        tag, length = struct.unpack_from("<HH", data, pos)
        found[tag] = data[pos + 4:pos + length]
        pos += length
    assert pos == len(data)
    return found


def test_mcs_data_starts_with_conference_header():
    data = build_mcs_data(ClientSettings(hostname="scanner"), 0)
    assert data[:7] == bytes([0, 5, 0, 0x14, 0x7C, 0, 1])
    assert data[17:21] == b"Duca"


@pytest.mark.parametrize("count", [0, 1, 3])
def test_mcs_data_length_fields_match_size(count):
    channels = tuple(Channel(f"ch{i}", i) for i in range(count))
    data = build_mcs_data(ClientSettings(channels=channels), 0)
    first = int.from_bytes(data[7:9], "big")
    second = int.from_bytes(data[21:23], "big")
    assert first & 0x8000 and second & 0x8000
    assert first & 0x7FFF == len(data) - 9
    assert second & 0x7FFF == len(data) - 23


def test_client_info_block_layout():
    data = build_mcs_data(ClientSettings(width=1024, height=768), 3)
    blocks = _client_blocks(data)
    info = blocks[SEC_TAG_CLI_INFO]
    assert len(info) + 4 == 216
    assert struct.unpack_from("<HH", info, 4) == (1024, 768)
    assert struct.unpack("<I", info[-4:]) == (3,)


@pytest.mark.parametrize("rdp5, version", [(True, 4), (False, 1)])
def test_client_info_version(rdp5, version):
    info = _client_blocks(build_mcs_data(ClientSettings(rdp5=rdp5), 0))[SEC_TAG_CLI_INFO]
    assert struct.unpack_from("<H", info, 0)[0] == version


def test_hostname_is_unicode_padded_to_32_bytes():
    info = _client_blocks(build_mcs_data(ClientSettings(hostname="scanner"), 0))[SEC_TAG_CLI_INFO]
    assert info[20:52] == "scanner".encode("utf-16-le").ljust(32, b"\0")


def test_long_hostname_is_truncated():
    info = _client_blocks(build_mcs_data(ClientSettings(hostname="h" * 40), 0))[SEC_TAG_CLI_INFO]
    field = info[20:52]
    assert field[:30] == ("h" * 15).encode("utf-16-le")
    assert field[30:] == b"\0\0"


def test_cluster_flags_without_session():
    cluster = _client_blocks(build_mcs_data(ClientSettings(), 0))[SEC_TAG_CLI_CLUSTER]
    flags, session = struct.unpack("<II", cluster)
    assert flags == SEC_CC_REDIRECTION_SUPPORTED | (SEC_CC_REDIRECT_VERSION_3 << 2)
    assert session == 0


def test_cluster_flags_with_console_session():
    cluster = _client_blocks(build_mcs_data(ClientSettings(console_session=True), 0))[SEC_TAG_CLI_CLUSTER]
    flags, _ = struct.unpack("<II", cluster)
    assert flags & SEC_CC_REDIRECT_SESSIONID_FIELD_VALID


def test_cluster_carries_redirect_session_id():
    cluster = _client_blocks(build_mcs_data(ClientSettings(redirect_session_id=7), 0))[SEC_TAG_CLI_CLUSTER]
    flags, session = struct.unpack("<II", cluster)
    assert session == 7
    assert flags & SEC_CC_REDIRECT_SESSIONID_FIELD_VALID


@pytest.mark.parametrize("encryption, methods", [(True, 3), (False, 0)])
def test_crypt_block(encryption, methods):
    crypt = _client_blocks(build_mcs_data(ClientSettings(encryption=encryption), 0))[SEC_TAG_CLI_CRYPT]
    assert struct.unpack("<II", crypt) == (methods, 0)


def test_channel_block():
    channels = (Channel("rdpdr", 0x80800000), Channel("cliprdr", 0xC0A00000))
    block = _client_blocks(build_mcs_data(ClientSettings(channels=channels), 0))[SEC_TAG_CLI_CHANNELS]
    assert struct.unpack_from("<I", block, 0)[0] == 2
    assert block[4:12] == b"rdpdr\0\0\0"
    assert struct.unpack_from(">I", block, 12)[0] == 0x80800000
    assert block[16:24] == b"cliprdr\0"


def test_channel_name_too_long():
    with pytest.raises(ValueError):
        build_mcs_data(ClientSettings(channels=(Channel("muchtoolong"),)), 0)


def test_no_channel_block_without_channels():
    assert SEC_TAG_CLI_CHANNELS not in _client_blocks(build_mcs_data(ClientSettings(), 0))


def test_parse_public_key_round_trip(private_key):
    exponent, modulus = parse_public_key(_proprietary_key(_modulus(private_key), _exponent(private_key)))
    assert modulus == _modulus(private_key)
    assert exponent == _exponent(private_key)


def test_parse_public_key_bad_magic(private_key):
    with pytest.raises(SecurityError):
        parse_public_key(_proprietary_key(_modulus(private_key), _exponent(private_key), magic=0x12345678))


def test_parse_public_key_too_small():
    with pytest.raises(SecurityError):
        parse_public_key(_proprietary_key(bytes(32), bytes(4)))


def test_parse_public_key_truncated(private_key):
    blob = _proprietary_key(_modulus(private_key), _exponent(private_key))
    with pytest.raises(SecurityError):
        parse_public_key(blob[:-10])


def test_crypt_info_no_encryption():
    assert parse_crypt_info(_crypt_block(b"", level=0)) is None


def test_crypt_info_bad_random_length():
    with pytest.raises(SecurityError):
        parse_crypt_info(_crypt_block(b"\x01\0\0\0", random=bytes(16)))


def test_crypt_info_rsa_info_overflows():
    with pytest.raises(SecurityError):
        parse_crypt_info(_crypt_block(b"\x01\0\0\0", rsa_len=1000))


def test_crypt_info_proprietary_key(private_key):
    info = parse_crypt_info(_rdp4_crypt(private_key))
    assert info.server_random == SERVER_RANDOM
    assert info.modulus == _modulus(private_key)
    assert info.exponent == _exponent(private_key)
    assert info.rc4_key_size == 2
    assert info.uses_certificate is False


def test_crypt_info_trailing_data_rejected(private_key):
    with pytest.raises(SecurityError):
        parse_crypt_info(_rdp4_crypt(private_key) + b"\0\0")


def test_crypt_info_certificate(private_key, certificate_der):
    info = parse_crypt_info(_x509_crypt(certificate_der, certificate_der))
    assert info.uses_certificate is True
    assert info.modulus == _modulus(private_key)
    assert info.exponent == _exponent(private_key)


def test_crypt_info_skips_intermediate_certificates(private_key, certificate_der):
    ignored = struct.pack("<I", 3) + b"bad"
    rsa_info = (
        struct.pack("<II", 0x80000002, 3)
        + ignored
        + struct.pack("<I", len(certificate_der)) + certificate_der
        + struct.pack("<I", len(certificate_der)) + certificate_der
        + bytes(16)
    )
    info = parse_crypt_info(_crypt_block(rsa_info))
    assert info.modulus == _modulus(private_key)


def test_crypt_info_too_few_certificates(certificate_der):
    with pytest.raises(SecurityError):
        parse_crypt_info(_x509_crypt(certificate_der, certificate_der, count=1))


def test_crypt_info_unreadable_ca(certificate_der):
    with pytest.raises(SecurityError):
        parse_crypt_info(_x509_crypt(b"\x30\x03\x02\x01\x00", certificate_der))


def test_encrypt_client_random_decrypts_with_private_key(private_key):
    info = parse_crypt_info(_rdp4_crypt(private_key))
    encrypted = encrypt_client_random(CLIENT_RANDOM, info)
    assert len(encrypted) == len(info.modulus)
    numbers = private_key.private_numbers()
    value = pow(int.from_bytes(encrypted, "little"), numbers.d, numbers.public_numbers.n)
    assert value.to_bytes(32, "little") == CLIENT_RANDOM


def test_encrypt_client_random_needs_key():
    info = ServerCryptInfo(2, 2, SERVER_RANDOM, b"", b"", False)
    with pytest.raises(SecurityError):
        encrypt_client_random(CLIENT_RANDOM, info)


def test_encrypt_client_random_needs_32_bytes(private_key):
    info = parse_crypt_info(_rdp4_crypt(private_key))
    with pytest.raises(SecurityError):
        encrypt_client_random(bytes(16), info)


def test_client_random_pdu_layout():
    encrypted = bytes(range(64))
    pdu = build_client_random_pdu(encrypted)
    assert struct.unpack_from("<II", pdu, 0) == (SEC_CLIENT_RANDOM, len(encrypted) + 8)
    assert pdu[8:8 + len(encrypted)] == encrypted
    assert pdu[8 + len(encrypted):] == bytes(8)


def test_wrap_pdu_plain_before_licence():
    assert wrap_pdu(b"payload", 0x40, None, False) == struct.pack("<I", 0x40) + b"payload"


def test_wrap_pdu_plain_after_licence():
    assert wrap_pdu(b"payload", 0, None, True) == b"payload"


def test_wrap_pdu_encrypted():
    keys = SessionKeys.from_randoms(CLIENT_RANDOM, SERVER_RANDOM, 2)
    reference = SessionKeys.from_randoms(CLIENT_RANDOM, SERVER_RANDOM, 2)
    pdu = wrap_pdu(b"hello", SEC_ENCRYPT, keys, True)
    assert struct.unpack_from("<I", pdu, 0)[0] == SEC_ENCRYPT
    assert pdu[4:12] == reference.sign(b"hello")
    assert RC4(reference.encrypt_key[:16]).crypt(pdu[12:]) == b"hello"
    assert keys.encrypt_use_count == 1


def test_wrap_pdu_encrypt_without_keys():
    with pytest.raises(SecurityError):
        wrap_pdu(b"hello", SEC_ENCRYPT, None, False)


def test_mcs_response_version_and_crypt(private_key):
    data = _response(
        (SEC_TAG_SRV_INFO, struct.pack("<HH", 4, 8) + bytes(4)),
        (SEC_TAG_SRV_CRYPT, _rdp4_crypt(private_key)),
    )
    info = parse_mcs_response(data)
    assert (info.major_version, info.minor_version) == (4, 8)
    assert info.rdp4_only is False
    assert info.crypt_info.modulus == _modulus(private_key)
    assert info.crypt_error is None


def test_mcs_response_rdp4_server():
    info = parse_mcs_response(_response((SEC_TAG_SRV_INFO, struct.pack("<HH", 1, 0))))
    assert info.rdp4_only is True
    assert info.crypt_info is None


def test_mcs_response_records_crypt_failure():
    bad = _crypt_block(b"\x01\0\0\0", random=bytes(16))
    info = parse_mcs_response(_response((SEC_TAG_SRV_CRYPT, bad)))
    assert info.crypt_info is None
    assert "random len" in info.crypt_error


def test_mcs_response_stops_at_short_block():
    data = _response((SEC_TAG_SRV_INFO, struct.pack("<HH", 4, 1))) + struct.pack("<HH", SEC_TAG_SRV_INFO, 4) + b"junk"
    info = parse_mcs_response(data)
    assert info.minor_version == 1


def test_mcs_response_truncated_block():
    data = _response((SEC_TAG_SRV_INFO, struct.pack("<HH", 4, 1)))
    with pytest.raises(SecurityError):
        parse_mcs_response(data[:-2])