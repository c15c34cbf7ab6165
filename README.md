# rdpsweep

Building blocks for sweeping large IPv4 address spaces for RDP services.

## Modules

- `rdpsweep.blackrock`: `BlackRock(range_size, seed, rounds)` is a keyed,
  format-preserving permutation of `0 .. range_size - 1`. `shuffle(index)`
  maps an index to its shuffled position. `unshuffle(value)` maps it back.
  Both raise `ValueError` for numbers outside the range. If you walk an index
  upward and shuffle it, you visit every entry exactly once, in a scrambled
  order.
- `rdpsweep.ranges`: `Range` is an inclusive `[begin, end]` range, and
  `is_valid()` reports whether `begin <= end`. `RangeList` holds ranges of
  32-bit values such as addresses or ports:
  - `add_range(begin, end)` adds a range and folds it into the previous range
    when the two overlap or touch.
  - `sort()` orders the ranges and coalesces them.
  - `merge(other)` adds the ranges of another list.
  - `remove_range(begin, end)` removes a range.
  - `exclude(excludes)` removes everything that is in another list.
  - `contains(addr)` reports whether a value is in the list.
  - `count()` gives the total number of values.
  - `pick(index)` returns the n-th value across all ranges, and raises
    `IndexError` when the index is out of range.
  - `optimize()` precomputes offsets so that `pick` uses a binary search.
  - `clear()` empties the list.
- `rdpsweep.ipv4`: `parse_ipv4_range(line, offset=0)` parses a single address
  (`192.168.1.1`), a CIDR block (`192.168.1.0/24`) or a dashed range
  (`192.168.1.0-192.168.1.255`). It returns `(Range, next_offset)`.
  `aton4(host)` turns a dotted quad into four network-order bytes. Bad input
  raises `RangeParseError`, which is a subclass of `ValueError`.
- `rdpsweep.crypto`: the primitives of RDP standard security:
  - `RC4`;
  - `rsa_encrypt`, raw RSA on little-endian numbers;
  - the key derivations `hash_48`, `hash_16` and `hash_sha1_16`;
  - `hash_to_string`;
  - `make_40bit`;
  - the packet MAC `sign`;
  - `update_key`, the key update applied every 4096 packets;
  - `hmac_md5`;
  - `certificate_public_key`, which takes the RSA exponent and modulus out of
    a DER certificate.

  `SessionKeys.from_randoms(client_random, server_random, rc4_key_size)`
  derives the session keys. It then provides `encrypt`, `decrypt` and `sign`.
- `rdpsweep.secure`: the security layer on top of those primitives:
  - `build_mcs_data(ClientSettings(...), selected_protocol)` builds the
    client's conference-create user data, including any `Channel`s.
  - `parse_mcs_response(data)` returns a `ServerInfo` with the server version,
    the `ServerCryptInfo` and the raw channel data.
  - `parse_crypt_info(data)` and `parse_public_key(data)` parse the server's
    crypto block and proprietary RSA key.
  - `encrypt_client_random(client_random, crypt_info)` encrypts the client
    random with the server's RSA key.
  - `build_client_random_pdu(encrypted_random)` builds the PDU that carries
    the encrypted client random.
  - `wrap_pdu(payload, flags, keys, licence_done)` adds the security header
    and signs and encrypts the payload when `SEC_ENCRYPT` is set.

  Malformed data raises `SecurityError`.

## Installation

```
pip install .
```

## Example

```python
from rdpsweep.blackrock import BlackRock
from rdpsweep.ipv4 import parse_ipv4_range
from rdpsweep.ranges import RangeList

targets = RangeList()
block, _ = parse_ipv4_range("10.0.0.0/24")
targets.add_range(block.begin, block.end)

excludes = RangeList()
skipped, _ = parse_ipv4_range("10.0.0.100-10.0.0.119")
excludes.add_range(skipped.begin, skipped.end)
excludes.sort()

targets.exclude(excludes)
targets.optimize()

total = targets.count()
shuffler = BlackRock(total, seed=12345, rounds=14)
for i in range(total):
    addr = targets.pick(shuffler.shuffle(i))
    ...
```

## What it does not do

The package has no command-line program, and it opens no network connections.
It builds and parses the data of the security layer. Sending that data over
TCP and the transport and MCS layers is left to the caller, and so is
licensing.

Server key signatures and certificate chains are not verified. Certificates
are only checked to be readable, and the server's key is taken from the last
one.

There is no parser for port lists. Port ranges have to be added to a
`RangeList` with `add_range`.

## Running the tests

```
pip install .[test]
pytest
```