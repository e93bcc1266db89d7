"""Key derivation for KeeNotes envelopes.

This module contains a from-scratch implementation of the Argon2 memory-hard
function (RFC 9106, version 0x13) built only on hashlib's BLAKE2b, and the
two-stage envelope key derivation (Argon2id followed by HKDF-SHA256).

The Argon2 parameters used for envelopes are a frozen interop contract shared
with every other KeeNotes client. Changing any of them makes existing notes
undecryptable.
"""

from __future__ import annotations

import hashlib
import logging
import struct
from array import array
from dataclasses import dataclass
from enum import IntEnum
from typing import List, Optional

from argon2.low_level import Type, hash_secret_raw
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

logger = logging.getLogger(__name__)

__all__ = [
    "Argon2Type",
    "Argon2Params",
    "ENVELOPE_ARGON2_PARAMS",
    "HKDF_INFO",
    "KEY_LENGTH",
    "KDF_BACKENDS",
    "DEFAULT_KDF_BACKEND",
    "argon2_hash",
    "blake2b_long",
    "derive_key",
]

ARGON2_VERSION = 0x13
SYNC_POINTS = 4
BLOCK_SIZE = 1024
QWORDS_IN_BLOCK = BLOCK_SIZE // 8
ADDRESSES_IN_BLOCK = 128
PREHASH_DIGEST_LENGTH = 64

KEY_LENGTH = 32
HKDF_INFO = b"KeeNotes-E2E-Encryption-v2"

KDF_BACKENDS = ("python", "argon2-cffi")

# The built-in Argon2 takes about a minute per key at the envelope parameters
DEFAULT_KDF_BACKEND = "argon2-cffi"

_M32 = 0xFFFFFFFF
_M64 = 0xFFFFFFFFFFFFFFFF


class Argon2Type(IntEnum):
    """Argon2 variants, valued as in the reference implementation."""

    D = 0
    I = 1
    ID = 2


@dataclass(frozen=True)
class Argon2Params:
    """Cost parameters for one Argon2 invocation.

    Attributes:
        time_cost: Number of passes over memory
        memory_cost: Memory size in KiB (one block per KiB)
        parallelism: Number of lanes
        hash_len: Output length in bytes
        type: Argon2 variant
    """

    time_cost: int
    memory_cost: int
    parallelism: int
    hash_len: int
    type: Argon2Type = Argon2Type.ID


ENVELOPE_ARGON2_PARAMS = Argon2Params(
    time_cost=3,
    memory_cost=65536,
    parallelism=1,
    hash_len=KEY_LENGTH,
    type=Argon2Type.ID,
)


def _le32(value: int) -> bytes:
    return struct.pack("<I", value)


def blake2b_long(data: bytes, out_len: int) -> bytes:
    """Variable-length hash H' built from BLAKE2b.

    Args:
        data: Input bytes
        out_len: Requested digest length in bytes

    Returns:
        Digest of exactly out_len bytes
    """
    prefixed = _le32(out_len) + data
    if out_len <= 64:
        return hashlib.blake2b(prefixed, digest_size=out_len).digest()

    # Chain 64-byte digests, keeping the first half of each
    rounds = (out_len + 31) // 32 - 2
    v = hashlib.blake2b(prefixed, digest_size=64).digest()
    out = [v[:32]]
    for _ in range(1, rounds):
        v = hashlib.blake2b(v, digest_size=64).digest()
        out.append(v[:32])
    out.append(hashlib.blake2b(v, digest_size=out_len - 32 * rounds).digest())
    return b"".join(out)


def _build_schedule() -> List[tuple]:
    """Word indices for the 128 GB calls that make up one compression."""

    def permutation(idx: List[int]) -> List[tuple]:
        v = idx
        return [
            (v[0], v[4], v[8], v[12]),
            (v[1], v[5], v[9], v[13]),
            (v[2], v[6], v[10], v[14]),
            (v[3], v[7], v[11], v[15]),
            (v[0], v[5], v[10], v[15]),
            (v[1], v[6], v[11], v[12]),
            (v[2], v[7], v[8], v[13]),
            (v[3], v[4], v[9], v[14]),
        ]

    schedule: List[tuple] = []
    # Rows: eight consecutive 128-byte registers
    for row in range(8):
        schedule.extend(permutation([16 * row + k for k in range(16)]))
    # Columns: word pairs (2i, 2i+1) taken from every row
    for col in range(8):
        indices = []
        for row in range(8):
            indices.append(16 * row + 2 * col)
            indices.append(16 * row + 2 * col + 1)
        schedule.extend(permutation(indices))
    return schedule


_SCHEDULE = _build_schedule()


def _permute(r: List[int]) -> List[int]:
    """Apply the BLAKE2b-derived permutation P to rows then columns."""
    v = list(r)
    for a, b, c, d in _SCHEDULE:
        va = v[a]
        vb = v[b]
        vc = v[c]
        vd = v[d]

        va = (va + vb + 2 * (va & _M32) * (vb & _M32)) & _M64
        vd ^= va
        vd = (vd >> 32) | ((vd << 32) & _M64)
        vc = (vc + vd + 2 * (vc & _M32) * (vd & _M32)) & _M64
        vb ^= vc
        vb = (vb >> 24) | ((vb << 40) & _M64)
        va = (va + vb + 2 * (va & _M32) * (vb & _M32)) & _M64
        vd ^= va
        vd = (vd >> 16) | ((vd << 48) & _M64)
        vc = (vc + vd + 2 * (vc & _M32) * (vd & _M32)) & _M64
        vb ^= vc
        vb = (vb >> 63) | ((vb << 1) & _M64)

        v[a] = va
        v[b] = vb
        v[c] = vc
        v[d] = vd
    return v


def _fill_block(
    prev: List[int], ref: List[int], current: Optional[List[int]] = None
) -> List[int]:
    """Compression function G, optionally XORed into an existing block."""
    r = [x ^ y for x, y in zip(prev, ref)]
    z = _permute(r)
    if current is None:
        return [x ^ y for x, y in zip(z, r)]
    return [x ^ y ^ w for x, y, w in zip(z, r, current)]


_ZERO_BLOCK = [0] * QWORDS_IN_BLOCK


class _Instance:
    """Memory matrix and geometry for a single Argon2 run."""

    def __init__(self, params: Argon2Params) -> None:
        lanes = params.parallelism
        memory_blocks = max(params.memory_cost, 2 * SYNC_POINTS * lanes)
        segment_length = memory_blocks // (lanes * SYNC_POINTS)
        self.params = params
        self.lanes = lanes
        self.passes = params.time_cost
        self.segment_length = segment_length
        self.lane_length = segment_length * SYNC_POINTS
        self.memory_blocks = self.lane_length * lanes
        self.memory = array("Q", bytes(self.memory_blocks * BLOCK_SIZE))

    def read(self, index: int) -> List[int]:
        offset = index * QWORDS_IN_BLOCK
        return self.memory[offset:offset + QWORDS_IN_BLOCK].tolist()

    def write(self, index: int, block: List[int]) -> None:
        offset = index * QWORDS_IN_BLOCK
        self.memory[offset:offset + QWORDS_IN_BLOCK] = array("Q", block)


def _initial_hash(
    params: Argon2Params,
    password: bytes,
    salt: bytes,
    secret: bytes,
    associated_data: bytes,
) -> bytes:
    """H0: BLAKE2b-512 over parameters and inputs."""
    h = hashlib.blake2b(digest_size=PREHASH_DIGEST_LENGTH)
    h.update(_le32(params.parallelism))
    h.update(_le32(params.hash_len))
    h.update(_le32(params.memory_cost))
    h.update(_le32(params.time_cost))
    h.update(_le32(ARGON2_VERSION))
    h.update(_le32(int(params.type)))
    for chunk in (password, salt, secret, associated_data):
        h.update(_le32(len(chunk)))
        h.update(chunk)
    return h.digest()


def _fill_first_blocks(instance: _Instance, h0: bytes) -> None:
    for lane in range(instance.lanes):
        base = lane * instance.lane_length
        for i in (0, 1):
            data = blake2b_long(h0 + _le32(i) + _le32(lane), BLOCK_SIZE)
            instance.write(base + i, list(struct.unpack("<128Q", data)))


def _index_alpha(
    instance: _Instance,
    pass_number: int,
    slice_number: int,
    index: int,
    pseudo_rand: int,
    same_lane: bool,
) -> int:
    """Map a 32-bit pseudo-random value to a reference block within a lane."""
    segment_length = instance.segment_length
    if pass_number == 0:
        if slice_number == 0:
            area_size = index - 1
        elif same_lane:
            area_size = slice_number * segment_length + index - 1
        else:
            area_size = slice_number * segment_length + (-1 if index == 0 else 0)
    else:
        if same_lane:
            area_size = instance.lane_length - segment_length + index - 1
        else:
            area_size = instance.lane_length - segment_length + (-1 if index == 0 else 0)

    relative = (pseudo_rand * pseudo_rand) >> 32
    relative = area_size - 1 - ((area_size * relative) >> 32)

    start = 0
    if pass_number != 0 and slice_number != SYNC_POINTS - 1:
        start = (slice_number + 1) * segment_length
    return (start + relative) % instance.lane_length


def _fill_segment(
    instance: _Instance, pass_number: int, lane: int, slice_number: int
) -> None:
    argon2_type = instance.params.type
    data_independent = argon2_type == Argon2Type.I or (
        argon2_type == Argon2Type.ID
        and pass_number == 0
        and slice_number < SYNC_POINTS // 2
    )

    address_block: List[int] = []
    input_block: List[int] = []
    if data_independent:
        input_block = [0] * QWORDS_IN_BLOCK
        input_block[0] = pass_number
        input_block[1] = lane
        input_block[2] = slice_number
        input_block[3] = instance.memory_blocks
        input_block[4] = instance.passes
        input_block[5] = int(argon2_type)

    def next_addresses() -> List[int]:
        input_block[6] += 1
        tmp = _fill_block(_ZERO_BLOCK, input_block)
        return _fill_block(_ZERO_BLOCK, tmp)

    starting_index = 0
    if pass_number == 0 and slice_number == 0:
        # Blocks 0 and 1 of each lane come from H0
        starting_index = 2
        if data_independent:
            address_block = next_addresses()

    lane_start = lane * instance.lane_length
    current_offset = lane_start + slice_number * instance.segment_length + starting_index
    if current_offset % instance.lane_length == 0:
        prev_offset = current_offset + instance.lane_length - 1
    else:
        prev_offset = current_offset - 1

    prev_block = instance.read(prev_offset)
    for i in range(starting_index, instance.segment_length):
        if data_independent:
            if i % ADDRESSES_IN_BLOCK == 0:
                address_block = next_addresses()
            pseudo_rand = address_block[i % ADDRESSES_IN_BLOCK]
        else:
            pseudo_rand = prev_block[0]

        ref_lane = (pseudo_rand >> 32) % instance.lanes
        if pass_number == 0 and slice_number == 0:
            ref_lane = lane

        ref_index = _index_alpha(
            instance,
            pass_number,
            slice_number,
            i,
            pseudo_rand & _M32,
            ref_lane == lane,
        )
        ref_block = instance.read(instance.lane_length * ref_lane + ref_index)

        if pass_number == 0:
            new_block = _fill_block(prev_block, ref_block)
        else:
            new_block = _fill_block(prev_block, ref_block, instance.read(current_offset))
        instance.write(current_offset, new_block)

        prev_block = new_block
        current_offset += 1


def argon2_hash(
    password: bytes,
    salt: bytes,
    params: Argon2Params,
    secret: bytes = b"",
    associated_data: bytes = b"",
) -> bytes:
    """Compute a raw Argon2 tag (version 0x13).

    Lanes are processed one after another; the result is identical to a
    parallel run because lanes only read across each other at slice
    boundaries.

    Args:
        password: Password bytes
        salt: Salt bytes (at least 8 bytes)
        params: Cost parameters and variant
        secret: Optional secret key K
        associated_data: Optional associated data X

    Returns:
        Tag of params.hash_len bytes

    Raises:
        ValueError: If parameters are outside the allowed ranges
    """
    if params.parallelism < 1:
        raise ValueError("parallelism must be at least 1")
    if params.time_cost < 1:
        raise ValueError("time_cost must be at least 1")
    if params.hash_len < 4:
        raise ValueError("hash_len must be at least 4 bytes")
    if params.memory_cost < 2 * SYNC_POINTS * params.parallelism:
        raise ValueError(
            f"memory_cost must be at least {2 * SYNC_POINTS * params.parallelism} KiB"
        )
    if len(salt) < 8:
        raise ValueError("salt must be at least 8 bytes")

    instance = _Instance(params)
    h0 = _initial_hash(params, password, salt, secret, associated_data)
    _fill_first_blocks(instance, h0)

    for pass_number in range(instance.passes):
        for slice_number in range(SYNC_POINTS):
            for lane in range(instance.lanes):
                _fill_segment(instance, pass_number, lane, slice_number)

    final_block = instance.read(instance.lane_length - 1)
    for lane in range(1, instance.lanes):
        last = instance.read(lane * instance.lane_length + instance.lane_length - 1)
        final_block = [x ^ y for x, y in zip(final_block, last)]

    return blake2b_long(struct.pack("<128Q", *final_block), params.hash_len)


def _argon2_cffi(password: bytes, salt: bytes, params: Argon2Params) -> bytes:
    variant = {
        Argon2Type.D: Type.D,
        Argon2Type.I: Type.I,
        Argon2Type.ID: Type.ID,
    }[params.type]
    return hash_secret_raw(
        secret=password,
        salt=salt,
        time_cost=params.time_cost,
        memory_cost=params.memory_cost,
        parallelism=params.parallelism,
        hash_len=params.hash_len,
        type=variant,
        version=ARGON2_VERSION,
    )


def derive_key(password: str, salt: bytes, backend: str = DEFAULT_KDF_BACKEND) -> bytes:
    """Derive the 32-byte AES key for one envelope.

    Argon2id with the envelope parameters, then HKDF-SHA256 with the same salt
    and the fixed KeeNotes context string.

    Args:
        password: User password
        salt: 16-byte envelope salt
        backend: "argon2-cffi" for the C reference binding (default),
            "python" for the built-in Argon2

    Returns:
        32-byte key

    Raises:
        ValueError: If backend is unknown
    """
    password_bytes = password.encode("utf-8")
    if backend == "python":
        stretched = argon2_hash(password_bytes, salt, ENVELOPE_ARGON2_PARAMS)
    elif backend == "argon2-cffi":
        stretched = _argon2_cffi(password_bytes, salt, ENVELOPE_ARGON2_PARAMS)
    else:
        raise ValueError(f"Unknown KDF backend: {backend}")

    logger.debug(f"Stretched envelope password with {backend} Argon2id backend")

    hkdf = HKDF(
        algorithm=hashes.SHA256(),
        length=KEY_LENGTH,
        salt=salt,
        info=HKDF_INFO,
    )
    return hkdf.derive(stretched)
