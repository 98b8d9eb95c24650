"""EIP-712 typed structured data hashing.

Computes the digest hot wallets sign in :py:mod:`perp_relay.hyperliquid.signing`.

Only flat structs are supported: every member is an atomic type,
``string`` or ``bytes``. That covers the exchange's ``Agent`` and
``HyperliquidTransaction:ApproveAgent`` types and the ``EIP712Domain``.
Nested structs and arrays raise :py:class:`ValueError`.

Signatures are checked against eth-account's full encoder in
:py:func:`perp_relay.hyperliquid.signing.verify_envelope`.

- `EIP-712 <https://eips.ethereum.org/EIPS/eip-712>`__
"""

from typing import Any

from eth_abi import encode as encode_abi
from eth_typing import Hash32
from hexbytes import HexBytes
from web3 import Web3


def fast_keccak(value: bytes) -> Hash32:
    return Web3.keccak(value)


def encode_type(primary_type: str, types: dict) -> str:
    """Type string, e.g. ``Agent(string source,bytes32 connectionId)``.

    Type names are used as is, so namespaced names like
    ``HyperliquidTransaction:ApproveAgent`` survive.
    """
    members = ",".join(f"{m['type']} {m['name']}" for m in types[primary_type])
    return f"{primary_type}({members})"


def hash_type(primary_type: str, types: dict) -> Hash32:
    return fast_keccak(encode_type(primary_type, types).encode())


def encode_value(typ: str, value) -> tuple[str, Any]:
    """ABI type and value of one struct member in the encoded struct."""
    if value is None:
        raise ValueError(f"Missing value for {typ}")

    if typ.endswith("]"):
        raise ValueError(f"Only flat structs are supported, cannot encode member type {typ}")

    if typ == "string":
        return "bytes32", fast_keccak(value.encode("utf-8"))

    if typ == "bytes":
        return "bytes32", fast_keccak(bytes(HexBytes(value)))

    if typ.startswith("bytes"):
        return typ, bytes(HexBytes(value))

    if typ.startswith(("uint", "int")):
        return typ, int(value, 0) if isinstance(value, str) else value

    if typ in ("address", "bool"):
        return typ, value

    raise ValueError(f"Only flat structs are supported, cannot encode member type {typ}")


def hash_struct(primary_type: str, data: dict, types: dict) -> Hash32:
    abi_types = ["bytes32"]
    values = [hash_type(primary_type, types)]
    for member in types[primary_type]:
        abi_type, value = encode_value(member["type"], data[member["name"]])
        abi_types.append(abi_type)
        values.append(value)
    return fast_keccak(encode_abi(abi_types, values))


def eip712_encode_hash(typed_data: dict) -> Hash32:
    """Digest to sign, ``keccak(0x1901 ‖ domainSeparator ‖ hashStruct(message))``.

    :param typed_data:
        Dict in the ``eth_signTypedData_v4`` format

    :raise ValueError:
        Malformed typed data
    """
    try:
        types = typed_data["types"]
        domain_separator = hash_struct("EIP712Domain", typed_data["domain"], types)
        message_hash = hash_struct(typed_data["primaryType"], typed_data["message"], types)
    except (KeyError, AttributeError, TypeError) as e:
        raise ValueError(f"Not valid typed data: {typed_data}") from e
    return fast_keccak(b"\x19\x01" + domain_separator + message_hash)
