"""Signature codec.

Wallets return a 65-byte signature ``r || s || v`` as a hex string.
The exchange wants it split to ``{"r": ..., "s": ..., "v": ...}``.

- ``r`` and ``s`` are always 32-byte big-endian values

- ``v`` is the trailing recovery byte. Some wallets (and hardware wallets
  behind them) return 0/1 instead of 27/28. The exchange expects 27/28,
  so we normalise on construction.

Example:

.. code-block:: python

    signature = decompose(wallet_hex_signature)
    assert signature.v in (27, 28)
    payload = signature.to_wire(prefixed=False)
"""

from dataclasses import dataclass

from hexbytes import HexBytes

from perp_relay.errors import ValidationError

#: Length of ``r || s || v``
SIGNATURE_LENGTH = 65


def _strip_0x(value: str) -> str:
    if value.startswith(("0x", "0X")):
        return value[2:]
    return value


def normalise_v(v: int) -> int:
    """Turn 0/1 recovery id to 27/28.

    :raise ValidationError:
        Not a recovery id of any convention
    """
    if v in (0, 1):
        return v + 27
    if v in (27, 28):
        return v
    raise ValidationError(f"Signature v must be 0, 1, 27 or 28, got {v}")


def _to_word(value: bytes | str | int, name: str) -> bytes:
    """Convert r or s to exactly 32 bytes."""
    if isinstance(value, bool):
        raise ValidationError(f"Signature {name} cannot be boolean")

    if isinstance(value, int):
        if value < 0 or value >= 2**256:
            raise ValidationError(f"Signature {name} out of range")
        return value.to_bytes(32, "big")

    if isinstance(value, str):
        hex_part = _strip_0x(value)
        if len(hex_part) > 64:
            raise ValidationError(f"Signature {name} longer than 32 bytes: {value}")
        try:
            value = bytes.fromhex(hex_part.rjust(64, "0"))
        except ValueError as e:
            raise ValidationError(f"Signature {name} is not hex: {value}") from e

    value = bytes(value)
    if len(value) != 32:
        raise ValidationError(f"Signature {name} must be 32 bytes, got {len(value)}")
    return value


@dataclass(slots=True, frozen=True)
class SignaturePayload:
    """Signature in the exchange's three-field representation.

    Construct with :py:meth:`create` or :py:func:`decompose`
    so that ``v`` gets normalised.
    """

    #: 32 bytes
    r: bytes

    #: 32 bytes
    s: bytes

    #: Recovery id, 27 or 28
    v: int

    def __post_init__(self):
        assert isinstance(self.r, bytes) and len(self.r) == 32, f"Bad r: {self.r!r}"
        assert isinstance(self.s, bytes) and len(self.s) == 32, f"Bad s: {self.s!r}"
        assert self.v in (27, 28), f"Non-normalised v: {self.v}"

    def __repr__(self):
        return f"<Signature r:0x{self.r.hex()} s:0x{self.s.hex()} v:{self.v}>"

    @classmethod
    def create(cls, r: bytes | str | int, s: bytes | str | int, v: int) -> "SignaturePayload":
        """Build from loose inputs.

        - ``r`` and ``s`` as bytes, hex strings with or without ``0x``, or ints

        - ``v`` in either convention
        """
        if isinstance(v, bool) or not isinstance(v, int):
            raise ValidationError(f"Signature v must be an integer, got {v!r}")
        return cls(
            r=_to_word(r, "r"),
            s=_to_word(s, "s"),
            v=normalise_v(v),
        )

    @classmethod
    def from_wire(cls, data: dict) -> "SignaturePayload":
        """Parse ``{"r", "s", "v"}`` as received from a client.

        ``v`` may be an int or a hex string.
        """
        if not isinstance(data, dict):
            raise ValidationError(f"Signature must be an object, got {type(data).__name__}")

        try:
            r = data["r"]
            s = data["s"]
            v = data["v"]
        except KeyError as e:
            raise ValidationError(f"Signature is missing field {e}") from e

        if isinstance(v, str):
            try:
                v = int(v, 16) if v.startswith(("0x", "0X")) else int(v)
            except ValueError as e:
                raise ValidationError(f"Signature v is not a number: {v}") from e

        if isinstance(r, int) or isinstance(s, int):
            raise ValidationError("Signature r and s must be hex strings")

        return cls.create(r, s, v)

    def to_wire(self, prefixed: bool) -> dict:
        """Transmission form.

        :param prefixed:
            Whether ``r`` and ``s`` get the ``0x`` prefix.
            See :py:data:`perp_relay.hyperliquid.constants.WIRE_SIGNATURE_PREFIX`.
        """
        prefix = "0x" if prefixed else ""
        return {
            "r": prefix + self.r.hex(),
            "s": prefix + self.s.hex(),
            "v": self.v,
        }

    def to_bytes(self) -> bytes:
        return self.r + self.s + bytes([self.v])


def decompose(raw_signature: str | bytes) -> SignaturePayload:
    """Split a wallet-produced 65-byte signature.

    :param raw_signature:
        Hex string with or without ``0x``, or raw bytes

    :raise ValidationError:
        Wrong length or an unknown ``v`` convention
    """
    if isinstance(raw_signature, str):
        try:
            raw = bytes.fromhex(_strip_0x(raw_signature))
        except ValueError as e:
            raise ValidationError(f"Signature is not hex: {raw_signature}") from e
    else:
        raw = bytes(HexBytes(raw_signature))

    if len(raw) != SIGNATURE_LENGTH:
        raise ValidationError(f"Signature must be {SIGNATURE_LENGTH} bytes, got {len(raw)}")

    return SignaturePayload(
        r=raw[0:32],
        s=raw[32:64],
        v=normalise_v(raw[64]),
    )


def recompose(signature: SignaturePayload) -> str:
    """Join ``{r, s, v}`` back to a ``0x`` prefixed 65-byte hex string."""
    return "0x" + signature.to_bytes().hex()
