_CHARSET = "qpzry9x8gf2tvdw0s3jn54khce6mua7l"


def _bech32_checksum(hrp: str, data: list) -> str:
    generators = (0x3B6A57B2, 0x26508E6D, 0x1EA119FA, 0x3D4233DD, 0x2A1462B3)
    chk = 1
    for v in [ord(c) >> 5 for c in hrp] + [0] + [ord(c) & 31 for c in hrp] + data + [0] * 6:
        top = chk >> 25
        chk = ((chk & 0x1FFFFFF) << 5) ^ v
        for i, gen in enumerate(generators):
            if (top >> i) & 1:
                chk ^= gen
    chk ^= 1
    return "".join(_CHARSET[(chk >> 5 * (5 - i)) & 31] for i in range(6))


def with_zero_signature(pr: str) -> str:
    """Même facture, signature remplacée par 65 octets nuls, checksum recalculé."""
    hrp, rest = pr.rsplit("1", 1)
    body = rest[:-6][:-104] + "q" * 104
    return f"{hrp}1{body}{_bech32_checksum(hrp, [_CHARSET.index(c) for c in body])}"
