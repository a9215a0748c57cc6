"""Helpers for the NSU cursor used by the distribution service."""

NSU_DIGITS = 15
MAX_NSU = 10 ** NSU_DIGITS - 1


def parse_nsu(value) -> int:
    """Return ``value`` as an integer NSU, accepting zero-padded strings."""
    if value is None or str(value).strip() == "":
        return 0
    nsu = int(str(value).strip())
    if nsu < 0 or nsu > MAX_NSU:
        raise ValueError(f"NSU fora do intervalo: {value}")
    return nsu


def format_nsu(nsu: int) -> str:
    """Return ``nsu`` as the fixed-width decimal string sent on the wire."""
    return f"{parse_nsu(nsu):0{NSU_DIGITS}d}"
