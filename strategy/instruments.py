"""Mapping between venue instrument ids and unified symbols.

``BTC-USDT-SWAP`` is the perpetual swap instrument id; ``BTC/USDT:USDT`` is the
unified symbol the strategy store keys its rows by.
"""

SWAP_SUFFIX = "-SWAP"


def inst_id_to_symbol(inst_id: str) -> str:
    if not inst_id or not inst_id.endswith(SWAP_SUFFIX):
        raise ValueError(f"Unsupported instrument id: {inst_id!r}")
    pair = inst_id[: -len(SWAP_SUFFIX)]
    base, sep, quote = pair.partition("-")
    if not sep or not base or not quote:
        raise ValueError(f"Unsupported instrument id: {inst_id!r}")
    return f"{base}/{quote}:{quote}"


def symbol_to_inst_id(symbol: str) -> str:
    pair, sep, settle = (symbol or "").partition(":")
    base, slash, quote = pair.partition("/")
    if not sep or not slash or not base or not quote or settle != quote:
        raise ValueError(f"Unsupported symbol: {symbol!r}")
    return f"{base}-{quote}{SWAP_SUFFIX}"


def try_symbol(inst_id: str):
    try:
        return inst_id_to_symbol(inst_id)
    except ValueError:
        return None
