import itertools

ALICE = "0x" + "a" * 40
BOB = "0x" + "b" * 40
CAROL = "0x" + "c" * 40

_hashes = itertools.count(1)


def make_hash() -> str:
    """Unique 0x-prefixed 64 hex digit hash"""
    return "0x" + format(next(_hashes), "064x")


def address(n: int) -> str:
    return "0x" + format(n, "040x")
