# rp_auth/counter.py
#
# Signature-counter policy used to detect cloned authenticators.
#
# Authenticators report an unsigned 32-bit counter with every assertion. A
# clone of the private key keeps its own counter, so sooner or later one of
# the two copies reports a value that does not exceed the stored one.

from enum import Enum

MAX_SIGN_COUNT = 0xFFFFFFFF


class CounterVerdict(str, Enum):
    ACCEPT = "accept"
    REJECT = "reject"


def check(stored: int, reported: int) -> CounterVerdict:
    """
    Decide whether a reported counter is acceptable.

      - stored == 0 and reported == 0 -> ACCEPT
        (authenticators that never count, e.g. many passkey providers)
      - reported > stored             -> ACCEPT
      - otherwise                     -> REJECT (possible cloning)
    """
    for name, value in (("stored", stored), ("reported", reported)):
        if not isinstance(value, int) or isinstance(value, bool):
            raise TypeError(f"{name} counter must be int")
        if value < 0 or value > MAX_SIGN_COUNT:
            raise ValueError(f"{name} counter out of unsigned 32-bit range")

    if stored == 0 and reported == 0:
        return CounterVerdict.ACCEPT

    if reported > stored:
        return CounterVerdict.ACCEPT

    return CounterVerdict.REJECT
