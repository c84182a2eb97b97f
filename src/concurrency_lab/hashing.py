import hashlib


def advisory_lock_id(key: str, namespace: str = "") -> int:
    """
    Map a string lock key to a stable signed 64-bit integer.

    PostgreSQL advisory locks are identified by a BIGINT, while lock keys
    are strings such as "stock:lock:1". The key (prefixed with
    ``namespace``, if any) is hashed with BLAKE2b to an 8-byte digest and
    folded into the signed range -2**63 .. 2**63 - 1, so every process
    derives the same id for the same key.

    Parameters
    ----------
    key : str
        Application lock key.

    namespace : str
        Optional prefix isolating one application's keys from another's
        on a shared database.

    Returns
    -------
    int
        Signed 64-bit integer suitable for pg_try_advisory_lock.
    """
    material = f"{namespace}:{key}" if namespace else key
    digest = hashlib.blake2b(material.encode("utf-8"), digest_size=8).digest()

    value = int.from_bytes(digest, byteorder="big", signed=False)

    # unsigned -> signed int64
    if value >= 2**63:
        value -= 2**64

    return value
