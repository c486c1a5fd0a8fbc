import hashlib


def sha256_bytes(b: bytes) -> str:
    h = hashlib.sha256()
    h.update(b)
    return h.hexdigest()


def definition_fingerprint(canonical_json: str) -> str:
    """
    Short content hash identifying a pipeline definition in run reports.
    """
    return sha256_bytes(canonical_json.encode("utf-8"))[:16]
