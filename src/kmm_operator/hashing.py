"""Stable structural hashes used to name and fingerprint objects."""

import hashlib
import json

from .k8s import to_dict


def structural_hash(data, length=16):
    """Hex digest of ``data`` that depends only on its content, not on key order."""
    canonical = json.dumps(to_dict(data), sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()[:length]
