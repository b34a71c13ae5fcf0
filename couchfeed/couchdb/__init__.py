"""
CouchDB / Cloudant HTTP client used as the follower's database collaborator.
"""
from .client import CouchClient, CouchApiError

__all__ = [
    "CouchClient",
    "CouchApiError",
]
