"""Rate limiter singleton. Import from here to avoid circular deps.

Import uploads are keyed by the token subject so merchants behind one NAT do
not share a bucket; anonymous calls fall back to the client address.
"""
from fastapi import Request
from jose import jwt
from jose.exceptions import JOSEError
from slowapi import Limiter
from slowapi.util import get_remote_address


def _subject_or_address(request: Request) -> str:
    auth = request.headers.get("authorization", "")
    if auth.startswith("Bearer "):
        try:
            sub = jwt.get_unverified_claims(auth[7:].strip()).get("sub")
        except JOSEError:
            sub = None
        if sub:
            return f"user:{sub}"
    return get_remote_address(request)


limiter = Limiter(key_func=_subject_or_address)
