from uuid import UUID

from fastapi import HTTPException, Request


def get_current_user_id(request: Request) -> UUID:
    """Extract the caller's user id from the ``X-User-Id`` header.

    Session handling lives upstream; by the time a command reaches this
    service the caller has already been authenticated and identified.
    """
    user_id_header = request.headers.get("X-User-Id")
    if not user_id_header:
        raise HTTPException(status_code=401, detail="Missing X-User-Id header")
    try:
        return UUID(user_id_header)
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid X-User-Id header") from None
