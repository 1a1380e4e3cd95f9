"""Translation of domain errors into HTTP exceptions."""

from fastapi import HTTPException

from tokenledger.errors import TokenLedgerError


def http_error(exc: TokenLedgerError) -> HTTPException:
    """Build the HTTPException reported for ``exc``.

    Errors without details keep a plain string ``detail``; otherwise the
    message and details are returned together.
    """
    if exc.details:
        return HTTPException(
            status_code=exc.status_code,
            detail={"message": exc.message, **exc.details},
        )
    return HTTPException(status_code=exc.status_code, detail=exc.message)
