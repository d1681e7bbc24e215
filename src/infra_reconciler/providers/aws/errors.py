"""Translation of botocore failures into engine provider errors."""

from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import TYPE_CHECKING

from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    ConnectionClosedError,
    ConnectTimeoutError,
    EndpointConnectionError,
    ReadTimeoutError,
)

from infra_reconciler.engine.errors import PermanentProviderError, TransientProviderError

if TYPE_CHECKING:
    from collections.abc import Collection, Iterator

logger = logging.getLogger(__name__)

TRANSIENT_CODES: frozenset[str] = frozenset(
    {
        "RequestLimitExceeded",
        "Throttling",
        "ThrottlingException",
        "ServiceUnavailable",
        "Unavailable",
        "InternalError",
        "InternalFailure",
        "RequestTimeout",
    }
)


def error_code(exc: ClientError) -> str:
    return exc.response.get("Error", {}).get("Code", "")


def is_not_found(exc: ClientError) -> bool:
    """EC2 reports missing resources as ``Invalid<Thing>ID.NotFound``-style codes."""
    return error_code(exc).endswith("NotFound")


@contextmanager
def provider_errors(action: str, *, transient: Collection[str] = ()) -> Iterator[None]:
    """Re-raise botocore failures as Transient/PermanentProviderError.

    Throttling, 5xx responses and connection problems are transient; codes in
    *transient* are treated as transient for this call only.
    """
    try:
        yield
    except ClientError as e:
        code = error_code(e)
        status = e.response.get("ResponseMetadata", {}).get("HTTPStatusCode", 0)
        message = e.response.get("Error", {}).get("Message", str(e))
        msg = f"{action} failed: {code}: {message}"
        if code in TRANSIENT_CODES or code in transient or status >= 500:
            raise TransientProviderError(msg) from e
        raise PermanentProviderError(msg) from e
    except (
        EndpointConnectionError,
        ConnectTimeoutError,
        ReadTimeoutError,
        ConnectionClosedError,
    ) as e:
        raise TransientProviderError(f"{action} failed: {e}") from e
    except BotoCoreError as e:
        raise PermanentProviderError(f"{action} failed: {e}") from e
