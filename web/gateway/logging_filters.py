"""Logging filters for enriching log records with request context.

``RequestIdFilter`` injects the current request id into log records using
the ContextVar set by the gateway middleware, so every reconciliation log
line of a webhook delivery carries the gateway's ``x-request-id``.
"""

from logging import Filter, LogRecord
from .middleware import REQUEST_ID_CTX


class RequestIdFilter(Filter):
    """Attach a ``request_id`` attribute to log records.

    If no request is in flight a hyphen ("-") is used so formatters can
    reliably reference ``%(request_id)s``.
    """

    def filter(self, record: LogRecord) -> bool:
        if not getattr(record, "request_id", None):
            record.request_id = REQUEST_ID_CTX.get()
        return True
