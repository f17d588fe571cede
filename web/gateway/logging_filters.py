"""Logging filter that stamps records with the current request id.

Wired into ``settings.LOGGING`` so the JSON formatter can always reference
``%(request_id)s``; records emitted outside a request carry ``"-"``.
"""

from logging import Filter, LogRecord

from .middleware import REQUEST_ID_CTX


class RequestIdFilter(Filter):
    def filter(self, record: LogRecord) -> bool:
        if not getattr(record, "request_id", None):
            record.request_id = REQUEST_ID_CTX.get()
        return True
