"""
Stream query results as a JSON array.

The body is ``[\\n`` then one JSON object per row separated by ``,\\n`` and
closed with ``\\n]\\n`` (an empty result is ``[\\n]\\n``). The first row is
produced before the response starts so that errors raised while preparing
the query still reach the error handlers with a proper status code.
"""

import json
import logging
from typing import Iterable, Iterator

from pydantic import BaseModel

logger = logging.getLogger("paas_billing")

_END = object()


def encode_row(row) -> str:
    if isinstance(row, BaseModel):
        return row.model_dump_json()
    return json.dumps(row, separators=(",", ":"))


def prime(rows: Iterable) -> Iterator:
    """Pull the first row now; return an iterator that replays it."""
    iterator = iter(rows)
    first = next(iterator, _END)

    def replay():
        if first is _END:
            return
        yield first
        yield from iterator

    return replay()


def json_array_chunks(rows: Iterable, *, request_id=None) -> Iterator[str]:
    yield "[\n"
    count = 0
    try:
        for row in rows:
            if count:
                yield ",\n"
            yield encode_row(row)
            count += 1
    except Exception:
        # Headers are already sent; the truncated array tells the client something went wrong
        logger.exception("query.stream_error", extra={"request_id": request_id, "rows": count})
        raise
    if count:
        yield "\n"
    yield "]\n"
