import logging

import pytest

from paas_billing.features.query.streaming import encode_row, json_array_chunks, prime
from paas_billing.models.filters import EventFilter


def test_array_layout():
    assert "".join(json_array_chunks([])) == "[\n]\n"
    assert "".join(json_array_chunks([{"a": 1}])) == '[\n{"a":1}\n]\n'
    assert "".join(json_array_chunks([{"a": 1}, {"a": 2}])) == '[\n{"a":1},\n{"a":2}\n]\n'


def test_models_are_encoded_as_json():
    row = EventFilter.parse("2018-01-01", "2018-02-01")
    assert encode_row(row).startswith('{"range_start":"2018-01-01T00:00:00Z"')


def test_prime_raises_before_streaming_starts():
    def rows():
        raise RuntimeError("query failed")
        yield {}

    with pytest.raises(RuntimeError):
        prime(rows())


def test_prime_replays_first_row():
    assert list(prime(iter([1, 2, 3]))) == [1, 2, 3]
    assert list(prime(iter([]))) == []


def test_errors_after_first_row_are_logged_and_raised(caplog):
    def rows():
        yield {"a": 1}
        raise RuntimeError("lost connection")

    chunks = json_array_chunks(rows(), request_id="rid-7")
    with caplog.at_level(logging.ERROR, logger="paas_billing"):
        assert next(chunks) == "[\n"
        assert next(chunks) == '{"a":1}'
        with pytest.raises(RuntimeError):
            list(chunks)
    [record] = [r for r in caplog.records if r.getMessage() == "query.stream_error"]
    assert record.request_id == "rid-7"
    assert record.rows == 1
