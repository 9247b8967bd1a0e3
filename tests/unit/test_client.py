"""
Tests for the streaming client and its record decoder.
"""

import zlib

import pytest

from querystream.client import (
    IncompleteStreamError,
    ProtocolError,
    QueryRejectedError,
    QueryResult,
    QueryStreamClient,
    RecordDecoder,
    ServerUnavailableError,
)
from querystream.streaming import ResultStreamEncoder
from querystream.adapters.base import ColumnDescriptor


def encoded_body(rows, finish=True):
    encoder = ResultStreamEncoder()
    body = encoder.begin([ColumnDescriptor("a", 0), ColumnDescriptor("b", 1)])
    for row in rows:
        body += encoder.write_rows([row])
    if finish:
        body += encoder.end()
    return body


class TestRecordDecoder:

    def test_decodes_byte_by_byte(self):
        body = encoded_body([(1, "x"), (2, "y")])
        decoder = RecordDecoder()
        records = []
        for i in range(len(body)):
            records.extend(decoder.feed(body[i:i + 1]))
        records.extend(decoder.finish())

        assert records == [
            {"columns": ["a", "b"]},
            {"rows": [[1, "x"]]},
            {"rows": [[2, "y"]]},
        ]
        assert decoder.records_read == 3

    def test_truncated_stream_is_incomplete(self):
        decoder = RecordDecoder()
        records = decoder.feed(encoded_body([(1, "x")], finish=False))

        # rows received before the cut are still readable...
        assert records == [{"columns": ["a", "b"]}, {"rows": [[1, "x"]]}]
        # ...but the stream is never reported as complete
        with pytest.raises(IncompleteStreamError) as exc_info:
            decoder.finish()
        assert exc_info.value.records_read == 2

    def test_cut_inside_compressed_data(self):
        body = encoded_body([(1, "x")])
        decoder = RecordDecoder()
        decoder.feed(body[:-5])
        with pytest.raises(IncompleteStreamError):
            decoder.finish()

    def test_corrupt_data(self):
        decoder = RecordDecoder()
        with pytest.raises(IncompleteStreamError):
            decoder.feed(b"this is not gzip at all")

    def test_invalid_record(self):
        compressor = zlib.compressobj(6, zlib.DEFLATED, 16 + zlib.MAX_WBITS)
        body = compressor.compress(b"{broken\n") + compressor.flush()
        with pytest.raises(ProtocolError):
            RecordDecoder().feed(body)

    def test_data_after_end(self):
        decoder = RecordDecoder()
        decoder.feed(encoded_body([]))
        with pytest.raises(ProtocolError):
            decoder.feed(b"\x1f\x8b")


class TestQueryResult:

    def test_to_dicts(self):
        result = QueryResult(columns=["a", "b"], rows=[[1, 2], [3, 4]])
        assert result.row_count == 2
        assert result.to_dicts() == [{"a": 1, "b": 2}, {"a": 3, "b": 4}]


@pytest.fixture
def stream_client(client):
    return QueryStreamClient(url="http://testserver", client=client)


class TestQueryStreamClient:

    def test_fetch(self, stream_client):
        result = stream_client.fetch("SELECT 1 AS a, 2 AS b")
        assert result.columns == ["a", "b"]
        assert result.rows == [[1, 2]]

    def test_fetch_empty(self, stream_client):
        result = stream_client.fetch("SELECT * FROM empty_table")
        assert result.columns == ["id", "name", "created_at"]
        assert result.rows == []

    def test_iter_rows_reads_lazily(self, stream_client, database):
        database.add("SELECT n FROM t", ["n"], [(i,) for i in range(5)])
        reader = stream_client.iter_rows("SELECT n FROM t")
        assert reader.columns == ["n"]
        assert [row[0] for row in reader] == [0, 1, 2, 3, 4]
        assert reader.rows_read == 5

    def test_stream_yields_raw_records(self, stream_client):
        records = list(stream_client.stream("SELECT 1 AS a, 2 AS b"))
        assert records == [{"columns": ["a", "b"]}, {"rows": [[1, 2]]}]

    def test_rejected_query(self, stream_client):
        with pytest.raises(QueryRejectedError) as exc_info:
            stream_client.fetch("SELEC 1")
        assert exc_info.value.status_code == 400
        assert "SELEC" in exc_info.value.message

    def test_database_unavailable(self, stream_client, pool):
        pool.available = False
        with pytest.raises(ServerUnavailableError) as exc_info:
            stream_client.fetch("SELECT 1 AS a, 2 AS b")
        assert exc_info.value.status_code == 503

    def test_truncated_result_is_never_complete(self, stream_client, database):
        database.add("SELECT * FROM flaky", ["n"], [(1,), (2,), (3,)], fail_after=2)
        reader = stream_client.iter_rows("SELECT * FROM flaky")

        seen = []
        with pytest.raises(IncompleteStreamError):
            for row in reader:
                seen.append(row)
        assert seen == [[1], [2]]

    def test_unreachable_server(self):
        client = QueryStreamClient(url="http://127.0.0.1:9", timeout=1.0)
        with pytest.raises(ServerUnavailableError):
            client.fetch("SELECT 1")
        client.close()
