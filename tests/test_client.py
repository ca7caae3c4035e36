"""
Tests for sqlgate.client, run against an in-process server.
"""
import httpx
import pytest
from starlette.testclient import TestClient

from sqlgate.client import Client, ClientError, SourceInfo
from sqlgate.options import Options, SourceSpec, UILink
from sqlgate.server import Server


@pytest.fixture
def server(fruit_db):
    s = Server(Options(
        sources=[SourceSpec("fruit", label="Fruit", driver="sqlite", url=fruit_db,
                            named={"total": "select count(*) n from t"})],
        links=[UILink("docs", "https://example.com/docs")],
        query_timeout=90.0,
    ))
    yield s
    s.close()


@pytest.fixture
def client(server):
    with Client("http://testserver/", http=TestClient(server.app)) as c:
        yield c


class TestSqlgateClient:

    def test_server_info(self, client):
        info = client.server_info()
        assert info.sources == [SourceInfo("fruit", "Fruit", {"total": "select count(*) n from t"})]
        assert info.links == [UILink("docs", "https://example.com/docs")]
        assert info.query_timeout == 90.0

    def test_query(self, client):
        rows = client.query("fruit", "select id, value from t order by id")
        assert rows.columns == ["id", "value"]
        assert rows.rows == [["1", "apple"], ["2", "pear"]]

    def test_query_json(self, client):
        assert client.query_json("fruit", "named:total") == [{"n": 2}]

    def test_empty_result(self, client):
        rows = client.query("fruit", "select id from t where id > 10")
        assert rows.columns == ["id"]
        assert rows.rows == []

    def test_server_error(self, client):
        with pytest.raises(ClientError) as exc:
            client.query("nope", "select 1")
        assert exc.value.status == 400
        assert str(exc.value) == "unknown source 'nope'"

    def test_transport_error(self):
        def refuse(request):
            raise httpx.ConnectError("connection refused", request=request)

        http = httpx.Client(transport=httpx.MockTransport(refuse))
        with Client("http://sqlgate.invalid", http=http) as c:
            with pytest.raises(ClientError, match="connection refused"):
                c.server_info()
