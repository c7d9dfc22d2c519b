import json

import pytest
from starlette.testclient import TestClient

from tally.server.app import create_app
from tally.settings import TallySettings

CSV_TEXT = (
    "date,Alice_score,Alice_phase,Alice_completed,Bob_score,Bob_phase,Bob_completed\n"
    "2024-01-01,5,1,Yes,10,1,No\n"
    "2024-01-01,20,2,No,0,1,Yes\n"
)


class TestTallyEndpoints:
    @pytest.fixture
    def app(self, tmp_path):
        return create_app(
            settings=TallySettings(
                data_dir=str(tmp_path / "local"),
                remote_database_path=str(tmp_path / "remote.db"),
                log_dir=str(tmp_path / "logs"),
                remote_retry_backoff_seconds=0,
            ),
        )

    @pytest.fixture
    def client(self, app):
        with TestClient(app) as client:
            yield client

    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "ok"}

    def test_empty_state(self, client):
        assert client.get("/api/games").json() == {"games": []}
        assert client.get("/api/rankings").json() == {"rankings": []}

    def test_csv_import_then_queries(self, client):
        response = client.post("/api/import/csv", content=CSV_TEXT)

        assert response.status_code == 200
        assert response.json() == {"games": 1, "players": 2}
        games = client.get("/api/games").json()["games"]
        assert len(games) == 1
        assert len(games[0]["rounds"]) == 2
        rankings = client.get("/api/rankings").json()["rankings"]
        assert [(r["name"], r["total"], r["rank"]) for r in rankings] == [("Bob", 10, 1), ("Alice", 25, 2)]

    def test_lookup_by_code(self, client):
        client.post("/api/import/csv", content=CSV_TEXT)
        code = client.get("/api/games").json()["games"][0]["uniqueCode"]

        assert client.get(f"/api/games/by-code/{code}").json()["uniqueCode"] == code
        missing = client.get("/api/games/by-code/no-such-code")
        assert missing.status_code == 404
        assert "no-such-code" in missing.json()["error"]

    def test_exports_are_downloads(self, client):
        client.post("/api/import/csv", content=CSV_TEXT)

        json_export = client.get("/api/export.json")
        csv_export = client.get("/api/export.csv")

        assert json_export.headers["content-type"].startswith("application/json")
        assert 'filename="phase10_data_' in json_export.headers["content-disposition"]
        assert json_export.headers["content-disposition"].endswith('.json"')
        assert set(json_export.json()) == {"games", "players", "exportDate"}
        assert csv_export.headers["content-type"].startswith("text/csv")
        assert csv_export.text.splitlines()[0].startswith("date,Alice_score")

    def test_json_import_replaces_state(self, client):
        client.post("/api/import/csv", content=CSV_TEXT)
        document = {
            "games": [],
            "players": [{"id": "p1", "name": "Cleo"}],
            "exportDate": "2024-03-01T00:00:00Z",
        }

        response = client.post("/api/import/json", content=json.dumps(document))

        assert response.status_code == 200
        assert response.json() == {"games": 0, "players": 1}

    def test_bad_import_is_400(self, client):
        response = client.post("/api/import/json", content="{nope")

        assert response.status_code == 400
        assert "Not valid JSON" in response.json()["error"]
        assert client.post("/api/import/csv", content="").status_code == 400

    def test_identity_round_trip(self, client, app):
        client.post("/api/import/csv", content=CSV_TEXT)

        signed_in = client.put("/api/identity", json={"user_id": "u1"})
        assert signed_in.status_code == 200
        assert signed_in.json() == {"user_id": "u1", "games": 1, "players": 2}

        signed_out = client.put("/api/identity", json={"user_id": None})
        assert signed_out.json()["user_id"] is None
        assert app.state.service.user_id is None

    def test_identity_rejects_bad_body(self, client):
        assert client.put("/api/identity", content="[1, 2]").status_code == 422
        assert client.put("/api/identity", json={"user_id": 5}).status_code == 422
