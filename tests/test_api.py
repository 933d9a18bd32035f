"""Tests for the HTTP surface."""

import pytest
from fastapi.testclient import TestClient

from chess_wager.server.history import MatchHistory
from chess_wager.server.main import build_services, create_app

from conftest import FakeLedger, FakeOracle, new_wallet

@pytest.fixture
def api_ledger():
    return FakeLedger(signer_address=new_wallet())

@pytest.fixture
def client(settings, api_ledger):
    services = build_services(settings, ledger=api_ledger, oracle=FakeOracle(price=0.25),
                              history=MatchHistory("sqlite://"))
    with TestClient(create_app(services=services)) as c:
        yield c

def start_game(client, api_ledger, white, black) -> str:
    code = client.post("/api/rooms", json={"creator_wallet": white, "entry_fee_usd": 5}).json()["room"]["code"]
    client.post(f"/api/rooms/{code}/join", json={"player_wallet": black})
    for wallet, sig in ((white, f"{code}-w"), (black, f"{code}-b")):
        api_ledger.add_tx(sig)
        resp = client.post("/api/payments/verify", json={"room_code": code, "tx_signature": sig, "player_wallet": wallet})
        assert resp.status_code == 200
    return code

class TestRooms:
    """Tests for room endpoints."""

    def test_create_room(self, client, white, api_ledger) -> None:
        resp = client.post("/api/rooms", json={"creator_wallet": white, "entry_fee_usd": 5})
        assert resp.status_code == 200
        data = resp.json()
        assert data["success"] is True
        assert data["my_player_id"] == 0
        assert data["my_color"] == "white"
        assert data["room"]["token_amount"] == 20
        assert data["room"]["status"] == "waiting_players"
        assert data["room"]["wallet_address"] == api_ledger.signer_address

    def test_invalid_wallet_is_400(self, client) -> None:
        resp = client.post("/api/rooms", json={"creator_wallet": "bad"})
        assert resp.status_code == 400
        assert resp.json() == {"success": False, "error": "Invalid wallet"}

    def test_unknown_room_is_404(self, client) -> None:
        resp = client.get("/api/rooms/NOPE99")
        assert resp.status_code == 404
        assert resp.json()["error"] == "Room not found"

    def test_state_and_payments(self, client, api_ledger, white, black) -> None:
        code = start_game(client, api_ledger, white, black)
        state = client.get(f"/api/rooms/{code}/state").json()
        assert state["status"] == "playing"
        assert [p["wallet"] for p in state["players"]] == [white, black]
        assert state["players"][0]["payment_confirmed"] is True

        payments = client.get(f"/api/rooms/{code}/payments").json()
        assert payments["confirmed_payments"] == 2
        assert payments["can_start_game"] is True

    def test_lobby(self, client, api_ledger, white, black) -> None:
        code = start_game(client, api_ledger, white, black)
        rooms = client.get("/api/rooms").json()["rooms"]
        assert [r["code"] for r in rooms] == [code]
        assert rooms[0]["player_count"] == 2

    def test_my_game(self, client, white) -> None:
        assert client.get(f"/api/my-game/{white}").json() == {"success": True, "has_active_game": False}
        code = client.post("/api/rooms", json={"creator_wallet": white}).json()["room"]["code"]
        data = client.get(f"/api/my-game/{white}").json()
        assert data["has_active_game"] is True
        assert data["room"]["code"] == code
        assert data["room"]["opponent"] == "Waiting..."

class TestPaymentsApi:
    """Tests for POST /api/payments/verify."""

    def test_blank_field_is_400(self, client, white) -> None:
        resp = client.post("/api/payments/verify", json={"room_code": "ABCDEF", "tx_signature": " ", "player_wallet": white})
        assert resp.status_code == 400
        assert resp.json() == {"success": False, "error": "Missing required fields"}

    def test_replay_is_rejected(self, client, api_ledger, white, black) -> None:
        code = start_game(client, api_ledger, white, black)
        other = client.post("/api/rooms", json={"creator_wallet": new_wallet()}).json()["room"]["code"]
        resp = client.post("/api/payments/verify", json={
            "room_code": other, "tx_signature": f"{code}-w", "player_wallet": white,
        })
        assert resp.status_code == 400
        assert resp.json()["error"] == "Transaction already processed"

    def test_ledger_outage_is_502(self, client, api_ledger, white) -> None:
        code = client.post("/api/rooms", json={"creator_wallet": white}).json()["room"]["code"]
        api_ledger.fetch_error = "timeout"
        resp = client.post("/api/payments/verify", json={"room_code": code, "tx_signature": "s", "player_wallet": white})
        assert resp.status_code == 502
        assert resp.json()["success"] is False

class TestMovesApi:
    """Tests for POST /api/rooms/{code}/move."""

    def test_move_and_win(self, client, api_ledger, white, black) -> None:
        code = start_game(client, api_ledger, white, black)
        resp = client.post(f"/api/rooms/{code}/move", json={
            "player_id": 0, "from": {"row": 6, "col": 4}, "to": {"row": 4, "col": 4},
        })
        data = resp.json()
        assert data["current_turn"] == "black"
        assert data["last_move"] == {"from": {"row": 6, "col": 4}, "to": {"row": 4, "col": 4}}

        resp = client.post(f"/api/rooms/{code}/move", json={
            "player_id": 0, "from": {"row": 4, "col": 4}, "to": {"row": 3, "col": 4},
        })
        assert resp.status_code == 400
        assert resp.json()["error"] == "Not your turn"

        client.post(f"/api/rooms/{code}/move", json={"player_id": 1, "from": {"row": 1, "col": 0}, "to": {"row": 2, "col": 0}})
        resp = client.post(f"/api/rooms/{code}/move", json={"player_id": 0, "from": {"row": 7, "col": 3}, "to": {"row": 0, "col": 4}})
        assert resp.json()["game_over"] is True
        assert resp.json()["winner"] == 0

        room = client.get(f"/api/rooms/{code}").json()["room"]
        assert room["status"] == "finished"
        assert room["payout_amount"] == 36
        assert room["payout_tx"] == "payout-1"

        assert client.get("/api/matches").json()["matches"][0]["room_code"] == code
        assert client.get("/api/leaderboard").json()["leaderboard"][0]["wallet"] == white
        profile = client.get(f"/api/profile/{black}").json()["profile"]
        assert profile["losses"] == 1
        assert client.get("/api/stats").json()["total_matches"] == 1

class TestServiceInfo:
    """Tests for config, health, price and stats."""

    def test_config(self, client, settings, api_ledger) -> None:
        data = client.get("/api/config").json()
        assert data["wallet_address"] == api_ledger.signer_address
        assert data["token_mint"] == settings.token_mint
        assert data["token_price_usd"] == 0.25
        assert data["commission_rate"] == 0.10

    def test_health(self, client) -> None:
        data = client.get("/api/health").json()
        assert data["status"] == "ok"
        assert data["rooms"] == 0

    def test_price(self, client) -> None:
        assert client.get("/api/price").json()["price"] == 0.25

    def test_stats_counts_rooms(self, client, white) -> None:
        client.post("/api/rooms", json={"creator_wallet": white})
        data = client.get("/api/stats").json()
        assert data["active_rooms"] == 1
        assert data["live_games"] == 0
        assert data["total_matches"] == 0

    def test_profile_rejects_bad_wallet(self, client) -> None:
        assert client.get("/api/profile/xyz").status_code == 400
