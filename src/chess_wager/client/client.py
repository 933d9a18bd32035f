import argparse
import json
import logging
import os
import sys
from typing import Optional

import httpx

# --- Logging Setup ---
logger = logging.getLogger("chess_wager.client")
logger.setLevel(logging.INFO)
console_handler = logging.StreamHandler()
console_handler.setFormatter(logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s'))
logger.addHandler(console_handler)

class ArenaClientError(Exception):
    def __init__(self, status_code: int, reason: str):
        super().__init__(f"{status_code}: {reason}")
        self.status_code = status_code
        self.reason = reason

class ArenaClient:
    """Thin wrapper over the wager room HTTP API. Responses come back as plain dicts."""

    def __init__(self, server_url: str, timeout: float = 5.0, transport: Optional[httpx.BaseTransport] = None):
        self.client = httpx.Client(base_url=server_url, timeout=timeout, transport=transport)

    def close(self):
        self.client.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()

    def _request(self, method: str, path: str, body: Optional[dict] = None) -> dict:
        resp = self.client.request(method, path, json=body)
        try:
            data = resp.json()
        except ValueError:
            data = {}
        if resp.status_code >= 400 or data.get("success") is False:
            reason = data.get("error") or data.get("detail") or resp.reason_phrase
            raise ArenaClientError(resp.status_code, str(reason))
        return data

    # --- Rooms ---

    def create_room(self, wallet: str, entry_fee_usd: Optional[float] = None) -> dict:
        return self._request("POST", "/api/rooms", {"creator_wallet": wallet, "entry_fee_usd": entry_fee_usd})

    def join_room(self, code: str, wallet: str) -> dict:
        return self._request("POST", f"/api/rooms/{code}/join", {"player_wallet": wallet})

    def verify_payment(self, code: str, tx_signature: str, wallet: str) -> dict:
        return self._request("POST", "/api/payments/verify", {
            "room_code": code, "tx_signature": tx_signature, "player_wallet": wallet,
        })

    def move(self, code: str, player_id: int, src: tuple, dst: tuple) -> dict:
        return self._request("POST", f"/api/rooms/{code}/move", {
            "player_id": player_id,
            "from": {"row": src[0], "col": src[1]},
            "to": {"row": dst[0], "col": dst[1]},
        })

    def room(self, code: str) -> dict:
        return self._request("GET", f"/api/rooms/{code}")

    def state(self, code: str) -> dict:
        return self._request("GET", f"/api/rooms/{code}/state")

    def payments(self, code: str) -> dict:
        return self._request("GET", f"/api/rooms/{code}/payments")

    def lobby(self) -> list:
        return self._request("GET", "/api/rooms")["rooms"]

    def my_game(self, wallet: str) -> Optional[dict]:
        data = self._request("GET", f"/api/my-game/{wallet}")
        return data.get("room") if data.get("has_active_game") else None

    # --- Service info ---

    def config(self) -> dict:
        return self._request("GET", "/api/config")

    def health(self) -> dict:
        return self._request("GET", "/api/health")

    def stats(self) -> dict:
        return self._request("GET", "/api/stats")

    def price(self) -> float:
        return self._request("GET", "/api/price")["price"]

    def leaderboard(self) -> list:
        return self._request("GET", "/api/leaderboard")["leaderboard"]

    def matches(self) -> list:
        return self._request("GET", "/api/matches")["matches"]

    def profile(self, wallet: str) -> dict:
        return self._request("GET", f"/api/profile/{wallet}")["profile"]

def parse_square(text: str) -> tuple:
    """'6,4' -> (6, 4)"""
    row, col = text.split(",")
    return int(row), int(col)

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="chess-wager", description="Wager room API client")
    parser.add_argument("--url", default=os.getenv("ARENA_URL", "http://localhost:3001"))
    sub = parser.add_subparsers(dest="command", required=True)

    create = sub.add_parser("create", help="open a room")
    create.add_argument("wallet")
    create.add_argument("--fee", type=float, default=None, help="entry fee in USD")

    join = sub.add_parser("join", help="take the black seat")
    join.add_argument("code")
    join.add_argument("wallet")

    pay = sub.add_parser("pay", help="submit a deposit transaction id")
    pay.add_argument("code")
    pay.add_argument("wallet")
    pay.add_argument("tx")

    move = sub.add_parser("move", help="move a piece, squares as row,col")
    move.add_argument("code")
    move.add_argument("player_id", type=int)
    move.add_argument("src", type=parse_square)
    move.add_argument("dst", type=parse_square)

    state = sub.add_parser("state", help="print the room state")
    state.add_argument("code")
    return parser

def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    with ArenaClient(args.url) as api:
        try:
            if args.command == "create":
                result = api.create_room(args.wallet, args.fee)
            elif args.command == "join":
                result = api.join_room(args.code, args.wallet)
            elif args.command == "pay":
                result = api.verify_payment(args.code, args.tx, args.wallet)
            elif args.command == "move":
                result = api.move(args.code, args.player_id, args.src, args.dst)
            else:
                result = api.state(args.code)
        except ArenaClientError as e:
            logger.error(f"Request rejected: {e.reason}")
            return 1
        except httpx.HTTPError as e:
            logger.error(f"Server unreachable at {args.url}: {e}")
            return 2

    print(json.dumps(result, indent=2))
    return 0

if __name__ == "__main__":
    sys.exit(main())
