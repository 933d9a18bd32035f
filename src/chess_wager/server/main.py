import asyncio
import logging
from concurrent.futures import ThreadPoolExecutor
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from chess_wager.server.config import Settings, load_settings
from chess_wager.server.engine import RoomEngine
from chess_wager.server.errors import ArenaError, InvalidRequest
from chess_wager.server.history import MatchHistory
from chess_wager.server.ledger import LedgerClient, SolanaLedgerClient
from chess_wager.server.logs import setup_logging
from chess_wager.server.oracle import PriceOracle
from chess_wager.server.registry import MatchRegistry, ReplayGuard
from chess_wager.server.settlement import SettlementEngine
from chess_wager.shared.identity import is_valid_wallet
from chess_wager.shared.schemas import (
    CreateRoomRequest, JoinRoomRequest, MoveRequest, VerifyPaymentRequest
)

logger = logging.getLogger(__name__)

@dataclass
class Services:
    settings: Settings
    engine: RoomEngine
    oracle: PriceOracle
    ledger: LedgerClient
    history: Optional[MatchHistory]
    executor: Optional[ThreadPoolExecutor]

    def close(self) -> None:
        if self.executor:
            self.executor.shutdown(wait=True)
        self.ledger.close()
        self.oracle.close()
        if self.history:
            self.history.close()

def build_services(settings: Settings,
                   ledger: Optional[LedgerClient] = None,
                   oracle: Optional[PriceOracle] = None,
                   history: Optional[MatchHistory] = None,
                   executor: Optional[ThreadPoolExecutor] = None) -> Services:
    """Wires the components. Anything passed in is used as-is (tests inject fakes)."""
    ledger = ledger or SolanaLedgerClient.from_settings(settings)
    oracle = oracle or PriceOracle(
        settings.price_api_url, settings.token_mint,
        cache_seconds=settings.price_cache_seconds,
        fallback_price=settings.fallback_price_usd,
        timeout=settings.oracle_timeout_seconds,
    )
    if history is None and settings.database_url:
        history = MatchHistory(settings.database_url)

    replay_guard = ReplayGuard(
        consumed=history.consumed_transactions() if history else (),
        on_commit=history.add_consumed_transaction if history else None,
    )
    registry = MatchRegistry(settings, oracle)
    settlement = SettlementEngine(ledger, settings, history=history)
    engine = RoomEngine(registry, ledger, settlement, settings,
                        replay_guard=replay_guard, executor=executor)

    if ledger.signer_address:
        logger.info(f"Wallet (from key): {ledger.signer_address}")
    elif settings.wallet_address:
        logger.info(f"Wallet (receive only): {settings.wallet_address}")
    else:
        logger.warning("No platform wallet configured")

    return Services(settings, engine, oracle, ledger, history, executor)

async def room_sweeper(engine: RoomEngine, interval: float):
    logger.info("--- Room Sweeper Started ---")
    while True:
        await asyncio.sleep(interval)
        try:
            removed = await asyncio.to_thread(engine.sweep)
        except Exception as e:
            logger.error(f"Room sweep failed: {e}", exc_info=True)
            continue
        if removed:
            logger.info(f"Sweep removed {len(removed)} rooms")

def create_app(settings: Optional[Settings] = None,
               services: Optional[Services] = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        nonlocal services
        cfg = services.settings if services else (settings or load_settings())
        setup_logging(cfg.log_level, cfg.log_file)
        if services is None:
            services = build_services(cfg, executor=ThreadPoolExecutor(max_workers=4, thread_name_prefix="settle"))
        app.state.services = services

        task = asyncio.create_task(room_sweeper(services.engine, cfg.sweep_interval_seconds))
        yield
        task.cancel()
        services.close()

    app = FastAPI(title="chess-wager", lifespan=lifespan)

    @app.exception_handler(ArenaError)
    async def arena_error_handler(request: Request, exc: ArenaError):
        return JSONResponse(status_code=exc.status_code, content={"success": False, "error": exc.reason})

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        errors = exc.errors()
        first = errors[0] if errors else {}
        cause = (first.get("ctx") or {}).get("error")
        reason = str(cause) if cause else "Missing required fields"
        return JSONResponse(status_code=400, content={"success": False, "error": reason})

    def get_services(request: Request) -> Services:
        return request.app.state.services

    def get_engine(request: Request) -> RoomEngine:
        return request.app.state.services.engine

    # --- Config & Health ---

    @app.get("/api/health")
    def health_check(svc: Services = Depends(get_services)):
        return {
            "status": "ok",
            "wallet_address": svc.engine.platform_wallet,
            "rooms": len(svc.engine.registry),
            "token": svc.settings.token_symbol,
        }

    @app.get("/api/config")
    def get_config(svc: Services = Depends(get_services)):
        cfg = svc.settings
        return {
            "wallet_address": svc.engine.platform_wallet,
            "token_mint": cfg.token_mint,
            "token_symbol": cfg.token_symbol,
            "token_decimals": cfg.token_decimals,
            "token_price_usd": svc.oracle.get_price(),
            "commission_rate": cfg.commission_rate,
            "game_time_ms": cfg.game_time_ms,
        }

    @app.get("/api/price")
    def get_price(svc: Services = Depends(get_services)):
        return {"success": True, "price": svc.oracle.get_price(), "symbol": svc.settings.token_symbol}

    @app.get("/api/stats")
    def get_stats(svc: Services = Depends(get_services)):
        stats = svc.engine.registry.stats()
        return {
            "success": True,
            "total_matches": svc.history.match_count() if svc.history else 0,
            "active_rooms": stats["active_rooms"],
            "live_games": stats["live_games"],
        }

    # --- Rooms ---

    @app.post("/api/rooms")
    def create_room(body: CreateRoomRequest, engine: RoomEngine = Depends(get_engine)):
        return engine.create_room(body.entry_fee_usd, body.creator_wallet)

    @app.get("/api/rooms")
    def list_rooms(engine: RoomEngine = Depends(get_engine)):
        return {"success": True, "rooms": engine.lobby()}

    @app.post("/api/rooms/{code}/join")
    def join_room(code: str, body: JoinRoomRequest, engine: RoomEngine = Depends(get_engine)):
        return engine.join_room(code, body.player_wallet)

    @app.get("/api/rooms/{code}")
    def get_room(code: str, engine: RoomEngine = Depends(get_engine)):
        return engine.get_room(code)

    @app.get("/api/rooms/{code}/state")
    def get_state(code: str, engine: RoomEngine = Depends(get_engine)):
        return engine.get_state(code)

    @app.get("/api/rooms/{code}/payments")
    def get_payments(code: str, engine: RoomEngine = Depends(get_engine)):
        return engine.get_payments(code)

    @app.post("/api/rooms/{code}/move")
    def submit_move(code: str, body: MoveRequest, engine: RoomEngine = Depends(get_engine)):
        return engine.submit_move(code, body.player_id, body.from_, body.to)

    @app.post("/api/payments/verify")
    def verify_payment(body: VerifyPaymentRequest, engine: RoomEngine = Depends(get_engine)):
        return engine.verify_payment(body.room_code, body.tx_signature, body.player_wallet)

    @app.get("/api/my-game/{wallet}")
    def my_game(wallet: str, engine: RoomEngine = Depends(get_engine)):
        game = engine.active_game(wallet)
        if game is None:
            return {"success": True, "has_active_game": False}
        return {"success": True, "has_active_game": True, "room": game}

    # --- History ---

    def require_history(svc: Services) -> MatchHistory:
        if svc.history is None:
            raise InvalidRequest("Match history is disabled")
        return svc.history

    @app.get("/api/leaderboard")
    def leaderboard(svc: Services = Depends(get_services)):
        return {"success": True, "leaderboard": require_history(svc).leaderboard()}

    @app.get("/api/matches")
    def recent_matches(svc: Services = Depends(get_services)):
        return {"success": True, "matches": require_history(svc).recent_matches()}

    @app.get("/api/profile/{wallet}")
    def profile(wallet: str, svc: Services = Depends(get_services)):
        if not is_valid_wallet(wallet):
            raise InvalidRequest("Invalid wallet")
        return {"success": True, "profile": require_history(svc).profile(wallet)}

    return app

app = create_app()

if __name__ == "__main__":
    import uvicorn

    cfg = load_settings()
    uvicorn.run(create_app(cfg), host=cfg.host, port=cfg.port)
