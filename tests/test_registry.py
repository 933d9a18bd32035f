"""Tests for room creation, lookup, expiry and the lobby."""

import pytest

from chess_wager.server.errors import InvalidRequest, RoomNotFound
from chess_wager.server.registry import MatchRegistry, ReplayGuard
from chess_wager.shared.board import INITIAL_BOARD
from chess_wager.shared.identity import ROOM_CODE_ALPHABET, ROOM_CODE_LENGTH
from chess_wager.shared.schemas import Color, RoomStatus

from conftest import FakeOracle, new_wallet

class TestCreate:
    """Tests for MatchRegistry.create."""

    def test_new_room_defaults(self, registry, white, clock) -> None:
        """Creator sits as white in a waiting room with full clocks."""
        room = registry.create(5, white)
        assert room.status == RoomStatus.WAITING_PLAYERS
        assert len(room.code) == ROOM_CODE_LENGTH
        assert set(room.code) <= set(ROOM_CODE_ALPHABET)
        assert room.created_at == clock.now
        assert room.players[0].id == 0
        assert room.players[0].color == Color.WHITE
        assert room.players[0].wallet == white
        assert room.white_time_ms == room.black_time_ms == 600_000
        assert room.current_turn == Color.WHITE
        assert room.board == [list(r) for r in INITIAL_BOARD]

    def test_token_amount_is_floored_at_creation_price(self, settings, white) -> None:
        """5 USD at 0.3 per token buys 16 whole tokens."""
        registry = MatchRegistry(settings, FakeOracle(price=0.3))
        room = registry.create(5, white)
        assert room.token_amount == 16
        assert room.token_price_at_creation == 0.3

    def test_token_amount_is_fixed_after_price_moves(self, settings, white) -> None:
        oracle = FakeOracle(price=0.25)
        registry = MatchRegistry(settings, oracle)
        room = registry.create(5, white)
        oracle.price = 0.5
        assert registry.get(room.code).token_amount == 20

    @pytest.mark.parametrize("fee", [None, 0, -3])
    def test_missing_or_non_positive_fee_uses_default(self, registry, white, fee) -> None:
        room = registry.create(fee, white)
        assert room.entry_fee_usd == 5
        assert room.token_amount == 20

    def test_fee_below_one_token_is_rejected(self, settings, white) -> None:
        registry = MatchRegistry(settings, FakeOracle(price=10.0))
        with pytest.raises(InvalidRequest, match="below one token"):
            registry.create(5, white)

    def test_fee_whose_payout_overflows_u64_is_rejected(self, registry, white) -> None:
        """1e14 USD at 0.25 would pay out more raw units than an SPL amount holds."""
        with pytest.raises(InvalidRequest, match="too large"):
            registry.create(1e14, white)
        assert len(registry) == 0

    def test_largest_payout_that_fits_is_accepted(self, settings, white) -> None:
        # floor(2T * 0.9) * 10**6 <= 2**64 - 1 holds for T = 10**13
        registry = MatchRegistry(settings, FakeOracle(price=1.0))
        assert registry.create(10 ** 13, white).token_amount == 10 ** 13

    @pytest.mark.parametrize("wallet", ["", "short", "0" * 44, "not-base58-at-all-not-base58-at-all!!"])
    def test_invalid_wallet_is_rejected(self, registry, wallet) -> None:
        with pytest.raises(InvalidRequest, match="Invalid wallet"):
            registry.create(5, wallet)

    def test_code_collision_regenerates(self, settings, oracle, white) -> None:
        """A code already in use is never handed out twice."""
        codes = iter(["AAAAAA", "AAAAAA", "BBBBBB"])
        registry = MatchRegistry(settings, oracle, code_factory=lambda: next(codes))
        first = registry.create(5, white)
        second = registry.create(5, new_wallet())
        assert first.code == "AAAAAA"
        assert second.code == "BBBBBB"
        assert len(registry) == 2

class TestGet:
    """Tests for MatchRegistry.get."""

    def test_lookup_is_case_insensitive(self, registry, white) -> None:
        room = registry.create(5, white)
        assert registry.get(room.code.lower()) is room
        assert registry.get(f"  {room.code} ") is room

    def test_unknown_code(self, registry) -> None:
        with pytest.raises(RoomNotFound) as exc:
            registry.get("ZZZZZZ")
        assert exc.value.status_code == 404
        assert exc.value.reason == "Room not found"

class TestExpire:
    """Tests for MatchRegistry.expire."""

    def test_finished_room_is_kept_within_retention(self, registry, white, clock) -> None:
        room = registry.create(5, white)
        room.status = RoomStatus.FINISHED
        room.finished_at = clock.now
        assert registry.expire(clock.now + 600_000) == []
        assert len(registry) == 1

    def test_finished_room_is_dropped_after_retention(self, registry, white, clock) -> None:
        room = registry.create(5, white)
        room.status = RoomStatus.FINISHED
        room.finished_at = clock.now
        assert registry.expire(clock.now + 600_001) == [room.code]
        with pytest.raises(RoomNotFound):
            registry.get(room.code)

    def test_idle_waiting_room_is_dropped(self, registry, white, clock) -> None:
        room = registry.create(5, white)
        assert registry.expire(clock.now + 30 * 60 * 1000) == []
        assert registry.expire(clock.now + 30 * 60 * 1000 + 1) == [room.code]

    def test_joined_but_unpaid_room_is_dropped(self, registry, white, clock) -> None:
        room = registry.create(5, white)
        room.status = RoomStatus.WAITING_PAYMENTS
        assert registry.expire(clock.now + 30 * 60 * 1000) == []
        assert registry.expire(clock.now + 30 * 60 * 1000 + 1) == [room.code]

    def test_rooms_with_a_payment_or_in_play_are_kept(self, registry, white, clock) -> None:
        paying = registry.create(5, white)
        paying.status = RoomStatus.WAITING_PAYMENTS
        paying.confirmed_payments = 1
        playing = registry.create(5, new_wallet())
        playing.status = RoomStatus.PLAYING
        assert registry.expire(clock.now + 10 ** 9) == []
        assert len(registry) == 2

class TestLobby:
    """Tests for lobby listing, reconnect lookup and stats."""

    def test_lobby_lists_paid_rooms_and_live_games(self, registry, clock) -> None:
        unpaid = registry.create(5, new_wallet())
        paid = registry.create(5, new_wallet())
        paid.players[0].paid = True
        live = registry.create(5, new_wallet())
        live.status = RoomStatus.PLAYING

        listed = [r.code for r in registry.lobby()]
        assert listed == [live.code, paid.code]
        assert unpaid.code not in listed

    def test_find_active_for_wallet(self, registry, white) -> None:
        room = registry.create(5, white)
        found = registry.find_active_for_wallet(white)
        assert found is not None
        assert found[0] is room
        assert found[1].color == Color.WHITE

    def test_find_active_skips_finished(self, registry, white) -> None:
        room = registry.create(5, white)
        room.status = RoomStatus.FINISHED
        assert registry.find_active_for_wallet(white) is None

    def test_stats(self, registry) -> None:
        registry.create(5, new_wallet())
        registry.create(5, new_wallet()).status = RoomStatus.PLAYING
        registry.create(5, new_wallet()).status = RoomStatus.FINISHED
        assert registry.stats() == {"rooms": 3, "active_rooms": 2, "live_games": 1}

class TestReplayGuard:
    """Tests for the global consumed-transaction set."""

    def test_reserve_is_exclusive_until_released(self) -> None:
        guard = ReplayGuard()
        assert guard.reserve("sig")
        assert not guard.reserve("sig")
        guard.release("sig")
        assert guard.reserve("sig")

    def test_committed_ids_stay_consumed(self) -> None:
        persisted = []
        guard = ReplayGuard(on_commit=persisted.append)
        guard.reserve("sig")
        guard.commit("sig")
        guard.release("sig")
        assert "sig" in guard
        assert not guard.reserve("sig")
        assert persisted == []
        guard.persist("sig")
        assert persisted == ["sig"]

    def test_preloaded_ids(self) -> None:
        guard = ReplayGuard(consumed=["old"])
        assert "old" in guard
        assert len(guard) == 1
