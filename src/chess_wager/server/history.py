import logging
import threading
import uuid
from typing import Callable, Dict, List

from sqlalchemy import create_engine, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from sqlalchemy.pool import StaticPool

from chess_wager.server.clock import now_ms
from chess_wager.server.models import Base, ConsumedTransaction, MatchRecord, PlayerProfile
from chess_wager.shared.identity import short_wallet
from chess_wager.shared.schemas import (
    LeaderboardEntry, MatchParty, MatchSummary, OpponentRecord, ProfileView
)

logger = logging.getLogger(__name__)

RECENT_MATCHES = 20
LEADERBOARD_SIZE = 20
PROFILE_OPPONENTS = 10

def make_engine(database_url: str):
    if database_url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
        if database_url in ("sqlite://", "sqlite:///:memory:"):
            # One shared connection, otherwise each thread sees its own empty db
            kwargs["poolclass"] = StaticPool
        return create_engine(database_url, **kwargs)
    return create_engine(database_url, pool_pre_ping=True)

def win_rate(wins: int, losses: int) -> float:
    played = wins + losses
    return round(wins / played * 100, 1) if played else 0.0

def _summary(record: MatchRecord) -> MatchSummary:
    return MatchSummary(
        id=record.id,
        room_code=record.room_code,
        winner=MatchParty(wallet=record.winner_wallet, name=record.winner_name),
        loser=MatchParty(wallet=record.loser_wallet, name=record.loser_name),
        entry_fee_usd=record.entry_fee_usd,
        token_amount=record.token_amount,
        prize=record.prize,
        timestamp=record.timestamp,
    )

class MatchHistory:
    """Match results, win/loss profiles and the durable replay-guard log."""

    def __init__(self, database_url: str, clock: Callable[[], int] = now_ms):
        self.engine = make_engine(database_url)
        Base.metadata.create_all(self.engine)
        self.clock = clock
        self._lock = threading.Lock()

    def close(self) -> None:
        self.engine.dispose()

    # --- Writes ---

    def record_match(self, room_code: str, entry_fee_usd: float, token_amount: int, prize: int,
                     winner_wallet: str, loser_wallet: str) -> MatchSummary:
        now = self.clock()
        record = MatchRecord(
            id=uuid.uuid4().hex[:12],
            room_code=room_code,
            winner_wallet=winner_wallet,
            winner_name=short_wallet(winner_wallet),
            loser_wallet=loser_wallet,
            loser_name=short_wallet(loser_wallet),
            entry_fee_usd=entry_fee_usd,
            token_amount=token_amount,
            prize=prize,
            timestamp=now,
        )
        with self._lock, Session(self.engine) as session:
            winner = self._get_or_create_profile(session, winner_wallet, now)
            winner.wins += 1
            winner.total_earnings += prize

            loser = self._get_or_create_profile(session, loser_wallet, now)
            loser.losses += 1
            loser.total_lost += token_amount

            session.add(record)
            session.commit()
            summary = _summary(record)

        logger.info(f"Match recorded: {summary.winner.name} beat {summary.loser.name}")
        return summary

    def add_consumed_transaction(self, signature: str) -> None:
        # The in-memory guard keeps the id even if this write fails
        try:
            with self._lock, Session(self.engine) as session:
                session.merge(ConsumedTransaction(signature=signature, consumed_at=self.clock()))
                session.commit()
        except SQLAlchemyError as e:
            logger.error(f"Could not persist consumed tx {signature}: {e}")

    @staticmethod
    def _get_or_create_profile(session: Session, wallet: str, now: int) -> PlayerProfile:
        profile = session.get(PlayerProfile, wallet)
        if profile is None:
            profile = PlayerProfile(
                wallet=wallet, username=short_wallet(wallet),
                wins=0, losses=0, total_earnings=0, total_lost=0, joined_at=now,
            )
            session.add(profile)
        return profile

    # --- Reads ---

    def consumed_transactions(self) -> List[str]:
        with Session(self.engine) as session:
            return list(session.scalars(select(ConsumedTransaction.signature)))

    def match_count(self) -> int:
        with Session(self.engine) as session:
            return session.scalar(select(func.count()).select_from(MatchRecord)) or 0

    def recent_matches(self, limit: int = RECENT_MATCHES) -> List[MatchSummary]:
        with Session(self.engine) as session:
            stmt = select(MatchRecord).order_by(MatchRecord.timestamp.desc()).limit(limit)
            return [_summary(r) for r in session.scalars(stmt)]

    def leaderboard(self, limit: int = LEADERBOARD_SIZE) -> List[LeaderboardEntry]:
        with Session(self.engine) as session:
            stmt = select(PlayerProfile).order_by(PlayerProfile.wins.desc()).limit(limit)
            return [
                LeaderboardEntry(
                    wallet=p.wallet, username=p.username, wins=p.wins, losses=p.losses,
                    total_earnings=p.total_earnings, win_rate=win_rate(p.wins, p.losses),
                )
                for p in session.scalars(stmt)
            ]

    def profile(self, wallet: str) -> ProfileView:
        with Session(self.engine) as session:
            profile = session.get(PlayerProfile, wallet)
            stmt = (
                select(MatchRecord)
                .where((MatchRecord.winner_wallet == wallet) | (MatchRecord.loser_wallet == wallet))
                .order_by(MatchRecord.timestamp.desc())
                .limit(RECENT_MATCHES)
            )
            recent = [_summary(r) for r in session.scalars(stmt)]

        opponents: Dict[str, OpponentRecord] = {}
        for m in recent:
            won = m.winner.wallet == wallet
            opp = m.loser if won else m.winner
            entry = opponents.setdefault(opp.wallet, OpponentRecord(wallet=opp.wallet, name=opp.name))
            if won:
                entry.wins += 1
            else:
                entry.losses += 1
        ranked = sorted(opponents.values(), key=lambda o: o.wins + o.losses, reverse=True)

        if profile is None:
            return ProfileView(wallet=wallet, username=short_wallet(wallet),
                               recent_matches=recent, opponents=ranked[:PROFILE_OPPONENTS])
        return ProfileView(
            wallet=wallet,
            username=profile.username,
            wins=profile.wins,
            losses=profile.losses,
            total_earnings=profile.total_earnings,
            total_lost=profile.total_lost,
            joined_at=profile.joined_at,
            win_rate=win_rate(profile.wins, profile.losses),
            recent_matches=recent,
            opponents=ranked[:PROFILE_OPPONENTS],
        )
