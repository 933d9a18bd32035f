from sqlalchemy import BigInteger, Column, Float, Integer, String
from sqlalchemy.orm import declarative_base

Base = declarative_base()

class MatchRecord(Base):
    __tablename__ = "match_records"
    id = Column(String, primary_key=True)
    room_code = Column(String, index=True)
    winner_wallet = Column(String, index=True)
    winner_name = Column(String)
    loser_wallet = Column(String, index=True)
    loser_name = Column(String)
    entry_fee_usd = Column(Float)
    token_amount = Column(Integer)
    prize = Column(Integer) # Whole tokens paid to the winner
    timestamp = Column(BigInteger, index=True) # ms

class PlayerProfile(Base):
    __tablename__ = "player_profiles"
    wallet = Column(String, primary_key=True)
    username = Column(String)
    wins = Column(Integer, default=0)
    losses = Column(Integer, default=0)
    total_earnings = Column(Integer, default=0)
    total_lost = Column(Integer, default=0)
    joined_at = Column(BigInteger)

class ConsumedTransaction(Base):
    # Durable copy of the payment replay guard
    __tablename__ = "consumed_transactions"
    signature = Column(String, primary_key=True)
    consumed_at = Column(BigInteger)
