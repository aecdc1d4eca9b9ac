#!/usr/bin/env python3
"""
Database models and configuration for GridReveal.
Holds the play-session log and the upload idempotency ledger.
"""

import os
import json
from sqlalchemy import create_engine, Column, Integer, String, Boolean, DateTime, Text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import declarative_base, sessionmaker
from datetime import datetime
import logging

logger = logging.getLogger('gridreveal.database')

# Database URL - defaults to a local SQLite file
DATABASE_URL = os.getenv('DATABASE_URL', 'sqlite:///gridreveal.db')

Base = declarative_base()

try:
    engine = create_engine(DATABASE_URL, echo=False)
    SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
except Exception as e:
    logger.warning(f"Database not available, session log disabled: {e}")
    engine = None
    SessionLocal = None


class SessionLog(Base):
    """One finished (or abandoned) play session."""
    __tablename__ = "session_log"

    id = Column(Integer, primary_key=True)
    session_id = Column(String(64), index=True)
    game_id = Column(String(64), index=True, nullable=True)
    player = Column(String(255), nullable=True)
    score = Column(Integer, default=0)
    total_rounds = Column(Integer, default=0)
    completed = Column(Boolean, default=False)
    answers = Column(Text, default='[]')  # JSON array of {guess, correct, round_index, phase}
    created_at = Column(DateTime, default=datetime.utcnow)


class UploadRequest(Base):
    """Idempotency key supplied by an upload client, mapped to the image it created."""
    __tablename__ = "upload_requests"

    id = Column(Integer, primary_key=True)
    idempotency_key = Column(String(255), unique=True, index=True)
    image_id = Column(String(64), nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)


def get_db():
    """Get database session."""
    if SessionLocal:
        db = SessionLocal()
        try:
            yield db
        finally:
            db.close()
    else:
        yield None


def init_db(bind=None):
    """Initialize database tables."""
    bind = bind or engine
    if bind is not None:
        try:
            Base.metadata.create_all(bind=bind)
            logger.info("Database tables initialized successfully")
            return True
        except SQLAlchemyError as e:
            logger.error(f"Failed to initialize database: {e}")
            return False
    return False


def _log_view(row: SessionLog) -> dict:
    try:
        answers = json.loads(row.answers or '[]')
    except (TypeError, ValueError):
        answers = []
    return {
        'session_id': row.session_id,
        'game_id': row.game_id,
        'player': row.player,
        'score': row.score,
        'total_rounds': row.total_rounds,
        'completed': bool(row.completed),
        'answers': answers,
        'created_at': row.created_at.isoformat() if row.created_at else None,
    }


def add_session_log(db, session_id: str, game_id: str = None, player: str = None,
                    score: int = 0, total_rounds: int = 0, completed: bool = False,
                    answers: list = None):
    """Append a session to the log.

    Returns:
        The new :class:`SessionLog` row, or ``None`` on failure.
    """
    if not db:
        return None
    try:
        row = SessionLog(
            session_id=session_id,
            game_id=game_id,
            player=player,
            score=score,
            total_rounds=total_rounds,
            completed=completed,
            answers=json.dumps(answers or []),
        )
        db.add(row)
        db.commit()
        return row
    except SQLAlchemyError as e:
        logger.error(f"Error writing session log: {e}")
        db.rollback()
        return None


def get_session_logs(db, game_id: str = None, limit: int = 50):
    """Return the most recent logged sessions, newest first, as dicts."""
    if not db:
        return []
    try:
        query = db.query(SessionLog)
        if game_id:
            query = query.filter(SessionLog.game_id == game_id)
        rows = query.order_by(SessionLog.id.desc()).limit(limit).all()
        return [_log_view(r) for r in rows]
    except SQLAlchemyError as e:
        logger.error(f"Error reading session log: {e}")
        return []


def get_game_stats(db, game_id: str):
    """Return play count, completion count and average score for a game."""
    if not db:
        return {'plays': 0, 'completed': 0, 'average_score': 0.0}
    try:
        rows = db.query(SessionLog).filter(SessionLog.game_id == game_id).all()
        completed = [r for r in rows if r.completed]
        average = (sum(r.score for r in completed) / len(completed)) if completed else 0.0
        return {'plays': len(rows), 'completed': len(completed),
                'average_score': round(average, 2)}
    except SQLAlchemyError as e:
        logger.error(f"Error computing game stats: {e}")
        return {'plays': 0, 'completed': 0, 'average_score': 0.0}


def find_upload(db, idempotency_key: str):
    """Return the image id recorded for *idempotency_key*, or ``None``."""
    if not db or not idempotency_key:
        return None
    try:
        row = db.query(UploadRequest).filter(
            UploadRequest.idempotency_key == idempotency_key
        ).first()
        return row.image_id if row else None
    except SQLAlchemyError as e:
        logger.error(f"Error looking up upload key: {e}")
        return None


def record_upload(db, idempotency_key: str, image_id: str):
    """Remember that *idempotency_key* produced *image_id*.

    Returns:
        ``True`` when recorded, ``False`` if the key already exists or the
        write failed.
    """
    if not db or not idempotency_key:
        return False
    try:
        db.add(UploadRequest(idempotency_key=idempotency_key, image_id=image_id))
        db.commit()
        return True
    except SQLAlchemyError as e:
        logger.warning(f"Could not record upload key {idempotency_key}: {e}")
        db.rollback()
        return False


def forget_image_uploads(db, image_id: str):
    """Drop idempotency keys that point at a deleted image."""
    if not db:
        return 0
    try:
        count = db.query(UploadRequest).filter(UploadRequest.image_id == image_id).delete()
        db.commit()
        return count
    except SQLAlchemyError as e:
        logger.error(f"Error removing upload keys: {e}")
        db.rollback()
        return 0
