#!/usr/bin/env python3
"""
Reveal game engine.

A round shows a 15x15 scramble, then 10x10, then 5x5, then the original with
the answer.  Players type free-text guesses that are matched word by word
against the image's name.  A session strings several rounds together on a
one-second clock.
"""

import logging
import math
import random
import re
import threading
import uuid
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Callable, Dict, List, Optional

logger = logging.getLogger('gridreveal.reveal')

STOP_WORDS = frozenset({
    'the', 'a', 'an', 'as', 'by', 'for', 'of', 'at', 'to', 'from', 'up',
    'down', 'in', 'out', 'on', 'off', 'over', 'under', 'again', 'further',
    'then', 'once',
})
MIN_WORD_LENGTH = 3
MIN_WORDS_RATIO = 0.75

_QUOTES_RE = re.compile(r"[‘’'`\"]")
_NON_ALNUM_RE = re.compile(r'[^a-z0-9\s]')
_SPACES_RE = re.compile(r'\s+')


# ---------------------------------------------------------------------------
# Guess matching
# ---------------------------------------------------------------------------

def normalize_words(text: Optional[str]) -> List[str]:
    """Lowercase *text*, drop quotes and punctuation, and return the words
    that are not stop words."""
    if not isinstance(text, str):
        return []
    cleaned = _QUOTES_RE.sub('', text.lower())
    cleaned = _NON_ALNUM_RE.sub(' ', cleaned)
    cleaned = _SPACES_RE.sub(' ', cleaned).strip()
    return [w for w in cleaned.split(' ') if w and w not in STOP_WORDS]


def check_guess(guess: Optional[str], answer: Optional[str]) -> Dict:
    """Match *guess* against *answer*.

    Single-word answers need exactly one guessed word of at least three
    letters that equals the answer.  Multi-word answers need at least 75% as
    many guessed words as answer words, and every guessed word must appear in
    the answer.

    Returns:
        Dict with ``correct`` (bool) and ``reason``, one of ``'correct'``,
        ``'empty'``, ``'too_few_words'``, ``'too_short'`` or ``'mismatch'``.
    """
    guess_words = normalize_words(guess)
    answer_words = normalize_words(answer)

    if not guess_words or not answer_words:
        return {'correct': False, 'reason': 'empty'}

    if len(answer_words) == 1:
        if len(guess_words) != 1:
            return {'correct': False, 'reason': 'mismatch'}
        if len(guess_words[0]) < MIN_WORD_LENGTH:
            return {'correct': False, 'reason': 'too_short'}
        if guess_words[0] != answer_words[0]:
            return {'correct': False, 'reason': 'mismatch'}
        return {'correct': True, 'reason': 'correct'}

    required = math.ceil(len(answer_words) * MIN_WORDS_RATIO)
    if len(guess_words) < required:
        return {'correct': False, 'reason': 'too_few_words'}
    answer_set = set(answer_words)
    if all(word in answer_set for word in guess_words):
        return {'correct': True, 'reason': 'correct'}
    return {'correct': False, 'reason': 'mismatch'}


def score_guess(guess: Optional[str], answer: Optional[str]) -> bool:
    """Return True if *guess* counts as a correct answer. Never raises."""
    return check_guess(guess, answer)['correct']


# ---------------------------------------------------------------------------
# Settings and rounds
# ---------------------------------------------------------------------------

class Phase(str, Enum):
    GRID15 = 'grid15'
    GRID10 = 'grid10'
    GRID5 = 'grid5'
    ANSWER = 'answer'


PHASE_ORDER = (Phase.GRID15, Phase.GRID10, Phase.GRID5, Phase.ANSWER)

STATUS_WAITING = 'waiting'
STATUS_PLAYING = 'playing'
STATUS_COMPLETED = 'completed'


@dataclass
class GameSettings:
    """Seconds spent in each phase of a round."""

    duration15x15: int = 10
    duration10x10: int = 10
    duration5x5: int = 5
    durationAnswer: int = 5

    _KEYS = {
        'duration15x15': ('duration15x15', 'duration_15x15', 'duration15'),
        'duration10x10': ('duration10x10', 'duration_10x10', 'duration10'),
        'duration5x5': ('duration5x5', 'duration_5x5', 'duration5'),
        'durationAnswer': ('durationAnswer', 'duration_answer'),
    }

    def __post_init__(self):
        self.validate()

    def validate(self) -> None:
        for name in self._KEYS:
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int) or value < 1:
                raise ValueError(f'{name} must be a positive whole number of seconds')

    @classmethod
    def from_dict(cls, data: Optional[Dict]) -> 'GameSettings':
        """Build settings from camelCase or snake_case keys; missing keys keep
        their defaults."""
        if data is not None and not isinstance(data, dict):
            raise ValueError('Settings must be an object')
        values = {}
        for name, aliases in cls._KEYS.items():
            for key in aliases:
                if data and key in data and data[key] is not None:
                    try:
                        values[name] = int(data[key])
                    except (TypeError, ValueError):
                        raise ValueError(f'{name} must be a whole number of seconds')
                    break
        return cls(**values)

    def to_dict(self) -> Dict[str, int]:
        return {name: getattr(self, name) for name in self._KEYS}

    def duration_for(self, phase: Phase) -> int:
        return {
            Phase.GRID15: self.duration15x15,
            Phase.GRID10: self.duration10x10,
            Phase.GRID5: self.duration5x5,
            Phase.ANSWER: self.durationAnswer,
        }[phase]


@dataclass(frozen=True)
class Round:
    """One image to guess."""

    answer: str
    grid15_url: str
    grid10_url: str
    grid5_url: str
    original_url: str
    image_id: Optional[str] = None

    def url_for(self, phase: Phase) -> str:
        return {
            Phase.GRID15: self.grid15_url,
            Phase.GRID10: self.grid10_url,
            Phase.GRID5: self.grid5_url,
            Phase.ANSWER: self.original_url,
        }[phase]

    @classmethod
    def from_image(cls, image: Dict) -> 'Round':
        """Build a round from an image record dict."""
        return cls(
            answer=image['name'],
            grid15_url=image['grid15_url'],
            grid10_url=image['grid10_url'],
            grid5_url=image['grid5_url'],
            original_url=image['original_url'],
            image_id=image.get('id'),
        )


# ---------------------------------------------------------------------------
# Session state machine
# ---------------------------------------------------------------------------

class GameSession:
    """Timed multi-round reveal game for one player.

    The session waits for :meth:`start`, then each :meth:`tick` takes one
    second off the current phase.  When a phase runs out the next one in
    ``grid15 -> grid10 -> grid5 -> answer`` begins; after ``answer`` the next
    round starts at ``grid15``, or the session completes.

    A correct guess during a grid phase scores a point and jumps straight to
    ``answer`` for ``durationAnswer`` seconds.  Wrong guesses change nothing.
    Ticks and guesses that arrive while waiting or completed are ignored.

    Tick and guess handlers may run on different threads; every mutation
    holds the session lock.
    """

    def __init__(self, rounds: List[Round], settings: Optional[GameSettings] = None,
                 session_id: Optional[str] = None, game_id: Optional[str] = None,
                 player: Optional[str] = None, randomize: bool = False,
                 on_complete: Optional[Callable[['GameSession'], None]] = None,
                 rng: Optional[random.Random] = None):
        """
        Args:
            rounds: Rounds in play order.  Must not be empty.
            settings: Phase durations; defaults to :class:`GameSettings`.
            session_id: Identifier; a random hex id is generated when omitted.
            game_id: Game the rounds came from, if any.
            player: Optional player name recorded in the session log.
            randomize: Shuffle the round order once, now.
            on_complete: Called once with this session when it completes.
            rng: Random source used for *randomize*.
        """
        if not rounds:
            raise ValueError('A game session needs at least one round')
        self.session_id = session_id or uuid.uuid4().hex
        self.game_id = game_id
        self.player = player
        self.settings = settings or GameSettings()
        self.rounds: List[Round] = list(rounds)
        if randomize:
            (rng or random).shuffle(self.rounds)
        self.created_at = datetime.now()
        self._on_complete = on_complete
        self._lock = threading.RLock()
        self._reset()

    def _reset(self) -> None:
        self.status = STATUS_WAITING
        self.round_index = 0
        self.phase = Phase.GRID15
        self.time_left = self.settings.duration15x15
        self.score = 0
        self.guesses: List[Dict] = []
        self.completed_at: Optional[datetime] = None

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    @property
    def total_rounds(self) -> int:
        return len(self.rounds)

    @property
    def is_last_round(self) -> bool:
        return self.round_index >= len(self.rounds) - 1

    def current_round(self) -> Round:
        return self.rounds[self.round_index]

    def current_image_url(self) -> str:
        with self._lock:
            return self.current_round().url_for(self.phase)

    def to_dict(self) -> Dict:
        """Snapshot for the API.  The answer is only included once revealed."""
        with self._lock:
            current = self.current_round()
            revealed = self.phase == Phase.ANSWER or self.status == STATUS_COMPLETED
            return {
                'session_id': self.session_id,
                'game_id': self.game_id,
                'player': self.player,
                'status': self.status,
                'round_index': self.round_index,
                'total_rounds': self.total_rounds,
                'phase': self.phase.value,
                'time_left': self.time_left,
                'score': self.score,
                'image_url': current.url_for(self.phase),
                'answer': current.answer if revealed else None,
                'guesses': list(self.guesses),
                'settings': self.settings.to_dict(),
                'created_at': self.created_at.isoformat(),
                'completed_at': self.completed_at.isoformat() if self.completed_at else None,
            }

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def start(self) -> bool:
        """Begin play.  Returns False if the session is not waiting."""
        with self._lock:
            if self.status != STATUS_WAITING:
                return False
            self.status = STATUS_PLAYING
            self._enter_phase(Phase.GRID15)
            logger.debug("Session %s started with %d rounds", self.session_id, self.total_rounds)
            return True

    def tick(self) -> bool:
        """Take one second off the current phase.

        Returns:
            True if the tick was applied, False if the session is waiting or
            completed.
        """
        with self._lock:
            if self.status != STATUS_PLAYING:
                return False
            self.time_left -= 1
            if self.time_left <= 0:
                self._advance()
            return True

    def submit_guess(self, text: Optional[str]) -> Dict:
        """Score *text* against the current round's answer.

        Returns:
            Dict with ``accepted``, ``correct``, ``reason`` and the running
            ``score``.  Guesses outside a grid phase of a running session are
            not accepted and leave the state unchanged.
        """
        with self._lock:
            if self.status != STATUS_PLAYING or self.phase == Phase.ANSWER:
                return {'accepted': False, 'correct': False,
                        'reason': 'not_accepting_guesses', 'score': self.score}

            verdict = check_guess(text, self.current_round().answer)
            self.guesses.append({
                'round_index': self.round_index,
                'phase': self.phase.value,
                'guess': text if isinstance(text, str) else '',
                'correct': verdict['correct'],
            })
            if verdict['correct']:
                self.score += 1
                self._enter_phase(Phase.ANSWER)
            return {'accepted': True, 'correct': verdict['correct'],
                    'reason': verdict['reason'], 'score': self.score}

    def restart(self) -> None:
        """Reset every per-round and per-session value and wait for start."""
        with self._lock:
            self._reset()

    def abandon(self) -> bool:
        """Stop the session without firing the completion callback.

        Returns False if it had already completed.
        """
        with self._lock:
            if self.status == STATUS_COMPLETED:
                return False
            self.status = STATUS_COMPLETED
            self.completed_at = datetime.now()
            self.time_left = 0
            return True

    def _enter_phase(self, phase: Phase) -> None:
        self.phase = phase
        self.time_left = self.settings.duration_for(phase)

    def _advance(self) -> None:
        position = PHASE_ORDER.index(self.phase)
        if self.phase != Phase.ANSWER:
            self._enter_phase(PHASE_ORDER[position + 1])
            return
        if not self.is_last_round:
            self.round_index += 1
            self._enter_phase(Phase.GRID15)
            return
        self._complete()

    def _complete(self) -> None:
        self.status = STATUS_COMPLETED
        self.time_left = 0
        self.completed_at = datetime.now()
        logger.info("Session %s completed: %d/%d", self.session_id, self.score, self.total_rounds)
        if self._on_complete:
            try:
                self._on_complete(self)
            except Exception as e:
                logger.error("Completion callback failed for session %s: %s", self.session_id, e)
