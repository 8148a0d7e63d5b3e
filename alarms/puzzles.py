from __future__ import annotations

import logging
import random
import uuid
from typing import Callable, Optional

from time_utils import now_ms

from .errors import NotFound, StorageFailure
from .storage import AlarmStore, Operation, Puzzle

logger = logging.getLogger(__name__)

PUZZLE_RETENTION_MS = 24 * 60 * 60 * 1000


class PuzzleEngine:
    """Generates single-use arithmetic puzzles and checks answers against the store.

    Every generated puzzle is persisted before it is handed out, so it can be
    validated by id after a restart. Validation bumps the stored attempt count.
    """

    def __init__(
        self,
        store: AlarmStore,
        rng: Optional[random.Random] = None,
        clock: Callable[[], int] = now_ms,
        max_attempts: int = 5,
        retention_ms: int = PUZZLE_RETENTION_MS,
    ):
        self.store = store
        self.rng = rng or random.Random()
        self.clock = clock
        self.max_attempts = max(1, max_attempts)
        self.retention_ms = retention_ms

    def generate(self) -> Puzzle:
        operation = self.rng.choice(list(Operation))
        if operation is Operation.ADD:
            operand1 = self.rng.randrange(10, 100)
            operand2 = self.rng.randrange(10, 100)
            answer = operand1 + operand2
        elif operation is Operation.SUBTRACT:
            operand1 = self.rng.randrange(50, 200)
            operand2 = self.rng.randrange(10, operand1)
            answer = operand1 - operand2
        else:
            operand1 = self.rng.randrange(2, 20)
            operand2 = self.rng.randrange(2, 20)
            answer = operand1 * operand2

        puzzle = Puzzle(
            id=self._new_id(),
            operand1=operand1,
            operand2=operand2,
            operation=operation,
            correct_answer=answer,
            generated_at=self.clock(),
            max_attempts=self.max_attempts,
        )
        self.store.put_puzzle(puzzle)
        logger.debug("Generated puzzle %s (%s)", puzzle.id, operation.value)
        return puzzle

    def _new_id(self) -> str:
        while True:
            puzzle_id = f"pz_{uuid.uuid4().hex[:8]}"
            if self.store.get_puzzle(puzzle_id) is None:
                return puzzle_id

    def get(self, puzzle_id: str) -> Optional[Puzzle]:
        return self.store.get_puzzle(puzzle_id)

    def validate(self, puzzle_id: str, answer: int) -> bool:
        puzzle = self.store.get_puzzle(puzzle_id)
        if puzzle is None:
            raise NotFound(f"Puzzle {puzzle_id} not found")
        correct = answer == puzzle.correct_answer
        puzzle.attempts += 1
        try:
            self.store.put_puzzle(puzzle)
        except StorageFailure as exc:
            logger.error("Could not record attempt %s on puzzle %s: %s", puzzle.attempts, puzzle.id, exc)
            return correct
        if puzzle.has_reached_max_attempts:
            logger.info("Puzzle %s reached %s attempts", puzzle.id, puzzle.attempts)
        return correct

    def cleanup(self, now: Optional[int] = None) -> int:
        now = self.clock() if now is None else now
        cutoff = now - self.retention_ms
        stale = [p.id for p in self.store.all_puzzles() if p.generated_at < cutoff]
        removed = self.store.delete_puzzles(stale)
        if removed:
            logger.info("Purged %s puzzles older than %s", removed, cutoff)
        return removed
