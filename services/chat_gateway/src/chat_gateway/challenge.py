import asyncio
import base64
import hashlib
import json
import logging
import time
from concurrent.futures import Executor
from dataclasses import dataclass

from chat_gateway.errors import ChallengeUnsolvable

TOKEN_PREFIX = "gAAAAAB"
CORE_CONSTANT = 4294705152

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BackendChallenge:
    seed: str
    difficulty: str
    required: bool = True


@dataclass(frozen=True)
class ProofConfig:
    """Browser fingerprint fields hashed alongside every nonce."""

    screen: int
    timestamp: str
    user_agent: str


@dataclass(frozen=True)
class ProofOfWork:
    nonce: int
    token: str
    attempts: int


def _candidate(config: ProofConfig, nonce: int) -> str:
    value = json.dumps(
        [config.screen, config.timestamp, CORE_CONSTANT, nonce, config.user_agent],
        separators=(",", ":"),
        ensure_ascii=False,
    )
    return base64.b64encode(value.encode("utf-8")).decode("ascii")


def meets_difficulty(seed: str, candidate: str, difficulty: str) -> bool:
    digest = hashlib.sha3_512((seed + candidate).encode("utf-8")).digest()
    return digest[: len(difficulty) // 2].hex() <= difficulty


def solve_proof(
    seed: str,
    difficulty: str,
    config: ProofConfig,
    max_attempts: int,
) -> ProofOfWork:
    for nonce in range(max_attempts):
        candidate = _candidate(config, nonce)
        if meets_difficulty(seed, candidate, difficulty):
            return ProofOfWork(nonce=nonce, token=TOKEN_PREFIX + candidate, attempts=nonce + 1)
    raise ChallengeUnsolvable(f"no nonce below {max_attempts} for difficulty {difficulty}")


class ChallengeSolver:
    """Runs the brute-force search off the event loop.

    ``executor`` is normally a process pool owned by the app lifespan; ``None``
    falls back to the loop's default executor.
    """

    def __init__(self, max_attempts: int, executor: Executor | None = None) -> None:
        self._max_attempts = max_attempts
        self._executor = executor

    async def solve(self, challenge: BackendChallenge, config: ProofConfig) -> ProofOfWork:
        loop = asyncio.get_running_loop()
        started = time.monotonic()
        proof = await loop.run_in_executor(
            self._executor,
            solve_proof,
            challenge.seed,
            challenge.difficulty,
            config,
            self._max_attempts,
        )
        logger.debug(
            "challenge solved difficulty=%s attempts=%s elapsed_ms=%s",
            challenge.difficulty,
            proof.attempts,
            int((time.monotonic() - started) * 1000),
        )
        return proof
