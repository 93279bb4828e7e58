from dataclasses import dataclass

from .batching import SocketBatchService
from .games.consensus import ConsensusFlowService
from .games.players import PlayerManagementService
from .games.question_flow import QuestionFlowService
from .games.scheduler import GameSessionService
from .rate_limiter import SocketRateLimiter
from .results import ResultsStore


@dataclass
class GameServices:
    sessions: GameSessionService
    players: PlayerManagementService
    question_flow: QuestionFlowService
    consensus: ConsensusFlowService
    batcher: SocketBatchService
    rate_limiter: SocketRateLimiter
    results: ResultsStore
    clock: object
    emitter: object

    def start_background_jobs(self) -> None:
        self.sessions.start_cleanup()
        self.rate_limiter.start_cleanup()

    def shutdown(self) -> None:
        self.sessions.stop_cleanup()
        self.rate_limiter.stop_cleanup()
        self.batcher.shutdown()

    def stats(self) -> dict:
        return {
            'games': self.sessions.game_count(),
            'players': self.players.get_player_count(),
            'batching': self.batcher.get_stats(),
            'rateLimiter': self.rate_limiter.get_stats(),
        }


def build_services(app, clock, emitter) -> GameServices:
    """Wire the game services for one Flask app."""
    settings = app.config
    logger = app.logger
    batcher = SocketBatchService(
        emitter, clock, logger,
        enabled=settings.get('SOCKET_BATCHING_ENABLED', True),
        batch_interval_ms=settings.get('SOCKET_BATCH_INTERVAL_MS', 500),
        max_batch_size=settings.get('SOCKET_BATCH_MAX_SIZE', 50),
    )
    rate_limiter = SocketRateLimiter(
        clock, logger,
        default_limit=settings.get('SOCKET_RATE_LIMIT_PER_SEC', 10),
        cleanup_interval_ms=settings.get('RATE_LIMIT_CLEANUP_INTERVAL_MS', 10000),
    )
    results = ResultsStore(app, clock, logger)
    players = PlayerManagementService(emitter, batcher, results, settings, logger)
    sessions = GameSessionService(settings, clock, emitter, batcher, players, results, logger)
    question_flow = QuestionFlowService(sessions, players, emitter, batcher, clock, settings, logger)
    consensus = ConsensusFlowService(emitter, clock, settings, logger)
    return GameServices(
        sessions=sessions,
        players=players,
        question_flow=question_flow,
        consensus=consensus,
        batcher=batcher,
        rate_limiter=rate_limiter,
        results=results,
        clock=clock,
        emitter=emitter,
    )
