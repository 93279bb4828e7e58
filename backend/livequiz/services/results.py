from sqlalchemy.exc import SQLAlchemyError

from livequiz import db
from livequiz.models import QuizResult
from livequiz.services.games.game import iso_from_ms


class ResultsStore:
    """Writes finished-session artifacts to the database off the game lock."""

    def __init__(self, app, clock, logger):
        self.app = app
        self.clock = clock
        self.logger = logger

    def save_game(self, game) -> bool:
        """Snapshot ``game`` (caller holds its lock) and write it in the background.

        Returns False when the game was already saved.
        """
        if game.results_saved:
            return False
        artifact = game.results_artifact(iso_from_ms(self.clock.now_ms()))
        game.results_saved = True
        self.clock.spawn(lambda: self.write(artifact))
        return True

    def write(self, artifact: dict):
        with self.app.app_context():
            try:
                row = QuizResult.from_artifact(artifact)
                db.session.add(row)
                db.session.commit()
            except SQLAlchemyError:
                db.session.rollback()
                self.logger.exception(f"[results-error] pin={artifact.get('gamePin')} write failed")
                return None
            self.logger.info(
                f"[results-saved] pin={row.game_pin} id={row.id} players={row.player_count}"
            )
            return row.id

    def recent(self, limit: int = 20):
        return (
            QuizResult.query.order_by(QuizResult.saved_at.desc(), QuizResult.id.desc())
            .limit(limit)
            .all()
        )

    def for_pin(self, pin: str):
        return (
            QuizResult.query.filter_by(game_pin=pin)
            .order_by(QuizResult.saved_at.desc(), QuizResult.id.desc())
            .all()
        )
