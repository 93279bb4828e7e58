from datetime import datetime, timezone

from livequiz import db


def _parse_iso(value):
    if not value:
        return None
    try:
        return datetime.fromisoformat(value)
    except (TypeError, ValueError):
        return None


class QuizResult(db.Model):
    """Final results of one finished (or host-abandoned) session."""

    __tablename__ = 'quiz_result'
    id = db.Column(db.Integer, primary_key=True)
    game_pin = db.Column(db.String(6), nullable=False, index=True)
    quiz_title = db.Column(db.String(255), nullable=False)
    game_mode = db.Column(db.String(32), nullable=False, default='classic')
    player_count = db.Column(db.Integer, nullable=False, default=0)
    started_at = db.Column(db.DateTime(timezone=True), nullable=True)
    ended_at = db.Column(db.DateTime(timezone=True), nullable=True)
    saved_at = db.Column(db.DateTime(timezone=True), nullable=False, index=True,
                         default=lambda: datetime.now(timezone.utc))
    payload = db.Column(db.JSON, nullable=False)

    @classmethod
    def from_artifact(cls, artifact: dict) -> 'QuizResult':
        return cls(
            game_pin=artifact['gamePin'],
            quiz_title=artifact.get('quizTitle') or 'Untitled Quiz',
            game_mode=artifact.get('gameMode') or 'classic',
            player_count=len(artifact.get('results') or []),
            started_at=_parse_iso(artifact.get('startTime')),
            ended_at=_parse_iso(artifact.get('endTime')),
            saved_at=_parse_iso(artifact.get('saved')) or datetime.now(timezone.utc),
            payload=artifact,
        )

    def to_dict(self, include_payload=True):
        data = {
            'id': self.id,
            'game_pin': self.game_pin,
            'quiz_title': self.quiz_title,
            'game_mode': self.game_mode,
            'player_count': self.player_count,
            'started_at': self.started_at.isoformat() if self.started_at else None,
            'ended_at': self.ended_at.isoformat() if self.ended_at else None,
            'saved_at': self.saved_at.isoformat() if self.saved_at else None,
        }
        if include_payload:
            data['artifact'] = self.payload
        return data
