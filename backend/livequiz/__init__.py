from flask import Flask
from flask_sqlalchemy import SQLAlchemy
from flask_cors import CORS
from flask_migrate import Migrate
from flask_socketio import SocketIO
import click
from config import Config

db = SQLAlchemy()
migrate = Migrate()
socketio = SocketIO(async_mode=None)


def get_services(flask_app=None):
    from flask import current_app
    return (flask_app or current_app).extensions['livequiz']


def create_app(config_class=Config, clock=None):
    flask_app = Flask(__name__)
    flask_app.config.from_object(config_class)
    flask_app.logger.setLevel(flask_app.config.get('LOG_LEVEL', 'INFO'))

    allowed_origins = flask_app.config.get('CORS_ORIGINS') or []
    db.init_app(flask_app)
    migrate.init_app(flask_app, db)
    CORS(flask_app, supports_credentials=True, origins=allowed_origins)

    # Initialize Socket.IO after app is created
    socketio.init_app(flask_app, cors_allowed_origins=allowed_origins)

    from livequiz.main import main
    flask_app.register_blueprint(main)

    from livequiz.api.games import games
    flask_app.register_blueprint(games, url_prefix='/api')

    from livequiz.services import build_services
    from livequiz.services.timers import SocketIOClock
    from livequiz.transport import SocketIOEmitter
    services = build_services(
        flask_app,
        clock or SocketIOClock(socketio, flask_app.logger),
        SocketIOEmitter(socketio),
    )
    flask_app.extensions['livequiz'] = services

    # Importing here binds the handlers to the initialized socketio instance
    from livequiz.socketio_events import register_socketio_handlers
    register_socketio_handlers(testing=flask_app.config.get('TESTING', False))

    if not flask_app.config.get('TESTING') or flask_app.config.get('ENABLE_SCHEDULER_IN_TESTS'):
        services.start_background_jobs()

    @click.command('db-reset')
    def db_reset_command():
        """Drops and recreates the results tables."""
        from livequiz import models  # noqa: F401
        with flask_app.app_context():
            db.drop_all()
            db.create_all()
            print('Database has been reset!')

    flask_app.cli.add_command(db_reset_command)

    return flask_app
