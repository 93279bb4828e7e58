from livequiz import create_app, db, get_services, socketio
from livequiz import models  # noqa: F401

app = create_app()

if __name__ == '__main__':
    with app.app_context():
        db.create_all()
    # Use SocketIO server to enable websockets in dev
    try:
        socketio.run(app, debug=True)
    finally:
        get_services(app).shutdown()
