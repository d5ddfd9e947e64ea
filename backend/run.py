from bingo import create_app, socketio
from bingo.services.game.scheduler import restart_scheduler

app = create_app()

if __name__ == '__main__':
    # Re-arm restart countdowns persisted before the last shutdown
    with app.app_context():
        restart_scheduler.recover_pending()
    # Use SocketIO server to enable websockets in dev
    socketio.run(app, debug=True)
