from quizduel import create_app, get_registry, socketio
from quizduel.services.game.persistence import install_shutdown_handlers
from quizduel.services.game.scheduler import start_ticker

app = create_app()

if __name__ == '__main__':
    registry = get_registry(app)
    registry.get()
    install_shutdown_handlers(registry, app.logger)
    start_ticker(app, socketio, registry)
    # Use SocketIO server to enable websockets in dev
    socketio.run(app, debug=True)
