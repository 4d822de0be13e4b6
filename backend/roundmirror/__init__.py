from flask import Flask
from flask_cors import CORS
from flask_socketio import SocketIO
import json
import click
from config import Config

allowed_origins = [
    "http://localhost:3000",
    "http://127.0.0.1:3000",
    "http://localhost:5173",
    "http://127.0.0.1:5173",
]
socketio = SocketIO(cors_allowed_origins=allowed_origins, async_mode=None)

def create_app(config_class=Config, channel=None, snapshots=None, clock=None):
    flask_app = Flask(__name__)
    flask_app.config.from_object(config_class)

    CORS(flask_app, supports_credentials=True, origins=allowed_origins)

    # Initialize Socket.IO after app is created
    socketio.init_app(flask_app, cors_allowed_origins=allowed_origins)

    from roundmirror.main import main
    flask_app.register_blueprint(main)

    from roundmirror.api.rounds import rounds
    flask_app.register_blueprint(rounds, url_prefix='/api/rounds')

    # Handlers bind to the module-level socketio instance
    from roundmirror.socketio_events import register_socketio_handlers
    register_socketio_handlers(testing=flask_app.config.get('TESTING', False))

    # Hub last: auto-subscribed topics may already publish to Socket.IO rooms
    from roundmirror.services.rounds.hub import hub
    hub.init_app(flask_app, channel=channel, snapshots=snapshots, clock=clock)

    @click.command('fetch-snapshot')
    @click.argument('topic')
    def fetch_snapshot_command(topic):
        """Fetches and prints the normalized snapshot for TOPIC."""
        from roundmirror.services.rounds.errors import RoundMirrorError
        from roundmirror.services.rounds.modes import parse_topic
        try:
            mode, key = parse_topic(topic)
            record = hub.snapshots.fetch(mode, key)
        except RoundMirrorError as exc:
            raise click.ClickException(str(exc))
        click.echo(json.dumps(record.to_dict(), indent=2, sort_keys=True))

    flask_app.cli.add_command(fetch_snapshot_command)

    return flask_app
