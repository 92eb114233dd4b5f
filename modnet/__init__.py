from flask import Flask, jsonify, request

from . import db
# Registers the Socket.IO handlers; has to run before socketio.init_app
from . import realtime  # noqa: F401
from .config import Config
from .errors import register_error_handlers
from .extensions import cors, limiter, mail, socketio
from .storage import AttachmentStore

# Which blueprints each deployable service serves
SERVICES = {
    'auth': ('auth', 'profile'),
    'profile': ('profile',),
    'messaging': ('messaging', 'channels'),
    'module': ('modules',),
    'admin': ('admin',),
    'account': ('account',),
}


def _blueprints():
    from .account import bp as account_bp
    from .admin import bp as admin_bp
    from .auth import bp as auth_bp
    from .channels import bp as channels_bp
    from .messaging import bp as messaging_bp
    from .modules import bp as modules_bp
    from .profile import bp as profile_bp

    return {
        'auth': auth_bp,
        'profile': profile_bp,
        'messaging': messaging_bp,
        'channels': channels_bp,
        'modules': modules_bp,
        'admin': admin_bp,
        'account': account_bp,
    }


def create_app(config=None, services=None):
    """
    Build one ModNet process. `services` names the services to serve
    (see SERVICES); None serves everything from a single process.
    """
    app = Flask(__name__)
    app.config.from_object(config or Config)

    if isinstance(services, str):
        services = [services]
    services = list(services) if services else list(SERVICES)
    unknown = [name for name in services if name not in SERVICES]
    if unknown:
        raise ValueError(f"Unknown service(s): {', '.join(unknown)}")
    app.config['SERVICES'] = services

    app.logger.setLevel(app.config.get('LOG_LEVEL', 'INFO'))

    db.init_app(app)
    db.ensure_schema(app.config['DATABASE'])
    app.extensions['modnet.attachments'] = AttachmentStore(
        app.config['UPLOAD_FOLDER'], app.config['ATTACHMENT_KEY'])

    cors.init_app(app, origins=app.config['CORS_ORIGINS'], supports_credentials=True)
    limiter.init_app(app)
    mail.init_app(app)
    socketio.init_app(app, cors_allowed_origins=app.config['CORS_ORIGINS'],
                      message_queue=app.config.get('SOCKETIO_MESSAGE_QUEUE'))

    register_error_handlers(app)

    blueprints = _blueprints()
    registered = []
    for service in services:
        for name in SERVICES[service]:
            if name not in registered:
                app.register_blueprint(blueprints[name])
                registered.append(name)

    service_name = services[0] if len(services) == 1 else 'modnet'

    @app.before_request
    def log_request():
        app.logger.info('%s %s', request.method, request.path)

    @app.route('/health')
    def health():
        """Liveness probe used by the gateway."""
        return jsonify({'status': 'healthy', 'service': service_name})

    @app.route('/')
    def index():
        return jsonify({
            'message': 'ModNet API',
            'service': service_name,
            'blueprints': registered,
        })

    return app
