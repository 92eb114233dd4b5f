import requests
from flask import Flask, Response, jsonify, request
from flask_cors import CORS
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address

from .config import Config
from .errors import register_error_handlers

# (public prefix, service, prefix on the service)
ROUTES = (
    ('/api/auth', 'auth', '/auth'),
    ('/api/profile', 'auth', '/profile'),
    ('/api/messages', 'messaging', '/messages'),
    ('/api/reports', 'messaging', '/reports'),
    ('/api/attachments', 'messaging', '/attachments'),
    ('/api/channels', 'messaging', '/channels'),
    ('/api/modules', 'module', '/modules'),
    ('/api/courses', 'module', '/courses'),
    ('/api/admin', 'admin', '/admin'),
    ('/api/account', 'account', '/account'),
)

HOP_BY_HOP = {
    'connection', 'keep-alive', 'proxy-authenticate', 'proxy-authorization', 'te', 'trailers',
    'transfer-encoding', 'upgrade', 'content-encoding', 'content-length',
}

PROXY_METHODS = ['GET', 'POST', 'PUT', 'PATCH', 'DELETE']


def resolve(path, service_urls):
    """Map a public /api path to the backing service URL, or None."""
    for prefix, service, target in ROUTES:
        if path == prefix or path.startswith(prefix + '/'):
            return service, service_urls[service].rstrip('/') + target + path[len(prefix):]
    return None


def create_gateway(config=None):
    app = Flask(__name__)
    app.config.from_object(config or Config)
    app.logger.setLevel(app.config.get('LOG_LEVEL', 'INFO'))

    CORS(app, origins=app.config['CORS_ORIGINS'], supports_credentials=True)
    Limiter(
        key_func=get_remote_address,
        app=app,
        default_limits=[app.config['GATEWAY_RATE_LIMIT']],
        storage_uri=app.config['RATELIMIT_STORAGE_URI'],
    )
    register_error_handlers(app)

    timeout = app.config['GATEWAY_TIMEOUT_SECONDS']

    @app.before_request
    def log_request():
        app.logger.info('%s %s', request.method, request.path)

    @app.route('/api/<path:subpath>', methods=PROXY_METHODS)
    def proxy(subpath):
        """Forwards one API call to the service that owns it."""
        match = resolve(request.path, app.config['SERVICE_URLS'])
        if match is None:
            return jsonify({'error': 'Route not found'}), 404
        service, url = match

        headers = {k: v for k, v in request.headers if k.lower() not in HOP_BY_HOP and k.lower() != 'host'}
        try:
            upstream = requests.request(
                method=request.method,
                url=url,
                params=request.args.to_dict(flat=False),
                data=request.get_data(),
                headers=headers,
                allow_redirects=False,
                timeout=timeout,
            )
        except requests.RequestException as e:
            app.logger.error('Proxy error (%s): %s', service, e)
            return jsonify({'error': 'Service temporarily unavailable'}), 500

        response_headers = [(k, v) for k, v in upstream.headers.items() if k.lower() not in HOP_BY_HOP]
        return Response(upstream.content, upstream.status_code, response_headers)

    @app.route('/health')
    def health():
        checks = {}
        for name, url in app.config['SERVICE_URLS'].items():
            try:
                response = requests.get(f"{url.rstrip('/')}/health", timeout=timeout)
                checks[name] = 'healthy' if response.ok else 'unhealthy'
            except requests.RequestException:
                checks[name] = 'unreachable'

        all_healthy = all(status == 'healthy' for status in checks.values())
        return jsonify({
            'status': 'healthy' if all_healthy else 'degraded',
            'gateway': 'running',
            'services': checks,
        }), 200 if all_healthy else 503

    @app.route('/')
    def index():
        return jsonify({
            'service': 'ModNet API Gateway',
            'status': 'running',
            'endpoints': {prefix.rsplit('/', 1)[1]: prefix for prefix, _, _ in ROUTES},
        })

    return app
