import argparse
import sys

from . import SERVICES, create_app
from .config import Config
from .extensions import socketio
from .gateway import create_gateway


def main(argv=None):
    parser = argparse.ArgumentParser(prog='python -m modnet', description='Run a ModNet service.')
    parser.add_argument('service', choices=sorted(SERVICES) + ['all', 'gateway'],
                        help='service to run; "all" serves every blueprint from one process')
    parser.add_argument('--host', default='127.0.0.1')
    parser.add_argument('--port', type=int, help='defaults to the configured port for the service')
    parser.add_argument('--debug', action='store_true')
    args = parser.parse_args(argv)

    missing = Config.missing()
    if missing:
        print(f"Missing required environment variables: {', '.join(missing)}", file=sys.stderr)
        return 1

    if args.service == 'gateway':
        app = create_gateway()
        app.run(host=args.host, port=args.port or Config.GATEWAY_PORT, debug=args.debug)
        return 0

    services = None if args.service == 'all' else [args.service]
    port = args.port or Config.SERVICE_PORTS.get(args.service, Config.SERVICE_PORTS['messaging'])
    app = create_app(services=services)
    print(f'ModNet {args.service} service running on port {port}')
    socketio.run(app, host=args.host, port=port, debug=args.debug, allow_unsafe_werkzeug=True)
    return 0


if __name__ == '__main__':
    sys.exit(main())
