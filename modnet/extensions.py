from flask_cors import CORS
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_mail import Mail
from flask_socketio import SocketIO

# Created unbound and attached in create_app / create_gateway
socketio = SocketIO()
limiter = Limiter(key_func=get_remote_address)
mail = Mail()
cors = CORS()
