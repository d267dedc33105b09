"""
ASGI entry points.

Used by uvicorn / gunicorn when each app is run by an external server:

    uvicorn server.asgi:relay_app --port $WS_PORT
    uvicorn server.asgi:web_app --port $HTTP_PORT
"""

from dotenv import load_dotenv

load_dotenv()

from config import AppConfig  # pylint: disable=wrong-import-position
from server.app import build_runtime, create_relay_app, create_web_app  # pylint: disable=wrong-import-position

config = AppConfig.load_from_env()

relay_app = create_relay_app(build_runtime(config))
web_app = create_web_app(config)
