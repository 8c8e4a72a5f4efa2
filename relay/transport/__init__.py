# Transport Layer
# WebSocket upgrade dispatch and the HTTP application

from relay.transport.dispatcher import Dispatcher
from relay.transport.app import app, create_app

__all__ = ["Dispatcher", "app", "create_app"]
