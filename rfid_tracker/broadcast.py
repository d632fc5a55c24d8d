import logging

logger = logging.getLogger(__name__)


class Broadcaster:
    """Fan-out of dashboard events to every connected websocket."""

    def __init__(self):
        self.connections = set()

    async def connect(self, websocket):
        await websocket.accept()
        self.connections.add(websocket)
        logger.info("Listener connected (%d total)", len(self.connections))

    def disconnect(self, websocket):
        self.connections.discard(websocket)
        logger.info("Listener disconnected (%d total)", len(self.connections))

    async def emit(self, event, data):
        message = {"event": event, "data": data}
        for websocket in list(self.connections):
            try:
                await websocket.send_json(message)
            except Exception as e:
                logger.debug("Dropping listener after failed send: %s", e)
                self.connections.discard(websocket)
