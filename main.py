import logging

import uvicorn

from rfid_tracker.constants import HOST, PORT, LOG_LEVEL, LOG_FORMAT
from rfid_tracker.server import create_app


def main():
    logging.basicConfig(level=getattr(logging, LOG_LEVEL, logging.INFO), format=LOG_FORMAT)
    app = create_app()
    uvicorn.run(app, host=HOST, port=PORT, log_level=LOG_LEVEL.lower())

if __name__ == "__main__":
    main()
