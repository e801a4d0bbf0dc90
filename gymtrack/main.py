import logging

from . import config
from .api import app
from .database import DB_FILE, initialize_database
from .sweeper import ExpirationSweeper


def main():
    # Ensure the data directory, schema and default plans exist before serving
    initialize_database(DB_FILE)
    logging.info(f"Database initialized at: {DB_FILE}")
    app.config["DB_PATH"] = DB_FILE

    sweeper = ExpirationSweeper(db_path=DB_FILE)
    sweeper.start()
    try:
        logging.info(f"Starting HTTP API on {config.API_HOST}:{config.API_PORT}")
        # The reloader would start a second sweeper in the child process
        app.run(host=config.API_HOST, port=config.API_PORT, use_reloader=False)
    finally:
        sweeper.shutdown()


if __name__ == "__main__":
    main()
